from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt

ROLE_ADMIN = "admin"
ROLE_CUSTOMER = "customer"


@dataclass(frozen=True)
class CurrentUser:
    user_id: int
    email: Optional[str] = None
    role: str = ROLE_CUSTOMER

    @property
    def is_admin(self):
        return self.role == ROLE_ADMIN


def decode_token(token: str, secret: str) -> CurrentUser:
    claims = jwt.decode(token, secret, algorithms=["HS256"])
    user_id = claims.get("userId", claims.get("sub"))
    if user_id is None:
        raise JWTError("token carries no user id")
    return CurrentUser(user_id=int(user_id), email=claims.get("email"), role=claims.get("role", ROLE_CUSTOMER))


def verify_token(request: Request, authorization: str = Header(None)) -> CurrentUser:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        return decode_token(token, request.app.state.settings.jwt_secret)
    except (AttributeError, ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def require_admin(user: CurrentUser = Depends(verify_token)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden: insufficient permissions")
    return user
