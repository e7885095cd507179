import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./storefront.db"
    jwt_secret: str = ""
    log_level: str = "INFO"
    default_currency: str = "USD"
    payment_timeout: float = 15.0
    callback_url: str = ""

    eversend_api_key: str = ""
    eversend_base_url: str = "https://api.eversend.co/v1"
    eversend_webhook_secret: str = ""

    paypal_client_id: str = ""
    paypal_secret: str = ""
    paypal_base_url: str = "https://api-m.sandbox.paypal.com"
    paypal_webhook_id: str = ""

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    email_from_address: str = ""
    email_from_name: str = "BlogCommerce"

    @property
    def eversend_enabled(self) -> bool:
        return bool(self.eversend_api_key)

    @property
    def paypal_enabled(self) -> bool:
        return bool(self.paypal_client_id and self.paypal_secret)

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_username and self.smtp_password)


def load_settings(env_path: Optional[Path] = None) -> Settings:
    """Build the settings object from the environment.

    The ``.env`` next to the project root is loaded first (Windows-safe,
    reload-safe); real environment variables win over it.
    """
    load_dotenv(dotenv_path=env_path or ENV_PATH)

    env = os.getenv
    return Settings(
        database_url=env("DATABASE_URL", Settings.database_url),
        jwt_secret=env("JWT_SECRET", ""),
        log_level=env("LOG_LEVEL", Settings.log_level),
        default_currency=env("DEFAULT_CURRENCY", Settings.default_currency),
        payment_timeout=float(env("PAYMENT_TIMEOUT_SECONDS", Settings.payment_timeout)),
        callback_url=env("PAYMENT_CALLBACK_URL", ""),
        eversend_api_key=env("EVERSEND_API_KEY", ""),
        eversend_base_url=env("EVERSEND_BASE_URL", Settings.eversend_base_url),
        eversend_webhook_secret=env("EVERSEND_WEBHOOK_SECRET", env("PAYMENT_WEBHOOK_SECRET", "")),
        paypal_client_id=env("PAYPAL_CLIENT_ID", ""),
        paypal_secret=env("PAYPAL_SECRET", ""),
        paypal_base_url=env("PAYPAL_BASE_URL", Settings.paypal_base_url),
        paypal_webhook_id=env("PAYPAL_WEBHOOK_ID", ""),
        stripe_secret_key=env("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=env("STRIPE_WEBHOOK_SECRET", ""),
        smtp_host=env("SMTP_HOST", Settings.smtp_host),
        smtp_port=int(env("SMTP_PORT", Settings.smtp_port)),
        smtp_username=env("SMTP_USERNAME", ""),
        smtp_password=env("SMTP_PASSWORD", ""),
        email_from_address=env("EMAIL_FROM_ADDRESS", env("SMTP_USERNAME", "")),
        email_from_name=env("EMAIL_FROM_NAME", Settings.email_from_name),
    )
