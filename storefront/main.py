from contextlib import asynccontextmanager

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from storefront.cart import CartStore
from storefront.checkout import CheckoutService
from storefront.config import load_settings
from storefront.database import Base, make_engine, make_session_factory
from storefront.email_service import EmailSender
from storefront.errors import PaymentNotFound, StorefrontError
from storefront.eversend_service import EversendGateway
from storefront.logging_config import get_logger, setup_logging
from storefront.payment_gateway import GatewayRegistry
from storefront.paypal_service import PayPalGateway
from storefront.reconciler import PaymentReconciler
from storefront.routes import router, schedule_confirmation
from storefront.stripe_service import StripeGateway

log = get_logger(__name__)


def build_gateways(settings) -> GatewayRegistry:
    gateways = []
    if settings.eversend_enabled:
        gateways.append(EversendGateway(settings))
    if settings.paypal_enabled:
        gateways.append(PayPalGateway(settings))
    if settings.stripe_enabled:
        gateways.append(StripeGateway(settings))
    if not gateways:
        log.warning("No payment provider is configured; payment initiation will be rejected.")
    return GatewayRegistry(gateways)


@asynccontextmanager
async def lifespan(app: FastAPI):
    resumable = await run_in_threadpool(app.state.checkout.find_resumable_orders)
    if resumable:
        log.warning(f"{len(resumable)} order(s) left in pending without a payment attempt: "
                    f"{[order.id for order in resumable]}")
    yield
    app.state.gateways.close()


def create_app(settings=None, session_factory=None, gateways=None, email_sender=None) -> FastAPI:
    settings = settings or load_settings()
    setup_logging(settings.log_level)

    if session_factory is None:
        engine = make_engine(settings.database_url)
        Base.metadata.create_all(bind=engine)
        session_factory = make_session_factory(engine)
    gateways = gateways if gateways is not None else build_gateways(settings)

    app = FastAPI(title="Storefront Checkout Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.gateways = gateways
    app.state.cart = CartStore(session_factory)
    app.state.checkout = CheckoutService(session_factory, gateways, settings.default_currency, settings.payment_timeout)
    app.state.reconciler = PaymentReconciler(session_factory, gateways)
    app.state.email_sender = email_sender if email_sender is not None else EmailSender(settings)

    app.include_router(router)
    register_error_handlers(app)

    @app.post("/payments/webhook")
    async def payment_webhook(request: Request, background_tasks: BackgroundTasks):
        payload = await request.body()
        provider = request.headers.get("x-payment-provider") or request.query_params.get("provider")
        gateway = app.state.gateways.get(provider)

        # Nothing is looked up before the signature checks out.
        if not await run_in_threadpool(gateway.verify_webhook, payload, request.headers):
            log.warning(f"Rejected {provider} webhook with missing or invalid signature")
            raise HTTPException(status_code=400, detail="Invalid signature")

        try:
            event = gateway.parse_webhook(payload)
        except ValueError as e:
            log.warning(f"Unparseable {provider} webhook: {e}")
            raise HTTPException(status_code=400, detail="Invalid payload")
        if event is None:
            return {"status": "ignored"}

        try:
            outcome = await run_in_threadpool(app.state.reconciler.apply_event, gateway, event)
        except PaymentNotFound:
            log.error(f"{provider} webhook for unknown payment {event.provider_payment_id}")
            raise

        schedule_confirmation(request, background_tasks, outcome)
        if event.status is None:
            return {"status": "unknown_status"}
        return {"status": outcome.result.value}

    @app.get("/health")
    def health_check():
        return {"status": "ok", "providers": app.state.gateways.names()}

    return app


def register_error_handlers(app: FastAPI):

    @app.exception_handler(StorefrontError)
    async def storefront_error(request: Request, exc: StorefrontError):
        if exc.status_code >= 500:
            log.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = "; ".join(f"{'.'.join(str(p) for p in e['loc'][1:])}: {e['msg']}" for e in errors) or "Invalid request"
        return JSONResponse(status_code=400, content={"error": message})
