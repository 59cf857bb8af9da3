"""
Deal Room Payments Server
=========================
FastAPI surface for the payment orchestration engine:
- Order creation and status polling for the dashboard
- Hosted-page return and callback endpoints per gateway
- Webhook / IPN ingestion (authenticated by payload signature, not headers)
- Payment history, subscriptions and Deal Room access
- Health monitoring

The founder identity arrives in the X-Founder-Id header, set by the
authenticating proxy in front of this service.
"""

import logging
import os
import time
import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Any, Optional, List
from datetime import datetime
from decimal import Decimal
from urllib.parse import quote
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn
import structlog

# Local imports
import gateways  # noqa: F401  registers providers
from api.rate_limit import payment_create_limiter, payment_status_limiter, webhook_limiter
from database import init_database, close_database
from gateways.status_mapper import user_friendly_message
from schemas.payment_definitions import (
    CreatePaymentRequest,
    PaymentStatus,
    PaymentTransaction,
    PlanType,
    StatusSource,
    UserSubscription,
)
from schemas.payment_errors import PaymentError
from services.currency_service import CurrencyService
from services.notification_service import create_notification_service
from services.payment_service import PaymentService
from storage.payment_repository import InMemoryPaymentRepository, PostgresPaymentRepository
from tasks.reconciliation import config as reconciliation_config, reconciliation_loop


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Where browsers land after the hosted payment page
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5000").rstrip("/")

    # postgres | memory
    PAYMENT_STORE = os.getenv("PAYMENT_STORE", "postgres").lower()

    VERSION = "1.0.0"


config = ServerConfig()


# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=True) if config.DEBUG else structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, config.LOG_LEVEL, logging.INFO)),
    context_class=dict,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger().bind(component="server")


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreatePaymentResponse(CamelModel):
    success: bool = True
    order_reference: str
    payment_url: str
    expires_at: Optional[datetime] = None


class TransactionView(CamelModel):
    """Transaction with gateway internals filtered out."""
    id: str
    order_reference: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    description: Optional[str] = None
    gateway_provider: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_transaction(cls, tx: PaymentTransaction) -> "TransactionView":
        return cls(
            id=tx.id,
            order_reference=tx.order_reference,
            amount=tx.amount,
            currency=tx.currency,
            status=tx.status,
            description=tx.description,
            gateway_provider=tx.gateway_provider.value,
            created_at=tx.created_at,
            updated_at=tx.updated_at,
        )


class PaymentStatusResponse(CamelModel):
    success: bool = True
    status: PaymentStatus
    message: str
    order_reference: str
    transaction: TransactionView


class PaymentHistoryResponse(CamelModel):
    success: bool = True
    transactions: List[TransactionView]


class SubscriptionView(CamelModel):
    id: str
    plan_type: PlanType
    status: str
    gateway_provider: str
    starts_at: datetime
    expires_at: datetime
    created_at: datetime

    @classmethod
    def from_subscription(cls, sub: UserSubscription) -> "SubscriptionView":
        return cls(
            id=sub.id,
            plan_type=sub.plan_type,
            status=sub.status.value,
            gateway_provider=sub.gateway_provider.value,
            starts_at=sub.starts_at,
            expires_at=sub.expires_at,
            created_at=sub.created_at,
        )


class SubscriptionsResponse(CamelModel):
    success: bool = True
    subscriptions: List[SubscriptionView]


class AccessResponse(CamelModel):
    success: bool = True
    has_access: bool


class WebhookResponse(CamelModel):
    success: bool = True
    processed: bool = False


class HealthResponse(CamelModel):
    status: str
    version: str
    uptime_seconds: float
    payment_store: str
    supported_providers: List[str]


# =============================================================================
# SERVICE WIRING
# =============================================================================

async def build_payment_service() -> PaymentService:
    """Assemble the production service from the environment."""
    if config.PAYMENT_STORE == "memory":
        logger.warning("payment_store_in_memory", detail="state is lost on restart")
        repository = InMemoryPaymentRepository()
    else:
        await init_database()
        repository = PostgresPaymentRepository()

    return PaymentService(
        repository=repository,
        currency_service=CurrencyService(),
        notifications=create_notification_service(),
    )


def get_payment_service(request: Request) -> PaymentService:
    service = getattr(request.app.state, "payment_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Payment service unavailable")
    return service


def require_founder(x_founder_id: Optional[str] = Header(default=None)) -> str:
    if not x_founder_id:
        raise HTTPException(status_code=401, detail="User not authenticated")
    return x_founder_id


async def read_payload(request: Request) -> Dict[str, Any]:
    """Gateways deliver JSON, form posts or query strings."""
    if request.method == "GET":
        return {k: v for k, v in request.query_params.items() if k != "ref"}

    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Invalid webhook payload")
        return body

    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


def extract_signature(request: Request, provider: str, payload: Dict[str, Any]) -> Optional[str]:
    return (
        request.headers.get(f"x-{provider.lower()}-signature")
        or request.headers.get("signature")
        or payload.get("signature")
    )


# Keys that carry a status in a browser return; without them the return is
# resolved by polling the gateway instead.
RETURN_STATUS_KEYS = ("status", "STATUS", "respStatus", "response_status", "payment_result")

RESULT_PAGES = {
    PaymentStatus.COMPLETED: "success",
    PaymentStatus.FAILED: "failed",
    PaymentStatus.EXPIRED: "failed",
    PaymentStatus.CANCELLED: "cancelled",
}


def result_redirect(status: PaymentStatus, order_reference: str) -> RedirectResponse:
    page = RESULT_PAGES.get(status, "pending")
    return RedirectResponse(
        f"{config.FRONTEND_URL}/payment/{page}?ref={quote(order_reference)}", status_code=303
    )


def error_redirect(message: str) -> RedirectResponse:
    return RedirectResponse(
        f"{config.FRONTEND_URL}/payment/error?error={quote(message)}", status_code=303
    )


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    service: Optional[PaymentService] = None,
    run_reconciliation: Optional[bool] = None,
) -> FastAPI:
    """Build the app. Tests pass a ready service; production builds one at startup."""

    start_time = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", version=config.VERSION, env=config.ENV)

        owns_service = app.state.payment_service is None
        if owns_service:
            app.state.payment_service = await build_payment_service()

        sweeper: Optional[asyncio.Task] = None
        enabled = reconciliation_config.ENABLED if run_reconciliation is None else run_reconciliation
        if enabled:
            sweeper = asyncio.create_task(reconciliation_loop(app.state.payment_service))

        yield

        logger.info("server_shutting_down")
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        if owns_service:
            await app.state.payment_service.close()
            if config.PAYMENT_STORE != "memory":
                await close_database()

    app = FastAPI(
        title="Deal Room Payments",
        description="Payment gateway orchestration and reconciliation for Deal Room unlocks",
        version=config.VERSION,
        lifespan=lifespan,
    )
    app.state.payment_service = service

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------------------------------------------------------------------------
    # Middleware
    # -------------------------------------------------------------------------

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    # -------------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------------

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        log = logger.bind(path=request.url.path, category=exc.category)
        if exc.http_status >= 500:
            log.error("payment_error", error=exc.message, context=exc.context)
        else:
            log.warning("payment_error", error=exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Invalid request data", "details": details},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path)
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    # -------------------------------------------------------------------------
    # Health endpoints
    # -------------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        service = request.app.state.payment_service
        return HealthResponse(
            status="healthy" if service is not None else "starting",
            version=config.VERSION,
            uptime_seconds=time.monotonic() - start_time,
            payment_store=type(service.repository).__name__ if service else "none",
            supported_providers=service.registry.supported_providers if service else [],
        )

    @app.get("/ready")
    async def readiness_check(request: Request):
        """Kubernetes readiness probe"""
        return {"ready": request.app.state.payment_service is not None}

    @app.get("/live")
    async def liveness_check():
        """Kubernetes liveness probe"""
        return {"live": True}

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    @app.post(
        "/api/v1/payments/create",
        response_model=CreatePaymentResponse,
        dependencies=[Depends(payment_create_limiter)],
    )
    async def create_payment(
        body: CreatePaymentRequest,
        founder_id: str = Depends(require_founder),
        service: PaymentService = Depends(get_payment_service),
    ):
        result = await service.create_payment(founder_id, body)
        return CreatePaymentResponse(
            order_reference=result.order_reference,
            payment_url=result.payment_url,
            expires_at=result.expires_at,
        )

    @app.get(
        "/api/v1/payments/status/{order_reference}",
        response_model=PaymentStatusResponse,
        dependencies=[Depends(payment_status_limiter)],
    )
    async def payment_status(
        order_reference: str,
        founder_id: str = Depends(require_founder),
        service: PaymentService = Depends(get_payment_service),
    ):
        result = await service.check_payment_status(order_reference, founder_id=founder_id)
        return PaymentStatusResponse(
            status=result.status,
            message=user_friendly_message(result.status),
            order_reference=order_reference,
            transaction=TransactionView.from_transaction(result.transaction),
        )

    @app.get("/api/v1/payments/history", response_model=PaymentHistoryResponse)
    async def payment_history(
        founder_id: str = Depends(require_founder),
        service: PaymentService = Depends(get_payment_service),
    ):
        transactions = await service.get_payment_history(founder_id)
        return PaymentHistoryResponse(transactions=[TransactionView.from_transaction(t) for t in transactions])

    @app.get("/api/v1/payments/subscriptions", response_model=SubscriptionsResponse)
    async def payment_subscriptions(
        founder_id: str = Depends(require_founder),
        service: PaymentService = Depends(get_payment_service),
    ):
        subscriptions = await service.get_user_subscriptions(founder_id)
        return SubscriptionsResponse(subscriptions=[SubscriptionView.from_subscription(s) for s in subscriptions])

    @app.get("/api/v1/payments/access", response_model=AccessResponse)
    async def deal_room_access(
        founder_id: str = Depends(require_founder),
        service: PaymentService = Depends(get_payment_service),
    ):
        return AccessResponse(has_access=await service.has_deal_room_access(founder_id))

    # -------------------------------------------------------------------------
    # Hosted page return + server callback
    # -------------------------------------------------------------------------

    @app.api_route(
        "/api/v1/payments/{provider}/return",
        methods=["GET", "POST"],
        dependencies=[Depends(payment_status_limiter)],
    )
    async def payment_return(
        provider: str,
        request: Request,
        service: PaymentService = Depends(get_payment_service),
    ):
        payload = await read_payload(request)
        ref = request.query_params.get("ref")
        log = logger.bind(provider=provider, ref=ref)

        try:
            if any(payload.get(k) not in (None, "") for k in RETURN_STATUS_KEYS):
                outcome = await service.handle_webhook(
                    provider, payload, extract_signature(request, provider, payload), source=StatusSource.RETURN
                )
                return result_redirect(outcome.status, outcome.order_reference)
            if ref:
                result = await service.check_payment_status(ref)
                return result_redirect(result.status, ref)
        except PaymentError as e:
            log.warning("payment_return_failed", error=e.message)
            return error_redirect(e.message)

        log.warning("payment_return_without_reference")
        return error_redirect("Missing order reference")

    @app.post(
        "/api/v1/payments/{provider}/callback",
        response_model=WebhookResponse,
        dependencies=[Depends(webhook_limiter)],
    )
    async def payment_callback(
        provider: str,
        request: Request,
        service: PaymentService = Depends(get_payment_service),
    ):
        payload = await read_payload(request)
        outcome = await service.handle_webhook(provider, payload, extract_signature(request, provider, payload))
        return WebhookResponse(processed=outcome.processed)

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    @app.get("/api/v1/webhooks/telr", dependencies=[Depends(webhook_limiter)])
    async def telr_get_callback(
        request: Request,
        service: PaymentService = Depends(get_payment_service),
    ):
        """Telr may deliver hosted-page callbacks as GET; the browser follows the redirect."""
        payload = await read_payload(request)
        try:
            outcome = await service.handle_webhook("telr", payload, extract_signature(request, "telr", payload))
        except PaymentError as e:
            logger.warning("telr_get_callback_failed", error=e.message)
            return error_redirect(e.message)
        return result_redirect(outcome.status, outcome.order_reference)

    @app.post(
        "/api/v1/webhook/{provider}",
        response_model=WebhookResponse,
        dependencies=[Depends(webhook_limiter)],
    )
    @app.post(
        "/api/v1/webhooks/{provider}",
        response_model=WebhookResponse,
        dependencies=[Depends(webhook_limiter)],
    )
    async def provider_webhook(
        provider: str,
        request: Request,
        service: PaymentService = Depends(get_payment_service),
    ):
        payload = await read_payload(request)
        logger.info("webhook_received", provider=provider, keys=sorted(payload.keys()))
        outcome = await service.handle_webhook(provider, payload, extract_signature(request, provider, payload))
        return WebhookResponse(processed=outcome.processed)

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level=config.LOG_LEVEL.lower(),
    )
