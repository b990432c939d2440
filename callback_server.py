"""
FastAPI server for Paystack payment callbacks.

Paystack reaches the marketplace two ways:
    - GET /paystack/callback: the buyer's browser is redirected here after
      paying; the reference is verified with Paystack, then reconciled
    - POST /paystack/webhook: server-to-server ``charge.success`` events,
      authenticated by the ``x-paystack-signature`` HMAC header

Both paths end in ``SettlementService.reconcile_callback``, which is
idempotent, so it does not matter which one arrives first.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional, Any, Dict, Union

from fastapi import FastAPI, Request, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError as PydanticValidationError, field_validator

from admin_service import AdminService
from config import get_config, Config
from database import LedgerDatabase, DatabaseError
from escrow_automation import EscrowAutomation
from escrow_service import EscrowService
from exceptions import (
    AccessDeniedError, FraudRejectedError, GatewayUnverifiedError, InvalidTransitionError,
    MarketplaceError, NotFoundError, PayoutError, PayoutUnconfirmedError, PermissionDeniedError,
    ValidationError,
)
from fraud_engine import FraudEngine
from listing_service import ListingService
from models import Order, TopupIntent
from notifier import build_notifiers
from paystack_service import PaystackGateway, from_kobo, verify_webhook_signature
from payout_service import PayoutService
from settlement_service import SettlementService
from utils import setup_logger, utcnow

logger = logging.getLogger(__name__)

CHARGE_SUCCESS = 'charge.success'

# Most specific first
ERROR_STATUS = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (AccessDeniedError, status.HTTP_403_FORBIDDEN),
    (FraudRejectedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (GatewayUnverifiedError, status.HTTP_402_PAYMENT_REQUIRED),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (PayoutUnconfirmedError, status.HTTP_202_ACCEPTED),
    (PayoutError, status.HTTP_400_BAD_REQUEST),
]


# ==================== Pydantic Models ====================

class WebhookData(BaseModel):
    """The ``data`` object of a Paystack charge event."""
    reference: str
    status: str
    amount: int = 0

    @field_validator('reference')
    @classmethod
    def reference_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reference must not be empty")
        return v.strip()


class PaystackWebhook(BaseModel):
    """Paystack webhook envelope."""
    event: str
    data: WebhookData


# ==================== Wiring ====================

@dataclass
class Services:
    """Everything the HTTP layer and the scheduler need, built once at startup."""
    db: Any
    escrow: EscrowService
    settlement: SettlementService
    fraud_engine: Optional[FraudEngine] = None
    listings: Optional[ListingService] = None
    payouts: Optional[PayoutService] = None
    admin: Optional[AdminService] = None
    automation: Optional[EscrowAutomation] = None


async def build_services(config: Config) -> Services:
    """Connect to the ledger and assemble the services."""
    db = LedgerDatabase(
        config.database_url,
        min_size=config.db_pool_min_size,
        max_size=config.db_pool_max_size
    )
    await db.connect()
    await db.init_schema()

    user_notifier, admin_notifier = build_notifiers(config)
    gateway = PaystackGateway(config)

    escrow = EscrowService(db, config, user_notifier, admin_notifier)
    settlement = SettlementService(db, escrow, gateway, config)
    fraud_engine = FraudEngine(db, config=config)

    services = Services(
        db=db,
        escrow=escrow,
        settlement=settlement,
        fraud_engine=fraud_engine,
        listings=ListingService(db, fraud_engine, config),
        payouts=PayoutService(db, gateway, config, admin_notifier),
        admin=AdminService(db, escrow, config, user_notifier),
    )

    if config.enable_automation:
        services.automation = EscrowAutomation(db, escrow, settlement, config, admin_notifier)

    return services


def serialize_result(result: Union[Order, TopupIntent]) -> Dict[str, Any]:
    if isinstance(result, Order):
        return {
            "type": "order",
            "order_id": result.id,
            "order_status": result.status.value,
            "amount": str(result.amount),
        }
    return {
        "type": "topup",
        "topup_status": result.status.value,
        "amount": str(result.amount),
    }


# ==================== Application ====================

def create_app(services: Optional[Services] = None, config: Optional[Config] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built services (tests); built from config at startup when None
        config: Configuration instance (optional, will load if not provided)
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Paystack callback server starting up...")
        owns_services = app.state.services is None
        if owns_services:
            app.state.services = await build_services(config)

        automation = app.state.services.automation
        if automation:
            automation.start()

        try:
            yield
        finally:
            logger.info("Paystack callback server shutting down...")
            if automation:
                automation.stop()
            if owns_services:
                await app.state.services.db.disconnect()

    app = FastAPI(
        title="Campus Market Payment Server",
        description="Paystack callbacks and webhooks for the campus marketplace escrow",
        version=config.app_version,
        lifespan=lifespan
    )
    app.state.services = services
    app.state.config = config

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        code = next(
            (code for cls, code in ERROR_STATUS if isinstance(exc, cls)),
            status.HTTP_400_BAD_REQUEST
        )
        logger.warning(f"{request.url.path} rejected ({code}): {exc}")
        return JSONResponse(status_code=code, content={"status": "error", "detail": str(exc)})

    @app.exception_handler(DatabaseError)
    async def database_error_handler(request: Request, exc: DatabaseError):
        logger.error(f"Database error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "error", "detail": "Service temporarily unavailable"}
        )

    @app.get("/", tags=["Info"])
    async def root():
        return {
            "service": config.app_name,
            "version": config.app_version,
            "status": "running",
            "endpoints": {
                "callback": "/paystack/callback",
                "webhook": "/paystack/webhook",
                "health": "/health",
                "docs": "/docs"
            }
        }

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        health_status = {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "service": "campus-market-payments"
        }

        try:
            await request.app.state.services.db.ping()
            health_status["database"] = "connected"
        except Exception as e:
            health_status["database"] = f"error: {e}"
            health_status["status"] = "degraded"

        automation = request.app.state.services.automation
        health_status["automation"] = "running" if automation and automation.is_running else "off"

        code = status.HTTP_200_OK if health_status["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(content=health_status, status_code=code)

    @app.get("/paystack/callback", tags=["Paystack"])
    async def paystack_callback(request: Request, reference: str = Query(..., min_length=1)):
        """Verify the redirect's reference with Paystack and apply it."""
        logger.info(f"Paystack redirect received for {reference}")
        result = await request.app.state.services.settlement.verify_and_reconcile(reference)
        return {"status": "success", "reference": reference, **serialize_result(result)}

    @app.post("/paystack/webhook", tags=["Paystack"])
    async def paystack_webhook(request: Request):
        """
        Handle Paystack webhook events.

        Unknown references and failed charges are acknowledged with 200 so that
        Paystack stops retrying; only a bad signature or body is rejected.
        """
        raw_body = await request.body()
        signature = request.headers.get('x-paystack-signature')
        if not verify_webhook_signature(raw_body, signature, config.paystack_secret_key):
            logger.warning("Rejected webhook with invalid signature")
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"status": "error", "detail": "Invalid signature"}
            )

        try:
            event = PaystackWebhook.model_validate_json(raw_body)
        except PydanticValidationError as e:
            logger.error(f"Invalid webhook body: {e}")
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"status": "error", "detail": "Invalid webhook payload"}
            )

        if event.event != CHARGE_SUCCESS:
            logger.info(f"Ignoring webhook event {event.event}")
            return {"status": "ignored", "event": event.event}

        reference = event.data.reference
        try:
            result = await request.app.state.services.settlement.reconcile_callback(
                reference, event.data.status, from_kobo(event.data.amount)
            )
        except (NotFoundError, GatewayUnverifiedError) as e:
            logger.warning(f"Webhook for {reference} not applied: {e}")
            return {"status": "rejected", "reference": reference, "detail": str(e)}

        logger.info(f"Webhook for {reference} reconciled")
        return {"status": "success", "reference": reference, **serialize_result(result)}

    return app


if __name__ == "__main__":
    import uvicorn

    app_config = get_config()
    setup_logger(
        '',
        app_config.log_level,
        app_config.log_file,
        app_config.log_format,
        app_config.log_max_size,
        app_config.log_backup_count
    )

    uvicorn.run(
        create_app(config=app_config),
        host=app_config.api_host,
        port=app_config.api_port,
        log_level=app_config.log_level.lower()
    )
