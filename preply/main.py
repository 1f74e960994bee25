import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

# Load env from the project .env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from preply.core.config import Settings, settings, validate_config
from preply.core.database import create_all_tables, create_store_engine
from preply.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from preply.core.logging import configure_logging
from preply.core.middleware.request_id import RequestIdMiddleware
from preply.core.validation import validate_env
from preply.api import billing, health
from preply.features.billing.confirmation import PaymentConfirmationService
from preply.features.billing.orders import OrderInitiationService
from preply.features.billing.provider import PaymentGateway
from preply.features.billing.razorpay_provider import RazorpayGateway
from preply.features.billing.store import SubscriptionStore
from preply.features.plans.catalog import build_catalog
from preply.models.billing import utc_now

logger = logging.getLogger("preply")


def wire_services(
    app: FastAPI,
    cfg: Settings,
    store: Optional[SubscriptionStore],
    gateway: Optional[PaymentGateway],
    clock: Callable[[], datetime],
) -> None:
    """Attach the process-scoped store and both services to app.state."""
    catalog = app.state.catalog
    app.state.store = store
    app.state.gateway = gateway
    if store is None or gateway is None:
        app.state.order_service = None
        app.state.confirmation_service = None
        logger.warning("payments.disabled", extra={"store": store is not None, "gateway": gateway is not None})
        return

    app.state.order_service = OrderInitiationService(
        catalog=catalog,
        store=store,
        gateway=gateway,
        public_key_id=cfg.NEXT_PUBLIC_RAZORPAY_KEY_ID or gateway.key_id,
        receipt_prefix=cfg.RECEIPT_PREFIX,
        clock=clock,
    )
    app.state.confirmation_service = PaymentConfirmationService(
        catalog=catalog,
        store=store,
        gateway=gateway,
        clock=clock,
    )


def create_app(
    settings_obj: Optional[Settings] = None,
    store: Optional[SubscriptionStore] = None,
    gateway: Optional[PaymentGateway] = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """
    Build the application.

    The store and gateway are created once at startup from settings unless
    they are passed in (tests). Resources created here are closed on shutdown.
    """
    cfg = settings_obj or settings
    configure_logging(cfg.ENV)
    validate_env(settings_obj=cfg)
    validate_config(strict=cfg.CONFIG_STRICT, settings_obj=cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Preply payments backend...")
        owned = []

        app_store = store
        if app_store is None and cfg.DATABASE_URL:
            app_store = SubscriptionStore(create_store_engine(cfg.DATABASE_URL))
            create_all_tables(app_store.engine)
            owned.append(app_store)

        app_gateway = gateway
        if app_gateway is None and cfg.RAZORPAY_KEY_ID and cfg.RAZORPAY_KEY_SECRET:
            app_gateway = RazorpayGateway.from_settings(cfg)
            owned.append(app_gateway)

        wire_services(app, cfg, app_store, app_gateway, clock)
        try:
            yield
        finally:
            for resource in owned:
                resource.close()
            logger.info("Stopping Preply payments backend...")

    app = FastAPI(title="Preply - Payments", lifespan=lifespan)
    app.state.settings = cfg
    app.state.catalog = build_catalog(cfg)
    app.state.clock = clock
    app.state.store = None
    app.state.order_service = None
    app.state.confirmation_service = None

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cfg.CORS_ALLOWED_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(billing.router, prefix="/api", tags=["payments"])
    app.include_router(health.root_router, tags=["health"])
    return app


app = create_app()
