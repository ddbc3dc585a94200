import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from gigcoins.api import admin_coins, billing, coins
from gigcoins.core.config import Settings, load_settings, validate_config
from gigcoins.core.database import check_connection, init_engine
from gigcoins.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from gigcoins.core.logging import configure_logging
from gigcoins.core.middleware.request_id import RequestIdMiddleware
from gigcoins.features.billing.service import BillingService
from gigcoins.features.notifications.service import LoggingNotifier, Notifier
from gigcoins.features.payments.gateway import PaymentGateway
from gigcoins.features.payments.stripe_gateway import StripeGateway


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("gigcoins")
    logger.info("Starting gigcoins billing engine...")
    if not check_connection():
        logger.warning("Database not reachable at startup")
    try:
        yield
    finally:
        logger.info("Stopping gigcoins billing engine...")


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[Notifier] = None,
    init_db: bool = True,
) -> FastAPI:
    """
    Build the application.

    The economy configuration is read once here and handed to every service
    through app.state; nothing below reads the environment again.
    """
    settings = settings or load_settings()
    configure_logging(settings.ENV, settings.LOG_LEVEL)
    validate_config(settings)

    if init_db:
        init_engine(settings.TEST_DATABASE_URL or settings.DATABASE_URL)

    economy = settings.economy()
    if gateway is None:
        gateway = StripeGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET, currency=economy.currency)

    app = FastAPI(title="GigCoins - Coin Economy & Billing", lifespan=lifespan)
    app.state.settings = settings
    app.state.economy = economy
    app.state.billing = BillingService(gateway, economy, notifier or LoggingNotifier())

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(coins.router, prefix="/api")
    app.include_router(billing.router, prefix="/api")
    app.include_router(admin_coins.router, prefix="/api")

    @app.get("/healthz", tags=["health"])
    def healthz():
        return {"status": "ok", "database": check_connection()}

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
