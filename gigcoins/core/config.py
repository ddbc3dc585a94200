import logging

from pydantic_settings import BaseSettings
from pydantic import BaseModel, ConfigDict
from typing import Optional


class EconomyConfig(BaseModel):
    """Coin economy knobs, built once at startup and handed to every service."""
    model_config = ConfigDict(frozen=True)

    welcome_grant: int = 20
    reset_interval_days: int = 30
    billing_period_days: int = 30
    max_balance_retries: int = 5
    checkout_hold_minutes: int = 60
    currency: str = "usd"


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_CURRENCY: str = "usd"

    # Coin economy
    COIN_WELCOME_GRANT: int = 20
    COIN_RESET_INTERVAL_DAYS: int = 30
    BILLING_PERIOD_DAYS: int = 30
    BALANCE_MAX_RETRIES: int = 5
    CHECKOUT_HOLD_MINUTES: int = 60

    # Admin access
    ADMIN_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def economy(self) -> EconomyConfig:
        return EconomyConfig(
            welcome_grant=self.COIN_WELCOME_GRANT,
            reset_interval_days=self.COIN_RESET_INTERVAL_DAYS,
            billing_period_days=self.BILLING_PERIOD_DAYS,
            max_balance_retries=self.BALANCE_MAX_RETRIES,
            checkout_hold_minutes=self.CHECKOUT_HOLD_MINUTES,
            currency=self.STRIPE_CURRENCY,
        )


def load_settings(**overrides) -> Settings:
    """Read settings from the environment (and .env). Call once at startup."""
    return Settings(**overrides)


def validate_config(settings_obj: Settings, strict: Optional[bool] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    log = logger or logging.getLogger("gigcoins")
    strict_mode = strict if strict is not None else getattr(settings_obj, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
    ]

    missing = [key for key in required_keys if not getattr(settings_obj, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    economy = settings_obj.economy()
    if economy.welcome_grant < 0 or economy.reset_interval_days <= 0 or economy.max_balance_retries <= 0:
        message = "Invalid coin economy configuration"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
