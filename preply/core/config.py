import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

from preply.core.errors import ConfigurationError


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Razorpay
    RAZORPAY_KEY_ID: Optional[str] = None
    RAZORPAY_KEY_SECRET: Optional[str] = None
    NEXT_PUBLIC_RAZORPAY_KEY_ID: Optional[str] = None  # public, handed to the checkout widget
    RAZORPAY_API_BASE: str = "https://api.razorpay.com/v1"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # Pricing (minor units, e.g. paise)
    PAYMENT_CURRENCY: str = "INR"
    PRO_MONTHLY_AMOUNT: int = 79900
    PRO_YEARLY_AMOUNT: int = 729900
    RECEIPT_PREFIX: str = "preply"

    # CORS
    CORS_ALLOWED_ORIGINS: str = "http://localhost:3000"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


PAYMENT_REQUIRED_KEYS = [
    "RAZORPAY_KEY_ID",
    "RAZORPAY_KEY_SECRET",
    "DATABASE_URL",
]


def missing_payment_config(settings_obj=None) -> List[str]:
    """Names of payment settings that are absent (values are never returned)."""
    cfg = settings_obj or settings
    return [key for key in PAYMENT_REQUIRED_KEYS if not getattr(cfg, key, None)]


def ensure_payments_configured(settings_obj=None) -> None:
    """Fail fast when the payment service cannot operate.

    Raises ConfigurationError (503). The message is client-safe; the missing
    key names only go to the server log.
    """
    missing = missing_payment_config(settings_obj)
    if missing:
        logging.getLogger("preply").error(
            "payments.not_configured",
            extra={"missing": ",".join(missing)},
        )
        raise ConfigurationError("Payment service not configured. Please contact support.")


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("preply")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = PAYMENT_REQUIRED_KEYS + ["NEXT_PUBLIC_RAZORPAY_KEY_ID"]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
