import os
from typing import List, Literal, Optional, Tuple
from dotenv import load_dotenv
import logging
from dataclasses import dataclass, field


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Load environment variables from .env file located in the parent directory
# Environment variables explicitly set (e.g., by Docker Compose) will take precedence.
BASE_DIR = os.path.dirname(os.path.dirname(__file__))
ENV_PATH = os.path.join(BASE_DIR, '.env')
load_dotenv(ENV_PATH)


def parse_number_list(value: str, default: Tuple[float, ...]) -> Tuple[float, ...]:
    """
    Parses a comma-separated list of numbers.
    Example: "1,4,12" → (1.0, 4.0, 12.0)
    Accepts the list-like form "[1, 4, 12]" as well. Empty input yields the default.
    """
    if not value:
        return default
    value = value.strip()
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    parsed = tuple(float(i.strip()) for i in value.split(",") if i.strip())
    if not parsed:
        raise ValueError(f"Invalid number list: {value!r}")
    return parsed


def parse_list(value: str) -> List[str]:
    """Parses a comma-separated string into a list of trimmed, non-empty values."""
    if not value:
        return []
    return [i.strip() for i in value.split(",") if i.strip()]


class Settings:
    # --- General Environment Settings ---
    DOMAIN: str = os.getenv('DOMAIN', 'localhost')
    # ENVIRONMENT determines application behavior (e.g., logging level, debug modes).
    ENVIRONMENT: Literal["local", "staging",
                         "production"] = os.getenv('ENVIRONMENT', 'local')
    LOG_LEVEL: str = os.getenv('LOG_LEVEL', 'INFO')

    # --- PostgreSQL Database Configuration ---
    POSTGRES_USER: str = os.getenv('POSTGRES_USER', 'orders')
    POSTGRES_PASSWORD: str = os.getenv('POSTGRES_PASSWORD', 'orders_password')
    POSTGRES_SERVER: str = os.getenv('POSTGRES_SERVER', 'postgres')
    POSTGRES_PORT: int = int(os.getenv('POSTGRES_PORT', 5432))
    POSTGRES_DB: str = os.getenv('POSTGRES_DB', 'orders_db')

    # Full PostgreSQL Database URL. Takes precedence over the individual components.
    POSTGRES_DB_URL: str = os.getenv('POSTGRES_DB_URL', "")

    # --- Payment Gateway (Stripe) ---
    STRIPE_SECRET_KEY: str = os.getenv('STRIPE_SECRET_KEY', '')
    # Seconds allowed for a single Stripe lookup before it is treated as a transient failure.
    PAYMENT_GATEWAY_TIMEOUT_SECONDS: float = float(
        os.getenv('PAYMENT_GATEWAY_TIMEOUT_SECONDS', 20))

    # --- Fulfillment Dispatcher (ZMA order processing API) ---
    FULFILLMENT_API_URL: str = os.getenv('FULFILLMENT_API_URL', '')
    FULFILLMENT_API_KEY: str = os.getenv('FULFILLMENT_API_KEY', '')
    FULFILLMENT_TIMEOUT_SECONDS: float = float(
        os.getenv('FULFILLMENT_TIMEOUT_SECONDS', 60))
    # The only method new and retried orders may be placed with.
    FULFILLMENT_METHOD: str = os.getenv('FULFILLMENT_METHOD', 'zma')
    # Decommissioned methods that must be rewritten before a retry.
    LEGACY_FULFILLMENT_METHODS: List[str] = parse_list(
        os.getenv('LEGACY_FULFILLMENT_METHODS', 'zinc_api'))

    # --- Retry Scheduler ---
    ORDER_MAX_RETRIES: int = int(os.getenv('ORDER_MAX_RETRIES', 3))
    ORDER_RETRY_BACKOFF_HOURS: Tuple[float, ...] = parse_number_list(
        os.getenv('ORDER_RETRY_BACKOFF_HOURS', ''), (1.0, 4.0, 12.0))
    RETRY_SWEEP_BATCH_SIZE: int = int(os.getenv('RETRY_SWEEP_BATCH_SIZE', 10))
    # Pause between consecutive orders of one sweep, protects the rate-limited dispatcher.
    SWEEP_ITEM_DELAY_SECONDS: float = float(os.getenv('SWEEP_ITEM_DELAY_SECONDS', 2))
    PER_ORDER_TIMEOUT_SECONDS: float = float(os.getenv('PER_ORDER_TIMEOUT_SECONDS', 120))

    # --- Payment Verification ---
    PAYMENT_VERIFICATION_MAX_ATTEMPTS: int = int(
        os.getenv('PAYMENT_VERIFICATION_MAX_ATTEMPTS', 3))
    PAYMENT_VERIFICATION_DELAYS_SECONDS: Tuple[float, ...] = parse_number_list(
        os.getenv('PAYMENT_VERIFICATION_DELAYS_SECONDS', ''), (0.0, 5.0, 15.0))
    BULK_VERIFICATION_DELAY_SECONDS: float = float(
        os.getenv('BULK_VERIFICATION_DELAY_SECONDS', 0.1))
    # Amounts are compared in cents; a difference above this is a discrepancy.
    PAYMENT_AMOUNT_TOLERANCE_CENTS: int = int(
        os.getenv('PAYMENT_AMOUNT_TOLERANCE_CENTS', 1))

    # --- Reconciliation and recovery sweeps ---
    RECONCILIATION_LOOKBACK_HOURS: int = int(os.getenv('RECONCILIATION_LOOKBACK_HOURS', 24))
    RECONCILIATION_BATCH_SIZE: int = int(os.getenv('RECONCILIATION_BATCH_SIZE', 50))
    RECOVERY_BATCH_SIZE: int = int(os.getenv('RECOVERY_BATCH_SIZE', 20))
    UNDISPATCHED_LOOKBACK_HOURS: int = int(os.getenv('UNDISPATCHED_LOOKBACK_HOURS', 2))
    UNDISPATCHED_BATCH_SIZE: int = int(os.getenv('UNDISPATCHED_BATCH_SIZE', 10))

    # --- ARQ / Redis ---
    ARQ_REDIS_URL: str = os.getenv('ARQ_REDIS_URL', os.getenv('REDIS_URL', 'redis://redis:6379/0'))

    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        """
        Constructs the SQLAlchemy database URI.
        Prioritizes a full URL (POSTGRES_DB_URL) over individual components.
        """
        if self.POSTGRES_DB_URL:
            return self.POSTGRES_DB_URL

        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )


# Instantiate the settings object to be used throughout the application
settings = Settings()


@dataclass
class EnvironmentValidationResult:
    is_valid: bool
    error_message: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def validate_startup_environment(config: Settings = settings) -> EnvironmentValidationResult:
    """
    Checks the configuration needed by the pipeline.
    Missing integration credentials only produce warnings so that report-only
    jobs can still run; inconsistent retry settings are errors.
    """
    warnings = []
    if not config.STRIPE_SECRET_KEY:
        warnings.append("STRIPE_SECRET_KEY is not set; payment verification will fail")
    if not config.FULFILLMENT_API_URL:
        warnings.append("FULFILLMENT_API_URL is not set; order dispatch will fail")

    if config.ORDER_MAX_RETRIES < 1:
        return EnvironmentValidationResult(
            is_valid=False,
            error_message="ORDER_MAX_RETRIES must be at least 1",
            warnings=warnings,
        )
    if config.FULFILLMENT_METHOD in config.LEGACY_FULFILLMENT_METHODS:
        return EnvironmentValidationResult(
            is_valid=False,
            error_message=f"FULFILLMENT_METHOD '{config.FULFILLMENT_METHOD}' is listed as legacy",
            warnings=warnings,
        )

    return EnvironmentValidationResult(is_valid=True, warnings=warnings)
