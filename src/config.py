"""Configuration management from environment variables."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# Project root
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
STATE_DB = Path(os.getenv("STATE_DB", str(DATA_DIR / "orders.db")))

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)

RESPONSE_TYPES = ("any", "gdrive", "mydrivelink", "asia")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration."""

    # Vendor (upstream aggregator)
    VENDOR_BASE_URL: str = os.getenv("VENDOR_BASE_URL", "https://nehtw.com/api")
    VENDOR_API_KEY: str | None = os.getenv("VENDOR_API_KEY")
    VENDOR_TIMEOUT: float = float(os.getenv("VENDOR_TIMEOUT", "20"))
    VENDOR_MAX_RETRIES: int = int(os.getenv("VENDOR_MAX_RETRIES", "3"))
    VENDOR_RETRY_BACKOFF: float = float(os.getenv("VENDOR_RETRY_BACKOFF", "1.0"))
    VENDOR_RATE_PER_SECOND: float = float(os.getenv("VENDOR_RATE_PER_SECOND", "5.0"))

    # Polling
    POLL_INTERVAL: float = float(os.getenv("POLL_INTERVAL", "2.0"))
    POLL_MAX_ATTEMPTS: int = int(os.getenv("POLL_MAX_ATTEMPTS", "60"))

    # Pricing cache (seconds)
    SITES_CACHE_TTL: int = int(os.getenv("SITES_CACHE_TTL", "3600"))
    COST_CACHE_TTL: int = int(os.getenv("COST_CACHE_TTL", "1800"))

    # Orders
    MAX_BATCH_SIZE: int = int(os.getenv("MAX_BATCH_SIZE", "5"))
    DEFAULT_RESPONSE_TYPE: str = os.getenv("DEFAULT_RESPONSE_TYPE", "any")
    REFUND_ON_FAILURE: bool = _env_bool("REFUND_ON_FAILURE")

    # Store
    DB_LOCK_TIMEOUT: float = float(os.getenv("DB_LOCK_TIMEOUT", "120"))

    # Worker
    CONCURRENCY: int = int(os.getenv("CONCURRENCY", "5"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # API Security
    API_KEY: str | None = os.getenv("API_KEY")

    @classmethod
    def validate(cls, require_vendor: bool = True) -> None:
        """Validate required configuration."""
        errors = []
        if require_vendor and not cls.VENDOR_API_KEY:
            errors.append("VENDOR_API_KEY is required")
        if cls.DEFAULT_RESPONSE_TYPE not in RESPONSE_TYPES:
            errors.append(f"DEFAULT_RESPONSE_TYPE must be one of {', '.join(RESPONSE_TYPES)}")
        if cls.MAX_BATCH_SIZE < 1:
            errors.append("MAX_BATCH_SIZE must be >= 1")
        if cls.POLL_MAX_ATTEMPTS < 1:
            errors.append("POLL_MAX_ATTEMPTS must be >= 1")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


config = Config()
