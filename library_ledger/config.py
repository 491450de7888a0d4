import os
from dataclasses import dataclass
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    # Seconds SQLite waits on a held write lock before reporting "database is locked"
    db_busy_timeout: float = float(os.getenv("DB_BUSY_TIMEOUT", "5.0"))

    # Ledger policy
    ledger_max_attempts: int = int(os.getenv("LEDGER_MAX_ATTEMPTS", "3"))
    ledger_retry_backoff: float = float(os.getenv("LEDGER_RETRY_BACKOFF", "1.0"))
    late_fee_per_day: Decimal = Decimal(os.getenv("LATE_FEE_PER_DAY", "1.00"))
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    default_renewal_days: int = int(os.getenv("DEFAULT_RENEWAL_DAYS", "7"))

    # Security settings
    secret_key: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", secret_key)
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "10080"))  # 7 days

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Checkout Ledger")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _flag("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))


settings = Settings()
