import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

LOAN_PERIOD_DAYS = 30
SUBSCRIPTION_MONTHS = 3


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class CirculationConfig:
    """Values the circulation core is constructed with.

    Business components receive this object instead of reading the environment.
    """
    penalty_per_day: float = 10.0
    loan_period_days: int = LOAN_PERIOD_DAYS
    subscription_months: int = SUBSCRIPTION_MONTHS
    lock_timeout_seconds: float = 5.0
    sweep_interval_seconds: float = 86400.0

    def __post_init__(self):
        if self.penalty_per_day < 0:
            raise ValueError("penalty_per_day must not be negative")
        if self.loan_period_days <= 0 or self.subscription_months <= 0:
            raise ValueError("loan and subscription periods must be positive")
        if self.lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be positive")


@dataclass
class Settings:
    # API
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database
    data_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")

    # Circulation
    penalty_per_day: float = float(os.getenv("PENALTY_PER_DAY", "10"))
    lock_timeout_seconds: float = float(os.getenv("LOCK_TIMEOUT_SECONDS", "5"))
    sweep_interval_seconds: float = float(os.getenv("SWEEP_INTERVAL_SECONDS", "86400"))
    enable_sweep_scheduler: bool = _env_bool("ENABLE_SWEEP_SCHEDULER", "True")

    # Payment gateway (Razorpay)
    razorpay_key_id: str = os.getenv("RAZORPAY_KEY_ID", "")
    razorpay_key_secret: str = os.getenv("RAZORPAY_KEY_SECRET", "")
    razorpay_base_url: str = os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1")
    gateway_timeout: float = float(os.getenv("GATEWAY_TIMEOUT", "10"))
    currency: str = os.getenv("CURRENCY", "INR")

    # Application
    app_name: str = os.getenv("APP_NAME", "Library Circulation")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG")
    log_level: Optional[str] = os.getenv("LOG_LEVEL")

    def circulation_config(self) -> CirculationConfig:
        return CirculationConfig(
            penalty_per_day=self.penalty_per_day,
            lock_timeout_seconds=self.lock_timeout_seconds,
            sweep_interval_seconds=self.sweep_interval_seconds,
        )


settings = Settings()
