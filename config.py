import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_hours: int,
        scheduler_enabled: bool,
        autopay_hour: int,
        reminder_days: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.scheduler_enabled = scheduler_enabled
        self.autopay_hour = autopay_hour
        self.reminder_days = reminder_days
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BILLS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "bills.db"
    database_url = os.getenv("BILLS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BILLS_TIMEZONE", "America/New_York")
    session_secret = os.getenv(
        "BILLS_SESSION_SECRET",
        "5d1c0f7e9a04b2c6e3f8a1d7b9c2e4f60a8b3d5c7e9f1a2b4c6d8e0f2a4b6c8d",
    )
    session_max_age_hours = int(os.getenv("BILLS_SESSION_MAX_AGE_HOURS", "720"))
    scheduler_enabled = _env_flag("BILLS_SCHEDULER_ENABLED", "1")
    autopay_hour = int(os.getenv("BILLS_AUTOPAY_HOUR", "6"))
    reminder_days = int(os.getenv("BILLS_REMINDER_DAYS", "3"))
    log_level = os.getenv("BILLS_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        scheduler_enabled=scheduler_enabled,
        autopay_hour=autopay_hour,
        reminder_days=reminder_days,
        log_level=log_level,
    )
