import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv(override=False)


class ConfigurationError(RuntimeError):
    pass


class Settings:
    def __init__(
        self,
        database_url: Optional[str],
        token_secret: Optional[str],
        port: int,
        cors_origin: str,
        environment: str,
        timezone: str,
        upload_dir: Path,
        token_max_age_hours: int,
        scheduler_enabled: bool,
        recurring_hour: int,
    ) -> None:
        self.database_url = database_url
        self.token_secret = token_secret
        self.port = port
        self.cors_origin = cors_origin
        self.environment = environment
        self.timezone = timezone
        self.upload_dir = upload_dir
        self.token_max_age_hours = token_max_age_hours
        self.scheduler_enabled = scheduler_enabled
        self.recurring_hour = recurring_hour

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def token_max_age_secs(self) -> int:
        return self.token_max_age_hours * 3600


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    upload_dir = Path(os.getenv("FINTRACK_UPLOAD_DIR", "./uploads")).resolve()
    return Settings(
        database_url=_get_optional("FINTRACK_DATABASE_URL"),
        token_secret=_get_optional("FINTRACK_TOKEN_SECRET"),
        port=int(os.getenv("FINTRACK_PORT", "5000")),
        cors_origin=os.getenv("FINTRACK_CORS_ORIGIN", "*"),
        environment=os.getenv("FINTRACK_ENV", "development").strip().lower(),
        timezone=os.getenv("FINTRACK_TIMEZONE", "UTC"),
        upload_dir=upload_dir,
        token_max_age_hours=int(os.getenv("FINTRACK_TOKEN_MAX_AGE_HOURS", "24")),
        scheduler_enabled=_get_bool("FINTRACK_SCHEDULER_ENABLED", True),
        recurring_hour=int(os.getenv("FINTRACK_RECURRING_HOUR", "2")),
    )


def validate_settings(settings: Optional[Settings] = None) -> Settings:
    settings = settings or get_settings()
    missing = []
    if not settings.token_secret:
        missing.append("FINTRACK_TOKEN_SECRET")
    if not settings.database_url:
        missing.append("FINTRACK_DATABASE_URL")
    if missing:
        raise ConfigurationError(
            f"Missing required configuration: {', '.join(missing)}"
        )
    if not 0 <= settings.recurring_hour <= 23:
        raise ConfigurationError("FINTRACK_RECURRING_HOUR must be between 0 and 23")
    return settings
