import logging
from pathlib import Path
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.models import DEFAULT_MAX_DURATION_MS

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    app_name: str = Field("timer-sync", validation_alias="APP_NAME")
    host: str = Field("0.0.0.0", validation_alias="HOST")
    port: int = Field(3001, validation_alias="PORT")

    # ceiling applied to every configured duration, in milliseconds
    max_duration_ms: int = Field(DEFAULT_MAX_DURATION_MS, gt=0, validation_alias="MAX_DURATION_MS")

    # pre-roll sequence: first value shown, cadence between values, and how
    # long the final zero stays up before the countdown is cleared
    countdown_start: int = Field(3, ge=1, validation_alias="COUNTDOWN_START")
    countdown_tick_seconds: float = Field(1.0, gt=0, validation_alias="COUNTDOWN_TICK_SECONDS")
    countdown_finish_delay_seconds: float = Field(0.5, ge=0, validation_alias="COUNTDOWN_FINISH_DELAY_SECONDS")

    # a peer that cannot take a frame within this many seconds is dropped
    send_timeout_seconds: float = Field(2.0, gt=0, validation_alias="SEND_TIMEOUT_SECONDS")

    # comma-separated list of allowed origins; "*" allows any
    cors_origins: str = Field("*", validation_alias="CORS_ORIGINS")

    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")

    model_config = SettingsConfigDict(env_file=str(Path(__file__).parent / ".env"))

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Lazy settings accessor to avoid import-time instantiation
_settings_instance = None

def get_settings():
    """Return a cached Settings instance.

    Every field has a default, so a missing `.env` is fine. A malformed
    environment (e.g. a non-numeric PORT) falls back to the defaults so the
    service can still come up; the validation error is logged.
    """
    global _settings_instance
    if _settings_instance is None:
        try:
            _settings_instance = Settings()
        except Exception:
            logger.warning("Invalid server settings in environment; using defaults", exc_info=True)
            _settings_instance = Settings.model_construct(
                app_name="timer-sync",
                host="0.0.0.0",
                port=3001,
                max_duration_ms=DEFAULT_MAX_DURATION_MS,
                countdown_start=3,
                countdown_tick_seconds=1.0,
                countdown_finish_delay_seconds=0.5,
                send_timeout_seconds=2.0,
                cors_origins="*",
                log_level="INFO",
            )
    return _settings_instance
