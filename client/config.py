from pydantic import Field, AnyUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pathlib import Path

from shared.models import DeviceRole, UNKNOWN_DEVICE_NAME


class ClientSettings(BaseSettings):
    server_url: AnyUrl = Field("http://localhost:3001", validation_alias="TIMER_SERVER_URL")
    # how this device introduces itself in the registry
    device_name: str = Field(UNKNOWN_DEVICE_NAME, validation_alias="TIMER_DEVICE_NAME")
    device_role: Optional[DeviceRole] = Field(None, validation_alias="TIMER_DEVICE_ROLE")
    # consecutive failed connection attempts before giving up
    reconnect_attempts: int = Field(10, ge=1, validation_alias="TIMER_RECONNECT_ATTEMPTS")
    # first retry delay and backoff cap, in seconds
    reconnect_delay: float = Field(1.0, gt=0, validation_alias="TIMER_RECONNECT_DELAY")
    reconnect_delay_max: float = Field(5.0, gt=0, validation_alias="TIMER_RECONNECT_DELAY_MAX")
    # refresh cadence of the derived time left while running, in seconds
    sample_interval: float = Field(0.1, gt=0, validation_alias="TIMER_SAMPLE_INTERVAL")

    model_config = SettingsConfigDict(env_file=str(Path(__file__).parent / ".env"))


# Do not instantiate settings at import time; the client will validate and
# create a `ClientSettings` instance at startup. Tests pass settings to
# `SyncClient` directly.
