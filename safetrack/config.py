"""SafeTrack configuration."""

from __future__ import annotations

from pydantic import BaseModel
from pydantic_settings import BaseSettings


class AuthorizedPhone(BaseModel):
    """A phone recipient that opted in to the phone relay."""

    local_digits: str  # digits as typed in the contact list, e.g. 51984672843
    international_number: str  # +55 51 98467-2843
    api_key: str


class Settings(BaseSettings):
    """Environment-driven settings for the tracking core."""

    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "safetrack"
    tracker_base_url: str = "http://localhost:8080"
    app_name: str = "SafeTrack"

    # Location throttle / anomaly detection
    throttle_interval_seconds: float = 10.0
    throttle_distance_meters: float = 20.0
    anomaly_speed_mps: float = 50.0  # ~180 km/h
    escalate_anomaly_to_panic: bool = False

    # Wellbeing prompt cycle
    check_visible_seconds: float = 15.0
    check_hidden_seconds: float = 15.0

    # Geolocation
    initial_fix_timeout_seconds: float = 10.0
    watch_fix_timeout_seconds: float = 20.0

    # Observer side
    heartbeat_stale_seconds: float = 60.0

    # Best-effort relay
    relay_base_url: str = "https://api.callmebot.com"
    relay_timeout_seconds: float = 10.0
    authorized_phones: list[AuthorizedPhone] = []

    model_config = {"env_prefix": "SAFETRACK_", "env_file": ".env", "extra": "ignore"}


settings = Settings()
