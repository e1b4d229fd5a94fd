"""Application configuration via environment variables.

Uses pydantic-settings to load config from env vars with RELAYCORE_ prefix.
Only the CLI and RealtimeService.from_settings() read this object; the
library classes take explicit arguments so tests can build them freely.

Learn: The reconnect defaults mirror the dashboard's behaviour — five
attempts, doubling from one second, capped at thirty.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All runtime configuration. Set via RELAYCORE_* env vars."""

    # Hub endpoint
    hub_url: str = "ws://localhost:55244/hubs/template-analytics"
    access_token: str = ""
    open_timeout_seconds: float = 10.0

    # Reconnect policy
    reconnect_max_attempts: int = 5
    reconnect_base_delay_ms: int = 1000
    reconnect_cap_delay_ms: int = 30000
    reconnect_jitter_max_ms: int = 1000

    # Correlated calls
    invoke_timeout_seconds: float = 30.0

    # Auth
    token_leeway_seconds: int = 0  # treat tokens as expired this early

    # Processing engine
    processing_workers: int = 0  # 0 → os.cpu_count()

    # Runtime
    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "console"  # "console" or "json"

    model_config = {"env_prefix": "RELAYCORE_"}

    @model_validator(mode="after")
    def validate_reconnect_policy(self):
        """Reject reconnect settings that cannot produce a sane schedule."""
        if self.reconnect_max_attempts < 0:
            raise ValueError("RELAYCORE_RECONNECT_MAX_ATTEMPTS must be >= 0")
        if self.reconnect_base_delay_ms < 0 or self.reconnect_jitter_max_ms < 0:
            raise ValueError("Reconnect delays must not be negative")
        if self.reconnect_cap_delay_ms < self.reconnect_base_delay_ms:
            raise ValueError(
                "RELAYCORE_RECONNECT_CAP_DELAY_MS must be >= "
                "RELAYCORE_RECONNECT_BASE_DELAY_MS"
            )
        if self.log_format not in ("console", "json"):
            raise ValueError("RELAYCORE_LOG_FORMAT must be 'console' or 'json'")
        return self


# Process-wide defaults for the CLI; library code receives values explicitly.
settings = Settings()
