from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables (``VTRY_*``)."""

    # Database
    database_url: str = "sqlite:///./vtry_jobs.db"

    # Identity tokens (required in production: set via VTRY_TOKEN_SECRET)
    token_secret: str = "dev-secret"

    # Frontend / extension origin allowed by CORS
    frontend_url: str = "http://localhost:3000"

    # Object store base path and the public prefix results are served under
    storage_path: str = "./storage"
    public_base_url: str = ""

    # External AI provider ("kie" for the real HTTP API, "mock" for development)
    provider_mode: str = "mock"
    provider_base_url: str = "https://api.kie.ai/api/v1"
    provider_api_key: str = ""
    provider_timeout_seconds: float = 120.0
    provider_poll_interval_seconds: float = 5.0

    # Worker pool
    worker_count: int = 4
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 60.0
    max_processing_seconds: float = 600.0
    sweep_interval_seconds: float = 30.0
    queue_poll_interval_seconds: float = 1.0

    # Split deployment: how often the API process tails worker events, and how
    # long relayed events are kept
    event_relay_interval_seconds: float = 0.5
    event_retention_seconds: float = 3600.0

    # Daily quotas per subscription tier; unknown tiers fall back to FREE
    quota_limits: dict[str, dict[str, int]] = {
        "FREE": {"IMAGE": 10, "VIDEO": 2},
        "PRO": {"IMAGE": 100, "VIDEO": 20},
        "ENTERPRISE": {"IMAGE": 1000, "VIDEO": 200},
    }

    # Requests per hour on POST generate, per tier
    rate_limits_per_hour: dict[str, int] = {
        "FREE": 100,
        "PRO": 1000,
        "ENTERPRISE": 10000,
    }

    # Admission limits
    max_payload_bytes: int = 4 * 1024 * 1024

    # Per-connection buffer for live events; overflow drops events
    ws_buffer_size: int = 100

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="VTRY_", extra="ignore")

    @property
    def queue_visibility_seconds(self) -> float:
        """How long a received queue message stays invisible to other workers."""
        return self.provider_timeout_seconds + 30.0


settings = Settings()
