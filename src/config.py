"""Engine configuration using Pydantic settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Logging
    log_level: str = "INFO"

    # Persistence
    storage_backend: str = "memory"  # "memory" or "redis"
    redis_url: str = "redis://localhost:6379/0"
    storage_key_prefix: str = "notify:"
    storage_timeout_seconds: float = 5.0  # Per-command Redis deadline
    save_debounce_seconds: float = 5.0  # Batch saves after this much inactivity

    # Rate limiting defaults
    rate_limit_max_per_hour: int = 5
    rate_limit_max_per_day: int = 20
    rate_limit_min_interval_ms: int = 300000  # 5 minutes

    # Delivery queue
    queue_poll_interval_seconds: float = 60.0
    queue_max_size: int = 50
    queue_expiry_hours: int = 24
    queue_force_delivery_attempts: int = 5

    # Engagement event log
    engagement_max_events: int = 1000
    profile_window_days: int = 30

    # Location pattern detection
    location_max_visits: int = 500
    location_min_dwell_ms: int = 300000  # 5 minutes at rest
    location_recalc_every: int = 10
    location_min_visits_for_pattern: int = 5
    location_cluster_radius_m: float = 100.0

    # Device telemetry fallbacks when no real battery/power data is available
    default_battery_level: float = 0.8
    default_low_power_mode: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
