from enum import StrEnum
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict

class StrategyType(StrEnum):
    COUNTER = "counter"
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"
    LEAKY_BUCKET = "leaky_bucket"

class Settings(BaseSettings):
    app_name: str = "Gatekeeper"
    redis_url: str = "redis://localhost:6379/0"

    # Admission
    rate_limit_enabled: bool = True
    rate_limit_fail_open: bool = True
    rate_limit_key_prefix: str = "rate_limit"
    rate_limit_strategy: StrategyType = StrategyType.SLIDING_WINDOW
    rate_limit_default: int = 100
    rate_limit_window: int = 60
    rate_limit_window_slices: int = 60
    rate_limit_evaluation_timeout: float = 0.5
    rate_limit_enable_log: bool = True
    rate_limit_enable_monitor: bool = True

    # Statistics
    stats_flush_interval: float = 10.0
    stats_queue_size: int = 10_000
    stats_hourly_retention_days: int = 7
    stats_daily_retention_days: int = 30
    stats_high_frequency_threshold: int = 100

    hotspot_message: str = "Hot data accessed too frequently, please try again later"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

@lru_cache
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
