# backend/healthcast/config.py
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # environment: "dev" for running locally, "test" for pytest
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str | None = None
    TEST_DATABASE_URL: str | None = None

    # --- Forecasting engine ---
    # Minimum formatted observations before the engine is invoked at all.
    FORECAST_MIN_POINTS: int = 7
    # Series at or above this length are tagged data_quality="high".
    HIGH_QUALITY_MIN_POINTS: int = 14
    FORECAST_CONFIDENCE_LEVEL: float = Field(0.95, description="Two-sided confidence level for bounds.")
    DEFAULT_HORIZON: int = 30
    # Relative change over the span below which the trend is "stable".
    TREND_DEADBAND: float = 0.10
    SEASONALITY_STRENGTH_THRESHOLD: float = 0.3
    # Forecasts above EXPLOSION_FACTOR x historical max are treated as a failed fit.
    EXPLOSION_FACTOR: float = 10.0

    # --- Backtesting ---
    BACKTEST_HOLDOUT_FRACTION: float = 0.2
    BACKTEST_MIN_HOLDOUT: int = 2

    # --- Cache / orchestration ---
    FORECAST_CACHE_TTL_HOURS: float = 24.0
    # Delay between consecutive engine invocations in one batch.
    FORECAST_PACING_SECONDS: float = 10.0

    # --- Scheduler ---
    SCHEDULER_ENABLED: bool = True
    # IANA timezone name used by APScheduler (e.g., "UTC", "Asia/Manila").
    SCHEDULER_TZ: str = "UTC"
    # Optional dedicated job store URL. If None, DATABASE_URL is used.
    SCHEDULER_DB_URL: str | None = None
    SCHEDULER_HOUR: int = 2
    SCHEDULER_MINUTE: int = 15

    @model_validator(mode="after")
    def _check_tunables(self):
        if not 0.0 < self.FORECAST_CONFIDENCE_LEVEL <= 1.0:
            raise ValueError("FORECAST_CONFIDENCE_LEVEL must be in (0, 1].")
        if not 0.0 < self.BACKTEST_HOLDOUT_FRACTION < 1.0:
            raise ValueError("BACKTEST_HOLDOUT_FRACTION must be in (0, 1).")
        if self.FORECAST_MIN_POINTS < 2:
            raise ValueError("FORECAST_MIN_POINTS must be at least 2.")
        if self.BACKTEST_MIN_HOLDOUT < 1:
            raise ValueError("BACKTEST_MIN_HOLDOUT must be at least 1.")
        if self.FORECAST_PACING_SECONDS < 0 or self.FORECAST_CACHE_TTL_HOURS < 0:
            raise ValueError("Pacing delay and cache TTL cannot be negative.")
        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
