from pydantic_settings import BaseSettings
from pydantic import Field, computed_field


class Settings(BaseSettings):
    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./rental.db", env="DATABASE_URL")

    # Redis (shared sweep guard, optional)
    redis_url: str = Field(default="redis://localhost:6379/0", env="REDIS_URL")
    use_redis_sweep_guard: bool = Field(default=False, env="USE_REDIS_SWEEP_GUARD")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_file: str = Field(default="logs/worker.log", env="LOG_FILE")

    # Rental window rules
    min_rental_duration_hours: float = Field(default=1, env="MIN_RENTAL_DURATION_HOURS")
    pickup_past_tolerance_minutes: float = Field(default=1, env="PICKUP_PAST_TOLERANCE_MINUTES")
    default_grace_period_hours: float = Field(default=1, env="DEFAULT_GRACE_PERIOD_HOURS")

    # Payment timeouts
    payment_timeout_minutes: int = Field(default=15, env="PAYMENT_TIMEOUT_MINUTES")
    request_timeout_minutes: int = Field(default=15, env="REQUEST_TIMEOUT_MINUTES")
    sweep_interval_seconds: int = Field(default=60, env="SWEEP_INTERVAL_SECONDS")

    # Pricing policy
    late_rate_multiplier: float = Field(default=1.5, env="LATE_RATE_MULTIPLIER")
    max_bargain_attempts: int = Field(default=3, env="MAX_BARGAIN_ATTEMPTS")

    @computed_field
    @property
    def payment_timeout_seconds(self) -> int:
        """Payment window for unpaid bookings, in seconds"""
        return max(self.payment_timeout_minutes, 0) * 60

    class Config:
        # .env.local wins for local development, then .env on the server
        env_file = [".env.local", ".env"]
        env_file_encoding = "utf-8"
        extra = "ignore"


# Global settings instance
settings = Settings()
