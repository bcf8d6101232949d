"""Application configuration via environment variables."""
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """App settings loaded from .env or environment."""

    DATABASE_URL: str = "sqlite:///./outreach_events.db"
    LOG_LEVEL: str = "INFO"

    # Orphaned event queue / scheduler
    SCHEDULER_ENABLED: bool = True
    ORPHAN_TICK_INTERVAL_SECONDS: float = 10.0
    ORPHAN_BATCH_SIZE: int = 50
    ORPHAN_MAX_QUEUE_SIZE: int = 10000
    ORPHAN_MAX_ATTEMPTS: int = 6
    ORPHAN_RETRY_DELAYS_SECONDS: list[float] = [5, 15, 60, 300, 900, 3600]
    ORPHAN_JITTER_SECONDS: float = 1.0
    ORPHAN_STALE_AFTER_SECONDS: float = 3600
    ORPHAN_DRAIN_ON_SHUTDOWN_SECONDS: float = 30.0

    # Dead letter store
    DEAD_LETTER_RETENTION_DAYS: int = 7
    DEAD_LETTER_MAX_PAGE_SIZE: int = 1000
    DEAD_LETTER_REPLAY_LEASE_SECONDS: int = 900

    class Config:
        env_file = ".env"

    @field_validator("ORPHAN_BATCH_SIZE", "ORPHAN_MAX_QUEUE_SIZE", "ORPHAN_MAX_ATTEMPTS")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @model_validator(mode="after")
    def _check_retry_shape(self) -> "Settings":
        check_retry_shape(
            self.ORPHAN_RETRY_DELAYS_SECONDS,
            self.ORPHAN_MAX_ATTEMPTS,
            self.ORPHAN_JITTER_SECONDS,
        )
        return self


def check_retry_shape(delays: list[float], max_attempts: int, jitter: float) -> None:
    """Reject retry schedules whose jittered delays could ever shrink.

    Each base delay must exceed the previous one by more than the jitter
    bound, and there must be a base delay for every attempt.
    """
    if jitter < 0:
        raise ValueError("jitter must not be negative")
    if not delays:
        raise ValueError("at least one retry delay is required")
    if len(delays) < max_attempts:
        raise ValueError(
            f"{len(delays)} retry delays configured for {max_attempts} attempts"
        )
    if delays[0] <= 0:
        raise ValueError("retry delays must be positive")
    for previous, current in zip(delays, delays[1:]):
        if current - previous <= jitter:
            raise ValueError(
                f"retry delay {current} must exceed {previous} by more than the jitter ({jitter})"
            )


settings = Settings()
