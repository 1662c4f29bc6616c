"""StaySync configuration."""

import logging
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Client settings, overridable through STAYSYNC_* environment variables."""

    # Store / coordinator endpoint
    base_url: str = "http://localhost:8080"
    api_token: Optional[str] = None
    http_timeout: float = 30.0
    feed_poll_interval_seconds: float = 2.0

    # Reservation holds
    hold_ttl_minutes: int = 10
    hold_tick_seconds: float = 1.0

    # Edit locks
    lock_durations: List[int] = [5, 15, 30, 60]
    default_lock_minutes: int = 15
    lock_renew_lead_minutes: int = 2
    autosave_interval_seconds: float = 120.0

    # Optimistic updates and offline queue
    max_retries: int = 3
    submit_batch_size: int = 5
    offline_retry_delay_seconds: float = 30.0
    queue_path: str = ".staysync/offline-queue.json"

    # Change reconciler
    reconciler_limit: int = 50
    presence_stale_seconds: float = 300.0

    log_level: str = "INFO"

    class Config:
        env_prefix = "STAYSYNC_"
        env_file = ".env"
        case_sensitive = False


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Install a basic handler for the staysync loggers."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
