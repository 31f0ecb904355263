"""Runtime settings for the sync pipeline.

Loaded from environment variables (a .env file is read by the entry points
via python-dotenv). Plain attributes, no validation framework.
"""

import os

from .api.exceptions import ConfigurationError

# One page can spend a page timeout each on fetch, import and progress write
# before the heartbeat moves, plus the inter-page delay
STALE_TO_PAGE_TIMEOUT_RATIO = 5


class SyncSettings:
    """Configuration loaded from environment variables."""

    def __init__(self):
        self.database_url = os.getenv("DATABASE_URL", "")
        self.toast_base_url = os.getenv("TOAST_API_BASE_URL", "https://ws-api.toasttab.com")

        # Fetch
        self.page_size = int(os.getenv("SYNC_PAGE_SIZE", "100"))
        self.page_delay_seconds = float(os.getenv("SYNC_PAGE_DELAY_SECONDS", "0.2"))
        self.lookback_days = int(os.getenv("SYNC_LOOKBACK_DAYS", "30"))
        self.chunk_days = int(os.getenv("SYNC_CHUNK_DAYS", "30"))

        # Job lifecycle
        self.max_attempts = int(os.getenv("SYNC_MAX_ATTEMPTS", "3"))
        self.retry_delay_seconds = float(os.getenv("SYNC_RETRY_DELAY_SECONDS", "5"))
        self.page_timeout_seconds = float(os.getenv("SYNC_PAGE_TIMEOUT_SECONDS", "120"))
        self.job_timeout_seconds = float(os.getenv("SYNC_JOB_TIMEOUT_SECONDS", "3600"))
        self.stale_job_seconds = float(os.getenv("JOB_STALE_SECONDS", "900"))

        # Downstream
        self.notify_webhook_url = os.getenv("NOTIFY_WEBHOOK_URL", "")

    def validate(self) -> None:
        """Raise ConfigurationError for settings the worker cannot run without."""
        missing = []
        if not self.database_url:
            missing.append("DATABASE_URL")
        if not os.getenv("ENCRYPTION_KEY"):
            missing.append("ENCRYPTION_KEY")
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}",
                missing_keys=missing,
            )

        if self.stale_job_seconds < self.page_timeout_seconds * STALE_TO_PAGE_TIMEOUT_RATIO:
            raise ConfigurationError(
                f"JOB_STALE_SECONDS must be at least {STALE_TO_PAGE_TIMEOUT_RATIO}x SYNC_PAGE_TIMEOUT_SECONDS",
                details={
                    "stale_job_seconds": self.stale_job_seconds,
                    "page_timeout_seconds": self.page_timeout_seconds,
                },
            )

    def __repr__(self):
        return (
            f"SyncSettings("
            f"page_size={self.page_size}, "
            f"lookback={self.lookback_days}d, "
            f"max_attempts={self.max_attempts}, "
            f"page_timeout={self.page_timeout_seconds:g}s, "
            f"stale={self.stale_job_seconds:g}s)"
        )
