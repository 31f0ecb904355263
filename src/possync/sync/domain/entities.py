"""Domain entities for POS sync operations.

These are pure data structures with no infrastructure dependencies.
They represent the core business objects used by the sync pipeline:
credentials, jobs, windows, pages, and imported transactions.

All datetimes are timezone-aware UTC.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

# Provider rejects ranges longer than this per request
DEFAULT_CHUNK_DAYS = 30

# Lookback used when the tenant has never synced
DEFAULT_LOOKBACK_DAYS = 30

DEFAULT_MAX_ATTEMPTS = 3

CANCELLED_MESSAGE = "Job cancelled by user"


def utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


# ============================================
# Job State
# ============================================


class JobStatus(str, Enum):
    """Lifecycle states of a sync job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.PROCESSING)

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class SyncTrigger(str, Enum):
    """What asked for the sync."""

    LOGIN = "login"
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    BACKFILL = "backfill"
    CLI = "cli"


# ============================================
# Credentials
# ============================================


@dataclass
class CredentialRecord:
    """A tenant's stored POS connection.

    client_id and encrypted_client_secret hold vault ciphertext;
    location_id is the provider's plaintext restaurant GUID.
    """

    restaurant_id: str
    client_id: str | None = None
    encrypted_client_secret: str | None = None
    location_id: str | None = None
    is_active: bool = True
    last_sync_at: datetime | None = None
    notification_email: str | None = None

    def to_vault_input(self) -> dict[str, Any]:
        """Field names CredentialVault.decrypt_credential_set expects."""
        return {
            "clientId": self.client_id,
            "encryptedClientSecret": self.encrypted_client_secret,
            "locationId": self.location_id,
        }


@dataclass
class DecryptedCredentials:
    """Plaintext credentials. Lives in memory only, never persisted."""

    client_id: str
    client_secret: str = field(repr=False)
    location_guid: str


# ============================================
# Sync Window
# ============================================


@dataclass(frozen=True)
class SyncWindow:
    """Date range a job fetches.

    Derived from the tenant's last_sync_at, never stored on its own.
    """

    start_date: datetime
    end_date: datetime
    full_sync: bool = False

    def __post_init__(self):
        if self.end_date < self.start_date:
            raise ValueError(
                f"Window end {self.end_date.isoformat()} precedes start {self.start_date.isoformat()}"
            )

    @property
    def sync_type(self) -> str:
        return "full" if self.full_sync else "incremental"

    def chunks(self, max_days: int = DEFAULT_CHUNK_DAYS) -> list["SyncWindow"]:
        """Split into consecutive sub-windows no longer than max_days."""
        span = timedelta(days=max_days)
        chunks = []
        cursor = self.start_date
        while cursor < self.end_date:
            chunk_end = min(cursor + span, self.end_date)
            chunks.append(SyncWindow(cursor, chunk_end, self.full_sync))
            cursor = chunk_end
        # An empty window still needs one request to confirm there is nothing
        return chunks or [self]

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.start_date.isoformat(),
            "to": self.end_date.isoformat(),
            "full_sync": self.full_sync,
        }


def compute_window(
    last_sync_at: datetime | None,
    now: datetime | None = None,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    force_full: bool = False,
) -> SyncWindow:
    """Compute the window for the next sync.

    Incremental from last_sync_at when the tenant has synced before,
    otherwise a full sync over the fixed lookback.
    """
    now = now or utcnow()
    if last_sync_at is not None and not force_full:
        # Clock skew can put last_sync_at slightly in the future
        return SyncWindow(start_date=min(last_sync_at, now), end_date=now, full_sync=False)
    return SyncWindow(start_date=now - timedelta(days=lookback_days), end_date=now, full_sync=True)


# ============================================
# Remote Pages
# ============================================


@dataclass(frozen=True)
class PageCursor:
    """Position within a chunked, page-numbered fetch."""

    chunk_index: int = 0
    page: int = 1


@dataclass
class Page:
    """One batch of provider records.

    next_cursor is None when the fetch is done.
    estimated_total is only set when the provider reports a total count.
    """

    records: list[dict[str, Any]]
    next_cursor: PageCursor | None = None
    estimated_total: int | None = None
    chunk_index: int = 0
    total_chunks: int = 1

    @property
    def done(self) -> bool:
        return self.next_cursor is None


# ============================================
# Progress, Result, Error
# ============================================


@dataclass
class SyncProgress:
    """Live counters written to the job after every page.

    current_page, total_pages, orders_processed and estimated_total span the
    whole window. Provider totals are per chunk, so on a multi-chunk window
    total_pages and estimated_total stay unset until the last page, and
    chunk_page / chunk_total_pages track the chunk being fetched.
    """

    current_page: int = 0
    total_pages: int | None = None
    orders_processed: int = 0
    estimated_total: int | None = None
    current_chunk: int = 0
    total_chunks: int = 0
    chunk_page: int = 0
    chunk_total_pages: int | None = None
    orders_imported: int = 0
    orders_skipped: int = 0
    orders_failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_page": self.current_page,
            "total_pages": self.total_pages,
            "orders_processed": self.orders_processed,
            "estimated_total": self.estimated_total,
            "current_chunk": self.current_chunk,
            "total_chunks": self.total_chunks,
            "chunk_page": self.chunk_page,
            "chunk_total_pages": self.chunk_total_pages,
            "orders_imported": self.orders_imported,
            "orders_skipped": self.orders_skipped,
            "orders_failed": self.orders_failed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncProgress":
        data = data or {}
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


@dataclass
class SyncResult:
    """Final totals of a completed job."""

    orders_imported: int
    orders_skipped: int
    orders_failed: int
    total_pages: int
    duration_ms: int
    start_date: datetime
    end_date: datetime
    full_sync: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "orders_imported": self.orders_imported,
            "orders_skipped": self.orders_skipped,
            "orders_failed": self.orders_failed,
            "total_pages": self.total_pages,
            "duration_ms": self.duration_ms,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "full_sync": self.full_sync,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncResult | None":
        if not data:
            return None
        return cls(
            orders_imported=data.get("orders_imported", 0),
            orders_skipped=data.get("orders_skipped", 0),
            orders_failed=data.get("orders_failed", 0),
            total_pages=data.get("total_pages", 0),
            duration_ms=data.get("duration_ms", 0),
            start_date=_parse_iso(data["start_date"]),
            end_date=_parse_iso(data["end_date"]),
            full_sync=data.get("full_sync", False),
        )


@dataclass
class JobError:
    """Error captured on the job record."""

    message: str
    code: str
    timestamp: datetime = field(default_factory=utcnow)
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: Exception) -> "JobError":
        """Build from any exception, keeping PosSyncError code and details."""
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        code = getattr(exc, "code", None) or type(exc).__name__.upper()
        details = dict(getattr(exc, "details", None) or {})
        # Upstream response bodies can be large and are not for tenants
        details.pop("response_body", None)
        return cls(message=message, code=code, details=details)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "JobError | None":
        if not data:
            return None
        return cls(
            message=data.get("message", ""),
            code=data.get("code", "UNKNOWN"),
            timestamp=_parse_iso(data.get("timestamp")) or utcnow(),
            details=data.get("details") or {},
        )


# ============================================
# Sync Job
# ============================================


def new_job_id(restaurant_id: str, now: datetime | None = None) -> str:
    """Externally visible job id: sync-{restaurant}-{epoch ms}."""
    now = now or utcnow()
    return f"sync-{restaurant_id}-{int(now.timestamp() * 1000)}"


@dataclass
class SyncJobSpec:
    """What a producer asks the store to create.

    window is optional; when absent the orchestrator derives it at claim time.
    """

    restaurant_id: str
    job_id: str | None = None
    trigger: SyncTrigger = SyncTrigger.MANUAL
    notification_email: str | None = None
    window: SyncWindow | None = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS


@dataclass
class SyncJob:
    """Durable record of one sync attempt.

    Maps to the sync_jobs table in db/schema.sql.
    claim_token identifies the worker holding a processing job; it changes on
    every claim so a reaped worker cannot write over its successor.
    """

    job_id: str
    restaurant_id: str
    status: JobStatus = JobStatus.PENDING
    progress: SyncProgress = field(default_factory=SyncProgress)
    result: SyncResult | None = None
    error: JobError | None = None
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    trigger: SyncTrigger = SyncTrigger.MANUAL
    window: SyncWindow | None = None
    notification_email: str | None = None
    notification_sent: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    heartbeat_at: datetime | None = None
    available_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    claim_token: str | None = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "job_id": self.job_id,
            "restaurant_id": self.restaurant_id,
            "status": self.status.value,
            "progress": self.progress.to_dict(),
            "result": self.result.to_dict() if self.result else None,
            "error": self.error.to_dict() if self.error else None,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "trigger": self.trigger.value,
            "window": self.window.to_dict() if self.window else None,
            "notification_email": self.notification_email,
            "notification_sent": self.notification_sent,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "heartbeat_at": _iso(self.heartbeat_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ============================================
# Import
# ============================================


@dataclass
class Transaction:
    """Canonical imported transaction.

    Unique on (restaurant_id, external_id). hour_of_day and day_of_week
    are derived once, in UTC, at import time.
    """

    restaurant_id: str
    external_id: str
    opened_at: datetime
    total_amount: Decimal
    subtotal: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    tip_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    tip_percentage: Decimal = Decimal("0")
    order_type: str = "dine_in"
    status: str = "pending"
    payment_method: str | None = None
    employee_id: str | None = None
    closed_at: datetime | None = None
    paid_at: datetime | None = None
    hour_of_day: int = 0
    day_of_week: int = 0
    items: list[dict[str, Any]] = field(default_factory=list)
    payments: list[dict[str, Any]] = field(default_factory=list)
    raw_data: dict[str, Any] = field(default_factory=dict)


@dataclass
class ImportTally:
    """Counts from one import_batch call."""

    imported: int = 0
    skipped_duplicates: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.imported + self.skipped_duplicates + self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": self.imported,
            "skipped_duplicates": self.skipped_duplicates,
            "failed": self.failed,
        }


# ============================================
# Downstream Views
# ============================================


@dataclass
class SyncNotification:
    """Payload handed to the notification collaborator."""

    restaurant_id: str
    job_id: str
    orders_imported: int
    orders_failed: int
    duration_ms: int
    success: bool
    error_message: str | None = None
    notification_email: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "restaurantId": self.restaurant_id,
            "jobId": self.job_id,
            "ordersImported": self.orders_imported,
            "ordersFailed": self.orders_failed,
            "durationMs": self.duration_ms,
            "success": self.success,
        }
        if self.error_message:
            payload["errorMessage"] = self.error_message
        if self.notification_email:
            payload["notificationEmail"] = self.notification_email
        return payload


@dataclass
class SyncProgressView:
    """Read-only projection returned to polling clients."""

    status: str
    job_id: str | None = None
    current_chunk: int = 0
    total_chunks: int = 0
    percent_complete: float = 0.0
    transactions_imported: int = 0
    estimated_time_remaining: int | None = None
    message: str = "No sync in progress"
    error: dict[str, Any] | None = None
    last_sync_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "job_id": self.job_id,
            "current_chunk": self.current_chunk,
            "total_chunks": self.total_chunks,
            "percent_complete": self.percent_complete,
            "transactions_imported": self.transactions_imported,
            "estimated_time_remaining": self.estimated_time_remaining,
            "message": self.message,
            "error": self.error,
            "last_sync_at": _iso(self.last_sync_at),
        }
