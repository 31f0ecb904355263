"""Pydantic schemas for sync API request/response validation."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class SyncRequest(BaseModel):
    """Body of POST /pos/sync."""

    restaurant_id: str = Field(..., min_length=1, max_length=128)
    notification_email: Optional[str] = None
    full_sync: bool = False


class DateRangeDTO(BaseModel):
    """Window a job fetches. Serialized as {"from": ..., "to": ...}."""

    from_: datetime = Field(..., alias="from")
    to: datetime

    class Config:
        populate_by_name = True


class SyncStartedResponse(BaseModel):
    """202 response of POST /pos/sync."""

    job_id: str
    sync_type: str
    date_range: DateRangeDTO


class SyncConflictResponse(BaseModel):
    """409 response when the tenant already has an active job."""

    detail: str
    job_id: str


class SyncStatusResponse(BaseModel):
    """Polling view of GET /sync-status/{restaurant_id}."""

    status: str
    job_id: Optional[str] = None
    current_chunk: int = 0
    total_chunks: int = 0
    percent_complete: float = 0.0
    transactions_imported: int = 0
    estimated_time_remaining: Optional[int] = None
    message: str = ""
    error: Optional[dict[str, Any]] = None
    last_sync_at: Optional[datetime] = None


class SyncJobDTO(BaseModel):
    """Full job record."""

    job_id: str
    restaurant_id: str
    status: str
    progress: dict[str, Any] = Field(default_factory=dict)
    result: Optional[dict[str, Any]] = None
    error: Optional[dict[str, Any]] = None
    attempts: int = 0
    max_attempts: int = 3
    trigger: str
    window: Optional[dict[str, Any]] = None
    notification_email: Optional[str] = None
    notification_sent: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Only on GET /sync-jobs/{job_id}
    percent_complete: Optional[float] = None
    queue: Optional[dict[str, Any]] = None


class SyncJobListResponse(BaseModel):
    """Recent jobs for a tenant, newest first."""

    restaurant_id: str
    jobs: list[SyncJobDTO] = Field(default_factory=list)
    count: int = 0
