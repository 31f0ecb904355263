"""Sync Status Use Case - Read-only views for polling clients.

Projects durable job records into the shape the dashboard polls:
status, percent complete, imported count, ETA. Error messages pass through
the ErrorSanitizer before they leave the service.
"""

import logging
from datetime import datetime
from typing import Any

from ...api.error_sanitizer import sanitize_error_message
from ..domain.entities import JobError, JobStatus, SyncJob, SyncProgress, SyncProgressView, utcnow
from ..domain.ports import ICredentialRepository, IJobQueue, ISyncJobStore

logger = logging.getLogger(__name__)


def percent_complete(progress: SyncProgress) -> float:
    """Page-based when total pages are known, else chunk-based, else 0.

    Chunk-based progress counts finished chunks plus the page fraction of
    the current chunk when that chunk's page count is known.
    """
    if progress.total_pages:
        pct = progress.current_page / progress.total_pages * 100
    elif progress.total_chunks:
        completed_chunks = max(progress.current_chunk - 1, 0)
        if progress.chunk_total_pages:
            completed_chunks += min(progress.chunk_page / progress.chunk_total_pages, 1.0)
        pct = completed_chunks / progress.total_chunks * 100
    else:
        pct = 0.0
    return round(min(pct, 100.0), 1)


def estimate_seconds_remaining(job: SyncJob, now: datetime) -> int | None:
    """Remaining work divided by throughput observed since started_at."""
    progress = job.progress
    if job.started_at is None or progress.orders_processed == 0:
        return None
    elapsed = (now - job.started_at).total_seconds()
    if elapsed <= 0:
        return None

    if progress.estimated_total:
        remaining = max(progress.estimated_total - progress.orders_processed, 0)
        rate = progress.orders_processed / elapsed
        return int(remaining / rate)

    pct = percent_complete(progress)
    if pct > 0:
        return int(elapsed * (100 - pct) / pct)
    return None


def public_error(error: JobError | None) -> dict[str, Any] | None:
    """Job error with message and string details sanitized for tenants."""
    if error is None:
        return None
    data = error.to_dict()
    data["message"] = sanitize_error_message(error.message)
    data["details"] = {
        key: sanitize_error_message(value) if isinstance(value, str) else value
        for key, value in error.details.items()
    }
    return data


class SyncStatusService:
    """Answers "what is my sync doing?" for a tenant.

    Example:
        service = SyncStatusService(store, queue, credentials)
        view = await service.get_status("rest-1")
    """

    def __init__(
        self,
        store: ISyncJobStore,
        queue: IJobQueue,
        credentials: ICredentialRepository | None = None,
    ):
        self.store = store
        self.queue = queue
        self.credentials = credentials

    async def get_status(self, restaurant_id: str) -> SyncProgressView:
        now = utcnow()
        last_sync_at = None
        if self.credentials is not None:
            record = await self.credentials.get(restaurant_id)
            last_sync_at = record.last_sync_at if record else None

        active_ids = await self.queue.active_jobs_for(restaurant_id)
        job = await self.store.get(active_ids[0]) if active_ids else None

        if job is not None and job.is_active:
            return self._active_view(job, now, last_sync_at)

        latest = await self.store.latest_for(restaurant_id)
        if latest is not None and latest.status == JobStatus.FAILED:
            return SyncProgressView(
                status="failed",
                job_id=latest.job_id,
                current_chunk=latest.progress.current_chunk,
                total_chunks=latest.progress.total_chunks,
                percent_complete=percent_complete(latest.progress),
                transactions_imported=latest.progress.orders_imported,
                message="Last sync failed",
                error=public_error(latest.error),
                last_sync_at=last_sync_at,
            )

        return SyncProgressView(status="idle", last_sync_at=last_sync_at)

    def _active_view(self, job: SyncJob, now: datetime, last_sync_at: datetime | None) -> SyncProgressView:
        progress = job.progress
        if job.status == JobStatus.PROCESSING:
            status = "syncing"
            if progress.total_chunks:
                message = f"Syncing chunk {progress.current_chunk} of {progress.total_chunks}"
            else:
                message = "Sync started"
        else:
            status = "pending"
            message = "Waiting for a worker" if job.attempts == 0 else f"Retrying (attempt {job.attempts + 1})"

        return SyncProgressView(
            status=status,
            job_id=job.job_id,
            current_chunk=progress.current_chunk,
            total_chunks=progress.total_chunks,
            percent_complete=percent_complete(progress),
            transactions_imported=progress.orders_imported,
            estimated_time_remaining=estimate_seconds_remaining(job, now) if status == "syncing" else None,
            message=message,
            error=public_error(job.error),
            last_sync_at=last_sync_at,
        )

    async def get_job_detail(self, job_id: str) -> dict[str, Any] | None:
        """Full job record merged with its live queue state, or None."""
        job = await self.store.get(job_id)
        if job is None:
            return None
        detail = job.to_dict()
        detail["error"] = public_error(job.error)
        detail["percent_complete"] = percent_complete(job.progress)
        detail["queue"] = await self.queue.queue_state(job_id)
        return detail

    async def list_jobs(self, restaurant_id: str, limit: int = 10) -> list[dict[str, Any]]:
        jobs = await self.store.list_for(restaurant_id, limit=limit)
        rows = []
        for job in jobs:
            row = job.to_dict()
            row["error"] = public_error(job.error)
            rows.append(row)
        return rows
