"""In-memory adapters for single-process deployments and tests.

Implements every storage port without a database. All state sits behind
one asyncio.Lock per adapter, so create/claim are atomic within the
event loop the same way the SQL adapters are atomic within Postgres.

Note: Does NOT work across processes. Use the Postgres adapters when the
API and worker run separately.
"""

import asyncio
import copy
import uuid
from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta
from typing import Any

from ...api.exceptions import (
    AlreadyClaimed,
    ClaimLost,
    InvalidJobTransition,
    JobNotFound,
    SyncAlreadyInProgress,
)
from ..domain.entities import (
    CANCELLED_MESSAGE,
    CredentialRecord,
    JobError,
    JobStatus,
    SyncJob,
    SyncJobSpec,
    SyncProgress,
    SyncResult,
    Transaction,
    new_job_id,
    utcnow,
)
from ..domain.ports import (
    ICredentialRepository,
    IJobQueue,
    ISyncJobStore,
    ITransactionRepository,
)


def _queue_key(job: SyncJob) -> tuple[datetime, datetime]:
    return (job.available_at or job.created_at, job.created_at)


class InMemorySyncJobStore(ISyncJobStore):
    """Job store backed by a dict.

    Returned jobs are copies; mutate state only through the store.

    Usage:
        store = InMemorySyncJobStore()
        job = await store.create(SyncJobSpec(restaurant_id="r1"))
        job = await store.claim(job.job_id)
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        """Initialize the store.

        Args:
            clock: Returns the current UTC time. Tests pass a fake to age jobs.
        """
        self._jobs: dict[str, SyncJob] = {}
        self._lock = asyncio.Lock()
        self.clock = clock

    # ----------------------------------------
    # Lifecycle
    # ----------------------------------------

    async def create(self, spec: SyncJobSpec) -> SyncJob:
        async with self._lock:
            for job in self._jobs.values():
                if job.restaurant_id == spec.restaurant_id and job.is_active:
                    raise SyncAlreadyInProgress(spec.restaurant_id, job.job_id)

            now = self.clock()
            job_id = spec.job_id or new_job_id(spec.restaurant_id, now)
            base_id, suffix = job_id, 1
            while job_id in self._jobs:
                job_id = f"{base_id}-{suffix}"
                suffix += 1

            job = SyncJob(
                job_id=job_id,
                restaurant_id=spec.restaurant_id,
                trigger=spec.trigger,
                notification_email=spec.notification_email,
                window=spec.window,
                max_attempts=spec.max_attempts,
                available_at=now,
                created_at=now,
                updated_at=now,
            )
            self._jobs[job_id] = job
            return copy.deepcopy(job)

    async def claim(self, job_id: str) -> SyncJob:
        async with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.PENDING:
                raise AlreadyClaimed(job_id, job.status.value)
            now = self.clock()
            job.status = JobStatus.PROCESSING
            job.started_at = now
            job.claim_token = uuid.uuid4().hex
            job.heartbeat_at = now
            job.updated_at = now
            return copy.deepcopy(job)

    async def update_progress(
        self, job_id: str, progress: SyncProgress, claim_token: str | None = None
    ) -> None:
        async with self._lock:
            job = self._require_processing(job_id, "update progress of", claim_token)
            now = self.clock()
            job.progress = copy.deepcopy(progress)
            job.heartbeat_at = now
            job.updated_at = now

    async def complete(
        self, job_id: str, result: SyncResult, claim_token: str | None = None
    ) -> SyncJob:
        async with self._lock:
            job = self._require_processing(job_id, "complete", claim_token)
            now = self.clock()
            job.status = JobStatus.COMPLETED
            job.result = copy.deepcopy(result)
            job.error = None
            job.completed_at = now
            job.updated_at = now
            return copy.deepcopy(job)

    async def fail(
        self,
        job_id: str,
        error: JobError,
        retryable: bool = True,
        retry_delay_seconds: float = 0.0,
        claim_token: str | None = None,
    ) -> SyncJob:
        async with self._lock:
            job = self._require_processing(job_id, "fail", claim_token)
            self._apply_failure(job, error, retryable, retry_delay_seconds)
            return copy.deepcopy(job)

    def _apply_failure(self, job: SyncJob, error: JobError, retryable: bool, retry_delay_seconds: float) -> None:
        now = self.clock()
        job.attempts += 1
        job.error = error
        job.heartbeat_at = None
        job.claim_token = None
        job.updated_at = now
        if retryable and job.attempts < job.max_attempts:
            job.status = JobStatus.PENDING
            job.available_at = now + timedelta(seconds=retry_delay_seconds)
        else:
            job.status = JobStatus.FAILED
            job.completed_at = now

    async def cancel(self, job_id: str) -> SyncJob:
        async with self._lock:
            job = self._require(job_id)
            if job.status == JobStatus.PROCESSING:
                raise AlreadyClaimed(job_id, job.status.value)
            if job.status != JobStatus.PENDING:
                raise InvalidJobTransition(job_id, "cancel", job.status.value)
            now = self.clock()
            job.status = JobStatus.FAILED
            job.error = JobError(message=CANCELLED_MESSAGE, code="CANCELLED", timestamp=now)
            job.completed_at = now
            job.updated_at = now
            return copy.deepcopy(job)

    async def mark_notification_sent(self, job_id: str) -> None:
        async with self._lock:
            job = self._require(job_id)
            job.notification_sent = True

    # ----------------------------------------
    # Maintenance
    # ----------------------------------------

    async def reap_stale(self, ttl_seconds: float) -> list[str]:
        async with self._lock:
            now = self.clock()
            cutoff = now - timedelta(seconds=ttl_seconds)
            reaped = []
            for job in self._jobs.values():
                if job.status != JobStatus.PROCESSING:
                    continue
                last_seen = job.heartbeat_at or job.started_at
                if last_seen is not None and last_seen < cutoff:
                    error = JobError(
                        message=f"Worker stopped reporting progress for {ttl_seconds:g}s",
                        code="STALE_JOB",
                        timestamp=now,
                        details={"last_heartbeat": last_seen.isoformat()},
                    )
                    self._apply_failure(job, error, retryable=True, retry_delay_seconds=0.0)
                    reaped.append(job.job_id)
            return reaped

    async def cleanup(self, older_than_days: int = 30) -> int:
        async with self._lock:
            cutoff = self.clock() - timedelta(days=older_than_days)
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.is_terminal and (job.completed_at or job.updated_at) < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
            return len(expired)

    # ----------------------------------------
    # Reads
    # ----------------------------------------

    async def get(self, job_id: str) -> SyncJob | None:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def latest_for(self, restaurant_id: str) -> SyncJob | None:
        jobs = await self.list_for(restaurant_id, limit=1)
        return jobs[0] if jobs else None

    async def list_for(self, restaurant_id: str, limit: int = 10) -> list[SyncJob]:
        jobs = [j for j in self._jobs.values() if j.restaurant_id == restaurant_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [copy.deepcopy(j) for j in jobs[:limit]]

    def _snapshot(self) -> list[SyncJob]:
        """Live job objects for the queue adapter; not copies."""
        return list(self._jobs.values())

    def _require(self, job_id: str) -> SyncJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _require_processing(self, job_id: str, action: str, claim_token: str | None = None) -> SyncJob:
        job = self._require(job_id)
        if job.status != JobStatus.PROCESSING:
            raise InvalidJobTransition(job_id, action, job.status.value)
        if claim_token is not None and claim_token != job.claim_token:
            raise ClaimLost(job_id)
        return job


class InMemoryJobQueue(IJobQueue):
    """Queue view over an InMemorySyncJobStore.

    Readiness is the job's available_at, so failed-and-retryable jobs
    reappear after their delay without a separate timer.
    """

    def __init__(self, store: InMemorySyncJobStore):
        self.store = store

    async def enqueue(self, job_id: str, delay_seconds: float = 0.0) -> None:
        async with self.store._lock:
            job = self.store._require(job_id)
            if job.status != JobStatus.PENDING:
                raise InvalidJobTransition(job_id, "enqueue", job.status.value)
            job.available_at = self.store.clock() + timedelta(seconds=delay_seconds)

    async def dequeue(self) -> str | None:
        async with self.store._lock:
            ready = self._ready(self.store.clock())
            return ready[0].job_id if ready else None

    async def active_jobs_for(self, restaurant_id: str) -> list[str]:
        return [
            job.job_id
            for job in self.store._snapshot()
            if job.restaurant_id == restaurant_id and job.is_active
        ]

    async def queue_state(self, job_id: str) -> dict[str, Any] | None:
        job = self.store._jobs.get(job_id)
        if job is None:
            return None
        now = self.store.clock()
        if job.status == JobStatus.PENDING:
            ready_ids = [j.job_id for j in self._ready(now)]
            if job_id in ready_ids:
                return {"state": "waiting", "position": ready_ids.index(job_id) + 1}
            return {"state": "delayed", "position": None, "available_at": job.available_at.isoformat()}
        state = "active" if job.status == JobStatus.PROCESSING else job.status.value
        return {"state": state, "position": None}

    def _ready(self, now: datetime) -> list[SyncJob]:
        ready = [
            job
            for job in self.store._snapshot()
            if job.status == JobStatus.PENDING and (job.available_at is None or job.available_at <= now)
        ]
        ready.sort(key=_queue_key)
        return ready


class InMemoryTransactionRepository(ITransactionRepository):
    """Transactions keyed by (restaurant_id, external_id)."""

    def __init__(self):
        self.rows: dict[tuple[str, str], Transaction] = {}
        self._lock = asyncio.Lock()

    async def existing_external_ids(self, restaurant_id: str, external_ids: list[str]) -> set[str]:
        return {eid for eid in external_ids if (restaurant_id, eid) in self.rows}

    async def insert_transactions(self, transactions: list[Transaction]) -> int:
        inserted = 0
        async with self._lock:
            for txn in transactions:
                key = (txn.restaurant_id, txn.external_id)
                if key in self.rows:
                    continue
                self.rows[key] = copy.deepcopy(txn)
                inserted += 1
        return inserted

    async def iter_raw(
        self,
        restaurant_id: str | None = None,
        batch_size: int = 500,
    ) -> AsyncIterator[list[tuple[str, dict[str, Any]]]]:
        keys = sorted(k for k in self.rows if restaurant_id is None or k[0] == restaurant_id)
        for i in range(0, len(keys), batch_size):
            yield [(k[0], self.rows[k].raw_data) for k in keys[i : i + batch_size]]

    async def update_analytics(self, transactions: list[Transaction]) -> int:
        updated = 0
        async with self._lock:
            for txn in transactions:
                row = self.rows.get((txn.restaurant_id, txn.external_id))
                if row is None:
                    continue
                row.opened_at = txn.opened_at
                row.hour_of_day = txn.hour_of_day
                row.day_of_week = txn.day_of_week
                updated += 1
        return updated

    def count(self, restaurant_id: str) -> int:
        return sum(1 for k in self.rows if k[0] == restaurant_id)


class InMemoryCredentialRepository(ICredentialRepository):
    """Credential records keyed by restaurant_id."""

    def __init__(self, records: list[CredentialRecord] | None = None):
        self.records: dict[str, CredentialRecord] = {r.restaurant_id: r for r in records or []}

    async def get(self, restaurant_id: str) -> CredentialRecord | None:
        record = self.records.get(restaurant_id)
        return copy.deepcopy(record) if record else None

    async def save(self, record: CredentialRecord) -> None:
        self.records[record.restaurant_id] = copy.deepcopy(record)

    async def set_last_sync_at(self, restaurant_id: str, synced_at: datetime) -> None:
        record = self.records.get(restaurant_id)
        if record is not None:
            record.last_sync_at = synced_at
