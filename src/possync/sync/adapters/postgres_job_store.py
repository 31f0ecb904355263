"""PostgreSQL adapters for the sync job lifecycle and queue.

PostgresSyncJobStore implements ISyncJobStore on the sync_jobs table and
PostgresJobQueue implements IJobQueue as a view over the same table.

Atomicity lives in SQL, not in Python:
- One active job per tenant is the partial unique index
  sync_jobs_one_active_per_restaurant (see db/schema.sql)
- Claim is a conditional UPDATE ... WHERE status = 'pending'
- Every later transition is guarded by WHERE status = 'processing',
  which keeps terminal rows immutable
- A worker passing its claim_token also matches on it, so writes from a
  reaped worker never land on a job another worker has claimed since
"""

import json
import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

import asyncpg

from ...api.database import database_connection
from ...api.exceptions import (
    AlreadyClaimed,
    ClaimLost,
    InvalidJobTransition,
    JobNotFound,
    StorageError,
    SyncAlreadyInProgress,
)
from ..domain.entities import (
    CANCELLED_MESSAGE,
    JobError,
    JobStatus,
    SyncJob,
    SyncJobSpec,
    SyncProgress,
    SyncResult,
    SyncTrigger,
    SyncWindow,
    new_job_id,
)
from ..domain.ports import IJobQueue, ISyncJobStore

if TYPE_CHECKING:
    from asyncpg import Pool, Record

logger = logging.getLogger(__name__)

ACTIVE_JOB_INDEX = "sync_jobs_one_active_per_restaurant"

_ACTIVE = "('pending', 'processing')"


def _json(value: Any) -> Any:
    """asyncpg returns JSONB as text unless a codec is registered."""
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresSyncJobStore(ISyncJobStore):
    """PostgreSQL implementation of ISyncJobStore.

    Each public method is a single statement (or a statement plus a
    diagnostic read when it matched no row), so no explicit transactions
    are needed.
    """

    def __init__(self, pool: "Pool"):
        """Initialize the store.

        Args:
            pool: asyncpg connection pool for database operations
        """
        self.pool = pool

    # ----------------------------------------
    # Lifecycle
    # ----------------------------------------

    async def create(self, spec: SyncJobSpec) -> SyncJob:
        """Insert a pending job.

        The partial unique index rejects a second active job for the same
        tenant; that violation is translated to SyncAlreadyInProgress.
        """
        base_id = spec.job_id or new_job_id(spec.restaurant_id)
        window = spec.window

        async with database_connection(self.pool) as conn:
            job_id = base_id
            for attempt in range(1, 4):
                try:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO sync_jobs (
                            job_id, restaurant_id, status, trigger_source,
                            notification_email, max_attempts,
                            window_start, window_end, full_sync,
                            available_at, created_at, updated_at
                        ) VALUES (
                            $1, $2, 'pending', $3, $4, $5, $6, $7, $8,
                            NOW(), NOW(), NOW()
                        )
                        RETURNING *
                        """,
                        job_id,
                        spec.restaurant_id,
                        spec.trigger.value,
                        spec.notification_email,
                        spec.max_attempts,
                        window.start_date if window else None,
                        window.end_date if window else None,
                        window.full_sync if window else None,
                    )
                    logger.info(f"Created sync job {job_id} for restaurant {spec.restaurant_id}")
                    return self._row_to_job(row)

                except asyncpg.UniqueViolationError as e:
                    if e.constraint_name == ACTIVE_JOB_INDEX:
                        existing = await conn.fetchval(
                            f"SELECT job_id FROM sync_jobs WHERE restaurant_id = $1 AND status IN {_ACTIVE}",
                            spec.restaurant_id,
                        )
                        if existing:
                            raise SyncAlreadyInProgress(spec.restaurant_id, existing)
                        # Active job finished between INSERT and SELECT; try again
                        continue
                    # Same tenant, same millisecond
                    job_id = f"{base_id}-{attempt}"

        raise StorageError(
            f"Could not create sync job for restaurant {spec.restaurant_id}",
            details={"restaurant_id": spec.restaurant_id},
        )

    async def claim(self, job_id: str) -> SyncJob:
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow(
                """
                UPDATE sync_jobs
                SET status = 'processing',
                    claim_token = $2,
                    started_at = NOW(),
                    heartbeat_at = NOW(),
                    updated_at = NOW()
                WHERE job_id = $1 AND status = 'pending'
                RETURNING *
                """,
                job_id,
                uuid.uuid4().hex,
            )
            if row is None:
                status = await self._status_of(conn, job_id)
                if status is None:
                    raise JobNotFound(job_id)
                raise AlreadyClaimed(job_id, status)
        return self._row_to_job(row)

    async def update_progress(
        self, job_id: str, progress: SyncProgress, claim_token: str | None = None
    ) -> None:
        async with database_connection(self.pool) as conn:
            result = await conn.execute(
                """
                UPDATE sync_jobs
                SET progress = $2::jsonb,
                    heartbeat_at = NOW(),
                    updated_at = NOW()
                WHERE job_id = $1 AND status = 'processing'
                  AND ($3::text IS NULL OR claim_token = $3)
                """,
                job_id,
                json.dumps(progress.to_dict()),
                claim_token,
            )
            if result == "UPDATE 0":
                await self._raise_transition(conn, job_id, "update progress of", claim_token)

    async def complete(
        self, job_id: str, result: SyncResult, claim_token: str | None = None
    ) -> SyncJob:
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow(
                """
                UPDATE sync_jobs
                SET status = 'completed',
                    result = $2::jsonb,
                    error = NULL,
                    completed_at = NOW(),
                    updated_at = NOW()
                WHERE job_id = $1 AND status = 'processing'
                  AND ($3::text IS NULL OR claim_token = $3)
                RETURNING *
                """,
                job_id,
                json.dumps(result.to_dict()),
                claim_token,
            )
            if row is None:
                await self._raise_transition(conn, job_id, "complete", claim_token)
        return self._row_to_job(row)

    async def fail(
        self,
        job_id: str,
        error: JobError,
        retryable: bool = True,
        retry_delay_seconds: float = 0.0,
        claim_token: str | None = None,
    ) -> SyncJob:
        # In SET expressions, attempts still refers to the pre-update value
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow(
                """
                UPDATE sync_jobs
                SET attempts = attempts + 1,
                    error = $2::jsonb,
                    heartbeat_at = NULL,
                    claim_token = NULL,
                    updated_at = NOW(),
                    status = CASE WHEN $3 AND attempts + 1 < max_attempts
                                  THEN 'pending' ELSE 'failed' END,
                    available_at = CASE WHEN $3 AND attempts + 1 < max_attempts
                                        THEN NOW() + make_interval(secs => $4)
                                        ELSE available_at END,
                    completed_at = CASE WHEN $3 AND attempts + 1 < max_attempts
                                        THEN NULL ELSE NOW() END
                WHERE job_id = $1 AND status = 'processing'
                  AND ($5::text IS NULL OR claim_token = $5)
                RETURNING *
                """,
                job_id,
                json.dumps(error.to_dict()),
                retryable,
                float(retry_delay_seconds),
                claim_token,
            )
            if row is None:
                await self._raise_transition(conn, job_id, "fail", claim_token)
        return self._row_to_job(row)

    async def cancel(self, job_id: str) -> SyncJob:
        error = JobError(message=CANCELLED_MESSAGE, code="CANCELLED")
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow(
                """
                UPDATE sync_jobs
                SET status = 'failed',
                    error = $2::jsonb,
                    completed_at = NOW(),
                    updated_at = NOW()
                WHERE job_id = $1 AND status = 'pending'
                RETURNING *
                """,
                job_id,
                json.dumps(error.to_dict()),
            )
            if row is None:
                status = await self._status_of(conn, job_id)
                if status is None:
                    raise JobNotFound(job_id)
                if status == JobStatus.PROCESSING.value:
                    raise AlreadyClaimed(job_id, status)
                raise InvalidJobTransition(job_id, "cancel", status)
        return self._row_to_job(row)

    async def mark_notification_sent(self, job_id: str) -> None:
        async with database_connection(self.pool) as conn:
            result = await conn.execute(
                "UPDATE sync_jobs SET notification_sent = TRUE WHERE job_id = $1",
                job_id,
            )
        if result == "UPDATE 0":
            raise JobNotFound(job_id)

    # ----------------------------------------
    # Maintenance
    # ----------------------------------------

    async def reap_stale(self, ttl_seconds: float) -> list[str]:
        """Fail processing jobs with no heartbeat for ttl_seconds.

        Reaped jobs go through the same retry accounting as fail().
        """
        async with database_connection(self.pool) as conn:
            rows = await conn.fetch(
                """
                UPDATE sync_jobs
                SET attempts = attempts + 1,
                    error = jsonb_build_object(
                        'message', 'Worker stopped reporting progress for ' || $1::text || 's',
                        'code', 'STALE_JOB',
                        'timestamp', to_char(NOW() AT TIME ZONE 'UTC', 'YYYY-MM-DD"T"HH24:MI:SS.US"+00:00"'),
                        'details', jsonb_build_object(
                            'last_heartbeat', COALESCE(heartbeat_at, started_at)
                        )
                    ),
                    claim_token = NULL,
                    heartbeat_at = NULL,
                    updated_at = NOW(),
                    status = CASE WHEN attempts + 1 < max_attempts
                                  THEN 'pending' ELSE 'failed' END,
                    available_at = NOW(),
                    completed_at = CASE WHEN attempts + 1 < max_attempts
                                        THEN NULL ELSE NOW() END
                WHERE status = 'processing'
                  AND COALESCE(heartbeat_at, started_at) < NOW() - make_interval(secs => $2)
                RETURNING job_id
                """,
                f"{ttl_seconds:g}",
                float(ttl_seconds),
            )
        reaped = [r["job_id"] for r in rows]
        if reaped:
            logger.warning(f"Reaped {len(reaped)} stale sync job(s): {', '.join(reaped)}")
        return reaped

    async def cleanup(self, older_than_days: int = 30) -> int:
        async with database_connection(self.pool) as conn:
            result = await conn.execute(
                """
                DELETE FROM sync_jobs
                WHERE status IN ('completed', 'failed')
                  AND COALESCE(completed_at, updated_at) < NOW() - make_interval(days => $1)
                """,
                older_than_days,
            )
        # asyncpg returns the command tag, e.g. "DELETE 12"
        return int(result.split()[-1])

    # ----------------------------------------
    # Reads
    # ----------------------------------------

    async def get(self, job_id: str) -> SyncJob | None:
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow("SELECT * FROM sync_jobs WHERE job_id = $1", job_id)
        return self._row_to_job(row) if row else None

    async def latest_for(self, restaurant_id: str) -> SyncJob | None:
        jobs = await self.list_for(restaurant_id, limit=1)
        return jobs[0] if jobs else None

    async def list_for(self, restaurant_id: str, limit: int = 10) -> list[SyncJob]:
        async with database_connection(self.pool) as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM sync_jobs
                WHERE restaurant_id = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                restaurant_id,
                limit,
            )
        return [self._row_to_job(r) for r in rows]

    # ----------------------------------------
    # Helpers
    # ----------------------------------------

    @staticmethod
    async def _status_of(conn, job_id: str) -> str | None:
        return await conn.fetchval("SELECT status FROM sync_jobs WHERE job_id = $1", job_id)

    async def _raise_transition(self, conn, job_id: str, action: str, claim_token: str | None = None) -> None:
        status = await self._status_of(conn, job_id)
        if status is None:
            raise JobNotFound(job_id)
        if status == JobStatus.PROCESSING.value and claim_token is not None:
            raise ClaimLost(job_id)
        raise InvalidJobTransition(job_id, action, status)

    @staticmethod
    def _row_to_job(row: "Record") -> SyncJob:
        window = None
        if row["window_start"] is not None and row["window_end"] is not None:
            window = SyncWindow(row["window_start"], row["window_end"], bool(row["full_sync"]))

        return SyncJob(
            job_id=row["job_id"],
            restaurant_id=row["restaurant_id"],
            status=JobStatus(row["status"]),
            progress=SyncProgress.from_dict(_json(row["progress"])),
            result=SyncResult.from_dict(_json(row["result"])),
            error=JobError.from_dict(_json(row["error"])),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            trigger=SyncTrigger(row["trigger_source"]),
            window=window,
            notification_email=row["notification_email"],
            notification_sent=row["notification_sent"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            heartbeat_at=row["heartbeat_at"],
            available_at=row["available_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            claim_token=row.get("claim_token"),
        )


class PostgresJobQueue(IJobQueue):
    """Queue semantics over sync_jobs.

    A job is ready when it is pending and its available_at has passed.
    Dequeue only peeks; PostgresSyncJobStore.claim decides which worker wins.
    """

    def __init__(self, pool: "Pool"):
        self.pool = pool

    async def enqueue(self, job_id: str, delay_seconds: float = 0.0) -> None:
        async with database_connection(self.pool) as conn:
            updated = await conn.fetchval(
                """
                UPDATE sync_jobs
                SET available_at = NOW() + make_interval(secs => $2),
                    updated_at = NOW()
                WHERE job_id = $1 AND status = 'pending'
                RETURNING job_id
                """,
                job_id,
                float(delay_seconds),
            )
            if updated is None:
                status = await conn.fetchval("SELECT status FROM sync_jobs WHERE job_id = $1", job_id)
                if status is None:
                    raise JobNotFound(job_id)
                raise InvalidJobTransition(job_id, "enqueue", status)

    async def dequeue(self) -> str | None:
        async with database_connection(self.pool) as conn:
            return await conn.fetchval(
                """
                SELECT job_id FROM sync_jobs
                WHERE status = 'pending' AND available_at <= NOW()
                ORDER BY available_at, created_at
                LIMIT 1
                """
            )

    async def active_jobs_for(self, restaurant_id: str) -> list[str]:
        async with database_connection(self.pool) as conn:
            rows = await conn.fetch(
                f"SELECT job_id FROM sync_jobs WHERE restaurant_id = $1 AND status IN {_ACTIVE}",
                restaurant_id,
            )
        return [r["job_id"] for r in rows]

    async def queue_state(self, job_id: str) -> dict[str, Any] | None:
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow(
                """
                SELECT status, available_at, available_at <= NOW() AS ready,
                       (SELECT COUNT(*) FROM sync_jobs q
                        WHERE q.status = 'pending' AND q.available_at <= NOW()
                          AND (q.available_at, q.created_at) <= (j.available_at, j.created_at)
                       ) AS position
                FROM sync_jobs j
                WHERE job_id = $1
                """,
                job_id,
            )
        if row is None:
            return None
        if row["status"] == JobStatus.PENDING.value:
            if row["ready"]:
                return {"state": "waiting", "position": int(row["position"])}
            available_at: datetime = row["available_at"]
            return {"state": "delayed", "position": None, "available_at": available_at.isoformat()}
        state = "active" if row["status"] == JobStatus.PROCESSING.value else row["status"]
        return {"state": state, "position": None}
