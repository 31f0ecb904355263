"""Port interfaces for POS sync operations.

Ports define the contracts between the use cases and the infrastructure.
These are abstract base classes that adapters must implement.

Following the Hexagonal Architecture (Ports and Adapters) pattern:
- Ports are interfaces defined in the domain layer
- Adapters implement these ports in the adapters layer
- Use cases depend only on ports, not concrete implementations
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

from .entities import (
    CredentialRecord,
    DecryptedCredentials,
    JobError,
    Page,
    PageCursor,
    SyncJob,
    SyncJobSpec,
    SyncNotification,
    SyncProgress,
    SyncResult,
    SyncWindow,
    Transaction,
)


class ISyncJobStore(ABC):
    """Port for durable job lifecycle records.

    Every transition is persisted before the call returns, so a crashed
    worker leaves an inspectable record rather than a lost job.
    """

    @abstractmethod
    async def create(self, spec: SyncJobSpec) -> SyncJob:
        """Create a pending job with attempts=0.

        Raises:
            SyncAlreadyInProgress: If the tenant already has an active job.
                Enforced atomically, not check-then-act.
        """
        ...

    @abstractmethod
    async def claim(self, job_id: str) -> SyncJob:
        """Atomically transition pending -> processing and set started_at.

        The returned job carries a fresh claim_token; pass it to the later
        transitions so they only apply while this claim still holds.

        Raises:
            AlreadyClaimed: If the job is not pending
            JobNotFound: If the job does not exist
        """
        ...

    @abstractmethod
    async def update_progress(
        self, job_id: str, progress: SyncProgress, claim_token: str | None = None
    ) -> None:
        """Persist progress and refresh the heartbeat of a processing job.

        Raises:
            ClaimLost: If claim_token is given and another claim replaced it
            InvalidJobTransition: If the job is not processing
        """
        ...

    @abstractmethod
    async def complete(
        self, job_id: str, result: SyncResult, claim_token: str | None = None
    ) -> SyncJob:
        """Mark a processing job completed with its result."""
        ...

    @abstractmethod
    async def fail(
        self,
        job_id: str,
        error: JobError,
        retryable: bool = True,
        retry_delay_seconds: float = 0.0,
        claim_token: str | None = None,
    ) -> SyncJob:
        """Record a failure and increment attempts.

        If retryable and attempts < max_attempts the job returns to pending
        (dequeueable after retry_delay_seconds); otherwise it is terminal
        failed with completed_at set.
        """
        ...

    @abstractmethod
    async def get(self, job_id: str) -> SyncJob | None:
        ...

    @abstractmethod
    async def latest_for(self, restaurant_id: str) -> SyncJob | None:
        """Most recently created job for the tenant."""
        ...

    @abstractmethod
    async def list_for(self, restaurant_id: str, limit: int = 10) -> list[SyncJob]:
        """Recent jobs for the tenant, newest first."""
        ...

    @abstractmethod
    async def mark_notification_sent(self, job_id: str) -> None:
        """Set notification_sent. Allowed on terminal jobs."""
        ...

    @abstractmethod
    async def reap_stale(self, ttl_seconds: float) -> list[str]:
        """Fail processing jobs whose heartbeat is older than ttl_seconds.

        Returns:
            Ids of reaped jobs (now pending again, or failed if exhausted)
        """
        ...

    @abstractmethod
    async def cancel(self, job_id: str) -> SyncJob:
        """Cancel a pending job (terminal failed)."""
        ...

    @abstractmethod
    async def cleanup(self, older_than_days: int = 30) -> int:
        """Delete terminal jobs older than the cutoff. Returns count."""
        ...


class IJobQueue(ABC):
    """Port decoupling producers from workers."""

    @abstractmethod
    async def enqueue(self, job_id: str, delay_seconds: float = 0.0) -> None:
        """Make a pending job dequeueable after delay_seconds."""
        ...

    @abstractmethod
    async def dequeue(self) -> str | None:
        """Oldest dequeueable pending job id, or None if the queue is empty.

        Does not claim; the caller claims through ISyncJobStore.
        """
        ...

    @abstractmethod
    async def active_jobs_for(self, restaurant_id: str) -> list[str]:
        """Ids of pending or processing jobs for the tenant."""
        ...

    @abstractmethod
    async def queue_state(self, job_id: str) -> dict[str, Any] | None:
        """Live queue view of a job (state, position), or None if unknown."""
        ...


class IRemoteFetcher(ABC):
    """Port for the POS provider."""

    @abstractmethod
    async def authenticate(self, credentials: DecryptedCredentials) -> str:
        """Exchange credentials for an access token.

        Raises:
            UpstreamAuthError: On any non-2xx response (never retried)
        """
        ...

    @abstractmethod
    async def fetch_page(
        self,
        access_token: str,
        location_guid: str,
        window: SyncWindow,
        cursor: PageCursor,
    ) -> Page:
        """Fetch one page of records for the window.

        Transient failures are retried inside the call; auth failures are not.
        """
        ...


class ITransactionMapper(ABC):
    """Port for provider record -> Transaction normalization."""

    @abstractmethod
    def external_id(self, raw: dict[str, Any]) -> str | None:
        """Canonical external id of a provider record, if it has one."""
        ...

    @abstractmethod
    def map_to_entity(self, restaurant_id: str, raw: dict[str, Any]) -> Transaction:
        """Normalize one provider record.

        Raises:
            PartialRecordError: If required monetary or timestamp fields are missing
        """
        ...


class ITransactionRepository(ABC):
    """Port for imported transaction persistence."""

    @abstractmethod
    async def existing_external_ids(self, restaurant_id: str, external_ids: list[str]) -> set[str]:
        """Subset of external_ids already stored for the tenant."""
        ...

    @abstractmethod
    async def insert_transactions(self, transactions: list[Transaction]) -> int:
        """Insert, skipping conflicts on (restaurant_id, external_id).

        Returns:
            Number of rows actually inserted
        """
        ...

    @abstractmethod
    def iter_raw(
        self,
        restaurant_id: str | None = None,
        batch_size: int = 500,
    ) -> AsyncIterator[list[tuple[str, dict[str, Any]]]]:
        """Yield batches of (restaurant_id, raw_data) for stored transactions."""
        ...

    @abstractmethod
    async def update_analytics(self, transactions: list[Transaction]) -> int:
        """Rewrite derived analytic fields of existing rows. Returns count."""
        ...


class ICredentialRepository(ABC):
    """Port for tenant credential records."""

    @abstractmethod
    async def get(self, restaurant_id: str) -> CredentialRecord | None:
        ...

    @abstractmethod
    async def save(self, record: CredentialRecord) -> None:
        """Insert or replace the tenant's credential record."""
        ...

    @abstractmethod
    async def set_last_sync_at(self, restaurant_id: str, synced_at: datetime) -> None:
        """Advance the tenant's incremental sync marker."""
        ...


class INotifier(ABC):
    """Port for the downstream notification collaborator."""

    @abstractmethod
    async def notify(self, notification: SyncNotification) -> None:
        ...
