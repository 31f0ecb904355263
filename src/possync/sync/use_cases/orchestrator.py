"""Sync Orchestrator - Drives one sync job from claim to notification.

This use case is the consumer side of the pipeline. It depends only on
ports, so the same code runs against Postgres in production and the
in-memory adapters in tests.

Workflow:
1. Claim the job (another worker may win; that is not an error)
2. Load and decrypt the tenant's credentials
3. Resolve the window (explicit job window, else derived from last_sync_at)
4. Authenticate
5. Page loop: fetch -> import -> record progress (heartbeat)
6. Complete, advance last_sync_at, notify, mark notification sent

Any failure is written to the job record before process_job returns:
retryable errors send the job back to pending with a backoff, everything
else fails it terminally and notifies the tenant.
Every write carries the claim token, so a worker whose job was reaped and
claimed elsewhere stops at its next write instead of overwriting the job.
"""

import logging
import math
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ...api.error_sanitizer import sanitize_error_message
from ...api.exceptions import (
    AlreadyClaimed,
    ClaimLost,
    ConfigurationError,
    CredentialError,
    MissingCredentialFields,
    PosSyncError,
    StorageError,
    SyncError,
    TimeoutError,
    UpstreamAPIError,
    UpstreamAuthError,
)
from ...api.resilience import backoff_delay, with_timeout
from ...api.vault import CREDENTIAL_FIELDS, CredentialVault
from ..domain.entities import (
    DEFAULT_LOOKBACK_DAYS,
    JobError,
    JobStatus,
    Page,
    PageCursor,
    SyncJob,
    SyncNotification,
    SyncProgress,
    SyncResult,
    compute_window,
)
from ..domain.ports import (
    ICredentialRepository,
    IJobQueue,
    INotifier,
    IRemoteFetcher,
    ISyncJobStore,
)
from .import_batch import ImportPipeline

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures that will not go away by trying again
NON_RETRYABLE_ERRORS = (
    ConfigurationError,
    CredentialError,
    UpstreamAuthError,
    StorageError,
)


def is_retryable(exc: Exception) -> bool:
    """Whether a job-level failure should send the job back to pending."""
    if isinstance(exc, NON_RETRYABLE_ERRORS):
        return False
    if isinstance(exc, UpstreamAPIError):
        # 429 / 5xx that survived the client's own retries; other 4xx are request bugs
        return exc.recoverable
    return True


class SyncOrchestrator:
    """Runs sync jobs.

    Example:
        orchestrator = SyncOrchestrator(
            store=PostgresSyncJobStore(pool),
            queue=PostgresJobQueue(pool),
            fetcher=ToastFetcher(client, ToastAuthenticator()),
            pipeline=ImportPipeline(PostgresTransactionRepository(pool), ToastTransactionMapper()),
            credentials=PostgresCredentialRepository(pool),
            vault=CredentialVault.from_env(),
            notifier=LoggingNotifier(),
        )
        await orchestrator.run_once()
    """

    def __init__(
        self,
        store: ISyncJobStore,
        queue: IJobQueue,
        fetcher: IRemoteFetcher,
        pipeline: ImportPipeline,
        credentials: ICredentialRepository,
        vault: CredentialVault,
        notifier: INotifier,
        page_size: int = 100,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        retry_delay_seconds: float = 5.0,
        page_timeout_seconds: float = 120.0,
        job_timeout_seconds: float = 3600.0,
    ):
        """Initialize the orchestrator with its dependencies.

        Args:
            page_size: Provider page size, used to turn a total count into total pages
            lookback_days: Full-sync lookback when the job has no window
            retry_delay_seconds: Base delay before a failed job is dequeueable again
            page_timeout_seconds: Deadline for each fetch / import / store call
            job_timeout_seconds: Deadline for the whole job
        """
        self.store = store
        self.queue = queue
        self.fetcher = fetcher
        self.pipeline = pipeline
        self.credentials = credentials
        self.vault = vault
        self.notifier = notifier
        self.page_size = page_size
        self.lookback_days = lookback_days
        self.retry_delay_seconds = retry_delay_seconds
        self.page_timeout_seconds = page_timeout_seconds
        self.job_timeout_seconds = job_timeout_seconds

    # ----------------------------------------
    # Entry points
    # ----------------------------------------

    async def run_once(self) -> SyncResult | None:
        """Dequeue and process at most one job."""
        job_id = await self.queue.dequeue()
        if job_id is None:
            return None
        return await self.process_job(job_id)

    async def reap(self, ttl_seconds: float) -> list[str]:
        """Return stalled processing jobs to the queue (or fail them if exhausted)."""
        reaped = await self.store.reap_stale(ttl_seconds)
        for job_id in reaped:
            job = await self.store.get(job_id)
            if job and job.status == JobStatus.FAILED:
                await self._notify_failure(job)
        return reaped

    async def process_job(self, job_id: str) -> SyncResult | None:
        """Process one job end to end.

        Returns:
            SyncResult if the job completed, None if it was claimed elsewhere
            or failed (the failure is on the job record)
        """
        try:
            job = await with_timeout(self.store.claim, self.page_timeout_seconds, job_id, operation="claim")
        except AlreadyClaimed:
            logger.debug(f"Job {job_id} already claimed, skipping")
            return None

        logger.info(
            f"Processing {job_id} for restaurant {job.restaurant_id} "
            f"(attempt {job.attempts + 1}/{job.max_attempts}, trigger={job.trigger.value})"
        )

        try:
            return await self._run(job)
        except ClaimLost:
            logger.warning(f"Lost claim on {job_id} to another worker, abandoning this attempt")
            return None
        except Exception as e:
            await self._handle_failure(job, e)
            return None

    # ----------------------------------------
    # Job body
    # ----------------------------------------

    async def _run(self, job: SyncJob) -> SyncResult:
        started = time.monotonic()
        deadline = started + self.job_timeout_seconds

        record = await self._bounded(deadline, self.credentials.get, job.restaurant_id, operation="load credentials")
        if record is None:
            raise MissingCredentialFields(missing=list(CREDENTIAL_FIELDS), present=[])
        credentials = self.vault.decrypt_credential_set(record.to_vault_input())

        window = job.window or compute_window(record.last_sync_at, lookback_days=self.lookback_days)
        token = await self._bounded(deadline, self.fetcher.authenticate, credentials, operation="authenticate")

        progress = SyncProgress()
        cursor: PageCursor | None = PageCursor()

        while cursor is not None:
            page = await self._bounded(
                deadline,
                self.fetcher.fetch_page,
                token,
                credentials.location_guid,
                window,
                cursor,
                operation="fetch_page",
            )
            tally = await self._bounded(
                deadline,
                self.pipeline.import_batch,
                job.restaurant_id,
                page.records,
                operation="import_batch",
            )

            progress.current_page += 1
            progress.orders_processed += len(page.records)
            progress.orders_imported += tally.imported
            progress.orders_skipped += tally.skipped_duplicates
            progress.orders_failed += tally.failed
            self._advance_chunk(progress, page)
            if page.done:
                progress.total_pages = progress.current_page

            await self._bounded(
                deadline,
                self.store.update_progress,
                job.job_id,
                progress,
                job.claim_token,
                operation="update_progress",
            )
            cursor = page.next_cursor

        result = SyncResult(
            orders_imported=progress.orders_imported,
            orders_skipped=progress.orders_skipped,
            orders_failed=progress.orders_failed,
            total_pages=progress.current_page,
            duration_ms=int((time.monotonic() - started) * 1000),
            start_date=window.start_date,
            end_date=window.end_date,
            full_sync=window.full_sync,
        )
        completed = await self._bounded(
            deadline, self.store.complete, job.job_id, result, job.claim_token, operation="complete"
        )

        logger.info(
            f"Completed {job.job_id}: {result.orders_imported} imported, "
            f"{result.orders_skipped} duplicates, {result.orders_failed} failed, "
            f"{result.total_pages} pages in {result.duration_ms}ms"
        )

        # The job is terminal from here on; later errors must not touch its status
        try:
            await with_timeout(
                self.credentials.set_last_sync_at,
                self.page_timeout_seconds,
                job.restaurant_id,
                window.end_date,
                operation="set_last_sync_at",
            )
        except PosSyncError as e:
            logger.error(f"Could not advance last_sync_at for {job.restaurant_id}: {e}")

        await self._notify(
            completed,
            SyncNotification(
                restaurant_id=job.restaurant_id,
                job_id=job.job_id,
                orders_imported=result.orders_imported,
                orders_failed=result.orders_failed,
                duration_ms=result.duration_ms,
                success=True,
                notification_email=completed.notification_email,
            ),
        )
        return result

    def _advance_chunk(self, progress: SyncProgress, page: Page) -> None:
        """Per-chunk page accounting; provider totals describe one chunk only."""
        if progress.current_chunk != page.chunk_index + 1:
            progress.current_chunk = page.chunk_index + 1
            progress.chunk_page = 0
            progress.chunk_total_pages = None
        progress.total_chunks = page.total_chunks
        progress.chunk_page += 1

        if page.estimated_total is not None:
            progress.chunk_total_pages = max(progress.chunk_page, math.ceil(page.estimated_total / self.page_size))
        if page.done or page.next_cursor.chunk_index != page.chunk_index:
            progress.chunk_total_pages = progress.chunk_page

        if page.total_chunks <= 1:
            # One chunk: its totals are the window's totals
            progress.total_pages = progress.chunk_total_pages
            if page.estimated_total is not None:
                progress.estimated_total = page.estimated_total

    async def _bounded(
        self,
        deadline: float,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        operation: str,
    ) -> T:
        """Call func with the page timeout, shortened to what is left of the job budget."""
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError(
                f"Job exceeded {self.job_timeout_seconds:g}s before {operation}",
                timeout_seconds=self.job_timeout_seconds,
            )
        return await with_timeout(func, min(self.page_timeout_seconds, remaining), *args, operation=operation)

    # ----------------------------------------
    # Failure path
    # ----------------------------------------

    async def _handle_failure(self, job: SyncJob, exc: Exception) -> None:
        if not isinstance(exc, PosSyncError):
            logger.exception(f"Unexpected error in {job.job_id}")
            exc = SyncError(f"Unexpected error: {type(exc).__name__}: {exc}", cause=exc)

        retryable = is_retryable(exc)
        delay = backoff_delay(job.attempts + 1, self.retry_delay_seconds) if retryable else 0.0
        error = JobError.from_exception(exc)

        logger.error(
            f"Job {job.job_id} failed ({'retryable' if retryable else 'terminal'}): {exc}",
            extra={"restaurant_id": job.restaurant_id, "code": error.code},
        )

        try:
            failed = await with_timeout(
                self.store.fail,
                self.page_timeout_seconds,
                job.job_id,
                error,
                retryable,
                delay,
                job.claim_token,
                operation="fail",
            )
        except ClaimLost:
            logger.warning(f"Lost claim on {job.job_id} to another worker, failure not recorded")
            return
        except PosSyncError as store_error:
            # Left in processing; the stale-job reaper will pick it up
            logger.error(f"Could not record failure of {job.job_id}: {store_error}")
            return

        if failed.status == JobStatus.FAILED:
            await self._notify_failure(failed)
        else:
            logger.warning(
                f"Job {job.job_id} will retry in {delay:.1f}s "
                f"(attempt {failed.attempts}/{failed.max_attempts} used)"
            )

    async def _notify_failure(self, job: SyncJob) -> None:
        result = job.result
        duration_ms = 0
        if job.started_at and job.completed_at:
            duration_ms = int((job.completed_at - job.started_at).total_seconds() * 1000)
        await self._notify(
            job,
            SyncNotification(
                restaurant_id=job.restaurant_id,
                job_id=job.job_id,
                orders_imported=result.orders_imported if result else job.progress.orders_imported,
                orders_failed=result.orders_failed if result else job.progress.orders_failed,
                duration_ms=duration_ms,
                success=False,
                error_message=sanitize_error_message(job.error.message if job.error else None),
                notification_email=job.notification_email,
            ),
        )

    async def _notify(self, job: SyncJob, notification: SyncNotification) -> None:
        """Deliver a notification; delivery problems never change the job outcome."""
        try:
            await with_timeout(self.notifier.notify, self.page_timeout_seconds, notification, operation="notify")
            await self.store.mark_notification_sent(job.job_id)
        except Exception as e:
            logger.warning(f"Notification for {job.job_id} was not delivered: {e}")
