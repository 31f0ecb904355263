"""Tests for SyncOrchestrator.

Tests cover:
    - Happy path: claim, paged import, progress, completion, last_sync_at, notification
    - Claim races and empty queue
    - A reaped worker abandons its attempt once the job is claimed again
    - Retryable vs terminal failures and exhausted attempts
    - Notification failures never change the job outcome
    - Job and page deadlines
    - Reaping stalled jobs

Runs against the in-memory adapters with a scripted fetcher.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from src.possync.api.exceptions import (
    ConnectionError,
    ServerError,
    UpstreamAPIError,
    UpstreamAuthError,
)
from src.possync.api.vault import CredentialVault
from src.possync.sync.adapters import (
    InMemoryCredentialRepository,
    InMemoryJobQueue,
    InMemorySyncJobStore,
    InMemoryTransactionRepository,
    ToastTransactionMapper,
)
from src.possync.sync.domain.entities import (
    CredentialRecord,
    JobStatus,
    Page,
    PageCursor,
    SyncJobSpec,
    SyncWindow,
)
from src.possync.sync.domain.ports import INotifier, IRemoteFetcher
from src.possync.sync.use_cases import ImportPipeline, SyncOrchestrator, is_retryable, percent_complete

TEST_KEY = "k" * 32
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


def make_order(guid, total=12.5):
    return {"guid": guid, "openedDate": "2026-03-15T10:00:00Z", "checks": [{"totalAmount": total}]}


class FakeFetcher(IRemoteFetcher):
    """Serves a fixed list of pages; optional error on a given call."""

    def __init__(self, pages, auth_error=None, page_error=None, fetch_delay=0.0):
        self.pages = pages
        self.auth_error = auth_error
        self.page_error = page_error
        self.fetch_delay = fetch_delay
        self.calls = []

    async def authenticate(self, credentials):
        if self.auth_error:
            raise self.auth_error
        self.credentials = credentials
        return "token-123"

    async def fetch_page(self, token, location_guid, window, cursor):
        self.calls.append((token, location_guid, window, cursor))
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if self.page_error:
            raise self.page_error
        index = cursor.page - 1
        next_cursor = PageCursor(page=cursor.page + 1) if index + 1 < len(self.pages) else None
        return Page(records=self.pages[index], next_cursor=next_cursor, estimated_total=250)


class RecordingNotifier(INotifier):

    def __init__(self, error=None):
        self.sent = []
        self.error = error

    async def notify(self, notification):
        if self.error:
            raise self.error
        self.sent.append(notification)


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def vault():
    return CredentialVault(TEST_KEY)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    return InMemorySyncJobStore(clock=clock)


@pytest.fixture
def queue(store):
    return InMemoryJobQueue(store)


@pytest.fixture
def repo():
    return InMemoryTransactionRepository()


@pytest.fixture
def credentials(vault):
    return InMemoryCredentialRepository([
        CredentialRecord(
            restaurant_id="rest-1",
            client_id=vault.encrypt("client-abc"),
            encrypted_client_secret=vault.encrypt("secret-xyz"),
            location_id="loc-guid-1",
            notification_email="owner@example.com",
        )
    ])


@pytest.fixture
def notifier():
    return RecordingNotifier()


def build(store, queue, repo, credentials, vault, notifier, fetcher, **kwargs):
    return SyncOrchestrator(
        store=store,
        queue=queue,
        fetcher=fetcher,
        pipeline=ImportPipeline(repo, ToastTransactionMapper()),
        credentials=credentials,
        vault=vault,
        notifier=notifier,
        **kwargs,
    )


async def create_job(store, restaurant_id="rest-1", **kwargs):
    return await store.create(SyncJobSpec(restaurant_id=restaurant_id, **kwargs))


# ============================================
# Happy Path
# ============================================

class TestProcessJob:
    """Tests for a job that runs to completion."""

    @pytest.mark.asyncio
    async def test_completes_and_imports(self, store, queue, repo, credentials, vault, notifier):
        fetcher = FakeFetcher([
            [make_order("a"), make_order("b")],
            [make_order("c"), {"guid": "bad"}],
        ])
        orchestrator = build(store, queue, repo, credentials, vault, notifier, fetcher)
        job = await create_job(store)

        result = await orchestrator.process_job(job.job_id)

        assert result.orders_imported == 3
        assert result.orders_failed == 1
        assert result.total_pages == 2
        assert repo.count("rest-1") == 3

        stored = await store.get(job.job_id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.result == result
        assert stored.progress.current_page == 2
        assert stored.progress.orders_processed == 4
        assert stored.progress.total_pages == 2
        assert stored.progress.estimated_total == 250

    @pytest.mark.asyncio
    async def test_decrypts_credentials_for_fetcher(self, store, queue, repo, credentials, vault, notifier):
        fetcher = FakeFetcher([[]])
        orchestrator = build(store, queue, repo, credentials, vault, notifier, fetcher)
        job = await create_job(store)

        await orchestrator.process_job(job.job_id)

        assert fetcher.credentials.client_id == "client-abc"
        assert fetcher.credentials.client_secret == "secret-xyz"
        token, location_guid, _, cursor = fetcher.calls[0]
        assert token == "token-123"
        assert location_guid == "loc-guid-1"
        assert cursor == PageCursor()

    @pytest.mark.asyncio
    async def test_uses_job_window(self, store, queue, repo, credentials, vault, notifier):
        window = SyncWindow(NOW - timedelta(days=2), NOW)
        fetcher = FakeFetcher([[]])
        orchestrator = build(store, queue, repo, credentials, vault, notifier, fetcher)
        job = await create_job(store, window=window)

        result = await orchestrator.process_job(job.job_id)

        assert fetcher.calls[0][2] == window
        assert result.start_date == window.start_date
        assert result.end_date == window.end_date

    @pytest.mark.asyncio
    async def test_advances_last_sync_at(self, store, queue, repo, credentials, vault, notifier):
        window = SyncWindow(NOW - timedelta(days=2), NOW)
        orchestrator = build(store, queue, repo, credentials, vault, notifier, FakeFetcher([[]]))
        job = await create_job(store, window=window)

        await orchestrator.process_job(job.job_id)

        record = await credentials.get("rest-1")
        assert record.last_sync_at == NOW

    @pytest.mark.asyncio
    async def test_success_notification(self, store, queue, repo, credentials, vault, notifier):
        orchestrator = build(store, queue, repo, credentials, vault, notifier, FakeFetcher([[make_order("a")]]))
        job = await create_job(store, notification_email="ops@example.com")

        await orchestrator.process_job(job.job_id)

        assert len(notifier.sent) == 1
        sent = notifier.sent[0]
        assert sent.success is True
        assert sent.orders_imported == 1
        assert sent.notification_email == "ops@example.com"
        assert (await store.get(job.job_id)).notification_sent is True

    @pytest.mark.asyncio
    async def test_rerun_imports_nothing_new(self, store, queue, repo, credentials, vault, notifier):
        pages = [[make_order("a"), make_order("b")]]
        orchestrator = build(store, queue, repo, credentials, vault, notifier, FakeFetcher(pages))

        first = await create_job(store)
        await orchestrator.process_job(first.job_id)
        second = await create_job(store)
        result = await orchestrator.process_job(second.job_id)

        assert result.orders_imported == 0
        assert result.orders_skipped == 2
        assert repo.count("rest-1") == 2


class ChunkedFetcher(IRemoteFetcher):
    """Serves pages per chunk; every chunk reports its own totalCount."""

    def __init__(self, chunks, page_size):
        self.chunks = chunks
        self.page_size = page_size

    async def authenticate(self, credentials):
        return "token-123"

    async def fetch_page(self, token, location_guid, window, cursor):
        pages = self.chunks[cursor.chunk_index]
        records = pages[cursor.page - 1]
        if len(records) >= self.page_size:
            next_cursor = PageCursor(cursor.chunk_index, cursor.page + 1)
        elif cursor.chunk_index + 1 < len(self.chunks):
            next_cursor = PageCursor(cursor.chunk_index + 1, 1)
        else:
            next_cursor = None
        return Page(
            records=records,
            next_cursor=next_cursor,
            estimated_total=sum(len(p) for p in pages),
            chunk_index=cursor.chunk_index,
            total_chunks=len(self.chunks),
        )


class TestMultiChunkProgress:

    @staticmethod
    def chunk(prefix):
        return [[make_order(f"{prefix}-1"), make_order(f"{prefix}-2")], [make_order(f"{prefix}-3")]]

    @pytest.mark.asyncio
    async def test_percent_spans_all_chunks(self, store, queue, repo, credentials, vault, notifier):
        history = []
        record_progress = store.update_progress

        async def recording(job_id, progress, claim_token=None):
            history.append((progress.current_chunk, progress.total_chunks, percent_complete(progress)))
            return await record_progress(job_id, progress, claim_token)

        store.update_progress = recording
        fetcher = ChunkedFetcher([self.chunk("a"), self.chunk("b"), self.chunk("c")], page_size=2)
        orchestrator = build(store, queue, repo, credentials, vault, notifier, fetcher, page_size=2)
        job = await create_job(store)

        result = await orchestrator.process_job(job.job_id)

        assert result.orders_imported == 9
        assert history == [
            (1, 3, 16.7),
            (1, 3, 33.3),
            (2, 3, 50.0),
            (2, 3, 66.7),
            (3, 3, 83.3),
            (3, 3, 100.0),
        ]

    @pytest.mark.asyncio
    async def test_chunk_total_not_used_as_window_total(self, store, queue, repo, credentials, vault, notifier):
        snapshots = []
        record_progress = store.update_progress

        async def recording(job_id, progress, claim_token=None):
            snapshots.append((progress.total_pages, progress.estimated_total))
            return await record_progress(job_id, progress, claim_token)

        store.update_progress = recording
        fetcher = ChunkedFetcher([self.chunk("a"), self.chunk("b")], page_size=2)
        orchestrator = build(store, queue, repo, credentials, vault, notifier, fetcher, page_size=2)
        job = await create_job(store)

        await orchestrator.process_job(job.job_id)

        assert snapshots[:-1] == [(None, None)] * 3
        assert snapshots[-1] == (4, None)


class TestClaiming:

    @pytest.mark.asyncio
    async def test_already_claimed_returns_none(self, store, queue, repo, credentials, vault, notifier):
        orchestrator = build(store, queue, repo, credentials, vault, notifier, FakeFetcher([[]]))
        job = await create_job(store)
        await store.claim(job.job_id)

        assert await orchestrator.process_job(job.job_id) is None
        assert (await store.get(job.job_id)).status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_reclaimed_job_not_overwritten(self, store, queue, repo, credentials, vault, notifier, clock):
        """Worker stalls past the stale TTL; the reaper requeues and another worker claims."""
        job = await create_job(store)
        successor = {}

        class StallingFetcher(FakeFetcher):
            async def fetch_page(self, token, location_guid, window, cursor):
                clock.now = NOW + timedelta(seconds=1000)
                await store.reap_stale(900)
                successor["job"] = await store.claim(job.job_id)
                return await super().fetch_page(token, location_guid, window, cursor)

        fetcher = StallingFetcher([[make_order("a")], [make_order("b")]])
        orchestrator = build(store, queue, repo, credentials, vault, notifier, fetcher)

        assert await orchestrator.process_job(job.job_id) is None

        stored = await store.get(job.job_id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.claim_token == successor["job"].claim_token
        assert stored.progress.current_page == 0
        assert stored.attempts == 1
        assert stored.error.code == "STALE_JOB"
        assert len(fetcher.calls) == 1
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_run_once_empty_queue(self, store, queue, repo, credentials, vault, notifier):
        orchestrator = build(store, queue, repo, credentials, vault, notifier, FakeFetcher([[]]))
        assert await orchestrator.run_once() is None

    @pytest.mark.asyncio
    async def test_run_once_processes_next(self, store, queue, repo, credentials, vault, notifier):
        orchestrator = build(store, queue, repo, credentials, vault, notifier, FakeFetcher([[make_order("a")]]))
        job = await create_job(store)
        await queue.enqueue(job.job_id)

        result = await orchestrator.run_once()

        assert result.orders_imported == 1
        assert await queue.dequeue() is None


# ============================================
# Failures
# ============================================

class TestFailures:
    """Tests for the failure path."""

    @pytest.mark.asyncio
    async def test_transient_error_requeues(self, store, queue, repo, credentials, vault, notifier, clock):
        fetcher = FakeFetcher([[]], page_error=ConnectionError("reset by peer"))
        orchestrator = build(store, queue, repo, credentials, vault, notifier, fetcher, retry_delay_seconds=5.0)
        job = await create_job(store)

        assert await orchestrator.process_job(job.job_id) is None

        stored = await store.get(job.job_id)
        assert stored.status == JobStatus.PENDING
        assert stored.attempts == 1
        assert stored.error.code == "CONNECTION_FAILED"
        assert stored.available_at == NOW + timedelta(seconds=5)
        assert notifier.sent == []

        # Not dequeueable until the backoff elapses
        assert await queue.dequeue() is None
        clock.now = NOW + timedelta(seconds=5)
        assert await queue.dequeue() == job.job_id

    @pytest.mark.asyncio
    async def test_retries_exhausted_fails_and_notifies(self, store, queue, repo, credentials, vault, notifier):
        fetcher = FakeFetcher([[]], page_error=ServerError("bad gateway", status_code=502))
        orchestrator = build(store, queue, repo, credentials, vault, notifier, fetcher)
        job = await create_job(store, max_attempts=1)

        await orchestrator.process_job(job.job_id)

        stored = await store.get(job.job_id)
        assert stored.status == JobStatus.FAILED
        assert stored.attempts == 1
        assert stored.completed_at is not None
        assert len(notifier.sent) == 1
        assert notifier.sent[0].success is False

    @pytest.mark.asyncio
    async def test_auth_error_is_terminal(self, store, queue, repo, credentials, vault, notifier):
        fetcher = FakeFetcher([[]], auth_error=UpstreamAuthError("invalid client", status_code=401))
        orchestrator = build(store, queue, repo, credentials, vault, notifier, fetcher)
        job = await create_job(store)

        await orchestrator.process_job(job.job_id)

        stored = await store.get(job.job_id)
        assert stored.status == JobStatus.FAILED
        assert stored.attempts == 1
        assert stored.error.code == "UPSTREAM_AUTH_FAILED"
        assert notifier.sent[0].error_message
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_default_attempts_retry_twice_then_fail(
        self, store, queue, repo, credentials, vault, notifier, clock
    ):
        fetcher = FakeFetcher([[]], page_error=ConnectionError("reset by peer"))
        orchestrator = build(store, queue, repo, credentials, vault, notifier, fetcher, retry_delay_seconds=5.0)
        job = await create_job(store)
        assert job.max_attempts == 3
        await queue.enqueue(job.job_id)

        await orchestrator.run_once()
        stored = await store.get(job.job_id)
        assert (stored.status, stored.attempts) == (JobStatus.PENDING, 1)
        assert stored.available_at == NOW + timedelta(seconds=5)
        assert await orchestrator.run_once() is None

        clock.now = NOW + timedelta(seconds=5)
        await orchestrator.run_once()
        stored = await store.get(job.job_id)
        assert (stored.status, stored.attempts) == (JobStatus.PENDING, 2)
        assert stored.available_at == NOW + timedelta(seconds=15)

        clock.now = NOW + timedelta(seconds=15)
        await orchestrator.run_once()
        stored = await store.get(job.job_id)
        assert (stored.status, stored.attempts) == (JobStatus.FAILED, 3)
        assert stored.completed_at == NOW + timedelta(seconds=15)
        assert len(fetcher.calls) == 3
        assert len(notifier.sent) == 1
        assert notifier.sent[0].success is False

    @pytest.mark.asyncio
    async def test_missing_credentials_is_terminal(self, store, queue, repo, vault, notifier):
        orchestrator = build(
            store, queue, repo, InMemoryCredentialRepository(), vault, notifier, FakeFetcher([[]])
        )
        job = await create_job(store)

        await orchestrator.process_job(job.job_id)

        stored = await store.get(job.job_id)
        assert stored.status == JobStatus.FAILED
        assert stored.error.code == "MISSING_CREDENTIAL_FIELDS"

    @pytest.mark.asyncio
    async def test_undecryptable_secret_is_terminal(self, store, queue, repo, vault, notifier):
        credentials = InMemoryCredentialRepository([
            CredentialRecord(
                restaurant_id="rest-1",
                client_id=vault.encrypt("client-abc"),
                encrypted_client_secret=CredentialVault("z" * 32).encrypt("secret"),
                location_id="loc-guid-1",
            )
        ])
        orchestrator = build(store, queue, repo, credentials, vault, notifier, FakeFetcher([[]]))
        job = await create_job(store)

        await orchestrator.process_job(job.job_id)

        stored = await store.get(job.job_id)
        assert stored.status == JobStatus.FAILED
        assert "secret" not in stored.error.message

    @pytest.mark.asyncio
    async def test_plaintext_client_id_is_terminal(self, store, queue, repo, vault, notifier):
        credentials = InMemoryCredentialRepository([
            CredentialRecord(
                restaurant_id="rest-1",
                client_id="plain-client",
                encrypted_client_secret=vault.encrypt("secret"),
                location_id="loc-guid-1",
            )
        ])
        fetcher = FakeFetcher([[]])
        orchestrator = build(store, queue, repo, credentials, vault, notifier, fetcher)
        job = await create_job(store)

        await orchestrator.process_job(job.job_id)

        stored = await store.get(job.job_id)
        assert stored.status == JobStatus.FAILED
        assert stored.error.code == "MALFORMED_CIPHERTEXT"
        assert not hasattr(fetcher, "credentials")
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped(self, store, queue, repo, credentials, vault, notifier):
        fetcher = FakeFetcher([[]], page_error=KeyError("data"))
        orchestrator = build(store, queue, repo, credentials, vault, notifier, fetcher)
        job = await create_job(store)

        await orchestrator.process_job(job.job_id)

        stored = await store.get(job.job_id)
        assert stored.status == JobStatus.PENDING
        assert "KeyError" in stored.error.message

    @pytest.mark.asyncio
    async def test_partial_progress_kept_on_failure(self, store, queue, repo, credentials, vault, notifier):
        class FailsOnSecondPage(FakeFetcher):
            async def fetch_page(self, token, location_guid, window, cursor):
                if cursor.page == 2:
                    raise ConnectionError("dropped")
                return await super().fetch_page(token, location_guid, window, cursor)

        fetcher = FailsOnSecondPage([[make_order("a")], [make_order("b")]])
        orchestrator = build(store, queue, repo, credentials, vault, notifier, fetcher)
        job = await create_job(store)

        await orchestrator.process_job(job.job_id)

        stored = await store.get(job.job_id)
        assert stored.progress.orders_imported == 1
        assert repo.count("rest-1") == 1

    @pytest.mark.asyncio
    async def test_notifier_failure_keeps_completion(self, store, queue, repo, credentials, vault):
        notifier = RecordingNotifier(error=RuntimeError("smtp down"))
        orchestrator = build(store, queue, repo, credentials, vault, notifier, FakeFetcher([[make_order("a")]]))
        job = await create_job(store)

        result = await orchestrator.process_job(job.job_id)

        assert result is not None
        stored = await store.get(job.job_id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.notification_sent is False

    @pytest.mark.asyncio
    async def test_store_failure_while_failing_leaves_job_for_reaper(
        self, store, queue, repo, credentials, vault, notifier
    ):
        from src.possync.api.exceptions import StorageError

        fetcher = FakeFetcher([[]], page_error=ConnectionError("dropped"))
        orchestrator = build(store, queue, repo, credentials, vault, notifier, fetcher)
        job = await create_job(store)
        store.fail = AsyncMock(side_effect=StorageError("db gone"))

        assert await orchestrator.process_job(job.job_id) is None
        assert (await store.get(job.job_id)).status == JobStatus.PROCESSING


class TestDeadlines:

    @pytest.mark.asyncio
    async def test_page_timeout_is_retryable(self, store, queue, repo, credentials, vault, notifier):
        fetcher = FakeFetcher([[]], fetch_delay=1.0)
        orchestrator = build(
            store, queue, repo, credentials, vault, notifier, fetcher, page_timeout_seconds=0.01
        )
        job = await create_job(store)

        await orchestrator.process_job(job.job_id)

        stored = await store.get(job.job_id)
        assert stored.status == JobStatus.PENDING
        assert "fetch_page" in stored.error.message

    @pytest.mark.asyncio
    async def test_job_timeout_caps_page_timeout(self, store, queue, repo, credentials, vault, notifier):
        fetcher = FakeFetcher([[]], fetch_delay=1.0)
        orchestrator = build(
            store, queue, repo, credentials, vault, notifier, fetcher,
            page_timeout_seconds=30.0, job_timeout_seconds=0.05,
        )
        job = await create_job(store)

        await asyncio.wait_for(orchestrator.process_job(job.job_id), timeout=5)

        assert (await store.get(job.job_id)).status == JobStatus.PENDING


# ============================================
# Reaper
# ============================================

class TestReap:

    @pytest.mark.asyncio
    async def test_stale_job_requeued(self, store, queue, repo, credentials, vault, notifier, clock):
        orchestrator = build(store, queue, repo, credentials, vault, notifier, FakeFetcher([[]]))
        job = await create_job(store)
        await store.claim(job.job_id)

        clock.now = NOW + timedelta(minutes=10)
        reaped = await orchestrator.reap(300)

        assert reaped == [job.job_id]
        stored = await store.get(job.job_id)
        assert stored.status == JobStatus.PENDING
        assert stored.error.code == "STALE_JOB"
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_stale_job_out_of_attempts_fails(self, store, queue, repo, credentials, vault, notifier, clock):
        orchestrator = build(store, queue, repo, credentials, vault, notifier, FakeFetcher([[]]))
        job = await create_job(store, max_attempts=1)
        await store.claim(job.job_id)

        clock.now = NOW + timedelta(minutes=10)
        await orchestrator.reap(300)

        assert (await store.get(job.job_id)).status == JobStatus.FAILED
        assert notifier.sent[0].success is False

    @pytest.mark.asyncio
    async def test_fresh_job_untouched(self, store, queue, repo, credentials, vault, notifier, clock):
        orchestrator = build(store, queue, repo, credentials, vault, notifier, FakeFetcher([[]]))
        job = await create_job(store)
        await store.claim(job.job_id)

        clock.now = NOW + timedelta(seconds=30)
        assert await orchestrator.reap(300) == []


class TestIsRetryable:

    @pytest.mark.parametrize("exc,expected", [
        (ConnectionError("reset"), True),
        (ServerError("oops", status_code=503), True),
        (UpstreamAPIError("bad request", status_code=400), False),
        (UpstreamAuthError("denied"), False),
        (RuntimeError("?"), True),
    ])
    def test_classification(self, exc, expected):
        assert is_retryable(exc) is expected
