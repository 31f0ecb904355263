"""Tests for ImportPipeline and BackfillAnalyticsUseCase.

Tests cover:
    - Fresh, duplicate and malformed records in one batch
    - Duplicates inside a batch and conflicts found at insert time
    - Re-importing the same batch is a no-op
    - Storage failures propagate
    - Analytics backfill over stored raw payloads
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from src.possync.api.exceptions import StorageError
from src.possync.sync.adapters import InMemoryTransactionRepository, ToastTransactionMapper
from src.possync.sync.use_cases import BackfillAnalyticsUseCase, ImportPipeline


def make_order(guid, opened="2026-03-15T12:00:00.000Z", total=20.0):
    return {"guid": guid, "openedDate": opened, "checks": [{"totalAmount": total}]}


@pytest.fixture
def repo():
    return InMemoryTransactionRepository()


@pytest.fixture
def pipeline(repo):
    return ImportPipeline(repo=repo, mapper=ToastTransactionMapper())


# ============================================
# ImportPipeline
# ============================================

class TestImportBatch:
    """Tests for ImportPipeline.import_batch."""

    @pytest.mark.asyncio
    async def test_empty_batch(self, pipeline, repo):
        tally = await pipeline.import_batch("rest-1", [])
        assert tally.total == 0
        assert repo.rows == {}

    @pytest.mark.asyncio
    async def test_imports_new_orders(self, pipeline, repo):
        tally = await pipeline.import_batch("rest-1", [make_order("a"), make_order("b")])

        assert tally.imported == 2
        assert tally.skipped_duplicates == 0
        assert tally.failed == 0
        assert repo.count("rest-1") == 2

    @pytest.mark.asyncio
    async def test_mixed_batch(self, pipeline, repo):
        """One new, one already stored, one malformed."""
        await pipeline.import_batch("rest-1", [make_order("old")])

        bad = {"guid": "bad", "checks": [{"totalAmount": 5}]}
        tally = await pipeline.import_batch("rest-1", [make_order("new"), make_order("old"), bad])

        assert tally.imported == 1
        assert tally.skipped_duplicates == 1
        assert tally.failed == 1
        assert len(tally.errors) == 1
        assert tally.errors[0].startswith("bad:")
        assert repo.count("rest-1") == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("check", [
        None,
        {"totalAmount": 5, "payments": [None]},
        {"totalAmount": 5, "appliedDiscounts": ["10%"]},
        {"totalAmount": 5, "selections": [None]},
    ])
    async def test_null_nested_entries_fail_one_record(self, pipeline, repo, check):
        """A record with a null or non-object entry is counted, the batch carries on."""
        bad = {"guid": "bad", "openedDate": "2026-03-15T12:00:00.000Z", "checks": [check]}

        tally = await pipeline.import_batch("rest-1", [make_order("good"), bad, make_order("after")])

        assert tally.imported == 2
        assert tally.failed == 1
        assert tally.errors[0].startswith("bad:")
        assert repo.count("rest-1") == 2

    @pytest.mark.asyncio
    async def test_reimport_is_noop(self, pipeline, repo):
        batch = [make_order("a"), make_order("b")]
        await pipeline.import_batch("rest-1", batch)
        tally = await pipeline.import_batch("rest-1", batch)

        assert tally.imported == 0
        assert tally.skipped_duplicates == 2
        assert repo.count("rest-1") == 2

    @pytest.mark.asyncio
    async def test_duplicate_within_batch(self, pipeline, repo):
        tally = await pipeline.import_batch("rest-1", [make_order("a"), make_order("a")])
        assert tally.imported == 1
        assert tally.skipped_duplicates == 1

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, pipeline, repo):
        await pipeline.import_batch("rest-1", [make_order("a")])
        tally = await pipeline.import_batch("rest-2", [make_order("a")])
        assert tally.imported == 1
        assert repo.count("rest-2") == 1

    @pytest.mark.asyncio
    async def test_missing_guid_counted_as_failed(self, pipeline):
        tally = await pipeline.import_batch("rest-1", [{"openedDate": "2026-03-15T12:00:00Z"}])
        assert tally.failed == 1
        assert tally.errors[0].startswith("unknown:")

    @pytest.mark.asyncio
    async def test_insert_conflicts_counted_as_duplicates(self):
        """Rows written by another importer after the pre-check."""
        repo = AsyncMock()
        repo.existing_external_ids.return_value = set()
        repo.insert_transactions.return_value = 1
        pipeline = ImportPipeline(repo=repo, mapper=ToastTransactionMapper())

        tally = await pipeline.import_batch("rest-1", [make_order("a"), make_order("b")])

        assert tally.imported == 1
        assert tally.skipped_duplicates == 1

    @pytest.mark.asyncio
    async def test_storage_error_propagates(self):
        repo = AsyncMock()
        repo.existing_external_ids.side_effect = StorageError("connection lost")
        pipeline = ImportPipeline(repo=repo, mapper=ToastTransactionMapper())

        with pytest.raises(StorageError):
            await pipeline.import_batch("rest-1", [make_order("a")])

    @pytest.mark.asyncio
    async def test_error_details_capped(self, pipeline):
        bad = [{"guid": f"bad-{i}"} for i in range(30)]
        tally = await pipeline.import_batch("rest-1", bad)
        assert tally.failed == 30
        assert len(tally.errors) == 20


# ============================================
# BackfillAnalyticsUseCase
# ============================================

class TestBackfillAnalytics:
    """Tests for BackfillAnalyticsUseCase."""

    @pytest.mark.asyncio
    async def test_rewrites_stale_buckets(self, pipeline, repo):
        await pipeline.import_batch("rest-1", [make_order("a", opened="2026-03-14T23:30:00.000-0500")])
        row = repo.rows[("rest-1", "a")]
        # Simulate a row written with local-time buckets
        row.hour_of_day = 23
        row.day_of_week = 5

        stats = await BackfillAnalyticsUseCase(repo, ToastTransactionMapper()).execute()

        assert stats == {"scanned": 1, "updated": 1, "failed": 0}
        assert row.hour_of_day == 4
        assert row.day_of_week == 6
        assert row.opened_at == datetime(2026, 3, 15, 4, 30, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_scoped_to_restaurant(self, pipeline, repo):
        await pipeline.import_batch("rest-1", [make_order("a")])
        await pipeline.import_batch("rest-2", [make_order("b"), make_order("c")])

        stats = await BackfillAnalyticsUseCase(repo, ToastTransactionMapper()).execute(
            restaurant_id="rest-2", batch_size=1
        )
        assert stats["scanned"] == 2
        assert stats["updated"] == 2

    @pytest.mark.asyncio
    async def test_unmappable_rows_counted(self, pipeline, repo):
        await pipeline.import_batch("rest-1", [make_order("a")])
        repo.rows[("rest-1", "a")].raw_data = {"guid": "a"}

        stats = await BackfillAnalyticsUseCase(repo, ToastTransactionMapper()).execute()
        assert stats == {"scanned": 1, "updated": 0, "failed": 1}
