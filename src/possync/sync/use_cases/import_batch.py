"""Import Batch Use Case - Idempotent import of one page of POS orders.

Workflow:
1. Compute each record's external id
2. Drop ids already stored for the tenant (one query) and repeats within the batch
3. Map the rest to Transaction entities; malformed records are counted, not raised
4. Insert with ON CONFLICT DO NOTHING; conflicts found at insert time are duplicates

Also home to BackfillAnalyticsUseCase, which re-derives the UTC analytic
fields of stored rows with the same mapper.
"""

import logging
from typing import Any

from ...api.exceptions import PartialRecordError
from ..domain.entities import ImportTally, Transaction
from ..domain.ports import ITransactionMapper, ITransactionRepository

logger = logging.getLogger(__name__)

# Per-record messages kept on the tally; the rest are only counted
MAX_ERROR_DETAILS = 20


class ImportPipeline:
    """Imports provider records for one tenant.

    Example:
        pipeline = ImportPipeline(
            repo=PostgresTransactionRepository(pool),
            mapper=ToastTransactionMapper(),
        )
        tally = await pipeline.import_batch("rest-1", page.records)
    """

    def __init__(self, repo: ITransactionRepository, mapper: ITransactionMapper):
        self.repo = repo
        self.mapper = mapper

    async def import_batch(self, restaurant_id: str, records: list[dict[str, Any]]) -> ImportTally:
        """Import one batch.

        Raises:
            StorageError: If the repository fails. Fatal for the job.
        """
        tally = ImportTally()
        if not records:
            return tally

        candidate_ids = [eid for eid in (self.mapper.external_id(r) for r in records) if eid]
        existing = await self.repo.existing_external_ids(restaurant_id, candidate_ids) if candidate_ids else set()

        seen: set[str] = set()
        to_insert: list[Transaction] = []

        for raw in records:
            external_id = self.mapper.external_id(raw)
            if external_id and (external_id in existing or external_id in seen):
                tally.skipped_duplicates += 1
                continue

            try:
                txn = self.mapper.map_to_entity(restaurant_id, raw)
            except PartialRecordError as e:
                tally.failed += 1
                self._record_error(tally, e.message, external_id)
                continue

            seen.add(txn.external_id)
            to_insert.append(txn)

        if to_insert:
            inserted = await self.repo.insert_transactions(to_insert)
            tally.imported = inserted
            # Rows another writer stored between the pre-check and the insert
            tally.skipped_duplicates += len(to_insert) - inserted

        if tally.failed:
            logger.warning(
                f"Restaurant {restaurant_id}: {tally.failed} of {len(records)} records "
                f"could not be mapped"
            )
        logger.debug(
            f"Imported batch for {restaurant_id}: {tally.imported} new, "
            f"{tally.skipped_duplicates} duplicates, {tally.failed} failed"
        )
        return tally

    @staticmethod
    def _record_error(tally: ImportTally, message: str, external_id: str | None) -> None:
        logger.debug(f"Skipping order {external_id or 'unknown'}: {message}")
        if len(tally.errors) < MAX_ERROR_DETAILS:
            tally.errors.append(f"{external_id or 'unknown'}: {message}")


class BackfillAnalyticsUseCase:
    """Re-derive hour_of_day / day_of_week for stored transactions.

    Rows imported before timezone normalization carry local-time buckets.
    Running the stored raw_data through the current mapper fixes them in
    place without refetching from the provider.
    """

    def __init__(self, repo: ITransactionRepository, mapper: ITransactionMapper):
        self.repo = repo
        self.mapper = mapper

    async def execute(self, restaurant_id: str | None = None, batch_size: int = 500) -> dict[str, int]:
        """Run the backfill.

        Args:
            restaurant_id: Limit to one tenant, or None for all tenants
            batch_size: Rows read and rewritten per round trip

        Returns:
            {"scanned", "updated", "failed"} counts
        """
        scanned = updated = failed = 0

        async for batch in self.repo.iter_raw(restaurant_id, batch_size=batch_size):
            transactions = []
            for rid, raw in batch:
                scanned += 1
                try:
                    transactions.append(self.mapper.map_to_entity(rid, raw))
                except PartialRecordError as e:
                    failed += 1
                    logger.debug(f"Backfill skipped a row for {rid}: {e.message}")
            updated += await self.repo.update_analytics(transactions)
            logger.info(f"Backfill progress: {scanned} scanned, {updated} updated")

        logger.info(f"Backfill finished: {scanned} scanned, {updated} updated, {failed} failed")
        return {"scanned": scanned, "updated": updated, "failed": failed}
