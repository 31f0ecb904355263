"""PostgreSQL repository adapter for imported transactions.

Implements ITransactionRepository on the pos_transactions table. Inserts
are idempotent: the unique key (restaurant_id, external_id) plus
ON CONFLICT DO NOTHING means a re-fetched order is skipped, never
duplicated, even when two imports race.
"""

import json
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from ...api.database import database_connection, database_transaction
from ..domain.entities import Transaction
from ..domain.ports import ITransactionRepository
from .field_mapper import ToastTransactionMapper

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)


class PostgresTransactionRepository(ITransactionRepository):
    """PostgreSQL implementation of ITransactionRepository.

    Bulk operations use a single statement per batch:
    - SELECT ... = ANY($2) for the duplicate pre-check
    - INSERT ... SELECT FROM unnest(...) ON CONFLICT DO NOTHING RETURNING
      so the number of rows actually written is known
    - executemany() for analytic field rewrites
    """

    def __init__(self, pool: "asyncpg.Pool", mapper: ToastTransactionMapper | None = None):
        """Initialize the repository.

        Args:
            pool: asyncpg connection pool for database operations
            mapper: Builds insert records from Transaction entities
        """
        self.pool = pool
        self.mapper = mapper or ToastTransactionMapper()

    async def existing_external_ids(self, restaurant_id: str, external_ids: list[str]) -> set[str]:
        if not external_ids:
            return set()

        async with database_connection(self.pool) as conn:
            rows = await conn.fetch(
                """
                SELECT external_id FROM pos_transactions
                WHERE restaurant_id = $1 AND external_id = ANY($2::text[])
                """,
                restaurant_id,
                external_ids,
            )
        return {r["external_id"] for r in rows}

    async def insert_transactions(self, transactions: list[Transaction]) -> int:
        """Insert transactions, skipping any that already exist.

        Returns:
            Number of rows inserted (conflicts are not counted)
        """
        if not transactions:
            return 0

        records = [self.mapper.map_to_record(t) for t in transactions]
        columns = list(zip(*records))

        async with database_transaction(self.pool) as conn:
            rows = await conn.fetch(
                """
                INSERT INTO pos_transactions (
                    restaurant_id, external_id, opened_at, closed_at, paid_at,
                    order_type, status, payment_method, employee_id,
                    subtotal, tax_amount, tip_amount, discount_amount,
                    total_amount, tip_percentage, hour_of_day, day_of_week,
                    items, payments, raw_data, imported_at
                )
                SELECT
                    r, e, o, c, p, ot, s, pm, emp,
                    sub, tax, tip, disc, tot, pct, h, d,
                    i::jsonb, pay::jsonb, raw::jsonb, NOW()
                FROM unnest(
                    $1::text[], $2::text[], $3::timestamptz[], $4::timestamptz[], $5::timestamptz[],
                    $6::text[], $7::text[], $8::text[], $9::text[],
                    $10::numeric[], $11::numeric[], $12::numeric[], $13::numeric[],
                    $14::numeric[], $15::numeric[], $16::int[], $17::int[],
                    $18::text[], $19::text[], $20::text[]
                ) AS t(r, e, o, c, p, ot, s, pm, emp, sub, tax, tip, disc, tot, pct, h, d, i, pay, raw)
                ON CONFLICT (restaurant_id, external_id) DO NOTHING
                RETURNING external_id
                """,
                *[list(col) for col in columns],
            )

        inserted = len(rows)
        if inserted < len(records):
            logger.debug(f"Skipped {len(records) - inserted} conflicting transaction(s)")
        return inserted

    async def iter_raw(
        self,
        restaurant_id: str | None = None,
        batch_size: int = 500,
    ) -> AsyncIterator[list[tuple[str, dict[str, Any]]]]:
        """Keyset-paginate stored raw payloads for backfill."""
        last_key = ("", "")
        while True:
            async with database_connection(self.pool) as conn:
                rows = await conn.fetch(
                    """
                    SELECT restaurant_id, external_id, raw_data
                    FROM pos_transactions
                    WHERE ($1::text IS NULL OR restaurant_id = $1)
                      AND (restaurant_id, external_id) > ($2, $3)
                    ORDER BY restaurant_id, external_id
                    LIMIT $4
                    """,
                    restaurant_id,
                    last_key[0],
                    last_key[1],
                    batch_size,
                )
            if not rows:
                return

            yield [
                (r["restaurant_id"], json.loads(r["raw_data"]) if isinstance(r["raw_data"], str) else r["raw_data"])
                for r in rows
            ]
            last_key = (rows[-1]["restaurant_id"], rows[-1]["external_id"])

    async def update_analytics(self, transactions: list[Transaction]) -> int:
        if not transactions:
            return 0

        async with database_transaction(self.pool) as conn:
            await conn.executemany(
                """
                UPDATE pos_transactions
                SET opened_at = $3,
                    hour_of_day = $4,
                    day_of_week = $5
                WHERE restaurant_id = $1 AND external_id = $2
                """,
                [
                    (t.restaurant_id, t.external_id, t.opened_at, t.hour_of_day, t.day_of_week)
                    for t in transactions
                ],
            )
        return len(transactions)
