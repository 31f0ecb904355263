#!/usr/bin/env python3
"""Database Utilities for POS Sync.

This module provides the asyncpg plumbing the PostgreSQL adapters share:
    - Transaction context manager with automatic commit/rollback
    - Plain connection context manager with an acquire timeout
    - Conversion of driver exceptions into the StorageError family
    - Pool creation, shutdown and health check

Example:
    async with database_transaction(pool) as conn:
        await conn.execute("INSERT INTO pos_transactions ...")
        # Automatic commit on success, rollback on exception
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from .exceptions import (
    ConnectionPoolError,
    IntegrityError,
    PosSyncError,
    StorageError,
    TransactionError,
)

logger = logging.getLogger(__name__)

ACQUIRE_TIMEOUT_SECONDS = 30.0


# ============================================
# Connection Context Managers
# ============================================

async def _acquire(pool):
    if pool is None:
        raise ConnectionPoolError("Database connection pool is not initialized")
    try:
        return await asyncio.wait_for(pool.acquire(), timeout=ACQUIRE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        raise ConnectionPoolError(
            "Timeout acquiring database connection",
            details={"timeout_seconds": ACQUIRE_TIMEOUT_SECONDS},
        )
    except Exception as e:
        raise ConnectionPoolError(
            f"Failed to acquire database connection: {e}",
            cause=e,
        )


@asynccontextmanager
async def database_transaction(
    pool,
    isolation: str = "read_committed",
    readonly: bool = False,
) -> AsyncIterator[Any]:
    """Context manager for database transactions with automatic commit/rollback.

    Args:
        pool: asyncpg connection pool
        isolation: Transaction isolation level
        readonly: If True, transaction is read-only

    Yields:
        Database connection within transaction

    Raises:
        ConnectionPoolError: If connection cannot be acquired
        TransactionError: If transaction fails
        IntegrityError: If integrity constraint violated
    """
    conn = await _acquire(pool)
    try:
        transaction = conn.transaction(isolation=isolation, readonly=readonly)

        try:
            await transaction.start()
        except Exception as e:
            raise TransactionError(f"Failed to start transaction: {e}", cause=e)

        try:
            yield conn
            await transaction.commit()
            logger.debug("Transaction committed successfully")

        except Exception as e:
            try:
                await transaction.rollback()
                logger.debug("Transaction rolled back due to exception")
            except Exception as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")

            raise convert_db_exception(e)

    finally:
        await pool.release(conn)


@asynccontextmanager
async def database_connection(pool) -> AsyncIterator[Any]:
    """Connection without an explicit transaction (each statement autocommits).

    Driver exceptions raised inside the block are converted to StorageError;
    domain errors (PosSyncError) pass through unchanged.
    """
    conn = await _acquire(pool)
    try:
        yield conn
    except PosSyncError:
        raise
    except Exception as e:
        raise convert_db_exception(e)
    finally:
        await pool.release(conn)


# ============================================
# Error Conversion
# ============================================

def convert_db_exception(e: Exception) -> PosSyncError:
    """Convert a database exception to the appropriate StorageError subtype.

    Domain errors raised inside a transaction block are returned unchanged.
    """
    if isinstance(e, PosSyncError):
        return e

    error_str = str(e).lower()

    if "unique" in error_str or "duplicate" in error_str:
        return IntegrityError(f"Duplicate entry: {e}", constraint="unique", cause=e)

    if "foreign key" in error_str:
        return IntegrityError(f"Foreign key violation: {e}", constraint="foreign_key", cause=e)

    if "not null" in error_str:
        return IntegrityError(f"Not null violation: {e}", constraint="not_null", cause=e)

    if "deadlock" in error_str:
        return TransactionError(f"Deadlock detected: {e}", operation="transaction", cause=e)

    if "timeout" in error_str or "timed out" in error_str:
        return TransactionError(f"Database operation timed out: {e}", operation="query", cause=e)

    return StorageError(f"Database operation failed: {e}", cause=e)


# ============================================
# Connection Pool Helpers
# ============================================

async def create_pool(
    database_url: str,
    min_size: int = 2,
    max_size: int = 10,
    command_timeout: float = 60.0,
    **kwargs,
):
    """Create a database connection pool.

    Raises:
        ConnectionPoolError: If pool creation fails
    """
    import asyncpg

    try:
        pool = await asyncpg.create_pool(
            database_url,
            min_size=min_size,
            max_size=max_size,
            command_timeout=command_timeout,
            **kwargs,
        )
    except Exception as e:
        raise ConnectionPoolError(f"Failed to create database pool: {e}", cause=e)

    logger.info(f"Database pool created (min={min_size}, max={max_size})")
    return pool


async def close_pool(pool, timeout: float = 10.0):
    """Close database pool gracefully, terminating if it hangs."""
    if pool is None:
        return

    try:
        await asyncio.wait_for(pool.close(), timeout=timeout)
        logger.info("Database pool closed")
    except asyncio.TimeoutError:
        logger.warning(f"Pool close timed out after {timeout}s, terminating")
        pool.terminate()
    except Exception as e:
        logger.error(f"Error closing pool: {e}")
        pool.terminate()


# ============================================
# Health Check
# ============================================

async def check_database_health(pool) -> dict[str, Any]:
    """Check database connection health."""
    if pool is None:
        return {"healthy": False, "error": "Pool not initialized"}

    try:
        async with database_connection(pool) as conn:
            result = await conn.fetchval("SELECT 1")
            pool_size = pool.get_size()
            pool_free = pool.get_idle_size()

            return {
                "healthy": result == 1,
                "pool_size": pool_size,
                "pool_free": pool_free,
                "pool_used": pool_size - pool_free,
            }

    except Exception as e:
        return {"healthy": False, "error": str(e)}


__all__ = [
    "database_transaction",
    "database_connection",
    "convert_db_exception",
    "create_pool",
    "close_pool",
    "check_database_health",
]
