"""FastAPI dependency injection for the sync API.

This module provides dependency injection functions that create
and return adapter and use-case instances for use in API endpoints.

Lifecycle Management:
- Database pool: Initialized at startup, shared across requests
- Credential vault: Loaded once from ENCRYPTION_KEY at startup
- Both are released at application shutdown

Security:
- API key authentication required for all sync endpoints (not /health)
- Set API_KEY to the expected key; DISABLE_AUTH=true turns the check off
  for local development
"""

import logging
import os
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ...api.database import close_pool, create_pool
from ...api.exceptions import ConfigurationError, ConnectionPoolError
from ...api.vault import CredentialVault
from ...config import SyncSettings
from ..adapters import PostgresCredentialRepository, PostgresJobQueue, PostgresSyncJobStore
from ..domain.ports import ICredentialRepository, IJobQueue, ISyncJobStore
from ..use_cases import EnqueueSyncUseCase, SyncStatusService

logger = logging.getLogger(__name__)

# ========== API Key Authentication ==========

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(
    api_key: Optional[str] = Security(api_key_header),
) -> bool:
    """Verify the API key from the request header.

    Security model:
    - If DISABLE_AUTH=true (dev mode): authentication is disabled
    - Otherwise: API_KEY is required (fail-closed)

    Raises:
        HTTPException: 401 if the key is missing or wrong, 500 if API_KEY is unset
    """
    if os.getenv("DISABLE_AUTH", "").lower() == "true":
        logger.warning("Authentication disabled (DISABLE_AUTH=true). Only use this in development!")
        return True

    expected_key = os.getenv("API_KEY", "")
    if not expected_key:
        logger.error("API_KEY not set - rejecting request")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: API_KEY not set",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key. Provide X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    # Constant-time comparison
    if not secrets.compare_digest(api_key, expected_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return True


# ========== Global State ==========

_db_pool = None
_vault: Optional[CredentialVault] = None
_settings: Optional[SyncSettings] = None


async def init_db_pool():
    """Initialize the database connection pool. Called on application startup."""
    global _db_pool

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ConfigurationError("DATABASE_URL environment variable is required", missing_keys=["DATABASE_URL"])

    _db_pool = await create_pool(database_url, min_size=2, max_size=10)


async def close_db_pool():
    """Close the database connection pool. Called on application shutdown."""
    global _db_pool
    if _db_pool:
        await close_pool(_db_pool)
        _db_pool = None


def init_vault():
    """Load the credential vault from ENCRYPTION_KEY.

    A missing key leaves the vault unset; POST /pos/sync then answers 503
    while status endpoints keep working.
    """
    global _vault
    try:
        _vault = CredentialVault.from_env()
    except ConfigurationError as e:
        logger.warning(f"Credential vault unavailable: {e.message}")
        _vault = None


def get_db_pool():
    """Get the database connection pool.

    Raises:
        ConnectionPoolError: Rendered as 503 by the app's StorageError handler
    """
    if _db_pool is None:
        raise ConnectionPoolError("Database pool not initialized")
    return _db_pool


def get_settings() -> SyncSettings:
    global _settings
    if _settings is None:
        _settings = SyncSettings()
    return _settings


# ========== Dependency Functions ==========


def get_job_store() -> ISyncJobStore:
    return PostgresSyncJobStore(get_db_pool())


def get_job_queue() -> IJobQueue:
    return PostgresJobQueue(get_db_pool())


def get_credential_repo() -> ICredentialRepository:
    return PostgresCredentialRepository(get_db_pool())


def get_vault() -> CredentialVault:
    if _vault is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Credential vault not configured",
        )
    return _vault


def get_enqueue_use_case(
    store: ISyncJobStore = Depends(get_job_store),
    queue: IJobQueue = Depends(get_job_queue),
    credentials: ICredentialRepository = Depends(get_credential_repo),
    vault: CredentialVault = Depends(get_vault),
    settings: SyncSettings = Depends(get_settings),
) -> EnqueueSyncUseCase:
    return EnqueueSyncUseCase(
        store=store,
        queue=queue,
        credentials=credentials,
        vault=vault,
        lookback_days=settings.lookback_days,
        max_attempts=settings.max_attempts,
    )


def get_status_service(
    store: ISyncJobStore = Depends(get_job_store),
    queue: IJobQueue = Depends(get_job_queue),
    credentials: ICredentialRepository = Depends(get_credential_repo),
) -> SyncStatusService:
    return SyncStatusService(store=store, queue=queue, credentials=credentials)
