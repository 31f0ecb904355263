"""POS provider and infrastructure modules.

Classes:
    PosClient: HTTP client with bounded retry and circuit breaker
    ToastAuthenticator: Per-tenant token manager for the Toast API
    CredentialVault: AES-256-GCM encryption for stored credentials

Exceptions:
    PosSyncError: Base exception for all sync errors
    ConfigurationError / MissingCredentialFields: Incomplete setup
    MalformedCiphertext / AuthenticationFailed: Unreadable stored credentials
    UpstreamAuthError: Provider rejected the credentials
    TransientNetworkError: Retryable network failure
    StorageError: Database failure
    PartialRecordError: A single record could not be normalized
    SyncAlreadyInProgress / AlreadyClaimed / JobNotFound: Job lifecycle

Resilience:
    CircuitBreaker: Fail fast while the provider is down
    retry_async: Retry with exponential backoff
    with_timeout: Deadline for any awaitable
"""
from .auth import CachedToken, ToastAuthenticator
from .client import PosClient
from .database import (
    check_database_health,
    close_pool,
    create_pool,
    database_connection,
    database_transaction,
)
from .exceptions import (
    AlreadyClaimed,
    AuthenticationFailed,
    CircuitOpenError,
    ClaimLost,
    ConfigurationError,
    CredentialError,
    InvalidJobTransition,
    JobNotFound,
    MalformedCiphertext,
    MissingCredentialFields,
    PartialRecordError,
    PosSyncError,
    RateLimitError,
    ServerError,
    StorageError,
    SyncAlreadyInProgress,
    SyncError,
    TransientNetworkError,
    UpstreamAPIError,
    UpstreamAuthError,
)
from .resilience import CircuitBreaker, retry_async, with_timeout
from .vault import CredentialVault

__all__ = [
    # Clients
    "PosClient",
    "ToastAuthenticator",
    "CachedToken",
    "CredentialVault",
    # Database
    "check_database_health",
    "close_pool",
    "create_pool",
    "database_connection",
    "database_transaction",
    # Exceptions
    "PosSyncError",
    "ConfigurationError",
    "MissingCredentialFields",
    "CredentialError",
    "MalformedCiphertext",
    "AuthenticationFailed",
    "UpstreamAuthError",
    "UpstreamAPIError",
    "RateLimitError",
    "ServerError",
    "TransientNetworkError",
    "StorageError",
    "PartialRecordError",
    "SyncError",
    "CircuitOpenError",
    "SyncAlreadyInProgress",
    "AlreadyClaimed",
    "ClaimLost",
    "InvalidJobTransition",
    "JobNotFound",
    # Resilience
    "CircuitBreaker",
    "retry_async",
    "with_timeout",
]
