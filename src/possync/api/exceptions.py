#!/usr/bin/env python3
"""Exception Hierarchy for the POS Sync Pipeline.

Every failure the sync pipeline can produce is expressed as a subclass of
PosSyncError, so callers can catch the whole family with one clause and the
worker can decide between retry and terminal failure from the exception type
alone.

Design Principles:
    - All exceptions inherit from PosSyncError
    - Exceptions preserve context (original error, timestamp, details)
    - Exceptions are categorized by recoverability
    - Messages are human readable and field specific

Exception Hierarchy:
    PosSyncError (base)
    ├── ConfigurationError (unrecoverable - fix config)
    │   └── MissingCredentialFields
    ├── CredentialError (unrecoverable - re-enter credentials)
    │   ├── MalformedCiphertext
    │   └── AuthenticationFailed
    ├── UpstreamAuthError (unrecoverable - credentials invalid or revoked)
    ├── UpstreamAPIError (may be recoverable)
    │   ├── RateLimitError
    │   └── ServerError
    ├── TransientNetworkError (recoverable - retry)
    │   ├── ConnectionError
    │   └── TimeoutError
    ├── StorageError (unrecoverable without operator)
    │   ├── ConnectionPoolError
    │   ├── TransactionError
    │   └── IntegrityError
    ├── PartialRecordError (per record, never fatal)
    └── SyncError (job lifecycle)
        ├── CircuitOpenError
        ├── SyncAlreadyInProgress
        ├── AlreadyClaimed
        ├── ClaimLost
        ├── InvalidJobTransition
        └── JobNotFound
"""
from datetime import UTC, datetime
from typing import Any, Optional

# ============================================
# Base Exception
# ============================================

class PosSyncError(Exception):
    """Base exception for all POS sync errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "UPSTREAM_AUTH_FAILED")
        details: Additional context as a dictionary
        timestamp: When the error occurred (UTC)
        cause: The original exception that caused this error
        recoverable: Whether the job may succeed if retried
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.now(UTC)
        self.cause = cause
        self.recoverable = recoverable

        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.code:
            parts.insert(0, f"[{self.code}]")
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================
# Configuration Errors (Unrecoverable)
# ============================================

class ConfigurationError(PosSyncError):
    """Raised when configuration or tenant setup is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if missing_keys:
            details["missing_keys"] = missing_keys
        kwargs.setdefault("code", "CONFIGURATION_ERROR")
        super().__init__(
            message,
            details=details,
            recoverable=False,
            **kwargs,
        )


class MissingCredentialFields(ConfigurationError):
    """Raised when a credential set is incomplete.

    Names exactly which fields are absent and which are present, so the
    tenant can tell a half-finished connection apart from a bad key.
    """

    def __init__(
        self,
        missing: list[str],
        present: list[str],
        **kwargs,
    ):
        message = f"Missing credential fields: {', '.join(missing)}"
        if present:
            message += f" (present: {', '.join(present)})"
        details = kwargs.pop("details", {})
        details["missing_fields"] = list(missing)
        details["present_fields"] = list(present)
        super().__init__(
            message,
            code="MISSING_CREDENTIAL_FIELDS",
            details=details,
            **kwargs,
        )
        self.missing = list(missing)
        self.present = list(present)


# ============================================
# Credential Vault Errors (Unrecoverable)
# ============================================

class CredentialError(PosSyncError):
    """Base for failures decrypting stored credentials."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", False)
        super().__init__(message, **kwargs)


class MalformedCiphertext(CredentialError):
    """Stored value is not in <ivHex>:<authTagHex>:<cipherHex> form."""

    def __init__(self, message: str = "Invalid encrypted data format", segments: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        if segments is not None:
            details["segments"] = segments
        super().__init__(message, code="MALFORMED_CIPHERTEXT", details=details, **kwargs)


class AuthenticationFailed(CredentialError):
    """Authentication tag did not verify (tampered data or wrong key)."""

    def __init__(self, message: str = "Ciphertext failed authentication", **kwargs):
        super().__init__(message, code="CIPHERTEXT_AUTH_FAILED", **kwargs)


# ============================================
# Upstream (POS Provider) Errors
# ============================================

class UpstreamAuthError(PosSyncError):
    """POS provider rejected our credentials.

    Not retried: the credentials are most likely invalid or revoked.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(
            message,
            code="UPSTREAM_AUTH_FAILED",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.status_code = status_code


class UpstreamAPIError(PosSyncError):
    """Raised when the POS provider returns an error response."""

    def __init__(
        self,
        message: str,
        status_code: int,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
        response_body: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["status_code"] = status_code
        if endpoint:
            details["endpoint"] = endpoint
        if method:
            details["method"] = method
        if response_body:
            details["response_body"] = response_body[:500]

        recoverable = status_code in (429, 500, 502, 503, 504)
        kwargs.setdefault("code", f"UPSTREAM_HTTP_{status_code}")

        super().__init__(
            message,
            details=details,
            recoverable=recoverable,
            **kwargs,
        )
        self.status_code = status_code
        self.endpoint = endpoint
        self.method = method
        self.response_body = response_body


class RateLimitError(UpstreamAPIError):
    """Raised when the provider returns 429."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if retry_after is not None:
            details["retry_after_seconds"] = retry_after
        kwargs.pop("status_code", None)
        super().__init__(
            message,
            status_code=429,
            code="RATE_LIMITED",
            details=details,
            **kwargs,
        )
        self.retry_after = retry_after


class ServerError(UpstreamAPIError):
    """Raised when the provider returns 5xx."""

    def __init__(self, message: str, status_code: int = 500, **kwargs):
        super().__init__(
            message,
            status_code=status_code,
            code="UPSTREAM_SERVER_ERROR",
            **kwargs,
        )


# ============================================
# Network Errors (Recoverable)
# ============================================

class TransientNetworkError(PosSyncError):
    """Network-level failure that is expected to clear on retry."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "TRANSIENT_NETWORK_ERROR")
        super().__init__(message, recoverable=True, **kwargs)


class ConnectionError(TransientNetworkError):
    """Failed to establish a connection to the provider."""

    def __init__(self, message: str, host: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if host:
            details["host"] = host
        super().__init__(message, code="CONNECTION_FAILED", details=details, **kwargs)


class TimeoutError(TransientNetworkError):
    """An operation exceeded its deadline."""

    def __init__(self, message: str, timeout_seconds: Optional[float] = None, **kwargs):
        details = kwargs.pop("details", {})
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        kwargs.setdefault("code", "TIMEOUT")
        super().__init__(message, details=details, **kwargs)
        self.timeout_seconds = timeout_seconds


# ============================================
# Storage Errors (Operator Intervention)
# ============================================

class StorageError(PosSyncError):
    """Base for database failures. Always logged with full context."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "STORAGE_ERROR")
        kwargs.setdefault("recoverable", False)
        super().__init__(message, **kwargs)


class ConnectionPoolError(StorageError):
    """Connection pool is missing, exhausted, or unreachable."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code="DB_POOL_ERROR", **kwargs)


class TransactionError(StorageError):
    """Transaction could not start, commit, or timed out."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        super().__init__(message, code="DB_TRANSACTION_ERROR", details=details, **kwargs)


class IntegrityError(StorageError):
    """A database constraint was violated."""

    def __init__(self, message: str, constraint: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if constraint:
            details["constraint"] = constraint
        super().__init__(message, code="DB_INTEGRITY_ERROR", details=details, **kwargs)
        self.constraint = constraint


# ============================================
# Record Errors (Per Record, Non-Fatal)
# ============================================

class PartialRecordError(PosSyncError):
    """A single provider record could not be normalized.

    Counted in ordersFailed; never aborts the batch.
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        external_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if external_id:
            details["external_id"] = external_id
        super().__init__(message, code="PARTIAL_RECORD", details=details, **kwargs)
        self.field = field
        self.external_id = external_id


# ============================================
# Job Lifecycle Errors
# ============================================

class SyncError(PosSyncError):
    """Base for sync job failures."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "SYNC_ERROR")
        super().__init__(message, **kwargs)


class CircuitOpenError(SyncError):
    """Circuit breaker is open; the provider is considered down."""

    def __init__(
        self,
        message: str = "Circuit breaker is open",
        reset_at: Optional[datetime] = None,
        failure_count: int = 0,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["failure_count"] = failure_count
        if reset_at:
            details["reset_at"] = reset_at.isoformat()
        super().__init__(
            message,
            code="CIRCUIT_OPEN",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.reset_at = reset_at
        self.failure_count = failure_count


class SyncAlreadyInProgress(SyncError):
    """Tenant already has a pending or processing job."""

    def __init__(self, restaurant_id: str, job_id: str, **kwargs):
        details = kwargs.pop("details", {})
        details["restaurant_id"] = restaurant_id
        details["job_id"] = job_id
        super().__init__(
            f"A sync is already in progress for restaurant {restaurant_id}",
            code="SYNC_IN_PROGRESS",
            details=details,
            **kwargs,
        )
        self.restaurant_id = restaurant_id
        self.job_id = job_id


class AlreadyClaimed(SyncError):
    """Job is no longer pending (another worker claimed it or it finished)."""

    def __init__(self, job_id: str, status: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["job_id"] = job_id
        if status:
            details["status"] = status
        super().__init__(
            f"Job {job_id} is not pending",
            code="ALREADY_CLAIMED",
            details=details,
            **kwargs,
        )
        self.job_id = job_id
        self.status = status


class ClaimLost(SyncError):
    """Job was reaped and claimed again by another worker.

    Raised to the worker holding the old claim token; its writes are refused.
    """

    def __init__(self, job_id: str, **kwargs):
        super().__init__(
            f"Claim on job {job_id} was lost to another worker",
            code="CLAIM_LOST",
            details={"job_id": job_id},
            **kwargs,
        )
        self.job_id = job_id


class InvalidJobTransition(SyncError):
    """Job is not in a state that allows the requested transition.

    Terminal jobs are immutable apart from notification_sent.
    """

    def __init__(self, job_id: str, action: str, status: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["job_id"] = job_id
        details["action"] = action
        if status:
            details["status"] = status
        super().__init__(
            f"Cannot {action} job {job_id} in status {status or 'unknown'}",
            code="INVALID_JOB_TRANSITION",
            details=details,
            **kwargs,
        )
        self.job_id = job_id
        self.action = action
        self.status = status


class JobNotFound(SyncError):
    """No job exists with the given id."""

    def __init__(self, job_id: str, **kwargs):
        super().__init__(
            f"Sync job not found: {job_id}",
            code="JOB_NOT_FOUND",
            details={"job_id": job_id},
            **kwargs,
        )
        self.job_id = job_id


# ============================================
# Exports
# ============================================

__all__ = [
    # Base
    "PosSyncError",
    # Configuration
    "ConfigurationError",
    "MissingCredentialFields",
    # Credentials
    "CredentialError",
    "MalformedCiphertext",
    "AuthenticationFailed",
    # Upstream
    "UpstreamAuthError",
    "UpstreamAPIError",
    "RateLimitError",
    "ServerError",
    # Network
    "TransientNetworkError",
    "ConnectionError",
    "TimeoutError",
    # Storage
    "StorageError",
    "ConnectionPoolError",
    "TransactionError",
    "IntegrityError",
    # Records
    "PartialRecordError",
    # Jobs
    "SyncError",
    "CircuitOpenError",
    "SyncAlreadyInProgress",
    "AlreadyClaimed",
    "ClaimLost",
    "InvalidJobTransition",
    "JobNotFound",
]
