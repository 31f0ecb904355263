"""Adapters layer - Infrastructure implementations for sync operations.

This layer contains concrete implementations of the ports defined in the domain layer:
- PostgresSyncJobStore / PostgresJobQueue: sync_jobs table, ISyncJobStore / IJobQueue
- PostgresTransactionRepository: pos_transactions table, ITransactionRepository
- PostgresCredentialRepository: pos_credentials table, ICredentialRepository
- ToastFetcher: Toast ordersBulk API, IRemoteFetcher
- ToastTransactionMapper: Toast order -> Transaction, ITransactionMapper
- LoggingNotifier / WebhookNotifier: INotifier
- InMemory*: single-process implementations of every storage port
"""

from .field_mapper import ToastTransactionMapper
from .memory import (
    InMemoryCredentialRepository,
    InMemoryJobQueue,
    InMemorySyncJobStore,
    InMemoryTransactionRepository,
)
from .notifier import LoggingNotifier, WebhookNotifier, notifier_from_env
from .postgres_credential_repo import PostgresCredentialRepository
from .postgres_job_store import PostgresJobQueue, PostgresSyncJobStore
from .postgres_transaction_repo import PostgresTransactionRepository
from .toast_fetcher import ToastFetcher

__all__ = [
    # Jobs
    "InMemoryJobQueue",
    "InMemorySyncJobStore",
    "PostgresJobQueue",
    "PostgresSyncJobStore",
    # Transactions
    "InMemoryTransactionRepository",
    "PostgresTransactionRepository",
    "ToastFetcher",
    "ToastTransactionMapper",
    # Credentials
    "InMemoryCredentialRepository",
    "PostgresCredentialRepository",
    # Notifications
    "LoggingNotifier",
    "WebhookNotifier",
    "notifier_from_env",
]
