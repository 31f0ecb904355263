"""Sync module - Clean Architecture implementation of the POS sync pipeline.

Architecture:
    domain/     - Pure domain entities and port interfaces
    use_cases/  - Business logic (enqueue, import, orchestrate, status)
    adapters/   - Infrastructure implementations (PostgreSQL, Toast API, in-memory)
    api/        - FastAPI router exposing producers and status polling
"""

from .domain.entities import (
    JobStatus,
    SyncJob,
    SyncProgressView,
    SyncResult,
    SyncWindow,
    compute_window,
)
from .domain.ports import (
    ICredentialRepository,
    IJobQueue,
    INotifier,
    IRemoteFetcher,
    ISyncJobStore,
    ITransactionMapper,
    ITransactionRepository,
)

__all__ = [
    # Entities
    "JobStatus",
    "SyncJob",
    "SyncProgressView",
    "SyncResult",
    "SyncWindow",
    "compute_window",
    # Ports
    "ICredentialRepository",
    "IJobQueue",
    "INotifier",
    "IRemoteFetcher",
    "ISyncJobStore",
    "ITransactionMapper",
    "ITransactionRepository",
]
