"""Domain layer - Pure domain entities and port interfaces.

This layer contains:
- Entities: Pure data structures representing business objects
- Ports: Abstract interfaces defining contracts for adapters

No infrastructure dependencies allowed in this layer.
"""

from .entities import (
    CredentialRecord,
    DecryptedCredentials,
    ImportTally,
    JobError,
    JobStatus,
    Page,
    PageCursor,
    SyncJob,
    SyncJobSpec,
    SyncNotification,
    SyncProgress,
    SyncProgressView,
    SyncResult,
    SyncTrigger,
    SyncWindow,
    Transaction,
    compute_window,
    new_job_id,
)
from .ports import (
    ICredentialRepository,
    IJobQueue,
    INotifier,
    IRemoteFetcher,
    ISyncJobStore,
    ITransactionMapper,
    ITransactionRepository,
)

__all__ = [
    # Credential Entities
    "CredentialRecord",
    "DecryptedCredentials",
    # Job Entities
    "JobError",
    "JobStatus",
    "SyncJob",
    "SyncJobSpec",
    "SyncProgress",
    "SyncResult",
    "SyncTrigger",
    "new_job_id",
    # Window and Paging
    "Page",
    "PageCursor",
    "SyncWindow",
    "compute_window",
    # Import Entities
    "ImportTally",
    "Transaction",
    # Views
    "SyncNotification",
    "SyncProgressView",
    # Ports
    "ICredentialRepository",
    "IJobQueue",
    "INotifier",
    "IRemoteFetcher",
    "ISyncJobStore",
    "ITransactionMapper",
    "ITransactionRepository",
]
