"""Use cases layer - Business logic orchestration for sync operations.

This layer contains the classes that drive the sync workflow:
- EnqueueSyncUseCase: validate credentials, create and enqueue a job (producer)
- SyncOrchestrator: claim, fetch, import, finalize (consumer)
- ImportPipeline / BackfillAnalyticsUseCase: idempotent import and analytics repair
- SyncStatusService: read-only progress views

Use cases depend only on ports, not concrete implementations.
"""

from .enqueue_sync import EnqueuedSync, EnqueueSyncUseCase
from .import_batch import BackfillAnalyticsUseCase, ImportPipeline
from .orchestrator import SyncOrchestrator, is_retryable
from .sync_status import SyncStatusService, percent_complete

__all__ = [
    "BackfillAnalyticsUseCase",
    "EnqueueSyncUseCase",
    "EnqueuedSync",
    "ImportPipeline",
    "SyncOrchestrator",
    "SyncStatusService",
    "is_retryable",
    "percent_complete",
]
