"""Enqueue Sync Use Case - The producer side of the sync pipeline.

Called by the login flow, POST /pos/sync and `main.py sync`. Validates the
tenant's stored credentials, fixes the window, creates the pending job and
hands it to the queue. Plaintext credentials are decrypted only to prove
they are usable and are discarded before the job is written.
"""

import logging
from dataclasses import dataclass

from ...api.exceptions import ConfigurationError, MissingCredentialFields
from ...api.vault import CREDENTIAL_FIELDS, CredentialVault
from ..domain.entities import (
    DEFAULT_LOOKBACK_DAYS,
    DEFAULT_MAX_ATTEMPTS,
    SyncJob,
    SyncJobSpec,
    SyncTrigger,
    SyncWindow,
    compute_window,
)
from ..domain.ports import ICredentialRepository, IJobQueue, ISyncJobStore

logger = logging.getLogger(__name__)


@dataclass
class EnqueuedSync:
    """What a producer gets back."""

    job: SyncJob
    window: SyncWindow

    @property
    def job_id(self) -> str:
        return self.job.job_id

    def to_dict(self) -> dict:
        return {
            "job_id": self.job.job_id,
            "sync_type": self.window.sync_type,
            "date_range": {
                "from": self.window.start_date.isoformat(),
                "to": self.window.end_date.isoformat(),
            },
        }


class EnqueueSyncUseCase:
    """Create and enqueue a sync job for a tenant.

    Example:
        use_case = EnqueueSyncUseCase(store, queue, credentials, vault)
        enqueued = await use_case.execute("rest-1", trigger=SyncTrigger.LOGIN)
    """

    def __init__(
        self,
        store: ISyncJobStore,
        queue: IJobQueue,
        credentials: ICredentialRepository,
        vault: CredentialVault,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.store = store
        self.queue = queue
        self.credentials = credentials
        self.vault = vault
        self.lookback_days = lookback_days
        self.max_attempts = max_attempts

    async def execute(
        self,
        restaurant_id: str,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        notification_email: str | None = None,
        full_sync: bool = False,
        window: SyncWindow | None = None,
    ) -> EnqueuedSync:
        """Validate credentials, then create and enqueue the job.

        Args:
            restaurant_id: Tenant to sync
            trigger: What asked for the sync
            notification_email: Overrides the address on the credential record
            full_sync: Ignore last_sync_at and fetch the full lookback
            window: Explicit window; wins over full_sync and last_sync_at

        Raises:
            MissingCredentialFields: If the tenant's credentials are incomplete
            ConfigurationError: If the tenant's POS connection is disabled
            CredentialError: If stored ciphertext cannot be decrypted
            SyncAlreadyInProgress: If the tenant already has an active job
        """
        record = await self.credentials.get(restaurant_id)
        if record is None:
            raise MissingCredentialFields(missing=list(CREDENTIAL_FIELDS), present=[])
        if not record.is_active:
            raise ConfigurationError(
                f"POS integration is disabled for restaurant {restaurant_id}",
                details={"restaurant_id": restaurant_id},
            )

        # Fails fast on incomplete or undecryptable credentials
        self.vault.decrypt_credential_set(record.to_vault_input())

        window = window or compute_window(
            record.last_sync_at,
            lookback_days=self.lookback_days,
            force_full=full_sync,
        )

        job = await self.store.create(
            SyncJobSpec(
                restaurant_id=restaurant_id,
                trigger=trigger,
                notification_email=notification_email or record.notification_email,
                window=window,
                max_attempts=self.max_attempts,
            )
        )
        await self.queue.enqueue(job.job_id)

        logger.info(
            f"Enqueued {window.sync_type} sync {job.job_id} for restaurant {restaurant_id} "
            f"({window.start_date.isoformat()} to {window.end_date.isoformat()}, trigger={trigger.value})"
        )
        return EnqueuedSync(job=job, window=window)
