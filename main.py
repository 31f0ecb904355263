#!/usr/bin/env python3
"""POS Sync CLI.

Operator commands for the sync pipeline. Jobs are enqueued here and
processed by worker.py; nothing in this module talks to the POS provider.

Environment Variables Required:
    - DATABASE_URL: PostgreSQL connection string
    - ENCRYPTION_KEY: Credential vault secret (sync, connect)

Example Usage:
    $ python main.py connect rest-1 --client-id abc --location-id 1f2e...  # secret is prompted
    $ python main.py sync rest-1                  # Incremental sync
    $ python main.py sync rest-1 --full           # 30-day lookback
    $ python main.py status rest-1                # Polling view
    $ python main.py jobs rest-1 --limit 5        # Recent jobs
    $ python main.py cancel sync-rest-1-1767225600000  # Cancel a pending job
    $ python main.py reap                         # Requeue stalled jobs
    $ python main.py cleanup --days 30            # Delete old finished jobs
    $ python main.py backfill --restaurant rest-1 # Recompute hour/day buckets
"""
import argparse
import asyncio
import getpass
import json
import sys
from datetime import datetime

from dotenv import load_dotenv

load_dotenv()

# Local imports
from src.possync.api.database import close_pool, create_pool
from src.possync.api.exceptions import (
    AlreadyClaimed,
    ConfigurationError,
    InvalidJobTransition,
    JobNotFound,
    MissingCredentialFields,
    PosSyncError,
    SyncAlreadyInProgress,
)
from src.possync.api.vault import CredentialVault
from src.possync.config import SyncSettings
from src.possync.sync.adapters import (
    LoggingNotifier,
    PostgresCredentialRepository,
    PostgresJobQueue,
    PostgresSyncJobStore,
    PostgresTransactionRepository,
    ToastTransactionMapper,
)
from src.possync.sync.domain.entities import CredentialRecord, SyncTrigger
from src.possync.sync.use_cases import (
    BackfillAnalyticsUseCase,
    EnqueueSyncUseCase,
    SyncOrchestrator,
    SyncStatusService,
)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _enqueue_use_case(pool, settings: SyncSettings, vault: CredentialVault) -> EnqueueSyncUseCase:
    return EnqueueSyncUseCase(
        store=PostgresSyncJobStore(pool),
        queue=PostgresJobQueue(pool),
        credentials=PostgresCredentialRepository(pool),
        vault=vault,
        lookback_days=settings.lookback_days,
        max_attempts=settings.max_attempts,
    )


# ============================================
# Commands
# ============================================

async def cmd_sync(pool, settings: SyncSettings, args: argparse.Namespace) -> int:
    vault = CredentialVault.from_env()
    use_case = _enqueue_use_case(pool, settings, vault)
    try:
        enqueued = await use_case.execute(
            args.restaurant_id,
            trigger=SyncTrigger.CLI,
            notification_email=args.email,
            full_sync=args.full,
        )
    except SyncAlreadyInProgress as e:
        print(f"[CLI] Sync already in progress for {args.restaurant_id}: {e.job_id}")
        return 2
    except MissingCredentialFields as e:
        print(f"[CLI] {e.message}")
        return 1

    print(f"[CLI] Enqueued {enqueued.window.sync_type} sync {enqueued.job_id}")
    _print_json(enqueued.to_dict())
    return 0


async def cmd_status(pool, settings: SyncSettings, args: argparse.Namespace) -> int:
    service = SyncStatusService(
        store=PostgresSyncJobStore(pool),
        queue=PostgresJobQueue(pool),
        credentials=PostgresCredentialRepository(pool),
    )
    view = await service.get_status(args.restaurant_id)
    _print_json(view.to_dict())
    return 0


async def cmd_jobs(pool, settings: SyncSettings, args: argparse.Namespace) -> int:
    service = SyncStatusService(store=PostgresSyncJobStore(pool), queue=PostgresJobQueue(pool))
    jobs = await service.list_jobs(args.restaurant_id, limit=args.limit)
    if not jobs:
        print(f"[CLI] No sync jobs for {args.restaurant_id}")
        return 0

    print(f"{'Job':<48} {'Status':<12} {'Trigger':<10} {'Attempts':<9} {'Created':<25}")
    print("-" * 106)
    for job in jobs:
        attempts = f"{job['attempts']}/{job['max_attempts']}"
        print(f"{job['job_id']:<48} {job['status']:<12} {job['trigger']:<10} {attempts:<9} {str(job['created_at']):<25}")
    return 0


async def cmd_cancel(pool, settings: SyncSettings, args: argparse.Namespace) -> int:
    store = PostgresSyncJobStore(pool)
    try:
        job = await store.cancel(args.job_id)
    except JobNotFound:
        print(f"[CLI] Sync job not found: {args.job_id}")
        return 1
    except (AlreadyClaimed, InvalidJobTransition) as e:
        print(f"[CLI] Cannot cancel {args.job_id}: {e.message}")
        return 2

    print(f"[CLI] Cancelled {job.job_id}")
    return 0


async def cmd_reap(pool, settings: SyncSettings, args: argparse.Namespace) -> int:
    # Only the store, queue and notifier are touched by reap()
    orchestrator = SyncOrchestrator(
        store=PostgresSyncJobStore(pool),
        queue=PostgresJobQueue(pool),
        fetcher=None,
        pipeline=None,
        credentials=PostgresCredentialRepository(pool),
        vault=None,
        notifier=LoggingNotifier(),
    )
    stale_seconds = args.stale_seconds or settings.stale_job_seconds
    reaped = await orchestrator.reap(stale_seconds)
    print(f"[CLI] Reaped {len(reaped)} job(s) idle for more than {stale_seconds:g}s")
    for job_id in reaped:
        print(f"  - {job_id}")
    return 0


async def cmd_cleanup(pool, settings: SyncSettings, args: argparse.Namespace) -> int:
    deleted = await PostgresSyncJobStore(pool).cleanup(older_than_days=args.days)
    print(f"[CLI] Deleted {deleted} finished job(s) older than {args.days} days")
    return 0


async def cmd_backfill(pool, settings: SyncSettings, args: argparse.Namespace) -> int:
    mapper = ToastTransactionMapper()
    use_case = BackfillAnalyticsUseCase(PostgresTransactionRepository(pool, mapper), mapper)
    scope = args.restaurant or "all restaurants"
    print(f"[CLI] Backfilling analytics for {scope}...")
    stats = await use_case.execute(restaurant_id=args.restaurant, batch_size=args.batch_size)
    print(f"[CLI] Backfill complete: {stats}")
    return 0


async def cmd_connect(pool, settings: SyncSettings, args: argparse.Namespace) -> int:
    vault = CredentialVault.from_env()
    secret = args.client_secret or getpass.getpass("Client secret: ")
    if not secret:
        print("[CLI] A client secret is required")
        return 1

    credentials = PostgresCredentialRepository(pool)
    existing = await credentials.get(args.restaurant_id)
    # Keep the incremental watermark only while the POS location stays the same
    last_sync_at = None
    if existing is not None and existing.location_id == args.location_id:
        last_sync_at = existing.last_sync_at

    await credentials.save(
        CredentialRecord(
            restaurant_id=args.restaurant_id,
            client_id=vault.encrypt(args.client_id),
            encrypted_client_secret=vault.encrypt(secret),
            location_id=args.location_id,
            is_active=True,
            last_sync_at=last_sync_at,
            notification_email=args.email or (existing.notification_email if existing else None),
        )
    )
    print(f"[CLI] Stored encrypted credentials for {args.restaurant_id} (key {vault.key_id})")

    if args.sync:
        use_case = _enqueue_use_case(pool, settings, vault)
        try:
            enqueued = await use_case.execute(args.restaurant_id, trigger=SyncTrigger.LOGIN)
        except SyncAlreadyInProgress as e:
            print(f"[CLI] Sync already in progress: {e.job_id}")
            return 0
        print(f"[CLI] Enqueued {enqueued.window.sync_type} sync {enqueued.job_id}")
    return 0


COMMANDS = {
    "sync": cmd_sync,
    "status": cmd_status,
    "jobs": cmd_jobs,
    "cancel": cmd_cancel,
    "reap": cmd_reap,
    "cleanup": cmd_cleanup,
    "backfill": cmd_backfill,
    "connect": cmd_connect,
}


async def run(args: argparse.Namespace) -> int:
    settings = SyncSettings()
    if not settings.database_url:
        print("[CLI] DATABASE_URL is required")
        return 1

    start_time = datetime.now()
    try:
        pool = await create_pool(settings.database_url, min_size=1, max_size=4)
    except PosSyncError as e:
        print(f"[CLI] Database connection failed: {e.message}")
        return 1

    try:
        return await COMMANDS[args.command](pool, settings, args)
    except ConfigurationError as e:
        print(f"[CLI] Configuration error: {e.message}")
        return 1
    except PosSyncError as e:
        print(f"[CLI] {e.code}: {e.message}")
        return 1
    finally:
        await close_pool(pool)
        duration = (datetime.now() - start_time).total_seconds()
        print(f"[CLI] Completed in {duration:.1f} seconds", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="POS transaction sync: enqueue, inspect and maintain sync jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s sync rest-1 --full
  %(prog)s status rest-1
  %(prog)s cancel sync-rest-1-1767225600000
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sync", help="Enqueue a sync job")
    p.add_argument("restaurant_id")
    p.add_argument("--full", action="store_true", help="Ignore last sync time and fetch the full lookback")
    p.add_argument("--email", help="Notification address for this job")

    p = sub.add_parser("status", help="Show the polling view for a restaurant")
    p.add_argument("restaurant_id")

    p = sub.add_parser("jobs", help="List recent jobs for a restaurant")
    p.add_argument("restaurant_id")
    p.add_argument("--limit", type=int, default=10)

    p = sub.add_parser("cancel", help="Cancel a pending job")
    p.add_argument("job_id")

    p = sub.add_parser("reap", help="Requeue or fail jobs whose worker stopped heartbeating")
    p.add_argument("--stale-seconds", type=float, default=None, help="Defaults to JOB_STALE_SECONDS")

    p = sub.add_parser("cleanup", help="Delete finished jobs")
    p.add_argument("--days", type=int, default=30, help="Age threshold in days (default: 30)")

    p = sub.add_parser("backfill", help="Recompute hour/day analytics from stored raw orders")
    p.add_argument("--restaurant", help="Limit to one restaurant")
    p.add_argument("--batch-size", type=int, default=500)

    p = sub.add_parser("connect", help="Encrypt and store a restaurant's POS credentials")
    p.add_argument("restaurant_id")
    p.add_argument("--client-id", required=True)
    p.add_argument("--client-secret", help="Prompted for when omitted")
    p.add_argument("--location-id", required=True, help="POS restaurant GUID")
    p.add_argument("--email", help="Default notification address")
    p.add_argument("--sync", action="store_true", help="Enqueue the first sync right away")

    return parser


def main():
    args = build_parser().parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
