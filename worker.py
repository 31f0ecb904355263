#!/usr/bin/env python3
"""POS Sync Worker.

Long-running consumer of the sync job queue. Designed to run as the main
process in a container, next to (not inside) the API server.

Architecture:
    - asyncio poll loop over the job queue
    - At most WORKER_CONCURRENCY jobs in flight (semaphore bounded)
    - Periodic reaper returns jobs whose worker died to the queue
    - Graceful shutdown on SIGTERM/SIGINT: in-flight jobs finish first
    - Health check endpoint via optional HTTP server

Environment Variables:
    WORKER_POLL_SECONDS: Seconds between polls of an empty queue (default: 2)
    WORKER_CONCURRENCY: Jobs processed at once (default: 2)
    REAPER_INTERVAL_SECONDS: Seconds between stale-job sweeps (default: 60)
    JOB_STALE_SECONDS: Heartbeat age that marks a job stalled (default: 900)
    HEALTH_CHECK_PORT: Port for health check endpoint (default: 8080, 0 to disable)

    Plus the SYNC_* settings read by src/possync/config.py, DATABASE_URL
    and ENCRYPTION_KEY.

Example:
    python worker.py
    WORKER_CONCURRENCY=4 python worker.py
    python worker.py --once          # process at most one job and exit
"""
import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from datetime import UTC, datetime
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# Local imports
from src.possync.api.auth import ToastAuthenticator
from src.possync.api.client import PosClient
from src.possync.api.database import check_database_health, close_pool, create_pool
from src.possync.api.exceptions import ConfigurationError, PosSyncError
from src.possync.api.vault import CredentialVault
from src.possync.config import SyncSettings
from src.possync.sync.adapters import (
    PostgresCredentialRepository,
    PostgresJobQueue,
    PostgresSyncJobStore,
    PostgresTransactionRepository,
    ToastFetcher,
    ToastTransactionMapper,
    notifier_from_env,
)
from src.possync.sync.use_cases import ImportPipeline, SyncOrchestrator

logger = logging.getLogger(__name__)

# ============================================
# Configuration
# ============================================

class WorkerConfig:
    """Configuration loaded from environment variables."""

    def __init__(self):
        self.poll_seconds = float(os.getenv("WORKER_POLL_SECONDS", "2"))
        self.concurrency = int(os.getenv("WORKER_CONCURRENCY", "2"))
        self.reaper_interval_seconds = float(os.getenv("REAPER_INTERVAL_SECONDS", "60"))
        self.health_check_port = int(os.getenv("HEALTH_CHECK_PORT", "8080"))

    def __repr__(self):
        return (
            f"WorkerConfig("
            f"poll={self.poll_seconds:g}s, "
            f"concurrency={self.concurrency}, "
            f"reaper={self.reaper_interval_seconds:g}s, "
            f"health_port={self.health_check_port})"
        )


def build_orchestrator(pool, client: PosClient, settings: SyncSettings, vault: CredentialVault) -> SyncOrchestrator:
    """Wire the Postgres and Toast adapters into an orchestrator."""
    return SyncOrchestrator(
        store=PostgresSyncJobStore(pool),
        queue=PostgresJobQueue(pool),
        fetcher=ToastFetcher(
            client,
            ToastAuthenticator(base_url=settings.toast_base_url),
            page_size=settings.page_size,
            page_delay_seconds=settings.page_delay_seconds,
            chunk_days=settings.chunk_days,
        ),
        pipeline=ImportPipeline(PostgresTransactionRepository(pool), ToastTransactionMapper()),
        credentials=PostgresCredentialRepository(pool),
        vault=vault,
        notifier=notifier_from_env(),
        page_size=settings.page_size,
        lookback_days=settings.lookback_days,
        retry_delay_seconds=settings.retry_delay_seconds,
        page_timeout_seconds=settings.page_timeout_seconds,
        job_timeout_seconds=settings.job_timeout_seconds,
    )


# ============================================
# Health Check Server
# ============================================

class HealthState:
    """Shared state for health checks."""

    def __init__(self):
        self.started_at: datetime = datetime.now(UTC)
        self.last_poll_at: Optional[datetime] = None
        self.last_poll_ok: bool = True
        self.jobs_completed: int = 0
        self.jobs_failed: int = 0
        self.jobs_reaped: int = 0
        self.in_flight: int = 0
        self.db_pool = None
        self.pos_client = None

    def record_poll(self, ok: bool) -> None:
        self.last_poll_at = datetime.now(UTC)
        self.last_poll_ok = ok


async def health_check_handler(reader, writer, state: HealthState):
    """Handle HTTP health check requests."""
    await reader.read(1024)

    db = await check_database_health(state.db_pool)
    healthy = state.last_poll_ok and db.get("healthy", False)
    uptime = (datetime.now(UTC) - state.started_at).total_seconds()

    body = json.dumps({
        "status": "healthy" if healthy else "unhealthy",
        "uptime_seconds": round(uptime),
        "in_flight": state.in_flight,
        "jobs_completed": state.jobs_completed,
        "jobs_failed": state.jobs_failed,
        "jobs_reaped": state.jobs_reaped,
        "last_poll_at": state.last_poll_at.isoformat() if state.last_poll_at else "never",
        "database": "ok" if db.get("healthy") else "unavailable",
        "pos_circuit": state.pos_client.circuit_status if state.pos_client else None,
    })

    http_status = 200 if healthy else 503
    response = (
        f"HTTP/1.1 {http_status} {'OK' if http_status == 200 else 'Service Unavailable'}\r\n"
        f"Content-Type: application/json\r\n"
        f"Content-Length: {len(body)}\r\n"
        f"Connection: close\r\n"
        f"\r\n"
        f"{body}"
    )

    writer.write(response.encode())
    await writer.drain()
    writer.close()
    await writer.wait_closed()


async def start_health_server(port: int, state: HealthState):
    """Start the health check HTTP server. Returns None when disabled."""
    if port <= 0:
        return None

    async def handler(reader, writer):
        await health_check_handler(reader, writer, state)

    server = await asyncio.start_server(handler, "0.0.0.0", port)
    print(f"[Worker] Health check server listening on port {port}")
    return server


# ============================================
# Loops
# ============================================

async def _sleep_or_shutdown(shutdown_event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to `seconds`. Returns True if shutdown was requested."""
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False


async def poll_loop(
    orchestrator: SyncOrchestrator,
    config: WorkerConfig,
    health_state: HealthState,
    shutdown_event: asyncio.Event,
):
    """Dequeue and run jobs until shutdown, never more than config.concurrency at once."""
    semaphore = asyncio.Semaphore(config.concurrency)
    in_flight: dict[str, asyncio.Task] = {}

    async def run_job(job_id: str):
        health_state.in_flight += 1
        try:
            result = await orchestrator.process_job(job_id)
            if result is not None:
                health_state.jobs_completed += 1
                print(
                    f"[Worker] Job {job_id} completed: imported={result.orders_imported}, "
                    f"skipped={result.orders_skipped}, failed={result.orders_failed}, "
                    f"duration={result.duration_ms / 1000:.1f}s"
                )
            else:
                job = await orchestrator.store.get(job_id)
                if job is not None and job.error is not None:
                    health_state.jobs_failed += 1
                    print(f"[Worker] Job {job_id} ended {job.status.value}: {job.error.code}")
        except PosSyncError as e:
            # The orchestrator records job failures itself; reaching here means
            # the failure could not be written, and the reaper will pick the job up.
            health_state.jobs_failed += 1
            logger.error(f"Job {job_id} aborted: {e}")
        finally:
            health_state.in_flight -= 1
            in_flight.pop(job_id, None)
            semaphore.release()

    print(f"[Worker] Polling every {config.poll_seconds:g}s with {config.concurrency} slot(s)")

    while not shutdown_event.is_set():
        await semaphore.acquire()
        if shutdown_event.is_set():
            semaphore.release()
            break

        try:
            job_id = await orchestrator.queue.dequeue()
            health_state.record_poll(ok=True)
        except PosSyncError as e:
            logger.error(f"Dequeue failed: {e}")
            health_state.record_poll(ok=False)
            job_id = None

        # A job we already started can still read as pending until its claim lands
        if job_id is None or job_id in in_flight:
            semaphore.release()
            if await _sleep_or_shutdown(shutdown_event, config.poll_seconds):
                break
            continue

        in_flight[job_id] = asyncio.create_task(run_job(job_id))

    if in_flight:
        print(f"[Worker] Waiting for {len(in_flight)} in-flight job(s) to finish...")
        await asyncio.gather(*list(in_flight.values()), return_exceptions=True)

    print("[Worker] Poll loop stopped")


async def reaper_loop(
    orchestrator: SyncOrchestrator,
    config: WorkerConfig,
    stale_seconds: float,
    health_state: HealthState,
    shutdown_event: asyncio.Event,
):
    """Periodically return stalled jobs to the queue."""
    while not shutdown_event.is_set():
        try:
            reaped = await orchestrator.reap(stale_seconds)
            if reaped:
                health_state.jobs_reaped += len(reaped)
                print(f"[Worker] Reaped {len(reaped)} stale job(s): {', '.join(reaped)}")
        except PosSyncError as e:
            logger.error(f"Reaper sweep failed: {e}")

        if await _sleep_or_shutdown(shutdown_event, config.reaper_interval_seconds):
            break


# ============================================
# Main Entry Point
# ============================================

async def main(once: bool = False):
    """Main entry point for the worker."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    print("=" * 60)
    print("POS Sync Worker")
    print("=" * 60)

    config = WorkerConfig()
    settings = SyncSettings()
    print(f"[Worker] Config: {config}")
    print(f"[Worker] Settings: {settings}")

    try:
        settings.validate()
        vault = CredentialVault.from_env()
    except ConfigurationError as e:
        print(f"[Worker] ERROR: {e.message}")
        sys.exit(1)

    try:
        db_pool = await create_pool(settings.database_url)
    except PosSyncError as e:
        print(f"[Worker] ERROR: Database connection failed: {e}")
        sys.exit(1)
    print("[Worker] Connected to PostgreSQL")

    health_state = HealthState()
    health_state.db_pool = db_pool
    shutdown_event = asyncio.Event()

    def handle_shutdown(signum, frame):
        print(f"\n[Worker] Received signal {signum}, initiating shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    health_server = None
    try:
        async with PosClient(base_url=settings.toast_base_url) as client:
            health_state.pos_client = client
            orchestrator = build_orchestrator(db_pool, client, settings, vault)

            if once:
                result = await orchestrator.run_once()
                print(f"[Worker] Single run finished: {result.to_dict() if result else 'no job completed'}")
                return

            health_server = await start_health_server(config.health_check_port, health_state)

            await asyncio.gather(
                poll_loop(orchestrator, config, health_state, shutdown_event),
                reaper_loop(orchestrator, config, settings.stale_job_seconds, health_state, shutdown_event),
            )
    finally:
        print("[Worker] Cleaning up...")

        if health_server:
            health_server.close()
            await health_server.wait_closed()

        await close_pool(db_pool)

        print("[Worker] Shutdown complete")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="POS sync job worker")
    parser.add_argument("--once", action="store_true", help="Process at most one queued job, then exit")
    args = parser.parse_args()
    asyncio.run(main(once=args.once))
