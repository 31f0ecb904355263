#!/usr/bin/env python3
"""Tests for the sync worker loops.

Tests cover:
    - WorkerConfig environment parsing
    - Poll loop runs queued jobs and stops on shutdown
    - A job still pending under its own claim is not dispatched twice
    - Concurrency never exceeds WORKER_CONCURRENCY
    - Dequeue failures mark the worker unhealthy without stopping it
    - Reaper loop counts reaped jobs and survives store errors
    - Health check HTTP response, including the POS circuit state
"""
import asyncio
import json
import sys
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, str(__file__).rsplit("/tests", 1)[0])
from worker import HealthState, WorkerConfig, health_check_handler, poll_loop, reaper_loop
from src.possync.api.client import PosClient
from src.possync.api.exceptions import ServerError, StorageError
from src.possync.sync.domain.entities import SyncResult

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


# ============================================
# Test Fixtures
# ============================================

@pytest.fixture
def config(monkeypatch):
    monkeypatch.setenv("WORKER_POLL_SECONDS", "0.01")
    monkeypatch.setenv("WORKER_CONCURRENCY", "2")
    monkeypatch.setenv("REAPER_INTERVAL_SECONDS", "0.01")
    return WorkerConfig()


@pytest.fixture
def orchestrator():
    """Mock SyncOrchestrator with an empty queue."""
    orch = MagicMock()
    orch.queue.dequeue = AsyncMock(return_value=None)
    orch.store.get = AsyncMock(return_value=None)
    orch.process_job = AsyncMock(return_value=None)
    orch.reap = AsyncMock(return_value=[])
    return orch


def make_result():
    return SyncResult(
        orders_imported=3, orders_skipped=1, orders_failed=0, total_pages=1,
        duration_ms=1200, start_date=NOW - timedelta(days=1), end_date=NOW,
    )


async def stop_after(event: asyncio.Event, seconds: float):
    await asyncio.sleep(seconds)
    event.set()


# ============================================
# Configuration
# ============================================

class TestWorkerConfig:

    def test_defaults(self, monkeypatch):
        for name in ("WORKER_POLL_SECONDS", "WORKER_CONCURRENCY", "REAPER_INTERVAL_SECONDS", "HEALTH_CHECK_PORT"):
            monkeypatch.delenv(name, raising=False)
        config = WorkerConfig()
        assert config.poll_seconds == 2.0
        assert config.concurrency == 2
        assert config.reaper_interval_seconds == 60.0
        assert config.health_check_port == 8080

    def test_repr(self, config):
        assert "concurrency=2" in repr(config)


# ============================================
# Poll Loop
# ============================================

class TestPollLoop:
    """Tests for poll_loop."""

    @pytest.mark.asyncio
    async def test_runs_queued_jobs(self, config, orchestrator):
        orchestrator.queue.dequeue.side_effect = ["job-1", "job-2"] + [None] * 1000
        orchestrator.process_job.return_value = make_result()
        state = HealthState()
        shutdown = asyncio.Event()

        await asyncio.gather(
            poll_loop(orchestrator, config, state, shutdown),
            stop_after(shutdown, 0.1),
        )

        called = [c.args[0] for c in orchestrator.process_job.await_args_list]
        assert called == ["job-1", "job-2"]
        assert state.jobs_completed == 2
        assert state.in_flight == 0
        assert state.last_poll_ok is True

    @pytest.mark.asyncio
    async def test_failed_job_counted(self, config, orchestrator):
        orchestrator.queue.dequeue.side_effect = ["job-1"] + [None] * 1000
        failed_job = MagicMock()
        failed_job.error.code = "UPSTREAM_AUTH_FAILED"
        failed_job.status.value = "failed"
        orchestrator.store.get.return_value = failed_job
        state = HealthState()
        shutdown = asyncio.Event()

        await asyncio.gather(
            poll_loop(orchestrator, config, state, shutdown),
            stop_after(shutdown, 0.05),
        )

        assert state.jobs_failed == 1

    @pytest.mark.asyncio
    async def test_running_job_not_dispatched_twice(self, config, orchestrator):
        """dequeue keeps returning the job until its claim is visible."""
        release = asyncio.Event()

        async def slow_job(job_id):
            await release.wait()
            return make_result()

        orchestrator.queue.dequeue.return_value = "job-1"
        orchestrator.process_job.side_effect = slow_job
        state = HealthState()
        shutdown = asyncio.Event()

        async def finish():
            await asyncio.sleep(0.1)
            shutdown.set()
            release.set()

        await asyncio.gather(poll_loop(orchestrator, config, state, shutdown), finish())

        assert orchestrator.process_job.await_count == 1
        assert state.jobs_completed == 1

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self, config, orchestrator):
        ids = iter(f"job-{i}" for i in range(100))
        orchestrator.queue.dequeue.side_effect = lambda: next(ids)
        running = 0
        peak = 0

        async def job(job_id):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1
            return make_result()

        orchestrator.process_job.side_effect = job
        shutdown = asyncio.Event()

        await asyncio.gather(
            poll_loop(orchestrator, config, HealthState(), shutdown),
            stop_after(shutdown, 0.1),
        )

        assert peak == config.concurrency
        assert running == 0

    @pytest.mark.asyncio
    async def test_dequeue_failure_marks_unhealthy(self, config, orchestrator):
        orchestrator.queue.dequeue.side_effect = StorageError("connection refused")
        state = HealthState()
        shutdown = asyncio.Event()

        await asyncio.gather(
            poll_loop(orchestrator, config, state, shutdown),
            stop_after(shutdown, 0.05),
        )

        assert state.last_poll_ok is False
        assert orchestrator.queue.dequeue.await_count > 1
        orchestrator.process_job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_aborted_job_counted(self, config, orchestrator):
        orchestrator.queue.dequeue.side_effect = ["job-1"] + [None] * 1000
        orchestrator.process_job.side_effect = StorageError("db gone")
        state = HealthState()
        shutdown = asyncio.Event()

        await asyncio.gather(
            poll_loop(orchestrator, config, state, shutdown),
            stop_after(shutdown, 0.05),
        )

        assert state.jobs_failed == 1
        assert state.in_flight == 0


# ============================================
# Reaper Loop
# ============================================

class TestReaperLoop:

    @pytest.mark.asyncio
    async def test_counts_reaped(self, config, orchestrator):
        orchestrator.reap.side_effect = [["job-1", "job-2"]] + [[]] * 1000
        state = HealthState()
        shutdown = asyncio.Event()

        await asyncio.gather(
            reaper_loop(orchestrator, config, 900, state, shutdown),
            stop_after(shutdown, 0.05),
        )

        assert state.jobs_reaped == 2
        orchestrator.reap.assert_awaited_with(900)

    @pytest.mark.asyncio
    async def test_survives_store_errors(self, config, orchestrator):
        orchestrator.reap.side_effect = StorageError("connection refused")
        shutdown = asyncio.Event()

        await asyncio.gather(
            reaper_loop(orchestrator, config, 900, HealthState(), shutdown),
            stop_after(shutdown, 0.05),
        )

        assert orchestrator.reap.await_count > 1


# ============================================
# Health Check
# ============================================

class TestHealthCheck:

    @staticmethod
    def make_stream():
        reader = MagicMock()
        reader.read = AsyncMock(return_value=b"GET / HTTP/1.1\r\n\r\n")
        writer = MagicMock()
        writer.drain = AsyncMock()
        writer.wait_closed = AsyncMock()
        return reader, writer

    @staticmethod
    def parse(writer):
        raw = writer.write.call_args.args[0].decode()
        head, body = raw.split("\r\n\r\n", 1)
        return head.splitlines()[0], json.loads(body)

    @pytest.mark.asyncio
    async def test_healthy(self):
        state = HealthState()
        state.jobs_completed = 4
        conn = MagicMock()
        conn.fetchval = AsyncMock(return_value=1)
        state.db_pool = MagicMock()
        state.db_pool.acquire = AsyncMock(return_value=conn)
        state.db_pool.release = AsyncMock()
        state.db_pool.get_size = MagicMock(return_value=2)
        state.db_pool.get_idle_size = MagicMock(return_value=1)
        reader, writer = self.make_stream()

        await health_check_handler(reader, writer, state)

        status_line, body = self.parse(writer)
        assert status_line == "HTTP/1.1 200 OK"
        assert body["status"] == "healthy"
        assert body["jobs_completed"] == 4
        assert body["last_poll_at"] == "never"

    @pytest.mark.asyncio
    async def test_no_database(self):
        state = HealthState()
        reader, writer = self.make_stream()

        await health_check_handler(reader, writer, state)

        status_line, body = self.parse(writer)
        assert status_line == "HTTP/1.1 503 Service Unavailable"
        assert body["database"] == "unavailable"
        assert body["pos_circuit"] is None

    @pytest.mark.asyncio
    async def test_reports_open_pos_circuit(self):
        client = PosClient(base_url="https://pos.example.com", max_retries=1, circuit_failure_threshold=1)
        client._request = AsyncMock(side_effect=ServerError("down", status_code=503))
        with pytest.raises(ServerError):
            await client.get("/orders")

        state = HealthState()
        state.pos_client = client
        reader, writer = self.make_stream()

        await health_check_handler(reader, writer, state)

        _, body = self.parse(writer)
        assert body["pos_circuit"]["name"] == "pos_api"
        assert body["pos_circuit"]["state"] == "open"
        assert body["pos_circuit"]["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_failed_poll_is_unhealthy(self):
        state = HealthState()
        state.record_poll(ok=False)
        reader, writer = self.make_stream()

        await health_check_handler(reader, writer, state)

        _, body = self.parse(writer)
        assert body["status"] == "unhealthy"
        assert body["last_poll_at"] != "never"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
