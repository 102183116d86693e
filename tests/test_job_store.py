"""
Unit tests for JobStore against a mocked psycopg pool.

These check the SQL contract (ownership predicate, column whitelist,
escalation to FAILED) without a database. Real concurrency is covered by
test_job_store_integration.py.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, List
from unittest.mock import AsyncMock

import psycopg
import pytest
from psycopg.types.json import Jsonb

from voicedoc.core.models import HeartbeatRecord, ReleaseOutcome, Stage, WorkerStatus
from voicedoc.workers.backoff import RetryPolicy
from voicedoc.workers.job_store import JobStore


def make_mock_cursor(
    fetchone_results: List[Any] | None = None,
    fetchall_result: List[Any] | None = None,
    rowcount: int = 1,
) -> AsyncMock:
    """Create a mock cursor with scripted results."""
    mock_cursor = AsyncMock()
    mock_cursor.execute = AsyncMock()
    mock_cursor.fetchone = AsyncMock(side_effect=list(fetchone_results or []))
    mock_cursor.fetchall = AsyncMock(return_value=fetchall_result or [])
    mock_cursor.rowcount = rowcount
    return mock_cursor


class MockConnection:
    def __init__(self, cursor: AsyncMock):
        self._cursor = cursor
        self.transactions = 0

    @asynccontextmanager
    async def cursor(self, row_factory: Any = None):
        yield self._cursor

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield


class MockPool:
    def __init__(self, cursor: AsyncMock | None = None, error: Exception | None = None):
        self.conn = MockConnection(cursor or make_mock_cursor())
        self.error = error

    @asynccontextmanager
    async def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


def executed_sql(cursor: AsyncMock, index: int = 0) -> str:
    return cursor.execute.await_args_list[index].args[0]


def executed_params(cursor: AsyncMock, index: int = 0) -> dict:
    return cursor.execute.await_args_list[index].args[1]


def make_store(pool: MockPool, **kwargs: Any) -> JobStore:
    kwargs.setdefault("retry_policy", RetryPolicy(jitter_max_seconds=0))
    return JobStore(pool, owner_id="worker-a", **kwargs)  # type: ignore[arg-type]


class TestClaimBatch:
    @pytest.mark.asyncio
    async def test_claim_returns_jobs(self) -> None:
        rows = [
            {"id": "job-1", "job_status": "PROCESSING", "stage": None, "attempt_count": 1,
             "owner_id": "worker-a"},
            {"id": "job-2", "job_status": "PROCESSING", "stage": "TRANSCRIBED",
             "attempt_count": 3, "owner_id": "worker-a"},
        ]
        cursor = make_mock_cursor(fetchall_result=rows)
        store = make_store(MockPool(cursor))

        jobs = await store.claim_batch(5)

        assert [j.id for j in jobs] == ["job-1", "job-2"]
        assert jobs[0].stage is Stage.RECEIVED
        assert jobs[1].stage is Stage.TRANSCRIBED
        sql = executed_sql(cursor)
        assert "FOR UPDATE SKIP LOCKED" in sql
        params = executed_params(cursor)
        assert params["owner_id"] == "worker-a"
        assert params["limit"] == 5
        assert params["max_attempts"] == 5

    @pytest.mark.asyncio
    async def test_fresh_jobs_ordered_before_retries(self) -> None:
        """Never-scheduled rows sort first, then due retries, then arrival time."""
        cursor = make_mock_cursor()
        store = make_store(MockPool(cursor))

        await store.claim_batch(5)

        sql = " ".join(executed_sql(cursor).split())
        assert (
            "ORDER BY (next_run_at IS NULL) DESC, next_run_at ASC NULLS LAST, received_at ASC"
            in sql
        )
        assert sql.index("ORDER BY") < sql.index("LIMIT") < sql.index("FOR UPDATE SKIP LOCKED")

    @pytest.mark.asyncio
    async def test_zero_limit_skips_query(self) -> None:
        cursor = make_mock_cursor()
        store = make_store(MockPool(cursor))
        assert await store.claim_batch(0) == []
        cursor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_database_error_yields_empty_batch(self) -> None:
        store = make_store(MockPool(error=psycopg.OperationalError("connection refused")))
        assert await store.claim_batch(5) == []


class TestRelease:
    @pytest.mark.asyncio
    async def test_retry_schedules_backoff(self) -> None:
        cursor = make_mock_cursor(fetchone_results=[{"attempt_count": 1}])
        pool = MockPool(cursor)
        store = make_store(pool)

        assert await store.release("job-1", ReleaseOutcome.RETRY, "HTTP 503") is True

        assert pool.conn.transactions == 1
        assert "FOR UPDATE" in executed_sql(cursor, 0)
        params = executed_params(cursor, 1)
        assert params["status"] == "READY"
        assert params["delay"] == 120
        assert params["reason"] == "HTTP 503"
        assert params["owner_id"] == "worker-a"

    @pytest.mark.asyncio
    async def test_retry_escalates_when_exhausted(self) -> None:
        cursor = make_mock_cursor(fetchone_results=[{"attempt_count": 5}])
        store = make_store(MockPool(cursor))

        assert await store.release(
            "job-1", ReleaseOutcome.RETRY, "timeout", failed_stage=Stage.ANALYZED
        )

        params = executed_params(cursor, 1)
        assert params["status"] == "FAILED"
        assert params["delay"] is None
        assert params["failed_stage"] == "ANALYZED"

    @pytest.mark.asyncio
    async def test_failed_is_terminal(self) -> None:
        cursor = make_mock_cursor(fetchone_results=[{"attempt_count": 1}])
        store = make_store(MockPool(cursor))
        await store.release("job-1", ReleaseOutcome.FAILED, "No media reference on job")
        params = executed_params(cursor, 1)
        assert params["status"] == "FAILED"
        assert params["delay"] is None

    @pytest.mark.asyncio
    async def test_not_owned_is_noop(self) -> None:
        cursor = make_mock_cursor(fetchone_results=[None])
        store = make_store(MockPool(cursor))
        assert await store.release("job-1", ReleaseOutcome.RETRY, "x") is False
        assert cursor.execute.await_count == 1


class TestAdvanceStage:
    @pytest.mark.asyncio
    async def test_only_stage_columns_written(self) -> None:
        cursor = make_mock_cursor()
        store = make_store(MockPool(cursor))

        ok = await store.advance_stage(
            "job-1",
            Stage.TRANSCRIBED,
            {"transcript_text": "hello", "analysis": {"summary": "nope"}},
        )

        assert ok is True
        sql = executed_sql(cursor)
        params = executed_params(cursor)
        assert "transcript_text = %(transcript_text)s" in sql
        assert "analysis" not in sql
        assert "owner_id = %(owner_id)s" in sql
        assert "job_status = 'PROCESSING'" in sql
        assert params["stage"] == "TRANSCRIBED"
        assert params["transcript_text"] == "hello"

    @pytest.mark.asyncio
    async def test_analysis_is_jsonb(self) -> None:
        cursor = make_mock_cursor()
        store = make_store(MockPool(cursor))
        await store.advance_stage("job-1", Stage.ANALYZED, {"analysis": {"summary": "ok"}})
        assert isinstance(executed_params(cursor)["analysis"], Jsonb)

    @pytest.mark.asyncio
    async def test_ownership_lost(self) -> None:
        cursor = make_mock_cursor(rowcount=0)
        store = make_store(MockPool(cursor))
        assert await store.advance_stage("job-1", Stage.AUDIO_STORED, {"blob_ref": "k"}) is False


class TestCompleteAndRequeue:
    @pytest.mark.asyncio
    async def test_complete(self) -> None:
        cursor = make_mock_cursor()
        store = make_store(MockPool(cursor))
        assert await store.complete("job-1") is True
        sql = executed_sql(cursor)
        assert "job_status = 'DONE'" in sql
        assert "stage = 'COMPLETED'" in sql

    @pytest.mark.asyncio
    async def test_complete_not_owned(self) -> None:
        store = make_store(MockPool(make_mock_cursor(rowcount=0)))
        assert await store.complete("job-1") is False

    @pytest.mark.asyncio
    async def test_requeue_empty_list(self) -> None:
        cursor = make_mock_cursor()
        store = make_store(MockPool(cursor))
        assert await store.requeue_for_shutdown([]) == 0
        cursor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_requeue_owned_ids(self) -> None:
        cursor = make_mock_cursor(rowcount=2)
        store = make_store(MockPool(cursor), shutdown_requeue_delay=30)
        assert await store.requeue_for_shutdown(["job-1", "job-2", "job-3"]) == 2
        params = executed_params(cursor)
        assert params["ids"] == ["job-1", "job-2", "job-3"]
        assert params["reason"] == "shutdown_requeue"
        assert params["delay"] == 30.0


class TestHealthQueries:
    @pytest.mark.asyncio
    async def test_count_ready_now(self) -> None:
        store = make_store(MockPool(make_mock_cursor(fetchone_results=[(7,)])))
        assert await store.count_ready_now() == 7

    @pytest.mark.asyncio
    async def test_count_ready_now_error_is_zero(self) -> None:
        store = make_store(MockPool(error=psycopg.OperationalError("down")))
        assert await store.count_ready_now() == 0

    @pytest.mark.asyncio
    async def test_upsert_heartbeat(self) -> None:
        cursor = make_mock_cursor()
        store = make_store(MockPool(cursor))
        record = HeartbeatRecord(
            worker_id="worker-a",
            started_at=datetime(2026, 10, 18, tzinfo=timezone.utc),
            jobs_in_flight=2,
            current_status=WorkerStatus.DEGRADED,
            last_error="HTTP 503",
            version="1.6.3",
            hostname="host-1",
        )
        await store.upsert_heartbeat(record)
        sql = executed_sql(cursor)
        params = executed_params(cursor)
        assert "ON CONFLICT (worker_id) DO UPDATE" in sql
        assert params["current_status"] == "degraded"
        assert params["degraded"] == "degraded"
        assert params["jobs_in_flight"] == 2
