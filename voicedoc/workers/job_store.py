"""
VoiceDoc Worker - Job Store

Ownership-scoped access to the ``voice_jobs`` queue table.

Every mutation after a claim carries the ownership predicate
``id = %s AND owner_id = %s AND job_status = 'PROCESSING'`` and reports
whether exactly one row matched. A False return means another worker (or
an operator) took the job away; callers stop working on it.

Claiming uses a single ``FOR UPDATE SKIP LOCKED`` CTE so concurrent
workers receive disjoint batches without blocking each other.

Usage:
    store = JobStore(pool, owner_id="external-host-1760000000-ab12")
    jobs = await store.claim_batch(5)
    ...
    if not await store.advance_stage(job.id, Stage.TRANSCRIBED, {"transcript_text": text}):
        return  # ownership lost
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from voicedoc.core.error_taxonomy import ERR_DB_CLAIM, ERR_DB_QUERY
from voicedoc.core.models import (
    STAGE_PAYLOAD_FIELDS,
    HeartbeatRecord,
    Job,
    ReleaseOutcome,
    Stage,
    WorkerStatus,
)
from voicedoc.workers.backoff import RetryPolicy

logger = logging.getLogger(__name__)

SHUTDOWN_REQUEUE_REASON = "shutdown_requeue"
LEASE_EXPIRED_REASON = "lease_expired"

# Columns serialized as jsonb
_JSON_COLUMNS = frozenset({"analysis"})

_CLAIM_SQL = """
    WITH candidates AS (
        SELECT id
        FROM voice_jobs
        WHERE (
                job_status = 'READY'
                AND (next_run_at IS NULL OR next_run_at <= now())
            )
            OR (
                %(reclaim)s
                AND job_status = 'PROCESSING'
                AND lease_expires_at IS NOT NULL
                AND lease_expires_at < now()
                AND owner_id IS DISTINCT FROM %(owner_id)s
                AND attempt_count < %(max_attempts)s
            )
        ORDER BY (next_run_at IS NULL) DESC, next_run_at ASC NULLS LAST, received_at ASC
        LIMIT %(limit)s
        FOR UPDATE SKIP LOCKED
    )
    UPDATE voice_jobs j
    SET job_status = 'PROCESSING',
        owner_id = %(owner_id)s,
        attempt_count = COALESCE(j.attempt_count, 0) + 1,
        stage = COALESCE(j.stage, 'RECEIVED'),
        failed_reason = NULL,
        failed_stage = NULL,
        processing_started_at = now(),
        lease_expires_at = now() + make_interval(secs => %(lease_seconds)s)
    FROM candidates c
    WHERE j.id = c.id
    RETURNING j.*
"""

_OWNED = "id = %(id)s AND owner_id = %(owner_id)s AND job_status = 'PROCESSING'"


class JobStore:
    """
    Queue table access bound to one worker id.

    Attributes:
        pool: Shared async connection pool
        owner_id: This worker's id, written into claimed rows
        retry_policy: Schedules released RETRY jobs
        lease_seconds: Lease length stamped at claim and refreshed per stage
        lease_reclaim: Also claim PROCESSING rows whose lease expired
        shutdown_requeue_delay: Delay before shutdown-requeued jobs are eligible
    """

    def __init__(
        self,
        pool: AsyncConnectionPool,
        owner_id: str,
        retry_policy: RetryPolicy | None = None,
        lease_seconds: float = 600.0,
        lease_reclaim: bool = True,
        shutdown_requeue_delay: float = 60.0,
    ):
        self.pool = pool
        self.owner_id = owner_id
        self.retry_policy = retry_policy or RetryPolicy()
        self.lease_seconds = lease_seconds
        self.lease_reclaim = lease_reclaim
        self.shutdown_requeue_delay = shutdown_requeue_delay

    # =========================================================================
    # Claim
    # =========================================================================

    async def claim_batch(self, limit: int) -> List[Job]:
        """
        Atomically claim up to ``limit`` eligible jobs.

        Database errors are logged and reported as an empty batch; the
        worker loop simply tries again on its next poll.
        """
        if limit <= 0:
            return []

        params = {
            "owner_id": self.owner_id,
            "limit": limit,
            "reclaim": self.lease_reclaim,
            "max_attempts": self.retry_policy.max_attempts,
            "lease_seconds": float(self.lease_seconds),
        }
        try:
            async with self.pool.connection() as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(_CLAIM_SQL, params)
                    rows = await cur.fetchall()
        except psycopg.Error as e:
            logger.error(
                f"Claim failed: {type(e).__name__}: {e}",
                extra={"error_code": str(ERR_DB_CLAIM)},
            )
            return []

        jobs = [Job.model_validate(row) for row in rows]
        if jobs:
            logger.debug("Claimed %d job(s)", len(jobs), extra={"count": len(jobs)})
        return jobs

    # =========================================================================
    # Ownership-scoped transitions
    # =========================================================================

    async def release(
        self,
        job_id: str,
        outcome: ReleaseOutcome,
        reason: str,
        failed_stage: Optional[Stage] = None,
    ) -> bool:
        """
        Give up ownership of a job without completing it.

        RETRY reschedules with backoff unless attempts are exhausted, in
        which case the job becomes FAILED. FAILED is terminal.

        Returns:
            True if exactly one owned row was released
        """
        outcome = ReleaseOutcome(outcome)
        async with self.pool.connection() as conn:
            async with conn.transaction():
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(
                        f"SELECT attempt_count FROM voice_jobs WHERE {_OWNED} FOR UPDATE",
                        {"id": job_id, "owner_id": self.owner_id},
                    )
                    row = await cur.fetchone()
                    if row is None:
                        logger.warning(
                            "Release skipped: ownership lost",
                            extra={"job_id": job_id, "outcome": outcome.value},
                        )
                        return False

                    attempt_count = int(row["attempt_count"] or 0)
                    final = outcome
                    if outcome is ReleaseOutcome.RETRY and self.retry_policy.is_exhausted(
                        attempt_count
                    ):
                        final = ReleaseOutcome.FAILED

                    delay: float | None = None
                    if final is ReleaseOutcome.RETRY:
                        delay = self.retry_policy.next_run_delay(attempt_count)

                    await cur.execute(
                        f"""
                        UPDATE voice_jobs
                        SET job_status = %(status)s,
                            owner_id = NULL,
                            lease_expires_at = NULL,
                            next_run_at = now() + %(delay)s::float8 * interval '1 second',
                            failed_reason = %(reason)s,
                            failed_stage = %(failed_stage)s
                        WHERE {_OWNED}
                        """,
                        {
                            "status": "READY" if final is ReleaseOutcome.RETRY else "FAILED",
                            "delay": delay,
                            "reason": reason,
                            "failed_stage": Stage(failed_stage).value if failed_stage else None,
                            "id": job_id,
                            "owner_id": self.owner_id,
                        },
                    )
                    released = cur.rowcount == 1

        if released:
            logger.info(
                f"Released job as {final.value}",
                extra={
                    "job_id": job_id,
                    "outcome": final.value,
                    "attempt": attempt_count,
                    "max_attempts": self.retry_policy.max_attempts,
                },
            )
        return released

    async def complete(self, job_id: str) -> bool:
        """Mark an owned job DONE at stage COMPLETED."""
        return await self._execute_owned(
            f"""
            UPDATE voice_jobs
            SET job_status = 'DONE',
                stage = 'COMPLETED',
                owner_id = NULL,
                lease_expires_at = NULL,
                next_run_at = NULL,
                processed_at = now()
            WHERE {_OWNED}
            """,
            {"id": job_id, "owner_id": self.owner_id},
            action="complete",
        )

    async def advance_stage(
        self,
        job_id: str,
        stage: Stage,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Checkpoint an owned job at ``stage``, writing the payload it produced.

        Only the payload columns belonging to ``stage`` are written; they
        land in the same statement as the stage itself. The lease is
        extended on every checkpoint.
        """
        stage = Stage(stage)
        assignments = ["stage = %(stage)s"]
        params: Dict[str, Any] = {
            "stage": stage.value,
            "id": job_id,
            "owner_id": self.owner_id,
            "lease_seconds": float(self.lease_seconds),
        }
        for column in STAGE_PAYLOAD_FIELDS[stage]:
            if payload is None or column not in payload:
                continue
            value = payload[column]
            params[column] = Jsonb(value) if column in _JSON_COLUMNS else value
            assignments.append(f"{column} = %({column})s")
        assignments.append("lease_expires_at = now() + make_interval(secs => %(lease_seconds)s)")

        return await self._execute_owned(
            f"UPDATE voice_jobs SET {', '.join(assignments)} WHERE {_OWNED}",
            params,
            action=f"advance to {stage.value}",
        )

    async def requeue_for_shutdown(self, job_ids: Sequence[str]) -> int:
        """
        Return owned in-flight jobs to READY with a short delay.

        Returns:
            Number of rows requeued
        """
        ids = list(job_ids)
        if not ids:
            return 0
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE voice_jobs
                    SET job_status = 'READY',
                        owner_id = NULL,
                        lease_expires_at = NULL,
                        next_run_at = now() + %(delay)s::float8 * interval '1 second',
                        failed_reason = %(reason)s
                    WHERE id = ANY(%(ids)s)
                      AND owner_id = %(owner_id)s
                      AND job_status = 'PROCESSING'
                    """,
                    {
                        "delay": float(self.shutdown_requeue_delay),
                        "reason": SHUTDOWN_REQUEUE_REASON,
                        "ids": ids,
                        "owner_id": self.owner_id,
                    },
                )
                return cur.rowcount

    # =========================================================================
    # Maintenance and health
    # =========================================================================

    async def fail_abandoned_leases(self) -> int:
        """
        Fail PROCESSING jobs whose lease expired after their last allowed attempt.

        Jobs with attempts left are picked up by claim_batch instead.
        """
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE voice_jobs
                    SET job_status = 'FAILED',
                        owner_id = NULL,
                        lease_expires_at = NULL,
                        next_run_at = NULL,
                        failed_stage = stage,
                        failed_reason = %(reason)s
                    WHERE job_status = 'PROCESSING'
                      AND lease_expires_at IS NOT NULL
                      AND lease_expires_at < now()
                      AND attempt_count >= %(max_attempts)s
                    """,
                    {
                        "reason": LEASE_EXPIRED_REASON,
                        "max_attempts": self.retry_policy.max_attempts,
                    },
                )
                failed = cur.rowcount
        if failed:
            logger.warning(
                "Failed %d job(s) with expired leases and no attempts left",
                failed,
                extra={"count": failed},
            )
        return failed

    async def count_ready_now(self) -> int:
        """Number of READY jobs eligible right now (0 on error)."""
        try:
            async with self.pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        SELECT count(*) FROM voice_jobs
                        WHERE job_status = 'READY'
                          AND (next_run_at IS NULL OR next_run_at <= now())
                        """
                    )
                    row = await cur.fetchone()
        except psycopg.Error as e:
            logger.warning(
                f"Queue depth sample failed: {e}", extra={"error_code": str(ERR_DB_QUERY)}
            )
            return 0
        return int(row[0]) if row else 0

    async def upsert_heartbeat(self, record: HeartbeatRecord) -> None:
        """
        Upsert this worker's heartbeat row.

        last_error is only overwritten when the new status is degraded.
        """
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO worker_heartbeats (
                        worker_id, kind, last_seen_at, started_at, jobs_in_flight,
                        jobs_processed_total, queue_ready_now, current_status,
                        last_error, version, hostname
                    ) VALUES (
                        %(worker_id)s, %(kind)s, now(), %(started_at)s, %(jobs_in_flight)s,
                        %(jobs_processed_total)s, %(queue_ready_now)s, %(current_status)s,
                        %(last_error)s, %(version)s, %(hostname)s
                    )
                    ON CONFLICT (worker_id) DO UPDATE SET
                        last_seen_at = EXCLUDED.last_seen_at,
                        jobs_in_flight = EXCLUDED.jobs_in_flight,
                        jobs_processed_total = EXCLUDED.jobs_processed_total,
                        queue_ready_now = EXCLUDED.queue_ready_now,
                        current_status = EXCLUDED.current_status,
                        last_error = CASE
                            WHEN EXCLUDED.current_status = %(degraded)s THEN EXCLUDED.last_error
                            ELSE worker_heartbeats.last_error
                        END,
                        version = EXCLUDED.version,
                        hostname = EXCLUDED.hostname
                    """,
                    {
                        **record.model_dump(mode="json"),
                        "degraded": WorkerStatus.DEGRADED.value,
                    },
                )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _execute_owned(self, query: str, params: Dict[str, Any], action: str) -> bool:
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                matched = cur.rowcount == 1
        if not matched:
            logger.warning(
                f"Ownership lost during {action}",
                extra={"job_id": params.get("id"), "status": "ownership_lost"},
            )
        return matched
