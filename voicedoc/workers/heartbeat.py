"""
VoiceDoc Worker - Health and Heartbeat

FailureWindow
    Sliding window of hard-failure timestamps. The worker is degraded while
    at least ``threshold`` hard failures fall inside the last
    ``window_seconds``.

HeartbeatReporter
    Background task that upserts the worker_heartbeats row on a fixed
    interval, independent of the polling cadence. Each tick samples the
    ready-queue depth, the loop's in-flight and processed counters and the
    failure window. A tick never raises: database trouble is logged
    (throttled) and the next tick tries again.

Usage:
    window = FailureWindow()
    reporter = HeartbeatReporter(store, loop, window, worker_id=..., version=...)
    reporter.start()
    ...
    await reporter.stop()
"""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import socket
import time
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Optional, Protocol, Set, Tuple

from voicedoc.core.models import HeartbeatRecord, WorkerStatus

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 30.0
DEFAULT_WINDOW_SECONDS = 120.0
DEFAULT_THRESHOLD = 5

# Throttle repeated heartbeat warnings while the database is down
WARNING_THROTTLE_SECONDS = 300.0

WORKER_KIND = "external"


def generate_worker_id(kind: str = WORKER_KIND) -> str:
    """``{kind}-{hostname}-{boot_ts}-{rand}``; unique per process start."""
    hostname = socket.gethostname().split(".")[0] or "unknown"
    return f"{kind}-{hostname}-{int(time.time())}-{secrets.token_hex(2)}"


class FailureWindow:
    """
    Counts hard failures in a sliding time window.

    The clock is injectable (defaults to ``time.monotonic``) so tests can
    move time forward without sleeping.
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        threshold: int = DEFAULT_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.threshold = threshold
        self._clock = clock
        self._events: Deque[Tuple[float, str]] = deque()
        self._last_error: Optional[str] = None

    def record(self, error_message: Optional[str]) -> None:
        self._events.append((self._clock(), error_message or ""))
        self._last_error = error_message
        self._prune()

    def count(self) -> int:
        self._prune()
        return len(self._events)

    def is_degraded(self) -> bool:
        return self.count() >= self.threshold

    @property
    def last_error(self) -> Optional[str]:
        """Most recent hard-failure message, kept after it leaves the window."""
        return self._last_error

    def _prune(self) -> None:
        cutoff = self._clock() - self.window_seconds
        while self._events and self._events[0][0] < cutoff:
            self._events.popleft()


class HeartbeatStore(Protocol):
    async def count_ready_now(self) -> int: ...

    async def upsert_heartbeat(self, record: HeartbeatRecord) -> None: ...

    async def fail_abandoned_leases(self) -> int: ...


class LoopCounters(Protocol):
    in_flight: Set[str]
    processed_total: int


class HeartbeatReporter:
    def __init__(
        self,
        store: HeartbeatStore,
        counters: LoopCounters,
        failures: FailureWindow,
        *,
        worker_id: str,
        version: str,
        interval: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
        hostname: str | None = None,
        sweep_leases: bool = True,
    ):
        self.store = store
        self.counters = counters
        self.failures = failures
        self.worker_id = worker_id
        self.version = version
        self.interval = interval
        self.hostname = hostname or os.environ.get("HOSTNAME") or socket.gethostname()
        self.sweep_leases = sweep_leases
        self.started_at = datetime.now(timezone.utc)

        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._last_warning_at: float | None = None
        self._consecutive_failures = 0
        self.beats = 0

    def build_record(self, queue_ready_now: int) -> HeartbeatRecord:
        degraded = self.failures.is_degraded()
        return HeartbeatRecord(
            worker_id=self.worker_id,
            kind=WORKER_KIND,
            started_at=self.started_at,
            jobs_in_flight=len(self.counters.in_flight),
            jobs_processed_total=self.counters.processed_total,
            queue_ready_now=queue_ready_now,
            current_status=WorkerStatus.DEGRADED if degraded else WorkerStatus.HEALTHY,
            last_error=self.failures.last_error if degraded else None,
            version=self.version,
            hostname=self.hostname,
        )

    async def tick(self, sweep: bool = True) -> bool:
        """
        Emit one heartbeat. Returns True if the row was written.

        Never raises.
        """
        try:
            queue_ready = await self.store.count_ready_now()
            record = self.build_record(queue_ready)
            await self.store.upsert_heartbeat(record)
            if sweep and self.sweep_leases:
                await self.store.fail_abandoned_leases()
        except Exception as e:
            self._consecutive_failures += 1
            self._warn_throttled(f"Heartbeat failed: {type(e).__name__}: {e}")
            return False

        if self._consecutive_failures:
            logger.info(
                "Heartbeat recovered after %d failure(s)", self._consecutive_failures
            )
        self._consecutive_failures = 0
        self.beats += 1
        logger.debug(
            "heartbeat status=%s in_flight=%d processed=%d ready=%d",
            record.current_status.value,
            record.jobs_in_flight,
            record.jobs_processed_total,
            record.queue_ready_now,
            extra={"worker_id": self.worker_id, "status": record.current_status.value},
        )
        return True

    def _warn_throttled(self, message: str) -> None:
        now = time.monotonic()
        last = self._last_warning_at
        if last is None or now - last >= WARNING_THROTTLE_SECONDS:
            logger.warning(
                message,
                extra={"worker_id": self.worker_id, "count": self._consecutive_failures},
            )
            self._last_warning_at = now

    async def run(self) -> None:
        """Tick immediately, then every ``interval`` seconds until stopped."""
        while not self._stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self.run(), name=f"heartbeat-{self.worker_id}")
        return self._task

    async def stop(self, final_beat: bool = True) -> None:
        """
        Stop the task and optionally write one last heartbeat.

        The last beat carries the current healthy/degraded status and the
        final counters; it does not sweep expired leases.
        """
        self._stop_event.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=max(self.interval, 5.0))
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None
        if final_beat:
            await self.tick(sweep=False)
