"""
VoiceDoc Worker - Shutdown Coordinator

State machine: RUNNING -> SHUTTING_DOWN -> STOPPED, entered once.

On the first shutdown request:
1. set the loop's stop event (checked between batches)
2. stop the heartbeat task, writing a final heartbeat
3. wait for a claim in progress, then requeue the in-flight ids so another
   worker can pick them up
4. close the connection pool

Errors in steps 2-4 are logged and never block exit. Second and later
requests (a repeated SIGTERM, SIGINT after SIGTERM) are no-ops.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, Sequence, Set

from voicedoc.core.logging import emit_worker_event

logger = logging.getLogger(__name__)

DEFAULT_CLAIM_TIMEOUT_SECONDS = 30.0


class ShutdownState(str, Enum):
    RUNNING = "RUNNING"
    SHUTTING_DOWN = "SHUTTING_DOWN"
    STOPPED = "STOPPED"


class RequeueStore(Protocol):
    async def requeue_for_shutdown(self, job_ids: Sequence[str]) -> int: ...


class StoppableLoop(Protocol):
    stop_event: asyncio.Event
    in_flight: Set[str]
    processed_total: int

    async def claim_settled(self) -> None: ...


class Stoppable(Protocol):
    async def stop(self) -> None: ...


class ShutdownCoordinator:
    """
    Args:
        store: Store used to requeue in-flight jobs
        loop: Worker loop whose stop event and in-flight set are used
        heartbeat: Heartbeat reporter (optional)
        close_pool: Coroutine function that closes the connection pool (optional)
        worker_id: For log events
        claim_timeout: Seconds to wait for a claim in progress before requeueing
    """

    def __init__(
        self,
        store: RequeueStore,
        loop: StoppableLoop,
        heartbeat: Optional[Stoppable] = None,
        close_pool: Optional[Callable[[], Awaitable[None]]] = None,
        worker_id: str = "",
        claim_timeout: float = DEFAULT_CLAIM_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.loop = loop
        self.heartbeat = heartbeat
        self.close_pool = close_pool
        self.worker_id = worker_id
        self.claim_timeout = claim_timeout
        self.state = ShutdownState.RUNNING
        self.requeued = 0
        self.done = asyncio.Event()
        self._start_time = time.monotonic()
        self._task: asyncio.Task[None] | None = None

    def request(self, reason: str = "requested") -> Optional[asyncio.Task[None]]:
        """
        Begin shutdown from synchronous code (signal handlers).

        Returns the shutdown task on the first call, None afterwards.
        """
        if self.state is not ShutdownState.RUNNING:
            logger.info("Shutdown already in progress; ignoring %s", reason)
            return None
        self._task = asyncio.get_running_loop().create_task(self.shutdown(reason))
        return self._task

    async def shutdown(self, reason: str = "requested") -> None:
        if self.state is not ShutdownState.RUNNING:
            return
        self.state = ShutdownState.SHUTTING_DOWN
        logger.info("Shutting down (%s)", reason, extra={"worker_id": self.worker_id})

        self.loop.stop_event.set()

        if self.heartbeat is not None:
            try:
                await self.heartbeat.stop()
            except Exception as e:
                logger.error(f"Failed to stop heartbeat: {type(e).__name__}: {e}")

        # A claim that started before the stop event may still be in progress
        try:
            await asyncio.wait_for(self.loop.claim_settled(), timeout=self.claim_timeout)
        except Exception as e:
            logger.error(f"Failed waiting for in-progress claim: {type(e).__name__}: {e}")
        in_flight = sorted(self.loop.in_flight)
        if in_flight:
            try:
                self.requeued = await self.store.requeue_for_shutdown(in_flight)
                logger.info(
                    "Requeued %d of %d in-flight job(s)",
                    self.requeued,
                    len(in_flight),
                    extra={"count": self.requeued},
                )
            except Exception as e:
                logger.error(
                    f"Failed to requeue in-flight jobs {in_flight}: {type(e).__name__}: {e}"
                )

        if self.close_pool is not None:
            try:
                await self.close_pool()
            except Exception as e:
                logger.error(f"Failed to close connection pool: {type(e).__name__}: {e}")

        self.state = ShutdownState.STOPPED
        emit_worker_event(
            logger,
            "WORKER_SHUTDOWN",
            worker_id=self.worker_id,
            reason=reason,
            uptime_seconds=round(time.monotonic() - self._start_time, 2),
            jobs_processed=self.loop.processed_total,
            jobs_requeued=self.requeued,
        )
        self.done.set()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Route SIGTERM and SIGINT to ``request``."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request, sig.name)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(
                    sig, lambda signum, frame: loop.call_soon_threadsafe(
                        self.request, signal.Signals(signum).name
                    )
                )
