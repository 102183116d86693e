"""
VoiceDoc Worker - Entry Point

Usage:
    # Run continuously until SIGTERM/SIGINT
    python -m voicedoc.workers.main

    # Claim and process a single batch, then exit
    python -m voicedoc.workers.main --once

    # Print the effective configuration (secrets masked) and exit
    python -m voicedoc.workers.main --print-config

Exit codes:
    0  clean shutdown
    1  configuration error
    2  database unavailable at startup

When WORKER_MODE differs from WORKER_ACTIVE_MODE the process idles until
signalled: no polling and no database access.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import socket
import sys
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from psycopg_pool import AsyncConnectionPool

from voicedoc import __version__
from voicedoc.config import ConfigurationError, Settings, get_settings, print_effective_config
from voicedoc.core.logging import configure_worker_logging, emit_worker_event
from voicedoc.db import (
    EXIT_CODE_DB_UNAVAILABLE,
    DatabaseUnavailableError,
    PoolHealthState,
    close_pool,
    get_safe_application_name,
    open_pool,
)
from voicedoc.services.ai import OpenAIAnalyzer, OpenAITranscriber
from voicedoc.services.completion import CompletionClient
from voicedoc.services.media import HttpMediaSource
from voicedoc.services.outbox import OutboxNotifier
from voicedoc.services.storage import SupabaseBlobStore
from voicedoc.stages import (
    AnalyzeStage,
    AudioStoreStage,
    CreateDocumentStage,
    QueueNotificationStage,
    TranscribeStage,
)
from voicedoc.workers.backoff import RetryPolicy
from voicedoc.workers.heartbeat import FailureWindow, HeartbeatReporter, generate_worker_id
from voicedoc.workers.job_store import JobStore
from voicedoc.workers.pipeline import StagePipeline
from voicedoc.workers.runner import WorkerLoop
from voicedoc.workers.shutdown import ShutdownCoordinator

logger = logging.getLogger("voicedoc.worker")

EXIT_CODE_OK = 0
EXIT_CODE_CONFIG_ERROR = 1


@dataclass
class WorkerComponents:
    """Everything built for one worker process, wired together."""

    worker_id: str
    store: JobStore
    pipeline: StagePipeline
    failures: FailureWindow
    loop: WorkerLoop
    heartbeat: HeartbeatReporter
    coordinator: ShutdownCoordinator
    closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list)


def build_components(
    settings: Settings, pool: AsyncConnectionPool, worker_id: str
) -> WorkerComponents:
    retry_policy = RetryPolicy(
        base_seconds=settings.RETRY_BASE_SECONDS,
        jitter_max_seconds=settings.RETRY_JITTER_SECONDS,
        max_attempts=settings.WORKER_MAX_ATTEMPTS,
    )
    store = JobStore(
        pool,
        owner_id=worker_id,
        retry_policy=retry_policy,
        lease_seconds=settings.lease_seconds,
        lease_reclaim=settings.WORKER_LEASE_RECLAIM,
        shutdown_requeue_delay=settings.SHUTDOWN_REQUEUE_DELAY_SECONDS,
    )

    media = HttpMediaSource(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
    blobs = SupabaseBlobStore(
        settings.STORAGE_BUCKET,
        url=settings.SUPABASE_URL,
        key=settings.SUPABASE_SERVICE_ROLE_KEY,
    )
    completion = CompletionClient(
        settings.COMPLETION_API_URL,
        settings.COMPLETION_API_KEY,
        settings.COMPLETION_API_SECRET,
        path=settings.COMPLETION_API_PATH,
        worker_id=worker_id,
    )
    processors = [
        AudioStoreStage(media, blobs, prefix=settings.STORAGE_PREFIX),
        TranscribeStage(
            OpenAITranscriber(
                api_key=settings.OPENAI_API_KEY, model=settings.OPENAI_TRANSCRIBE_MODEL
            ),
            blobs,
            media,
        ),
        AnalyzeStage(
            OpenAIAnalyzer(api_key=settings.OPENAI_API_KEY, model=settings.OPENAI_ANALYSIS_MODEL)
        ),
        CreateDocumentStage(completion),
        QueueNotificationStage(OutboxNotifier(pool)),
    ]
    pipeline = StagePipeline(
        store,
        processors,
        stage_timeout=settings.STAGE_TIMEOUT_SECONDS,
        max_attempts=settings.WORKER_MAX_ATTEMPTS,
    )

    failures = FailureWindow(
        window_seconds=settings.HARD_FAILURE_WINDOW_SECONDS,
        threshold=settings.HARD_FAILURE_THRESHOLD,
    )
    loop = WorkerLoop(
        store,
        pipeline,
        failures,
        batch_size=settings.WORKER_BATCH_SIZE,
        poll_interval=settings.WORKER_POLL_INTERVAL_SECONDS,
    )
    heartbeat = HeartbeatReporter(
        store,
        loop,
        failures,
        worker_id=worker_id,
        version=settings.WORKER_VERSION,
        interval=settings.HEARTBEAT_INTERVAL_SECONDS,
        sweep_leases=settings.WORKER_LEASE_RECLAIM,
    )
    coordinator = ShutdownCoordinator(
        store,
        loop,
        heartbeat=heartbeat,
        close_pool=lambda: close_pool(pool),
        worker_id=worker_id,
    )
    return WorkerComponents(
        worker_id=worker_id,
        store=store,
        pipeline=pipeline,
        failures=failures,
        loop=loop,
        heartbeat=heartbeat,
        coordinator=coordinator,
        closers=[media.close, completion.close],
    )


async def idle_until_signalled(settings: Settings) -> int:
    """Inactive mode: log periodically, never touch the queue."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    logger.warning(
        "WORKER_MODE=%r is not %r; idling without polling",
        settings.WORKER_MODE,
        settings.WORKER_ACTIVE_MODE,
    )
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=settings.WORKER_IDLE_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            logger.info("Worker idle (WORKER_MODE=%s)", settings.WORKER_MODE)
    logger.info("Idle worker stopped")
    return EXIT_CODE_OK


async def run_worker(settings: Settings, *, once: bool = False) -> int:
    """Run the worker until shutdown. Returns the process exit code."""
    if not settings.is_active_mode:
        return await idle_until_signalled(settings)

    worker_id = settings.WORKER_ID or generate_worker_id()
    start = time.monotonic()
    emit_worker_event(
        logger,
        "WORKER_BOOT",
        worker_id=worker_id,
        version=settings.WORKER_VERSION,
        package_version=__version__,
        hostname=socket.gethostname(),
        pid=os.getpid(),
        batch_size=settings.WORKER_BATCH_SIZE,
        poll_interval_seconds=settings.WORKER_POLL_INTERVAL_SECONDS,
        max_attempts=settings.WORKER_MAX_ATTEMPTS,
        once=once,
    )

    health = PoolHealthState()
    try:
        pool = await open_pool(
            settings.DATABASE_URL,
            min_size=settings.DB_POOL_MIN_SIZE,
            max_size=settings.DB_POOL_MAX_SIZE,
            application_name=get_safe_application_name(worker_id),
            health=health,
        )
    except DatabaseUnavailableError as e:
        emit_worker_event(
            logger,
            "WORKER_CRASH",
            worker_id=worker_id,
            error=str(e),
            error_type=type(e).__name__,
            uptime_seconds=round(time.monotonic() - start, 2),
        )
        return EXIT_CODE_DB_UNAVAILABLE

    components = build_components(settings, pool, worker_id)
    coordinator = components.coordinator
    coordinator.install_signal_handlers()
    components.heartbeat.start()

    try:
        if once:
            await components.loop.run_once()
            await coordinator.shutdown("single batch complete")
        else:
            await _run_until_stopped(components)
    finally:
        for closer in components.closers:
            try:
                await closer()
            except Exception as e:
                logger.warning(f"Failed to close client: {type(e).__name__}: {e}")

    return EXIT_CODE_OK


async def _run_until_stopped(components: WorkerComponents) -> None:
    coordinator = components.coordinator
    loop_task = asyncio.create_task(components.loop.run(), name="worker-loop")
    done_task = asyncio.create_task(coordinator.done.wait(), name="shutdown-wait")
    try:
        await asyncio.wait({loop_task, done_task}, return_when=asyncio.FIRST_COMPLETED)
        if loop_task.done() and loop_task.exception() is not None:
            raise loop_task.exception()  # type: ignore[misc]
        if not coordinator.done.is_set():
            await coordinator.shutdown("worker loop exited")
    finally:
        for task in (loop_task, done_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(loop_task, done_task, return_exceptions=True)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="VoiceDoc queue worker")
    parser.add_argument("--once", action="store_true", help="Process one batch and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--print-config",
        action="store_true",
        help="Print the effective configuration with secrets masked and exit",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_arg_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ConfigurationError as e:
        configure_worker_logging("voicedoc.worker", "INFO")
        logger.critical(f"FATAL: {e}")
        return EXIT_CODE_CONFIG_ERROR

    if args.print_config:
        print(json.dumps(print_effective_config(settings), indent=2, default=str))
        return EXIT_CODE_OK

    configure_worker_logging(
        "voicedoc.worker",
        "DEBUG" if args.verbose else settings.LOG_LEVEL,
        json_output=settings.LOG_JSON,
    )

    try:
        return asyncio.run(run_worker(settings, once=args.once))
    except KeyboardInterrupt:
        return EXIT_CODE_OK
    except Exception as e:
        emit_worker_event(
            logger, "WORKER_CRASH", error=str(e), error_type=type(e).__name__
        )
        logger.critical("Fatal error in worker: %s", e, exc_info=True)
        return 1


def run() -> None:
    """Console-script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
