"""
VoiceDoc Worker - Database Layer

Async PostgreSQL connection pooling via psycopg3 + psycopg_pool.

The pool is created once by the worker entry point and passed explicitly
to the job store and the shutdown coordinator; nothing here is global.
Initialization implements:
- Exponential backoff retry (6 attempts, max 60s total)
- Structured logging (DSN host/port/dbname/user, no password)
- Pool health state tracking
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse

import psycopg
from psycopg_pool import AsyncConnectionPool

from . import __version__

logger = logging.getLogger(__name__)

# Exit code when the database cannot be reached at startup
EXIT_CODE_DB_UNAVAILABLE = 2

MAX_RETRY_ATTEMPTS = 6
MAX_TOTAL_WAIT_SECONDS = 60.0
BASE_DELAY_SECONDS = 1.0


class DatabaseUnavailableError(RuntimeError):
    """Raised when the pool cannot be opened within the retry budget."""


@dataclass
class PoolHealthState:
    """Tracks database pool initialization state."""

    initialized: bool = False
    healthy: bool = False
    last_error: str | None = None
    last_check_at: float | None = None
    init_attempts: int = 0
    init_duration_ms: float | None = None


def parse_dsn_for_logging(dsn: str) -> dict[str, str | None]:
    """
    Parse DSN and extract loggable components (no password).

    Returns dict with host, port, dbname, user, sslmode.
    """
    try:
        parsed = urlparse(dsn)
        query_params = parse_qs(parsed.query)
        return {
            "host": parsed.hostname,
            "port": str(parsed.port) if parsed.port else "5432",
            "dbname": parsed.path.lstrip("/") if parsed.path else None,
            "user": parsed.username,
            "sslmode": query_params.get("sslmode", ["not_set"])[0],
        }
    except ValueError as e:
        return {"error": str(e)}


def get_safe_application_name(worker_id: str) -> str:
    """
    Build a Postgres application_name without spaces or dots.

    Postgres truncates application_name at 63 bytes.
    """
    safe_version = __version__.replace(".", "_").replace(" ", "_").replace("-", "_")
    name = f"voicedoc_v{safe_version}_{worker_id}".replace(" ", "_").replace(".", "_")
    return name[:63]


async def open_pool(
    dsn: str,
    *,
    min_size: int = 1,
    max_size: int = 10,
    application_name: str = "voicedoc",
    health: PoolHealthState | None = None,
    max_attempts: int = MAX_RETRY_ATTEMPTS,
    base_delay: float = BASE_DELAY_SECONDS,
) -> AsyncConnectionPool:
    """
    Open an AsyncConnectionPool and verify it with ``SELECT 1``.

    Retries with exponential backoff and jitter.

    Raises:
        DatabaseUnavailableError: every attempt failed
    """
    health = health if health is not None else PoolHealthState()

    dsn_info = parse_dsn_for_logging(dsn)
    logger.info(
        "Database connection parameters: host=%s port=%s dbname=%s user=%s sslmode=%s",
        dsn_info.get("host"),
        dsn_info.get("port"),
        dsn_info.get("dbname"),
        dsn_info.get("user"),
        dsn_info.get("sslmode"),
    )

    start_time = time.monotonic()
    last_error: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        health.init_attempts = attempt
        elapsed = time.monotonic() - start_time
        if elapsed >= MAX_TOTAL_WAIT_SECONDS:
            logger.error(
                f"DB pool init: time budget exhausted ({elapsed:.1f}s >= {MAX_TOTAL_WAIT_SECONDS}s)"
            )
            break

        pool: AsyncConnectionPool | None = None
        try:
            logger.info(f"DB pool init: attempt {attempt}/{max_attempts}")
            pool = AsyncConnectionPool(
                dsn,
                min_size=min_size,
                max_size=max_size,
                kwargs={"application_name": application_name},
                open=False,
            )
            await pool.open(wait=True, timeout=10.0)

            async with pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1;")
                    result = await cur.fetchone()
                    if result is None or result[0] != 1:
                        raise RuntimeError("SELECT 1 did not return expected result")

            init_duration = (time.monotonic() - start_time) * 1000
            health.initialized = True
            health.healthy = True
            health.last_error = None
            health.init_duration_ms = init_duration
            health.last_check_at = time.monotonic()
            logger.info(
                f"Database pool initialized OK (attempt {attempt}, {init_duration:.0f}ms total)"
            )
            return pool

        except (psycopg.Error, OSError, RuntimeError, asyncio.TimeoutError) as e:
            last_error = e
            health.last_error = f"{type(e).__name__}: {str(e)[:200]}"
            health.healthy = False
            logger.warning(f"DB pool init attempt {attempt} failed: {type(e).__name__}: {e}")
            if pool is not None:
                await pool.close()

            if attempt < max_attempts:
                delay = base_delay * (2 ** (attempt - 1))
                jitter = random.uniform(0, delay * 0.3)
                actual_delay = min(delay + jitter, MAX_TOTAL_WAIT_SECONDS - elapsed)
                if actual_delay > 0:
                    logger.info(f"DB pool init: waiting {actual_delay:.1f}s before retry")
                    await asyncio.sleep(actual_delay)

    total_elapsed = time.monotonic() - start_time
    health.initialized = False
    health.healthy = False
    health.init_duration_ms = total_elapsed * 1000
    raise DatabaseUnavailableError(
        f"Failed to initialize database pool after {health.init_attempts} attempts "
        f"({total_elapsed:.1f}s): {last_error}"
    )


async def close_pool(pool: AsyncConnectionPool | None, timeout: float = 5.0) -> None:
    """Close the pool, waiting at most ``timeout`` seconds for checked-out connections."""
    if pool is None:
        return
    logger.info("Closing PostgreSQL connection pool")
    await pool.close(timeout=timeout)
