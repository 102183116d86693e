"""
VoiceDoc Worker - Error Taxonomy

Structured error classification for the queue worker. Every failure the
worker reports gets a stable error_code for log aggregation, and a
hard/soft verdict that drives the degraded-health window.

Error Code Format: VDW-{CATEGORY}-{NUMBER}
- CONFIG (001-099): Configuration and environment errors
- DB (100-199): Database connectivity and query errors
- NET (200-299): Network and HTTP errors
- VENDOR (300-399): Third-party service errors (OpenAI, storage, callback API)
- OWNERSHIP (400-499): Lost job ownership
- STAGE (500-599): Stage data/business failures
- INTERNAL (900-999): Unexpected internal errors

"Hard" failures are infrastructure-level: timeouts, connection resets,
rate limits and 5xx responses. Only hard failures count toward degraded
status. Everything else is soft.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum

import httpx
import openai
import psycopg

# =============================================================================
# ERROR CODES
# =============================================================================


class ErrorCategory(str, Enum):
    """Error category for classification."""

    CONFIG = "CONFIG"
    DB = "DB"
    NET = "NET"
    VENDOR = "VENDOR"
    OWNERSHIP = "OWNERSHIP"
    STAGE = "STAGE"
    INTERNAL = "INTERNAL"


@dataclass(frozen=True)
class ErrorCode:
    """Immutable error code definition."""

    code: str
    category: ErrorCategory
    message: str
    hard: bool = False

    def __str__(self) -> str:
        return self.code


ERR_CONFIG_MISSING_ENV = ErrorCode(
    code="VDW-CONFIG-001",
    category=ErrorCategory.CONFIG,
    message="Required environment variable is missing",
)
ERR_CONFIG_INVALID_VALUE = ErrorCode(
    code="VDW-CONFIG-002",
    category=ErrorCategory.CONFIG,
    message="Environment variable has invalid value",
)

ERR_DB_CONNECTION = ErrorCode(
    code="VDW-DB-100",
    category=ErrorCategory.DB,
    message="Database connection failed",
    hard=True,
)
ERR_DB_CLAIM = ErrorCode(
    code="VDW-DB-110",
    category=ErrorCategory.DB,
    message="Claiming a batch failed",
    hard=True,
)
ERR_DB_QUERY = ErrorCode(
    code="VDW-DB-120",
    category=ErrorCategory.DB,
    message="Database query failed",
)

ERR_NET_TIMEOUT = ErrorCode(
    code="VDW-NET-200",
    category=ErrorCategory.NET,
    message="Network operation timed out",
    hard=True,
)
ERR_NET_CONNECTION = ErrorCode(
    code="VDW-NET-201",
    category=ErrorCategory.NET,
    message="Network connection failed",
    hard=True,
)

ERR_VENDOR_RATE_LIMIT = ErrorCode(
    code="VDW-VENDOR-300",
    category=ErrorCategory.VENDOR,
    message="Upstream service rate limited the request",
    hard=True,
)
ERR_VENDOR_UNAVAILABLE = ErrorCode(
    code="VDW-VENDOR-301",
    category=ErrorCategory.VENDOR,
    message="Upstream service returned a server error",
    hard=True,
)
ERR_VENDOR_REJECTED = ErrorCode(
    code="VDW-VENDOR-310",
    category=ErrorCategory.VENDOR,
    message="Upstream service rejected the request",
)

ERR_OWNERSHIP_LOST = ErrorCode(
    code="VDW-OWNERSHIP-400",
    category=ErrorCategory.OWNERSHIP,
    message="Job ownership lost",
)

ERR_STAGE_MISSING_INPUT = ErrorCode(
    code="VDW-STAGE-500",
    category=ErrorCategory.STAGE,
    message="Stage prerequisite is missing",
)
ERR_STAGE_EMPTY_OUTPUT = ErrorCode(
    code="VDW-STAGE-501",
    category=ErrorCategory.STAGE,
    message="Stage produced no output",
)
ERR_STAGE_TIMEOUT = ErrorCode(
    code="VDW-STAGE-510",
    category=ErrorCategory.STAGE,
    message="Stage exceeded its time budget",
    hard=True,
)

ERR_INTERNAL_UNKNOWN = ErrorCode(
    code="VDW-INTERNAL-999",
    category=ErrorCategory.INTERNAL,
    message="Unexpected internal error",
)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class UpstreamUnavailableError(Exception):
    """An upstream service stayed unavailable after client-side retries."""


class UpstreamRejectedError(Exception):
    """An upstream service refused the request (4xx); retrying will not help."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


# =============================================================================
# CLASSIFIER
# =============================================================================

# Word-boundary match so ids like "job-1500x" do not look like a 5xx.
_STATUS_5XX = re.compile(r"\b5\d\d\b")

_HARD_MESSAGE_MARKERS = (
    "429",
    "rate limit",
    "internal server error",
    "etimedout",
    "econnreset",
    "econnrefused",
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
)


def _status_code_of(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code
    return None


def classify_exception(exc: BaseException) -> ErrorCode:
    """
    Map an exception to an error code.

    Exception types are checked first; the message heuristics in
    ``classify_message`` only apply to otherwise unknown exceptions.
    """
    if isinstance(exc, UpstreamUnavailableError):
        return ERR_VENDOR_UNAVAILABLE
    if isinstance(exc, UpstreamRejectedError):
        return ERR_VENDOR_REJECTED
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ERR_NET_TIMEOUT
    if isinstance(exc, openai.APITimeoutError):
        return ERR_NET_TIMEOUT
    if isinstance(exc, openai.RateLimitError):
        return ERR_VENDOR_RATE_LIMIT
    if isinstance(exc, (openai.APIConnectionError, httpx.TransportError, ConnectionError)):
        return ERR_NET_CONNECTION
    if isinstance(exc, psycopg.OperationalError):
        return ERR_DB_CONNECTION

    status = _status_code_of(exc)
    if status is not None:
        if status == 429:
            return ERR_VENDOR_RATE_LIMIT
        if status >= 500:
            return ERR_VENDOR_UNAVAILABLE
        return ERR_VENDOR_REJECTED

    if isinstance(exc, psycopg.Error):
        return ERR_DB_QUERY

    return classify_message(str(exc))


def classify_message(message: str | None) -> ErrorCode:
    """Classify a bare error message using substring heuristics."""
    text = (message or "").lower()
    if "429" in text or "rate limit" in text:
        return ERR_VENDOR_RATE_LIMIT
    if _STATUS_5XX.search(text) or "internal server error" in text:
        return ERR_VENDOR_UNAVAILABLE
    if any(marker in text for marker in ("etimedout", "timeout", "timed out")):
        return ERR_NET_TIMEOUT
    if any(marker in text for marker in _HARD_MESSAGE_MARKERS):
        return ERR_NET_CONNECTION
    return ERR_INTERNAL_UNKNOWN


def is_hard_failure(error: BaseException | str | None) -> bool:
    """
    Return True when ``error`` looks like an infrastructure failure.

    Accepts an exception or a plain message string.
    """
    if error is None:
        return False
    if isinstance(error, BaseException):
        return classify_exception(error).hard
    return classify_message(error).hard
