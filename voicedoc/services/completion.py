"""
Signed client for the remote "complete document" API.

Requests are authenticated with three headers:

    x-api-key    the configured API key
    x-timestamp  milliseconds since the epoch
    x-signature  hex HMAC-SHA256(secret, "{METHOD}:{PATH}:{TIMESTAMP}:{API_KEY}")

Retry behaviour:
    2xx          return the document id
    4xx          raise UpstreamRejectedError immediately (soft, no retry)
    5xx/network  retry with min(1s * 2**(n-1), 10s) delays, then raise
                 UpstreamUnavailableError (hard)
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from typing import Any, Awaitable, Callable, Dict

import httpx

from voicedoc.core.error_taxonomy import UpstreamRejectedError, UpstreamUnavailableError
from voicedoc.core.models import Job

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/api/voice/complete"
DEFAULT_MAX_ATTEMPTS = 5
RETRY_BASE_SECONDS = 1.0
RETRY_MAX_SECONDS = 10.0


def sign_request(secret: str, api_key: str, method: str, path: str, timestamp: str) -> str:
    payload = f"{method}:{path}:{timestamp}:{api_key}"
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def build_document_payload(job: Job, worker_id: str | None = None) -> Dict[str, Any]:
    """Request body for a job whose analysis is complete."""
    return {
        "jobId": job.id,
        "tenantId": job.tenant_id,
        "sender": job.sender,
        "senderName": job.sender_name,
        "transcript": job.transcript_text,
        "analysis": job.analysis or {},
        "audioRef": job.blob_ref,
        "workerId": worker_id,
    }


class CompletionClient:
    """POSTs finished analyses to the document API and returns the document id."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        secret: str,
        *,
        path: str = DEFAULT_PATH,
        worker_id: str | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not base_url:
            raise ValueError("COMPLETION_API_URL not configured")
        if not api_key or not secret:
            raise ValueError("COMPLETION_API_KEY or COMPLETION_API_SECRET not configured")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._secret = secret
        self._path = path
        self._worker_id = worker_id
        self._max_attempts = max_attempts
        self._timeout = httpx.Timeout(timeout, connect=10.0)
        self._transport = transport
        self._sleep = sleep
        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._http_client

    def _signed_headers(self, method: str) -> Dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        return {
            "x-api-key": self._api_key,
            "x-timestamp": timestamp,
            "x-signature": sign_request(self._secret, self._api_key, method, self._path, timestamp),
        }

    async def create_document(self, job: Job) -> str:
        client = await self._get_http_client()
        payload = build_document_payload(job, self._worker_id)
        last_error = "no attempts made"

        for attempt in range(1, self._max_attempts + 1):
            logger.info(
                "Calling document endpoint",
                extra={"job_id": job.id, "attempt": attempt},
            )
            try:
                response = await client.post(
                    self._path, json=payload, headers=self._signed_headers("POST")
                )
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(
                    f"Document endpoint network error: {last_error}",
                    extra={"job_id": job.id, "attempt": attempt},
                )
            else:
                status = response.status_code
                if 200 <= status < 300:
                    return self._document_id(job, response)
                if 400 <= status < 500:
                    logger.error(
                        f"Document endpoint rejected request (HTTP {status})",
                        extra={"job_id": job.id, "status": status},
                    )
                    raise UpstreamRejectedError(
                        f"Document endpoint rejected request: HTTP {status} {response.text[:200]}",
                        status_code=status,
                    )
                last_error = f"HTTP {status}"
                logger.warning(
                    f"Document endpoint error, will retry (HTTP {status})",
                    extra={"job_id": job.id, "attempt": attempt},
                )

            if attempt < self._max_attempts:
                await self._sleep(min(RETRY_BASE_SECONDS * (2 ** (attempt - 1)), RETRY_MAX_SECONDS))

        raise UpstreamUnavailableError(
            f"Document endpoint unavailable after {self._max_attempts} attempts: {last_error}"
        )

    def _document_id(self, job: Job, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if isinstance(data, dict) and data.get("success") is False:
            raise UpstreamRejectedError(
                f"Document endpoint reported failure: {data.get('message') or 'unknown'}",
                status_code=response.status_code,
            )
        document_id = data.get("documentId") if isinstance(data, dict) else None
        # The endpoint is keyed by job id; fall back to it when no id is echoed.
        return str(document_id or job.id)

    async def close(self) -> None:
        """Close HTTP client connections."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None
