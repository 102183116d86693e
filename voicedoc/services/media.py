"""Media download from the messaging provider (HTTP basic auth)."""

from __future__ import annotations

import logging

import httpx

from voicedoc.services.base import DEFAULT_AUDIO_CONTENT_TYPE, MediaFile

logger = logging.getLogger(__name__)


class HttpMediaSource:
    """
    Downloads inbound media by URL using the provider account credentials.

    Non-2xx responses raise httpx.HTTPStatusError so the error classifier
    can tell 5xx/429 (hard) from 4xx (soft).
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._auth = httpx.BasicAuth(account_sid, auth_token)
        self._timeout = httpx.Timeout(timeout, connect=10.0)
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                auth=self._auth,
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._http_client

    async def download(self, media_ref: str) -> MediaFile:
        client = await self._get_http_client()
        logger.info("Downloading media from provider: %s...", media_ref[:50])
        response = await client.get(media_ref)
        response.raise_for_status()
        content_type = response.headers.get("content-type") or DEFAULT_AUDIO_CONTENT_TYPE
        logger.info("Media downloaded (%d bytes, %s)", len(response.content), content_type)
        return MediaFile(content=response.content, content_type=content_type)

    async def close(self) -> None:
        """Close HTTP client connections."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None
