"""httpx-based transport."""

import logging
from typing import Any, Mapping

import httpx

from klbupload.core.config import settings
from klbupload.transport.base import Transport, TransportResponse
from klbupload.upload.exceptions import TransportError

logger = logging.getLogger(__name__)


class HttpxTransport(Transport):
    """Transport backed by a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the underlying client.

        Args:
            base_url: Base for relative URLs. Defaults to settings.KLB_API_BASE_URL.
            timeout: Per-request timeout in seconds. Defaults to settings.REQUEST_TIMEOUT.
            headers: Headers sent with every request
            transport: Optional httpx transport (e.g. ASGITransport in tests)
        """
        self._client = httpx.AsyncClient(
            base_url=base_url if base_url is not None else settings.KLB_API_BASE_URL,
            timeout=timeout if timeout is not None else settings.REQUEST_TIMEOUT,
            headers=dict(headers or {}),
            transport=transport,
        )

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        content: bytes | None = None,
        json_body: Any = None,
    ) -> TransportResponse:
        try:
            response = await self._client.request(
                method,
                url,
                headers=dict(headers or {}),
                content=content,
                json=json_body,
            )
        except httpx.TimeoutException as e:
            logger.warning(
                "HTTP request timed out",
                extra={"method": method, "url": url, "error": str(e)},
            )
            raise TransportError(f"{method} {url} timed out") from e
        except httpx.TransportError as e:
            logger.warning(
                "HTTP request failed",
                extra={"method": method, "url": url, "error": str(e)},
            )
            raise TransportError(f"{method} {url} failed: {e}") from e

        return TransportResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            content=response.content,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
