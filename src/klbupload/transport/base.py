"""Abstract HTTP transport interface."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass
class TransportResponse:
    """Status, headers and raw body of one HTTP exchange."""

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    content: bytes = b""

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.content)


class Transport(ABC):
    """Abstract base class for HTTP transports.

    Implementations carry no protocol logic. Cancelling the awaiting task
    must abort the request in flight.
    """

    @abstractmethod
    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        content: bytes | None = None,
        json_body: Any = None,
    ) -> TransportResponse:
        """Execute one HTTP request.

        Args:
            method: HTTP method
            url: Absolute URL, or a path relative to the transport base URL
            headers: Request headers
            content: Raw request body
            json_body: JSON-serialisable body (mutually exclusive with content)

        Returns:
            Response status, headers and body

        Raises:
            TransportError: If no response could be obtained
        """
        pass

    async def get(self, url: str, **kwargs: Any) -> TransportResponse:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> TransportResponse:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> TransportResponse:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> TransportResponse:
        return await self.request("DELETE", url, **kwargs)

    async def aclose(self) -> None:
        """Release any pooled connections."""
        pass

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
