"""Server-side AWS SigV4 signing for S3 requests."""

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from klbupload.transport.base import Transport, TransportResponse
from klbupload.upload.exceptions import SigningError, TransportError

logger = logging.getLogger(__name__)


def sha256_hex(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def amz_date(now: datetime | None = None) -> str:
    """Timestamp in the ``x-amz-date`` format."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y%m%dT%H%M%SZ")


def error_envelope(response: TransportResponse) -> tuple[str | None, str | None]:
    """Extract ``(error, token)`` from a KLB error envelope, if there is one."""
    try:
        body = response.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict) or body.get("result") != "error":
        return None, None
    return body.get("error"), body.get("token")


class SigningClient:
    """Obtains SigV4 Authorization headers from the negotiation server.

    Raw AWS credentials never reach the client. A signature binds method,
    URI and body hash, so every S3 request is signed separately.
    """

    def __init__(self, transport: Transport, upload_session_id: str, endpoint_prefix: str):
        self.transport = transport
        self.upload_session_id = upload_session_id
        self.endpoint = f"{endpoint_prefix.rstrip('/')}/{upload_session_id}:signV4"

    async def sign(
        self,
        method: str,
        host: str,
        uri: str,
        headers: Mapping[str, str],
        body_sha256: str,
    ) -> str:
        """Request an Authorization header value for one S3 request.

        Args:
            method: HTTP method of the S3 request
            host: S3 host the request goes to
            uri: Request target, path plus canonical query string
            headers: Headers that will be sent (and signed)
            body_sha256: Hex SHA-256 of the request body

        Returns:
            ``AWS4-HMAC-SHA256 ...`` Authorization header value

        Raises:
            SigningError: If the server denies or fails the request
        """
        payload: dict[str, Any] = {
            "method": method,
            "host": host,
            "uri": uri,
            "headers": dict(headers),
            "hash": body_sha256,
        }

        try:
            response = await self.transport.post(self.endpoint, json_body=payload)
        except TransportError as e:
            raise SigningError(f"Signing request failed: {e}") from e

        if not response.is_success:
            message, token = error_envelope(response)
            logger.warning(
                "Signing request rejected",
                extra={
                    "upload_session_id": self.upload_session_id,
                    "status_code": response.status_code,
                    "token": token,
                },
            )
            if response.status_code == 403:
                message = message or "Access denied to upload session"
            raise SigningError(
                message or f"Signing failed with HTTP {response.status_code}",
                status_code=response.status_code,
                token=token,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise SigningError("Signing response is not valid JSON") from e

        if not isinstance(body, dict) or body.get("result") != "success":
            error = body.get("error") if isinstance(body, dict) else None
            token = body.get("token") if isinstance(body, dict) else None
            raise SigningError(error or "Signing failed", token=token)

        data = body.get("data")
        authorization = data.get("authorization") if isinstance(data, dict) else None
        if not authorization:
            raise SigningError("Signing response has no authorization value")
        return authorization
