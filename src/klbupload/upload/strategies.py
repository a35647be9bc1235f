"""Transfer strategies: one per negotiated upload method.

The orchestrator picks a strategy once, from the negotiation result, and
the transfer engine drives it through ``prepare``, ``transfer_chunk`` and
``complete_session``.
"""

import logging
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from typing import Optional, Sequence
from urllib.parse import quote

from klbupload.models.upload import (
    CompletionResult,
    DirectPutNegotiation,
    S3MultipartNegotiation,
    UploadRequest,
    parse_completion,
)
from klbupload.transport.base import Transport, TransportResponse
from klbupload.upload.exceptions import (
    ChunkRejectedError,
    ChunkTransferError,
    CompletionError,
    TransferError,
    TransportError,
    UploadError,
)
from klbupload.upload.session import ChunkDescriptor, ChunkPlan, ChunkState
from klbupload.upload.signing import SigningClient, amz_date, error_envelope, sha256_hex

logger = logging.getLogger(__name__)


def check_chunk_response(response: TransportResponse, chunk: ChunkDescriptor) -> None:
    """Raise the chunk error matching a non-200 response."""
    if response.status_code == 200:
        return

    message, token = error_envelope(response)
    detail = f"Chunk {chunk.index} got HTTP {response.status_code}"
    if message:
        detail = f"{detail}: {message}"

    if 400 <= response.status_code < 500:
        raise ChunkRejectedError(detail, chunk_index=chunk.index, status_code=response.status_code, token=token)
    raise ChunkTransferError(detail, chunk_index=chunk.index, status_code=response.status_code, token=token)


async def request_completion(transport: Transport, url: str, negotiation) -> CompletionResult:
    """POST a completion endpoint and parse its envelope."""
    try:
        response = await transport.post(url)
    except TransportError as e:
        raise CompletionError(f"Completion request failed: {e}", negotiation=negotiation) from e

    try:
        envelope = response.json()
    except ValueError:
        envelope = None

    if not response.is_success or envelope is None:
        message, token = error_envelope(response)
        raise CompletionError(
            message or f"Completion failed with HTTP {response.status_code}",
            status_code=response.status_code,
            token=token,
            negotiation=negotiation,
        )

    try:
        return parse_completion(envelope)
    except CompletionError as e:
        e.negotiation = negotiation
        raise


class TransferStrategy(ABC):
    """Method-specific transfer of chunks and session completion."""

    def __init__(self, transport: Transport, request: UploadRequest, plan: ChunkPlan):
        self.transport = transport
        self.request = request
        self.plan = plan

    async def prepare(self) -> None:
        """Run before the first chunk is dispatched."""
        pass

    @abstractmethod
    async def transfer_chunk(self, chunk: ChunkDescriptor, data: bytes) -> Optional[str]:
        """Send one chunk.

        Returns:
            A receipt to keep on the chunk state (S3 ETag), or None

        Raises:
            ChunkTransferError: On a retryable failure
            ChunkRejectedError: On a 4xx response
            SigningError: If the request could not be signed
        """
        pass

    @abstractmethod
    async def complete_session(self, chunks: Sequence[ChunkState]) -> CompletionResult:
        """Finalize the upload once every chunk is stored.

        Raises:
            CompletionError: If finalization fails
        """
        pass

    async def abort(self) -> None:
        """Release server-side resources of a failed or cancelled upload."""
        pass


class DirectPutStrategy(TransferStrategy):
    """PUT chunks straight to the negotiated URL."""

    def __init__(
        self,
        transport: Transport,
        request: UploadRequest,
        plan: ChunkPlan,
        negotiation: DirectPutNegotiation,
    ):
        super().__init__(transport, request, plan)
        self.negotiation = negotiation

    async def transfer_chunk(self, chunk: ChunkDescriptor, data: bytes) -> Optional[str]:
        headers = {"Content-Type": self.request.mime_type}
        if self.plan.ranged:
            headers["Content-Range"] = chunk.content_range

        try:
            response = await self.transport.put(self.negotiation.put_url, headers=headers, content=data)
        except TransportError as e:
            raise ChunkTransferError(str(e), chunk_index=chunk.index) from e

        check_chunk_response(response, chunk)
        return None

    async def complete_session(self, chunks: Sequence[ChunkState]) -> CompletionResult:
        return await request_completion(self.transport, self.negotiation.complete_endpoint, self.negotiation)


def _xml_find_text(root: ET.Element, name: str) -> Optional[str]:
    """Text of the first element named ``name``, ignoring XML namespaces."""
    for element in root.iter():
        if element.tag.rsplit("}", 1)[-1] == name:
            return element.text
    return None


class S3MultipartStrategy(TransferStrategy):
    """S3 native multipart upload, every request signed by the API server."""

    def __init__(
        self,
        transport: Transport,
        request: UploadRequest,
        plan: ChunkPlan,
        negotiation: S3MultipartNegotiation,
        signer: SigningClient,
        complete_endpoint: str,
    ):
        super().__init__(transport, request, plan)
        self.negotiation = negotiation
        self.signer = signer
        self.complete_endpoint = complete_endpoint
        self.upload_id: Optional[str] = None
        self.path = "/" + quote(negotiation.bucket_name, safe="") + "/" + quote(negotiation.object_key, safe="/~")

    @staticmethod
    def canonical_query(query: dict[str, str]) -> str:
        return "&".join(
            f"{quote(key, safe='~')}={quote(value, safe='~')}" for key, value in sorted(query.items())
        )

    async def _s3_request(
        self,
        method: str,
        query: dict[str, str],
        body: bytes = b"",
        content_type: Optional[str] = None,
    ) -> TransportResponse:
        """Sign and send one request to the bucket.

        Raises:
            SigningError: If signing fails
            TransportError: If the S3 request fails at transport level
        """
        qs = self.canonical_query(query)
        uri = f"{self.path}?{qs}" if qs else self.path
        body_hash = sha256_hex(body)

        headers = {
            "x-amz-content-sha256": body_hash,
            "x-amz-date": amz_date(),
        }
        if content_type:
            headers["Content-Type"] = content_type

        authorization = await self.signer.sign(method, self.negotiation.bucket_host, uri, headers, body_hash)
        headers["Authorization"] = authorization

        return await self.transport.request(
            method,
            f"https://{self.negotiation.bucket_host}{uri}",
            headers=headers,
            content=body,
        )

    async def prepare(self) -> None:
        """Initiate the multipart upload and keep its UploadId."""
        try:
            response = await self._s3_request("POST", {"uploads": ""}, content_type=self.request.mime_type)
        except TransportError as e:
            raise TransferError(f"Multipart initiation failed: {e}") from e

        if response.status_code != 200:
            raise TransferError(
                f"Multipart initiation got HTTP {response.status_code}", status_code=response.status_code
            )

        try:
            upload_id = _xml_find_text(ET.fromstring(response.content), "UploadId")
        except ET.ParseError as e:
            raise TransferError("Multipart initiation returned invalid XML") from e
        if not upload_id:
            raise TransferError("Multipart initiation response has no UploadId")

        self.upload_id = upload_id
        logger.info(
            "S3 multipart upload initiated",
            extra={
                "upload_session_id": self.negotiation.upload_session_id,
                "bucket": self.negotiation.bucket_name,
                "key": self.negotiation.object_key,
                "parts": len(self.plan),
            },
        )

    async def transfer_chunk(self, chunk: ChunkDescriptor, data: bytes) -> Optional[str]:
        query = {"partNumber": str(chunk.part_number), "uploadId": self.upload_id or ""}
        try:
            response = await self._s3_request("PUT", query, body=data)
        except TransportError as e:
            raise ChunkTransferError(str(e), chunk_index=chunk.index) from e

        check_chunk_response(response, chunk)

        etag = response.headers.get("etag")
        if not etag:
            raise ChunkTransferError(f"Part {chunk.part_number} response has no ETag", chunk_index=chunk.index)
        return etag

    def completion_body(self, chunks: Sequence[ChunkState]) -> bytes:
        root = ET.Element("CompleteMultipartUpload")
        for state in sorted(chunks, key=lambda c: c.descriptor.index):
            part = ET.SubElement(root, "Part")
            ET.SubElement(part, "PartNumber").text = str(state.descriptor.part_number)
            ET.SubElement(part, "ETag").text = state.etag
        return ET.tostring(root, encoding="utf-8")

    async def complete_session(self, chunks: Sequence[ChunkState]) -> CompletionResult:
        body = self.completion_body(chunks)
        try:
            response = await self._s3_request(
                "POST", {"uploadId": self.upload_id or ""}, body=body, content_type="application/xml"
            )
        except UploadError as e:
            raise CompletionError(f"CompleteMultipartUpload failed: {e}", negotiation=self.negotiation) from e

        # S3 can report a failed completion inside a 200 response
        failed = response.status_code != 200
        if not failed:
            try:
                failed = ET.fromstring(response.content).tag.rsplit("}", 1)[-1] == "Error"
            except ET.ParseError:
                failed = True
        if failed:
            raise CompletionError(
                f"CompleteMultipartUpload got HTTP {response.status_code}",
                status_code=response.status_code,
                negotiation=self.negotiation,
            )

        return await request_completion(self.transport, self.complete_endpoint, self.negotiation)

    async def abort(self) -> None:
        if self.upload_id is None:
            return
        try:
            response = await self._s3_request("DELETE", {"uploadId": self.upload_id})
        except UploadError as e:
            logger.warning(
                "AbortMultipartUpload failed (non-critical)",
                extra={"upload_session_id": self.negotiation.upload_session_id, "error": str(e)},
            )
            return

        logger.info(
            "S3 multipart upload aborted",
            extra={
                "upload_session_id": self.negotiation.upload_session_id,
                "status_code": response.status_code,
            },
        )
