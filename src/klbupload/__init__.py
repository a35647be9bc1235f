"""KLB upload client.

Negotiates an upload method with a KLB API, transfers the file in chunks
(direct PUT or S3 multipart with server-side signing) and finalizes it.
"""

from klbupload.models.upload import (
    CompletionResult,
    DirectPutNegotiation,
    S3MultipartNegotiation,
    UploadRequest,
)
from klbupload.transport.http import HttpxTransport
from klbupload.upload.exceptions import (
    ChunkRejectedError,
    ChunkTransferError,
    CompletionError,
    NegotiationError,
    SigningError,
    UnsupportedMethodError,
    UploadCancelledError,
    UploadError,
)
from klbupload.upload.orchestrator import UploadOrchestrator
from klbupload.upload.policy import UploadPolicy
from klbupload.upload.session import SessionStatus
from klbupload.upload.source import BytesSource, FileSource

__all__ = [
    "UploadOrchestrator",
    "UploadPolicy",
    "UploadRequest",
    "CompletionResult",
    "DirectPutNegotiation",
    "S3MultipartNegotiation",
    "SessionStatus",
    "HttpxTransport",
    "BytesSource",
    "FileSource",
    "UploadError",
    "NegotiationError",
    "UnsupportedMethodError",
    "ChunkTransferError",
    "ChunkRejectedError",
    "SigningError",
    "CompletionError",
    "UploadCancelledError",
]
