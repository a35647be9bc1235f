"""Exceptions raised by the upload engine."""

from typing import Any


class UploadError(Exception):
    """Base exception for the upload engine."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        token: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.token = token


class TransportError(UploadError):
    """Raised when an HTTP request could not be completed at all."""
    pass


class NegotiationError(UploadError):
    """Raised when the negotiation response is malformed or an error envelope."""
    pass


class UnsupportedMethodError(UploadError):
    """Raised when the negotiation response matches no known upload method."""
    pass


class TransferError(UploadError):
    """Base exception for transfer-phase failures."""
    pass


class ChunkTransferError(TransferError):
    """Transport failure or 5xx on a chunk. Retryable."""

    def __init__(self, message: str, *, chunk_index: int, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.chunk_index = chunk_index


class ChunkRejectedError(TransferError):
    """4xx on a chunk. Never retried."""

    def __init__(self, message: str, *, chunk_index: int, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.chunk_index = chunk_index


class SigningError(UploadError):
    """Raised when the signV4 endpoint denies or fails a signing request."""
    pass


class CompletionError(UploadError):
    """Raised when the completion call fails or its result is inconsistent.

    Bytes are already stored server-side when this is raised, so
    ``negotiation`` is kept to allow retrying completion alone.
    """

    def __init__(self, message: str, *, negotiation: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.negotiation = negotiation


class UploadCancelledError(UploadError):
    """Raised when the upload session was cancelled by the caller."""
    pass


class SessionStateError(UploadError):
    """Raised on an illegal session state transition."""
    pass
