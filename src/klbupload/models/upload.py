"""Upload data models and wire parsing."""

import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    PositiveInt,
    TypeAdapter,
    ValidationError,
)

from klbupload.upload.exceptions import CompletionError, NegotiationError, UnsupportedMethodError

DEFAULT_MIME_TYPE = "application/octet-stream"


class UploadRequest(BaseModel):
    """Immutable description of the file to upload."""

    model_config = ConfigDict(frozen=True)

    filename: str
    size: NonNegativeInt
    mime_type: str = DEFAULT_MIME_TYPE
    last_modified: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    params: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_path(cls, path: str | Path, params: dict[str, Any] | None = None) -> "UploadRequest":
        """Build a request from a file on disk."""
        path = Path(path)
        stat = path.stat()
        mime_type, _ = mimetypes.guess_type(path.name)
        return cls(
            filename=path.name,
            size=stat.st_size,
            mime_type=mime_type or DEFAULT_MIME_TYPE,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            params=params or {},
        )

    def negotiation_payload(self) -> dict[str, Any]:
        """Render the negotiation request body.

        Application params are merged in but never override file metadata.
        """
        payload = dict(self.params)
        payload.update(
            {
                "filename": self.filename,
                "size": self.size,
                "type": self.mime_type,
                "lastModified": int(self.last_modified.timestamp() * 1000),
            }
        )
        return payload


class DirectPutNegotiation(BaseModel):
    """Negotiated direct PUT upload."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    method: Literal["put"] = "put"
    put_url: str = Field(..., alias="PUT", min_length=1)
    complete_endpoint: str = Field(..., alias="Complete", min_length=1)
    block_size: Optional[PositiveInt] = Field(None, alias="Blocksize")


class BucketEndpoint(BaseModel):
    """S3 bucket location."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    host: str = Field(..., alias="Host", min_length=1)
    name: str = Field(..., alias="Name", min_length=1)
    region: str = Field(..., alias="Region", min_length=1)


class S3MultipartNegotiation(BaseModel):
    """Negotiated S3 multipart upload with server-side signing."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    method: Literal["s3"] = "s3"
    upload_session_id: str = Field(..., alias="Cloud_Aws_Bucket_Upload__", min_length=1)
    bucket: BucketEndpoint = Field(..., alias="Bucket_Endpoint")
    object_key: str = Field(..., alias="Key", min_length=1)

    @property
    def bucket_host(self) -> str:
        return self.bucket.host

    @property
    def bucket_name(self) -> str:
        return self.bucket.name

    @property
    def region(self) -> str:
        return self.bucket.region


NegotiationResult = Annotated[
    Union[DirectPutNegotiation, S3MultipartNegotiation],
    Field(discriminator="method"),
]

_negotiation_adapter: TypeAdapter = TypeAdapter(NegotiationResult)


class CompletionResult(BaseModel):
    """Durable object metadata returned once the upload is finalized.

    Application-specific fields from the completion endpoint are kept as
    extra attributes.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    blob_id: str = Field(..., alias="Blob__")
    sha256: Optional[str] = Field(None, alias="SHA256")
    size_bytes: NonNegativeInt = Field(..., alias="Size")
    mime_type: str = Field(..., alias="Mime")


def _unwrap_envelope(envelope: Any, error_cls: type) -> dict[str, Any]:
    """Return the ``data`` member of a success envelope or raise ``error_cls``."""
    if not isinstance(envelope, dict):
        raise error_cls("Response is not a JSON object")

    result = envelope.get("result")
    if result == "error":
        raise error_cls(
            envelope.get("error") or "Server returned an error",
            token=envelope.get("token"),
        )
    if result != "success":
        raise error_cls(f"Unexpected result {result!r} in response envelope")

    data = envelope.get("data")
    if not isinstance(data, dict):
        raise error_cls("Response envelope has no data object")
    return data


def parse_negotiation(envelope: Any) -> Union[DirectPutNegotiation, S3MultipartNegotiation]:
    """Parse a negotiation response envelope into its upload method.

    Raises:
        NegotiationError: On an error envelope or missing required fields
        UnsupportedMethodError: When the data matches neither method
    """
    data = _unwrap_envelope(envelope, NegotiationError)

    has_put = "PUT" in data
    has_s3 = "Cloud_Aws_Bucket_Upload__" in data
    if has_put and has_s3:
        raise NegotiationError("Negotiation response offers both direct PUT and S3 upload")
    if has_put:
        method = "put"
    elif has_s3:
        method = "s3"
    else:
        raise UnsupportedMethodError(
            f"Negotiation response matches no known upload method (keys: {sorted(data)})"
        )

    try:
        return _negotiation_adapter.validate_python({**data, "method": method})
    except ValidationError as e:
        raise NegotiationError(f"Malformed {method} negotiation response: {e}") from e


def parse_completion(envelope: Any) -> CompletionResult:
    """Parse a completion response envelope.

    Raises:
        CompletionError: On an error envelope or missing required fields
    """
    data = _unwrap_envelope(envelope, CompletionError)
    try:
        return CompletionResult.model_validate(data)
    except ValidationError as e:
        raise CompletionError(f"Malformed completion response: {e}") from e
