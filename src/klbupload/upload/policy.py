"""Transfer policy knobs."""

from dataclasses import dataclass
from typing import Optional

from klbupload.core.config import Settings, settings as default_settings
from klbupload.upload.planner import choose_part_size


@dataclass(frozen=True)
class UploadPolicy:
    """Concurrency, retry and verification policy for one upload."""

    max_concurrency: int = 3
    max_attempts: int = 5
    backoff_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    cancel_aborts_in_flight: bool = True
    s3_min_part_size: int = 5 * 1024 * 1024
    s3_max_parts: int = 10_000
    s3_streaming_part_size: int = 512 * 1024 * 1024
    s3_max_object_size: int = 5 * 1024 * 1024 * 1024 * 1024
    abort_s3_on_failure: bool = True
    verify_size: bool = True
    verify_sha256: bool = False
    s3_endpoint: str = "Cloud/Aws/Bucket/Upload"

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "UploadPolicy":
        s = settings or default_settings
        return cls(
            max_concurrency=s.UPLOAD_MAX_CONCURRENCY,
            max_attempts=s.UPLOAD_RETRY_MAX_ATTEMPTS,
            backoff_seconds=s.UPLOAD_RETRY_BACKOFF_SECONDS,
            backoff_max_seconds=s.UPLOAD_RETRY_BACKOFF_MAX_SECONDS,
            cancel_aborts_in_flight=s.CANCEL_ABORTS_IN_FLIGHT,
            s3_min_part_size=s.s3_min_part_size_bytes,
            s3_max_parts=s.S3_MAX_PARTS,
            s3_streaming_part_size=s.s3_streaming_part_size_bytes,
            s3_max_object_size=s.s3_max_object_size_bytes,
            abort_s3_on_failure=s.ABORT_S3_ON_FAILURE,
            verify_size=s.VERIFY_COMPLETION_SIZE,
            verify_sha256=s.VERIFY_COMPLETION_SHA256,
            s3_endpoint=s.S3_UPLOAD_ENDPOINT,
        )

    def s3_part_size(self, size: Optional[int]) -> int:
        """S3 part size for an object of ``size`` bytes, or unknown size when None."""
        return choose_part_size(
            size,
            min_part_size=self.s3_min_part_size,
            max_parts=self.s3_max_parts,
            streaming_part_size=self.s3_streaming_part_size,
        )
