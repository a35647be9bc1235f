"""Configuration management for the KLB upload client."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    ENV: str = "local"
    SERVICE_NAME: str = "klb-upload"
    SERVICE_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # KLB API Configuration
    KLB_API_BASE_URL: str = ""  # Relative endpoints are resolved against this
    S3_UPLOAD_ENDPOINT: str = "Cloud/Aws/Bucket/Upload"  # Prefix for :signV4 / :handleComplete
    REQUEST_TIMEOUT: int = 300  # seconds per HTTP request

    # Transfer Policy
    UPLOAD_MAX_CONCURRENCY: int = 3
    UPLOAD_RETRY_MAX_ATTEMPTS: int = 5
    UPLOAD_RETRY_BACKOFF_SECONDS: float = 1.0
    UPLOAD_RETRY_BACKOFF_MAX_SECONDS: float = 30.0
    CANCEL_ABORTS_IN_FLIGHT: bool = True

    # S3 Multipart Constraints
    S3_MIN_PART_SIZE_MB: int = 5
    S3_MAX_PARTS: int = 10_000
    S3_STREAMING_PART_SIZE_MB: int = 512  # Used when the object size is not known up front
    S3_MAX_OBJECT_SIZE_GB: int = 5120
    ABORT_S3_ON_FAILURE: bool = True

    # Completion Verification
    VERIFY_COMPLETION_SIZE: bool = True
    VERIFY_COMPLETION_SHA256: bool = False  # Recompute SHA-256 locally and compare

    @property
    def s3_min_part_size_bytes(self) -> int:
        """Convert S3_MIN_PART_SIZE_MB to bytes."""
        return self.S3_MIN_PART_SIZE_MB * 1024 * 1024

    @property
    def s3_streaming_part_size_bytes(self) -> int:
        """Convert S3_STREAMING_PART_SIZE_MB to bytes."""
        return self.S3_STREAMING_PART_SIZE_MB * 1024 * 1024

    @property
    def s3_max_object_size_bytes(self) -> int:
        """Convert S3_MAX_OBJECT_SIZE_GB to bytes."""
        return self.S3_MAX_OBJECT_SIZE_GB * 1024 * 1024 * 1024


# Singleton settings instance
settings = Settings()
