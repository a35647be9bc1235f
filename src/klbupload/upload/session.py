"""Upload session aggregate: chunk plan, chunk states and lifecycle."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional
from uuid import uuid4

from klbupload.models.upload import CompletionResult, NegotiationResult, UploadRequest
from klbupload.upload.exceptions import SessionStateError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkDescriptor:
    """Byte range ``[start_byte, end_byte)`` of the file."""

    index: int
    start_byte: int
    end_byte: int
    size_bytes: int

    @property
    def part_number(self) -> int:
        """1-based S3 part number."""
        return self.index + 1

    @property
    def content_range(self) -> str:
        """HTTP Content-Range value with an inclusive end and unknown total."""
        return f"bytes {self.start_byte}-{self.end_byte - 1}/*"


@dataclass(frozen=True)
class ChunkPlan:
    """Ordered, contiguous partition of ``[0, total_size)``."""

    method: Literal["put", "s3"]
    total_size: int
    chunk_size: int
    chunks: tuple[ChunkDescriptor, ...]

    @property
    def ranged(self) -> bool:
        """Whether direct PUT chunks carry a Content-Range header."""
        return self.method == "put" and len(self.chunks) > 1

    def __len__(self) -> int:
        return len(self.chunks)

    def __iter__(self):
        return iter(self.chunks)


class ChunkStatus(str, Enum):
    """Chunk transfer status."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


_CHUNK_TRANSITIONS: dict[ChunkStatus, frozenset[ChunkStatus]] = {
    ChunkStatus.PENDING: frozenset({ChunkStatus.IN_FLIGHT}),
    ChunkStatus.IN_FLIGHT: frozenset({ChunkStatus.COMPLETED, ChunkStatus.FAILED}),
    ChunkStatus.FAILED: frozenset({ChunkStatus.PENDING}),
    ChunkStatus.COMPLETED: frozenset(),
}


@dataclass
class ChunkState:
    """Mutable transfer record for one chunk. Owned by the transfer engine."""

    descriptor: ChunkDescriptor
    status: ChunkStatus = ChunkStatus.PENDING
    attempts: int = 0
    last_error: Optional[BaseException] = None
    etag: Optional[str] = None

    def mark(self, status: ChunkStatus) -> None:
        if status not in _CHUNK_TRANSITIONS[self.status]:
            raise SessionStateError(
                f"Chunk {self.descriptor.index} cannot go from {self.status.value} to {status.value}"
            )
        self.status = status


class SessionStatus(str, Enum):
    """Upload session lifecycle."""

    NEGOTIATING = "negotiating"
    TRANSFERRING = "transferring"
    COMPLETING = "completing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.SUCCEEDED, SessionStatus.FAILED, SessionStatus.CANCELLED)


_SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.NEGOTIATING: frozenset(
        {SessionStatus.TRANSFERRING, SessionStatus.FAILED, SessionStatus.CANCELLED}
    ),
    SessionStatus.TRANSFERRING: frozenset(
        {SessionStatus.COMPLETING, SessionStatus.FAILED, SessionStatus.CANCELLED}
    ),
    SessionStatus.COMPLETING: frozenset({SessionStatus.SUCCEEDED, SessionStatus.FAILED}),
    SessionStatus.SUCCEEDED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


@dataclass
class UploadSession:
    """Aggregate root for one upload attempt.

    Only the orchestrator changes ``status``; only the transfer engine
    changes entries of ``chunks``.
    """

    request: UploadRequest
    session_id: str = field(default_factory=lambda: str(uuid4()))
    status: SessionStatus = SessionStatus.NEGOTIATING
    negotiation: Optional[NegotiationResult] = None
    plan: Optional[ChunkPlan] = None
    chunks: list[ChunkState] = field(default_factory=list)
    result: Optional[CompletionResult] = None
    error: Optional[BaseException] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @classmethod
    def for_completion_retry(cls, previous: "UploadSession") -> "UploadSession":
        """New session that inherits a finished transfer and starts at Completing."""
        if not previous.all_chunks_completed or previous.negotiation is None:
            raise SessionStateError(
                f"Session {previous.session_id} has no completed transfer to finalize"
            )
        return cls(
            request=previous.request,
            status=SessionStatus.COMPLETING,
            negotiation=previous.negotiation,
            plan=previous.plan,
            chunks=previous.chunks,
        )

    def transition(self, status: SessionStatus) -> None:
        """Move to ``status`` or raise SessionStateError."""
        if status not in _SESSION_TRANSITIONS[self.status]:
            raise SessionStateError(
                f"Session {self.session_id} cannot go from {self.status.value} to {status.value}"
            )
        logger.info(
            "Upload session state change",
            extra={
                "session_id": self.session_id,
                "from_status": self.status.value,
                "to_status": status.value,
            },
        )
        self.status = status
        if status.is_terminal:
            self.finished_at = datetime.now(timezone.utc)

    def attach_plan(self, plan: ChunkPlan) -> None:
        self.plan = plan
        self.chunks = [ChunkState(descriptor=chunk) for chunk in plan]

    @property
    def total_bytes(self) -> int:
        return self.request.size

    @property
    def completed_bytes(self) -> int:
        return sum(
            c.descriptor.size_bytes for c in self.chunks if c.status == ChunkStatus.COMPLETED
        )

    @property
    def progress(self) -> float:
        """Fraction of bytes transferred, in ``[0, 1]``."""
        if not self.chunks:
            return 0.0
        if self.total_bytes == 0:
            return 1.0 if all(c.status == ChunkStatus.COMPLETED for c in self.chunks) else 0.0
        return self.completed_bytes / self.total_bytes

    @property
    def all_chunks_completed(self) -> bool:
        return bool(self.chunks) and all(c.status == ChunkStatus.COMPLETED for c in self.chunks)
