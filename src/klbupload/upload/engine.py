"""Transfer engine: bounded-concurrency chunk transfers with retry."""

import asyncio
import logging
from collections import deque
from typing import Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from klbupload.upload.exceptions import ChunkTransferError, UploadCancelledError
from klbupload.upload.policy import UploadPolicy
from klbupload.upload.session import ChunkState, ChunkStatus, UploadSession
from klbupload.upload.source import UploadSource
from klbupload.upload.strategies import TransferStrategy

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class TransferEngine:
    """Executes a session's chunk plan through a transfer strategy.

    A fixed pool of worker tasks pulls pending chunks from a queue, so at
    most ``policy.max_concurrency`` requests are in flight. Once the engine
    is halted (cancel or non-retryable failure) no worker dispatches another
    request, retries included.
    """

    def __init__(
        self,
        session: UploadSession,
        strategy: TransferStrategy,
        source: UploadSource,
        policy: UploadPolicy,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.session = session
        self.strategy = strategy
        self.source = source
        self.policy = policy
        self.on_progress = on_progress
        self.dispatch_log: list[int] = []
        self._workers: list[asyncio.Task] = []
        self._halted = False
        self._cancel_requested = False
        self._failure: Optional[BaseException] = None

    @property
    def halted(self) -> bool:
        return self._halted

    def cancel(self) -> None:
        """Stop dispatching chunks; abort in-flight ones if the policy says so."""
        if self._cancel_requested:
            return
        self._cancel_requested = True
        logger.info(
            "Transfer cancellation requested",
            extra={
                "session_id": self.session.session_id,
                "completed_chunks": sum(1 for c in self.session.chunks if c.status == ChunkStatus.COMPLETED),
                "total_chunks": len(self.session.chunks),
            },
        )
        self._halt()

    def _halt(self) -> None:
        self._halted = True
        if not self.policy.cancel_aborts_in_flight:
            return
        current = asyncio.current_task()
        for task in self._workers:
            if task is not current and not task.done():
                task.cancel()

    async def run(self) -> None:
        """Transfer every chunk, returning once all are completed.

        Raises:
            UploadCancelledError: If cancel() was called
            ChunkRejectedError: On a non-retryable chunk failure
            ChunkTransferError: When a chunk runs out of retries
            SigningError: If an S3 request could not be signed
            TransferError: If S3 multipart initiation fails
        """
        if self._cancel_requested:
            raise UploadCancelledError("Upload cancelled before transfer started")

        await self.strategy.prepare()

        queue = deque(c for c in self.session.chunks if c.status != ChunkStatus.COMPLETED)
        worker_count = min(self.policy.max_concurrency, len(queue))
        logger.info(
            "Starting chunk transfer",
            extra={
                "session_id": self.session.session_id,
                "chunks": len(queue),
                "workers": worker_count,
                "total_bytes": self.session.total_bytes,
            },
        )

        self._workers = [
            asyncio.create_task(self._worker(queue), name=f"upload-{self.session.session_id}-{n}")
            for n in range(worker_count)
        ]
        try:
            if self._workers:
                await asyncio.wait(self._workers)
        finally:
            for task in self._workers:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)

        # Retrieve every exception so none is reported as never retrieved
        for task in self._workers:
            if not task.cancelled():
                task.exception()

        if self._cancel_requested:
            raise UploadCancelledError("Upload cancelled by caller")
        if self._failure is not None:
            raise self._failure
        if not self.session.all_chunks_completed:
            raise UploadCancelledError("Transfer stopped before all chunks completed")

    async def _worker(self, queue: deque) -> None:
        while queue and not self._halted:
            state = queue.popleft()
            await self._transfer_with_retry(state)

    async def _transfer_with_retry(self, state: ChunkState) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_exponential(multiplier=self.policy.backoff_seconds, max=self.policy.backoff_max_seconds),
            retry=retry_if_exception_type(ChunkTransferError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._attempt(state)
        except UploadCancelledError:
            raise
        except Exception as e:
            if self._failure is None:
                self._failure = e
                logger.error(
                    "Chunk transfer failed, halting session",
                    extra={
                        "session_id": self.session.session_id,
                        "chunk_index": state.descriptor.index,
                        "attempts": state.attempts,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
            self._halt()
            raise

    async def _attempt(self, state: ChunkState) -> None:
        chunk = state.descriptor
        data = await self.source.read(chunk.start_byte, chunk.end_byte)
        if self._halted:
            raise UploadCancelledError(f"Chunk {chunk.index} not dispatched, transfer halted")

        if state.status == ChunkStatus.FAILED:
            state.mark(ChunkStatus.PENDING)
        state.mark(ChunkStatus.IN_FLIGHT)
        state.attempts += 1
        self.dispatch_log.append(chunk.index)

        try:
            receipt = await self.strategy.transfer_chunk(chunk, data)
        except asyncio.CancelledError:
            state.mark(ChunkStatus.FAILED)
            state.last_error = UploadCancelledError(f"Chunk {chunk.index} aborted")
            raise
        except Exception as e:
            state.mark(ChunkStatus.FAILED)
            state.last_error = e
            raise

        state.etag = receipt
        state.last_error = None
        state.mark(ChunkStatus.COMPLETED)

        logger.debug(
            "Chunk transferred",
            extra={
                "session_id": self.session.session_id,
                "chunk_index": chunk.index,
                "size_bytes": chunk.size_bytes,
                "attempts": state.attempts,
            },
        )
        if self.on_progress is not None:
            self.on_progress(self.session.progress)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"Retrying chunk (attempt {retry_state.attempt_number}/{self.policy.max_attempts})",
            extra={
                "session_id": self.session.session_id,
                "chunk_index": getattr(error, "chunk_index", None),
                "status_code": getattr(error, "status_code", None),
                "error": str(error),
                "sleep_seconds": retry_state.next_action.sleep if retry_state.next_action else None,
            },
        )
