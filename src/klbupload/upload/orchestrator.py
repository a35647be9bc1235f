"""Upload session orchestrator: negotiation, transfer and completion."""

import asyncio
import logging
from typing import Optional

from klbupload.models.upload import (
    CompletionResult,
    DirectPutNegotiation,
    NegotiationResult,
    S3MultipartNegotiation,
    UploadRequest,
    parse_negotiation,
)
from klbupload.core.logging import upload_session_context
from klbupload.storage.session_store import SessionStore
from klbupload.transport.base import Transport
from klbupload.upload.engine import ProgressCallback, TransferEngine
from klbupload.upload.exceptions import (
    CompletionError,
    NegotiationError,
    SessionStateError,
    TransportError,
    UploadCancelledError,
)
from klbupload.upload.planner import plan_direct_put, plan_s3_multipart
from klbupload.upload.policy import UploadPolicy
from klbupload.upload.session import ChunkPlan, SessionStatus, UploadSession
from klbupload.upload.signing import SigningClient, error_envelope
from klbupload.upload.source import UploadSource
from klbupload.upload.strategies import DirectPutStrategy, S3MultipartStrategy, TransferStrategy

logger = logging.getLogger(__name__)


class UploadOrchestrator:
    """Drives one upload end to end and owns its session status.

    An orchestrator runs a single upload; create one per file.
    """

    def __init__(
        self,
        transport: Transport,
        policy: Optional[UploadPolicy] = None,
        registry: Optional[SessionStore] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.transport = transport
        self.policy = policy or UploadPolicy.from_settings()
        self.registry = registry
        self.on_progress = on_progress
        self.session: Optional[UploadSession] = None
        self.engine: Optional[TransferEngine] = None
        self.strategy: Optional[TransferStrategy] = None
        self._source: Optional[UploadSource] = None

    @property
    def status(self) -> Optional[SessionStatus]:
        return self.session.status if self.session else None

    @property
    def progress(self) -> float:
        return self.session.progress if self.session else 0.0

    async def start(
        self,
        request: UploadRequest,
        negotiation_endpoint: str,
        source: UploadSource,
    ) -> CompletionResult:
        """Upload ``source`` as described by ``request``.

        Args:
            request: File metadata and application parameters
            negotiation_endpoint: API endpoint that hands out upload instructions
            source: Bytes to upload; its size must match ``request.size``

        Returns:
            Completion result of the stored object

        Raises:
            NegotiationError: Malformed negotiation response or error envelope
            UnsupportedMethodError: Negotiation offered no known upload method
            ChunkRejectedError: A chunk was refused with a 4xx
            ChunkTransferError: A chunk ran out of retries
            SigningError: An S3 request could not be signed
            CompletionError: Finalization failed or returned inconsistent data
            UploadCancelledError: cancel() was called
        """
        if self.session is not None:
            raise SessionStateError("Orchestrator already started an upload")
        if source.size != request.size:
            raise ValueError(f"Source size {source.size} does not match request size {request.size}")

        session = UploadSession(request=request)
        self.session = session
        self._source = source
        if self.registry is not None:
            self.registry.register(session)

        token = upload_session_context.set(session.session_id)
        try:
            return await self._run(session, negotiation_endpoint, source)
        finally:
            upload_session_context.reset(token)

    async def _run(
        self,
        session: UploadSession,
        negotiation_endpoint: str,
        source: UploadSource,
    ) -> CompletionResult:
        try:
            negotiation = await self._negotiate(session.request, negotiation_endpoint)
            session.negotiation = negotiation
            self._raise_if_cancelled()

            plan = self._plan(negotiation, session.request.size)
            session.attach_plan(plan)
            self.strategy = self._build_strategy(negotiation, plan)
            session.transition(SessionStatus.TRANSFERRING)

            self.engine = TransferEngine(
                session, self.strategy, source, self.policy, on_progress=self.on_progress
            )
            await self.engine.run()
            self._raise_if_cancelled()

            session.transition(SessionStatus.COMPLETING)
            return await self._complete(session, self.strategy, source)

        except UploadCancelledError as e:
            await self._finish_cancelled(session, e)
            raise
        except asyncio.CancelledError:
            await self._finish_cancelled(session, UploadCancelledError("Upload task cancelled"))
            raise
        except Exception as e:
            if session.status == SessionStatus.CANCELLED:
                cancelled = UploadCancelledError("Upload cancelled by caller")
                await self._finish_cancelled(session, cancelled)
                raise cancelled from e
            session.error = e
            if not session.status.is_terminal:
                session.transition(SessionStatus.FAILED)
            logger.error(
                "Upload failed",
                extra={
                    "session_id": session.session_id,
                    "upload_filename": session.request.filename,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            if not isinstance(e, CompletionError):
                await self._abort_remote()
            raise

    def cancel(self) -> None:
        """Cancel the upload cooperatively.

        No new chunk is dispatched after this returns. Has no effect once
        completion has begun or the session is terminal.
        """
        session = self.session
        if session is None or session.status not in (SessionStatus.NEGOTIATING, SessionStatus.TRANSFERRING):
            logger.info(
                "Cancel ignored",
                extra={"status": session.status.value if session else None},
            )
            return

        session.transition(SessionStatus.CANCELLED)
        if self.engine is not None:
            self.engine.cancel()

    async def retry_completion(self) -> CompletionResult:
        """Re-run only the completion step after a CompletionError.

        The failed session stays terminal; a new session inheriting its
        negotiation and transferred chunks is created at Completing.
        """
        previous = self.session
        if (
            previous is None
            or previous.status != SessionStatus.FAILED
            or not isinstance(previous.error, CompletionError)
            or self.strategy is None
            or self._source is None
        ):
            raise SessionStateError("Completion can only be retried after a CompletionError")

        session = UploadSession.for_completion_retry(previous)
        self.session = session
        if self.registry is not None:
            self.registry.register(session)

        token = upload_session_context.set(session.session_id)
        try:
            logger.info(
                "Retrying upload completion",
                extra={"session_id": session.session_id, "previous_session_id": previous.session_id},
            )
            return await self._complete(session, self.strategy, self._source)
        except Exception as e:
            session.error = e
            session.transition(SessionStatus.FAILED)
            raise
        finally:
            upload_session_context.reset(token)

    async def _negotiate(self, request: UploadRequest, endpoint: str) -> NegotiationResult:
        logger.info(
            "Negotiating upload",
            extra={
                "endpoint": endpoint,
                "upload_filename": request.filename,
                "size_bytes": request.size,
                "mime_type": request.mime_type,
            },
        )
        try:
            response = await self.transport.post(endpoint, json_body=request.negotiation_payload())
        except TransportError as e:
            raise NegotiationError(f"Negotiation request failed: {e}") from e

        if not response.is_success:
            message, token = error_envelope(response)
            raise NegotiationError(
                message or f"Negotiation failed with HTTP {response.status_code}",
                status_code=response.status_code,
                token=token,
            )

        try:
            envelope = response.json()
        except ValueError as e:
            raise NegotiationError("Negotiation response is not valid JSON") from e

        negotiation = parse_negotiation(envelope)
        logger.info(
            "Upload negotiated",
            extra={"method": negotiation.method, "size_bytes": request.size},
        )
        return negotiation

    def _plan(self, negotiation: NegotiationResult, size: int) -> ChunkPlan:
        if isinstance(negotiation, DirectPutNegotiation):
            return plan_direct_put(size, negotiation.block_size)
        return plan_s3_multipart(
            size,
            min_part_size=self.policy.s3_min_part_size,
            max_parts=self.policy.s3_max_parts,
            max_object_size=self.policy.s3_max_object_size,
            part_size=self.policy.s3_part_size(size),
        )

    def _build_strategy(self, negotiation: NegotiationResult, plan: ChunkPlan) -> TransferStrategy:
        request = self.session.request
        if isinstance(negotiation, S3MultipartNegotiation):
            prefix = self.policy.s3_endpoint.rstrip("/")
            signer = SigningClient(self.transport, negotiation.upload_session_id, prefix)
            return S3MultipartStrategy(
                self.transport,
                request,
                plan,
                negotiation,
                signer,
                complete_endpoint=f"{prefix}/{negotiation.upload_session_id}:handleComplete",
            )
        return DirectPutStrategy(self.transport, request, plan, negotiation)

    async def _complete(
        self,
        session: UploadSession,
        strategy: TransferStrategy,
        source: UploadSource,
    ) -> CompletionResult:
        result = await strategy.complete_session(session.chunks)

        if self.policy.verify_size and result.size_bytes != session.request.size:
            raise CompletionError(
                f"Server reported {result.size_bytes} bytes, expected {session.request.size}",
                negotiation=session.negotiation,
            )

        if self.policy.verify_sha256 and result.sha256:
            local_hash = await source.sha256()
            if local_hash.lower() != result.sha256.lower():
                raise CompletionError(
                    "Server SHA-256 does not match local content",
                    negotiation=session.negotiation,
                )

        session.result = result
        session.transition(SessionStatus.SUCCEEDED)
        logger.info(
            "Upload completed",
            extra={
                "session_id": session.session_id,
                "blob_id": result.blob_id,
                "size_bytes": result.size_bytes,
                "mime_type": result.mime_type,
            },
        )
        return result

    def _raise_if_cancelled(self) -> None:
        if self.session is not None and self.session.status == SessionStatus.CANCELLED:
            raise UploadCancelledError("Upload cancelled by caller")

    async def _finish_cancelled(self, session: UploadSession, error: UploadCancelledError) -> None:
        if session.status in (SessionStatus.NEGOTIATING, SessionStatus.TRANSFERRING):
            session.transition(SessionStatus.CANCELLED)
        elif session.status == SessionStatus.COMPLETING:
            # Task torn down mid-completion; the outcome on the server is unknown
            session.error = error
            session.transition(SessionStatus.FAILED)
            return
        if session.status == SessionStatus.CANCELLED:
            session.error = error
            logger.info(
                "Upload cancelled",
                extra={"session_id": session.session_id, "progress": session.progress},
            )
            await self._abort_remote()

    async def _abort_remote(self) -> None:
        if self.strategy is not None and self.policy.abort_s3_on_failure:
            await self.strategy.abort()
