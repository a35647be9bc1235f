"""Tests for the upload session aggregate."""

import pytest

from klbupload.models.upload import UploadRequest
from klbupload.upload.exceptions import SessionStateError
from klbupload.upload.planner import plan_direct_put
from klbupload.upload.session import ChunkStatus, SessionStatus, UploadSession


@pytest.fixture
def session():
    """Session for a 12 MB file split in three chunks."""
    session = UploadSession(request=UploadRequest(filename="big.bin", size=12_000_000))
    session.attach_plan(plan_direct_put(12_000_000, 5_000_000))
    return session


def test_happy_path_transitions(session):
    """Test the full successful lifecycle."""
    session.transition(SessionStatus.TRANSFERRING)
    session.transition(SessionStatus.COMPLETING)
    session.transition(SessionStatus.SUCCEEDED)

    assert session.status == SessionStatus.SUCCEEDED
    assert session.finished_at is not None


@pytest.mark.parametrize("start", [SessionStatus.NEGOTIATING, SessionStatus.TRANSFERRING, SessionStatus.COMPLETING])
def test_failed_reachable_from_non_terminal(session, start):
    """Test that Failed can be reached from every non-terminal state."""
    session.status = start
    session.transition(SessionStatus.FAILED)

    assert session.status == SessionStatus.FAILED


def test_cancel_not_allowed_while_completing(session):
    """Test that Completing cannot move to Cancelled."""
    session.status = SessionStatus.COMPLETING

    with pytest.raises(SessionStateError):
        session.transition(SessionStatus.CANCELLED)


@pytest.mark.parametrize("terminal", [SessionStatus.SUCCEEDED, SessionStatus.FAILED, SessionStatus.CANCELLED])
def test_no_transition_out_of_terminal(session, terminal):
    """Test that terminal states are final."""
    session.status = terminal

    for target in SessionStatus:
        with pytest.raises(SessionStateError):
            session.transition(target)


def test_skipping_states_is_rejected(session):
    """Test that Negotiating cannot jump to Completing."""
    with pytest.raises(SessionStateError):
        session.transition(SessionStatus.COMPLETING)


def test_chunk_transitions(session):
    """Test chunk status moves, including Failed back to Pending."""
    state = session.chunks[0]

    state.mark(ChunkStatus.IN_FLIGHT)
    state.mark(ChunkStatus.FAILED)
    state.mark(ChunkStatus.PENDING)
    state.mark(ChunkStatus.IN_FLIGHT)
    state.mark(ChunkStatus.COMPLETED)

    with pytest.raises(SessionStateError):
        state.mark(ChunkStatus.PENDING)


def test_progress_counts_completed_bytes(session):
    """Test progress as the fraction of completed bytes."""
    assert session.progress == 0.0

    session.chunks[2].status = ChunkStatus.COMPLETED
    assert session.progress == pytest.approx(2_000_000 / 12_000_000)

    for state in session.chunks:
        state.status = ChunkStatus.COMPLETED
    assert session.progress == 1.0
    assert session.all_chunks_completed


def test_progress_for_empty_file():
    """Test that an empty file reports full progress once its chunk completes."""
    session = UploadSession(request=UploadRequest(filename="empty", size=0))
    session.attach_plan(plan_direct_put(0))

    assert session.progress == 0.0
    session.chunks[0].status = ChunkStatus.COMPLETED
    assert session.progress == 1.0


def test_completion_retry_session(session):
    """Test that a completion retry session starts at Completing with inherited chunks."""
    for state in session.chunks:
        state.status = ChunkStatus.COMPLETED

    with pytest.raises(SessionStateError):
        UploadSession.for_completion_retry(session)

    session.negotiation = object()
    retry = UploadSession.for_completion_retry(session)

    assert retry.status == SessionStatus.COMPLETING
    assert retry.session_id != session.session_id
    assert retry.chunks is session.chunks
