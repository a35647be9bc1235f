"""Upload session registry."""

from typing import Dict, Optional

from klbupload.upload.session import UploadSession


class SessionStore:
    """In-memory registry of upload sessions keyed by session id.

    Sessions are independent; the store only lets a host application look
    them up while several uploads run concurrently.
    """

    def __init__(self):
        self._sessions: Dict[str, UploadSession] = {}

    def register(self, session: UploadSession) -> None:
        """Store a session, replacing any with the same id."""
        self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional[UploadSession]:
        """Retrieve a session by id."""
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[UploadSession]:
        """Forget a session and return it."""
        return self._sessions.pop(session_id, None)

    def list_all(self) -> list[UploadSession]:
        """List all sessions."""
        return list(self._sessions.values())

    def active(self) -> list[UploadSession]:
        """List sessions that have not reached a terminal status."""
        return [s for s in self._sessions.values() if not s.status.is_terminal]

