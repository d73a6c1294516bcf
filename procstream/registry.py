"""Lock-guarded session bookkeeping shared by the orchestrator and reader tasks.

Neither class hands out its underlying dict. Every operation takes the lock
for a constant-time update and never does I/O while holding it.
"""

from __future__ import annotations

import uuid
from threading import Lock

import structlog

from procstream.models import TERMINAL_STATES, Session, SessionState, now

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """Maps a session id to the pid of the process currently serving it."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._pids: dict[str, int] = {}

    def insert(self, session_id: str, pid: int) -> None:
        """Register ``pid`` for ``session_id``, replacing any previous mapping.

        The previous process is not terminated; callers do that themselves.
        """
        with self._lock:
            self._pids[session_id] = pid

    def lookup(self, session_id: str) -> int | None:
        with self._lock:
            return self._pids.get(session_id)

    def rekey(self, old_id: str, new_id: str) -> bool:
        """Move the mapping for ``old_id`` to ``new_id``.

        Returns False without changing anything when ``old_id`` is no longer
        registered, e.g. because the session was interrupted first, or when
        ``new_id`` already belongs to another process.
        """
        with self._lock:
            pid = self._pids.get(old_id)
            if pid is None:
                return False
            held = self._pids.get(new_id)
            if held is None or held == pid:
                self._pids[new_id] = self._pids.pop(old_id)
                return True
        logger.warning(
            "Rekey target already registered",
            old_session_id=old_id,
            session_id=new_id,
            pid=pid,
            registered_pid=held,
        )
        return False

    def remove(self, session_id: str) -> int | None:
        """Drop the mapping and return the pid it held, if any."""
        with self._lock:
            return self._pids.pop(session_id, None)

    def discard(self, session_id: str, pid: int) -> bool:
        """Drop the mapping only if it still points at ``pid``."""
        with self._lock:
            if self._pids.get(session_id) != pid:
                return False
            del self._pids[session_id]
            return True

    def restore(self, session_id: str, pid: int) -> bool:
        """Put back a mapping taken by ``remove`` unless the id was reused."""
        with self._lock:
            if session_id in self._pids:
                return False
            self._pids[session_id] = pid
            return True

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._pids)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._pids

    def __len__(self) -> int:
        with self._lock:
            return len(self._pids)


class SessionTable:
    """In-flight session records keyed by their current id."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._sessions: dict[str, Session] = {}

    def create(self, session_id: str | None = None) -> Session:
        """Create a PENDING session, allocating a fresh id when none is given."""
        session = Session(id=session_id or str(uuid.uuid4()))
        with self._lock:
            self._sessions[session.id] = session
        return session.model_copy()

    def get(self, session_id: str) -> Session | None:
        """Return a copy of the session record, or None if missing."""
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy() if session else None

    def list_sessions(self) -> list[Session]:
        with self._lock:
            return [s.model_copy() for s in self._sessions.values()]

    def set_native_id(self, session_id: str, native_id: str) -> bool:
        """Record the CLI's own session id. Only the first call has an effect."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.native_session_id is not None:
                return False
            session.native_session_id = native_id
            session.updated_at = now()
            return True

    def transition(
        self,
        session_id: str,
        state: SessionState,
        *,
        exit_code: int | None = None,
    ) -> Session | None:
        """Move a session to ``state`` and return the updated copy."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            session.state = state
            session.is_active = state not in TERMINAL_STATES
            if exit_code is not None:
                session.exit_code = exit_code
            session.updated_at = now()
            return session.model_copy()

    def rekey(self, old_id: str, new_id: str) -> bool:
        """Re-file the record under ``new_id``. No-op when ``old_id`` is gone."""
        with self._lock:
            session = self._sessions.pop(old_id, None)
            if session is None:
                return False
            session.id = new_id
            session.updated_at = now()
            self._sessions[new_id] = session
            return True

    def remove(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.pop(session_id, None)
