"""Exceptions raised by the launcher and the session orchestrator."""

from __future__ import annotations


class ProcstreamError(Exception):
    """Base class for operation-level failures reported to callers."""

    def to_message(self) -> str:
        """Return a single descriptive line suitable for a UI."""
        return str(self)


class ProcessError(ProcstreamError):
    """Spawning or terminating a child process failed.

    The message carries the OS-level error text.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_message(self) -> str:
        return f"Process error: {self.message}"


class SessionNotFound(ProcstreamError):
    """No process is registered for the given session id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id
