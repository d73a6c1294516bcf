"""Supervise agent CLI subprocesses and decode their stream-json output."""

from procstream.errors import ProcessError, ProcstreamError, SessionNotFound
from procstream.events import StreamEvent, decode_line
from procstream.models import LaunchConfig, Session, SessionState
from procstream.orchestrator import SessionOrchestrator
from procstream.registry import SessionRegistry

__all__ = [
    "LaunchConfig",
    "ProcessError",
    "ProcstreamError",
    "Session",
    "SessionNotFound",
    "SessionOrchestrator",
    "SessionRegistry",
    "SessionState",
    "StreamEvent",
    "decode_line",
]
