"""Protocol for event consumers plus two ready-made sinks."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Protocol, TextIO

from procstream.events import StreamEvent
from procstream.models import SessionState


class EventSink(Protocol):
    """Callbacks invoked by the orchestrator's dispatcher.

    Calls for one process arrive in the order its lines were written. Calls
    for different sessions may interleave.
    """

    async def on_event(self, session_id: str, event: StreamEvent) -> None: ...

    async def on_rekey(self, old_id: str, new_id: str) -> None:
        """The session formerly known as ``old_id`` is now ``new_id``."""
        ...

    async def on_state(
        self,
        session_id: str,
        state: SessionState,
        *,
        exit_code: int | None = None,
    ) -> None: ...


class JsonLinesSink:
    """Writes every callback as one JSON object per line."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream

    def _write(self, payload: dict[str, Any]) -> None:
        self._stream.write(json.dumps(payload, ensure_ascii=False) + "\n")
        self._stream.flush()

    async def on_event(self, session_id: str, event: StreamEvent) -> None:
        self._write({"session_id": session_id, "event": event.to_wire()})

    async def on_rekey(self, old_id: str, new_id: str) -> None:
        self._write({"rekey": {"old": old_id, "new": new_id}})

    async def on_state(
        self,
        session_id: str,
        state: SessionState,
        *,
        exit_code: int | None = None,
    ) -> None:
        payload: dict[str, Any] = {"session_id": session_id, "state": state.value}
        if exit_code is not None:
            payload["exit_code"] = exit_code
        self._write(payload)


class QueueSink:
    """Collects callbacks as ``(kind, ...)`` tuples on an asyncio.Queue."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[tuple] = asyncio.Queue()

    async def on_event(self, session_id: str, event: StreamEvent) -> None:
        await self.queue.put(("event", session_id, event))

    async def on_rekey(self, old_id: str, new_id: str) -> None:
        await self.queue.put(("rekey", old_id, new_id))

    async def on_state(
        self,
        session_id: str,
        state: SessionState,
        *,
        exit_code: int | None = None,
    ) -> None:
        await self.queue.put(("state", session_id, state, exit_code))
