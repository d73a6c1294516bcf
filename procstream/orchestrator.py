"""Session facade: start, continue and interrupt CLI-backed sessions.

Every spawned process gets two reader tasks. The stdout reader decodes lines
and puts them on a single queue; the stderr reader only keeps the pipe from
filling up. One dispatcher task drains the queue and is the only place that
calls the sink, so events from one process reach it in the order they were
written.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog

from procstream.errors import ProcessError, ProcstreamError, SessionNotFound
from procstream.events import (
    ErrorEvent,
    ResultEvent,
    SessionEndEvent,
    StreamDecoder,
    StreamEvent,
    SystemEvent,
)
from procstream.launcher import Launcher, LaunchMode, ProcessHandle, get_launcher
from procstream.models import TERMINAL_STATES, LaunchConfig, Session, SessionState
from procstream.registry import SessionRegistry, SessionTable
from procstream.sink import EventSink

logger = structlog.get_logger(__name__)


@dataclass(eq=False)
class _Run:
    """One spawned process and the session key it currently answers to."""

    session_id: str
    pid: int
    mode: LaunchMode
    rekeyed: bool = False
    decoder: StreamDecoder = field(default_factory=StreamDecoder)


class SessionOrchestrator:
    """Coordinates the launcher, the registries and the event sink."""

    def __init__(
        self,
        sink: EventSink,
        *,
        launcher: Launcher | None = None,
        registry: SessionRegistry | None = None,
        sessions: SessionTable | None = None,
    ) -> None:
        self._sink = sink
        self._launcher = launcher or get_launcher()
        self._registry = registry or SessionRegistry()
        self._sessions = sessions or SessionTable()
        self._queue: asyncio.Queue[tuple] | None = None
        self._dispatcher: asyncio.Task | None = None
        self._readers: set[asyncio.Task] = set()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def sessions(self) -> list[Session]:
        return self._sessions.list_sessions()

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(self, message: str, config: LaunchConfig) -> str:
        """Launch a new conversation and return its temporary session id.

        The id is rekeyed to the CLI's own session id once the process
        reports it. Returns as soon as the process is running.

        Raises:
            ProcessError: The process could not be started.
        """
        session = self._sessions.create()
        mode = LaunchMode.start()
        logger.info("Starting session", session_id=session.id)
        handle = await self._spawn(session.id, mode, message, config)
        self._attach(_Run(session.id, handle.pid, mode), handle)
        return session.id

    async def continue_session(
        self, session_id: str, message: str, config: LaunchConfig
    ) -> None:
        """Resume the native session ``session_id`` with a new message.

        Any process still registered for the id is terminated first; an id
        with nothing running is simply resumed.

        Raises:
            ProcessError: The new process could not be started.
        """
        old_pid = self._registry.remove(session_id)
        if old_pid is not None:
            logger.info("Replacing running process", session_id=session_id, pid=old_pid)
            try:
                await self._launcher.terminate(old_pid)
            except ProcessError as exc:
                logger.warning(
                    "Failed to terminate previous process",
                    session_id=session_id,
                    pid=old_pid,
                    error=exc.message,
                )

        if self._sessions.get(session_id) is None:
            self._sessions.create(session_id)
        self._sessions.set_native_id(session_id, session_id)
        self._set_state(session_id, SessionState.PENDING)

        mode = LaunchMode.resume(session_id)
        logger.info("Continuing session", session_id=session_id)
        handle = await self._spawn(session_id, mode, message, config)
        self._attach(_Run(session_id, handle.pid, mode), handle)

    async def interrupt(self, session_id: str) -> None:
        """Kill the process tree serving ``session_id``.

        Does not wait for the process to exit; its readers finish on their
        own once the pipes close.

        Raises:
            SessionNotFound: Nothing is registered for the id.
            ProcessError: The process could not be signalled.
        """
        pid = self._registry.remove(session_id)
        if pid is None:
            raise SessionNotFound(session_id)
        logger.info("Interrupting session", session_id=session_id, pid=pid)
        try:
            await self._launcher.terminate(pid)
        except ProcessError:
            # Still alive, so keep it reachable for another attempt.
            self._registry.restore(session_id, pid)
            raise
        if self._state_of_id(session_id) not in TERMINAL_STATES:
            self._set_state(session_id, SessionState.INTERRUPTED)

    async def join(self) -> None:
        """Wait until every reader has finished and every event is delivered."""
        while self._readers:
            await asyncio.gather(*list(self._readers), return_exceptions=True)
        if self._queue is not None:
            await self._queue.join()

    async def aclose(self) -> None:
        """Interrupt all sessions, flush pending events and stop dispatching."""
        for session_id in self._registry.session_ids():
            try:
                await self.interrupt(session_id)
            except ProcstreamError as exc:
                logger.warning(
                    "Failed to interrupt session on close",
                    session_id=session_id,
                    error=exc.to_message(),
                )
        await self.join()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

    # ------------------------------------------------------------------
    # Internal: spawning and reading
    # ------------------------------------------------------------------

    async def _spawn(
        self,
        session_id: str,
        mode: LaunchMode,
        message: str,
        config: LaunchConfig,
    ) -> ProcessHandle:
        try:
            return await self._launcher.spawn(
                config, mode, message, session_id=session_id
            )
        except ProcessError:
            self._set_state(session_id, SessionState.FAILED)
            raise

    def _attach(self, run: _Run, handle: ProcessHandle) -> None:
        """Register the pid and start both reader tasks."""
        self._registry.insert(run.session_id, run.pid)
        self._set_state(run.session_id, SessionState.RUNNING)
        for coro in (
            self._read_stdout(run, handle),
            self._drain_stderr(run, handle.stderr),
        ):
            task = asyncio.create_task(coro)
            self._readers.add(task)
            task.add_done_callback(self._readers.discard)

    async def _read_stdout(self, run: _Run, handle: ProcessHandle) -> None:
        """Decode stdout line by line until EOF, then report the exit."""
        stream = handle.stdout
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Line exceeded the stream limit; the reader already dropped it.
                logger.warning("Skipping oversized line", session_id=run.session_id, pid=run.pid)
                continue
            except OSError as exc:
                logger.warning(
                    "stdout read failed", session_id=run.session_id, pid=run.pid, error=str(exc)
                )
                break
            if not line:
                break
            event = run.decoder.decode(line)
            if event is not None:
                self._enqueue(("event", run, event))

        exit_code = await handle.wait()
        logger.info(
            "Process output closed",
            session_id=run.session_id,
            pid=run.pid,
            exit_code=exit_code,
            decoded=run.decoder.decoded,
            skipped=run.decoder.skipped,
        )
        self._enqueue(("end", run, exit_code))

    async def _drain_stderr(self, run: _Run, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                continue
            except OSError:
                return
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug("CLI stderr", session_id=run.session_id, pid=run.pid, line=text)

    # ------------------------------------------------------------------
    # Internal: dispatching
    # ------------------------------------------------------------------

    def _ensure_dispatcher(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch(self._queue))

    def _enqueue(self, item: tuple) -> None:
        self._ensure_dispatcher()
        self._queue.put_nowait(item)

    def _set_state(
        self, session_id: str, state: SessionState, *, exit_code: int | None = None
    ) -> None:
        """Record a transition now and queue the sink notification."""
        if self._sessions.transition(session_id, state, exit_code=exit_code) is None:
            return
        self._enqueue(("state", session_id, state, exit_code))

    async def _dispatch(self, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            try:
                await self._handle(item)
            except Exception:
                logger.exception("Event dispatch failed", kind=item[0])
            finally:
                queue.task_done()

    async def _handle(self, item: tuple) -> None:
        kind = item[0]
        if kind == "state":
            _, session_id, state, exit_code = item
            await self._sink.on_state(session_id, state, exit_code=exit_code)
        elif kind == "event":
            _, run, event = item
            await self._sink.on_event(run.session_id, event)
            await self._after_event(run, event)
        elif kind == "end":
            _, run, exit_code = item
            if not self._registry.discard(run.session_id, run.pid):
                return
            if self._state_of(run) == SessionState.RUNNING:
                await self._notify_state(run.session_id, SessionState.ENDED, exit_code=exit_code)

    async def _after_event(self, run: _Run, event: StreamEvent) -> None:
        if isinstance(event, SystemEvent):
            native_id = event.native_session_id
            if native_id:
                await self._on_native_id(run, native_id)
            return
        if not self._is_current(run) or self._state_of(run) != SessionState.RUNNING:
            return
        if isinstance(event, ErrorEvent):
            logger.warning("CLI reported an error", session_id=run.session_id, error=event.error)
            await self._notify_state(run.session_id, SessionState.FAILED)
        elif isinstance(event, (ResultEvent, SessionEndEvent)):
            await self._notify_state(run.session_id, SessionState.ENDED)

    async def _on_native_id(self, run: _Run, native_id: str) -> None:
        """Rekey a started session to the id the CLI reported for itself."""
        if run.mode.is_resume:
            if native_id != run.mode.resume_id:
                logger.warning(
                    "CLI reported a different session id than the one resumed",
                    session_id=run.session_id,
                    expected=run.mode.resume_id,
                    actual=native_id,
                )
            return
        if run.rekeyed:
            return
        run.rekeyed = True

        old_id = run.session_id
        if native_id == old_id:
            self._sessions.set_native_id(old_id, native_id)
            return
        if not self._registry.rekey(old_id, native_id):
            # Interrupted before the id arrived, or the id is taken; keep it
            # on the record for resume.
            self._sessions.set_native_id(old_id, native_id)
            logger.info(
                "Native session id not applied to the registry",
                session_id=old_id,
                native_session_id=native_id,
            )
            return
        self._sessions.rekey(old_id, native_id)
        self._sessions.set_native_id(native_id, native_id)
        run.session_id = native_id
        logger.info("Session rekeyed", old_session_id=old_id, session_id=native_id, pid=run.pid)
        await self._sink.on_rekey(old_id, native_id)

    async def _notify_state(
        self, session_id: str, state: SessionState, *, exit_code: int | None = None
    ) -> None:
        """Record a transition from inside the dispatcher and tell the sink."""
        if self._sessions.transition(session_id, state, exit_code=exit_code) is None:
            return
        await self._sink.on_state(session_id, state, exit_code=exit_code)

    def _is_current(self, run: _Run) -> bool:
        """True while ``run`` is the process registered for its session."""
        return self._registry.lookup(run.session_id) == run.pid

    def _state_of(self, run: _Run) -> SessionState | None:
        return self._state_of_id(run.session_id)

    def _state_of_id(self, session_id: str) -> SessionState | None:
        session = self._sessions.get(session_id)
        return session.state if session else None
