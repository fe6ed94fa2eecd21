"""Process lifecycle manager.

Owns every bridged session: its AgentSession record, its OS process
handle and its status state machine. Output of all processes flows
through one queue drained by a single dispatcher task, so each complete
line reaches its provider parser exactly once and in arrival order,
and a process's exit is always handled after its last line.

Data flow::

    reader task (per process) ──> LineBuffer ──> queue ──> dispatcher
        ──> provider parser ──> DedupWindow ──> session update ──> sink
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from .acp_client import AcpClient
from .config import BridgeConfig
from .dedup import DedupWindow
from .errors import (
    LaunchFailureError,
    NotResumableError,
    ProtocolError,
    ProviderUnavailableError,
    UnknownSessionError,
)
from .lifecycle import validate_transition
from .line_buffer import LineBuffer
from .models import (
    FILE_MODIFYING_KINDS,
    AgentSession,
    AgentStatus,
    AgentType,
    CanonicalEvent,
    HookPhase,
    LaunchMode,
    ObserverCandidate,
    ProviderId,
    make_session_id,
)
from .providers.base import LaunchSpec, ParsedStreamEvent, Provider, canonicalize
from .providers.registry import ProviderRegistry
from .providers.tool_names import normalize_tool_name
from .shell_heuristics import refine_execute

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_TERMINATE_GRACE_SECONDS = 5.0
_ACP_SHUTDOWN_GRACE_SECONDS = 2.0
_STDERR_TAIL_LINES = 20

_END_PHASES = {HookPhase.SESSION_END, HookPhase.SUBAGENT_STOP}


class EventSink(Protocol):
    """Where the manager publishes. Implemented by the broadcast hub."""

    def publish_event(self, event: CanonicalEvent) -> None: ...

    def publish_sessions(self, sessions: list[AgentSession]) -> None: ...

    def publish_filesystem_change(self, action: str, path: str) -> None: ...


def session_key(session_id: str, agent_type: AgentType) -> str:
    """Tracked-set key for a hook-reported session."""
    if agent_type is AgentType.SUBAGENT:
        return f"{session_id}:subagent"
    return session_id


def _paths_overlap(a: str, b: str) -> bool:
    a = os.path.normpath(a)
    b = os.path.normpath(b)
    return a == b or a.startswith(b.rstrip(os.sep) + os.sep) or b.startswith(a.rstrip(os.sep) + os.sep)


# ── Dispatcher queue items ──

@dataclass
class _LineItem:
    session_id: str
    generation: int
    line: str


@dataclass
class _EventItem:
    session_id: str
    generation: int
    event: ParsedStreamEvent


@dataclass
class _ExitItem:
    session_id: str
    generation: int
    returncode: int | None
    reason: str = ""


@dataclass
class _ProcessHandle:
    process: Any
    provider: Provider
    generation: int
    mode: LaunchMode
    buffer: LineBuffer = field(default_factory=LineBuffer)
    tasks: list[asyncio.Task] = field(default_factory=list)
    stderr_tail: list[str] = field(default_factory=list)
    terminating: bool = False
    exited: asyncio.Event = field(default_factory=asyncio.Event)


class ProcessManager:
    """Spawns, terminates and resumes agent processes.

    Every status transition publishes a full session snapshot. All
    mutation happens on the event loop; no locks are needed.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        sink: EventSink,
        config: BridgeConfig | None = None,
    ) -> None:
        self._registry = registry
        self._sink = sink
        self._config = config or BridgeConfig()
        self._sessions: dict[str, AgentSession] = {}
        self._handles: dict[str, _ProcessHandle] = {}
        self._generations: dict[str, int] = {}
        self._dedup = DedupWindow(self._config.dedup_ttl_seconds)
        # Absolute path -> monotonic time of the last bridged file event.
        self._claims: dict[str, float] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._dispatcher: asyncio.Task | None = None
        self._pending_timers: set[asyncio.TimerHandle] = set()

    # ── Lifecycle ──

    def start(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_loop())

    async def shutdown(self) -> None:
        """Terminate every owned process and stop the dispatcher."""
        for session_id in list(self._handles):
            try:
                await self.terminate(session_id)
            except UnknownSessionError:
                continue
        for timer in self._pending_timers:
            timer.cancel()
        self._pending_timers.clear()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

    # ── Queries ──

    @property
    def dedup(self) -> DedupWindow:
        return self._dedup

    def get(self, session_id: str) -> AgentSession | None:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> AgentSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(session_id)
        return session

    def snapshot(self) -> list[AgentSession]:
        return list(self._sessions.values())

    def has_process(self, session_id: str) -> bool:
        return session_id in self._handles

    def running_bridged(self) -> list[AgentSession]:
        return [
            s for s in self._sessions.values()
            if not s.external and s.status is AgentStatus.RUNNING
        ]

    def owned_pids(self) -> set[int]:
        return {
            h.process.pid for h in self._handles.values()
            if getattr(h.process, "pid", None) is not None
        }

    def claims_path(self, path: str, now: float | None = None) -> bool:
        """Whether a bridged session reported a file event for *path* recently."""
        now = time.monotonic() if now is None else now
        horizon = now - self._config.bridged_claim_seconds
        for claimed in [p for p, t in self._claims.items() if t < horizon]:
            del self._claims[claimed]
        return os.path.normpath(path) in self._claims

    # ── Operations ──

    async def spawn(
        self,
        provider_id: ProviderId | str,
        working_directory: str,
        prompt: str,
        resume_token: str | None = None,
    ) -> AgentSession:
        """Launch a new agent process and start consuming its output.

        Raises ProviderUnavailableError before anything is created when
        the provider cannot be launched, and LaunchFailureError (with the
        session left in ``error``) when the OS refuses the process.
        """
        provider = self._registry.require_spawnable(provider_id)
        launch = self._choose_launch(provider, prompt, resume_token)
        session = AgentSession(
            session_id=make_session_id(),
            provider=provider.provider_id,
            working_directory=working_directory,
            status=AgentStatus.RUNNING,
            resume_token=resume_token,
            can_resume=provider.resumable and launch.mode is LaunchMode.STREAM,
            mode=launch.mode,
        )
        self._sessions[session.session_id] = session
        logger.info(
            "Session %s spawning provider=%s mode=%s cwd=%s",
            session.session_id, provider.name, launch.mode.value, working_directory,
        )
        await self._launch(session, provider, launch, prompt)
        return session

    async def resume(self, session_id: str, prompt: str) -> AgentSession:
        """Continue a completed, resumable session with a new process."""
        session = self.require(session_id)
        if session.status is AgentStatus.RUNNING or session_id in self._handles:
            raise NotResumableError(session_id, "session is still running")
        if session.status is not AgentStatus.COMPLETED:
            raise NotResumableError(session_id, f"session ended with status {session.status.value}")
        if not session.can_resume:
            raise NotResumableError(session_id, "provider cannot resume conversations")
        if not session.resume_token:
            raise NotResumableError(session_id, "no resume token was reported")

        provider = self._registry.require_spawnable(session.provider)
        if not provider.is_available():
            raise ProviderUnavailableError(provider.name, f"'{provider.command}' not found on PATH")
        launch = provider.build_launch(
            prompt,
            resume_token=session.resume_token,
            auto_approve=self._config.auto_approve,
        )
        logger.info("Session %s resuming with token %s", session_id, session.resume_token)
        await self._launch(session, provider, launch, prompt)
        return session

    async def terminate(self, session_id: str) -> None:
        """Stop a session. Idempotent for sessions whose process already exited.

        External (observed or hook-reported) sessions are simply removed
        from the tracked set. Raises UnknownSessionError for untracked ids.
        """
        session = self._sessions.get(session_id)
        if session is None:
            if session_key(session_id, AgentType.SUBAGENT) in self._sessions:
                self._remove(session_key(session_id, AgentType.SUBAGENT))
                return
            raise UnknownSessionError(session_id)

        handle = self._handles.get(session_id)
        if handle is not None:
            await self._stop_handle(session_id, handle)
            return
        if session.external:
            self._remove(session_id)
            sub_key = session_key(session_id, AgentType.SUBAGENT)
            if sub_key in self._sessions:
                self._remove(sub_key)
            return
        logger.debug("Session %s has no live process; terminate is a no-op", session_id)

    # ── External sessions ──

    def track_external(self, candidate: ObserverCandidate) -> AgentSession:
        """Promote an observed process to a synthetic session."""
        session = self._sessions.get(candidate.session_id)
        if session is not None:
            return session
        session = AgentSession(
            session_id=candidate.session_id,
            provider=candidate.provider,
            working_directory=candidate.working_directory or "",
            status=AgentStatus.RUNNING,
            mode=LaunchMode.EXTERNAL,
            external=True,
            pid=candidate.pid,
        )
        self._sessions[session.session_id] = session
        logger.info(
            "Observed %s process pid=%d in %s",
            candidate.provider.value, candidate.pid, candidate.working_directory,
        )
        self._publish_sessions()
        return session

    def remove_external(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None and session.external:
            self._remove(session_id)

    def ingest_hook(
        self,
        session_id: str,
        phase: HookPhase,
        *,
        provider: ProviderId = ProviderId.CLAUDE,
        agent_type: AgentType = AgentType.MAIN,
        tool_name: str | None = None,
        file_path: str | None = None,
        details: dict[str, Any] | None = None,
        message: str | None = None,
        timestamp: int | None = None,
    ) -> bool:
        """Apply one native hook report. Returns False when it was ignored.

        Reports whose session id is a directory overlapping a running
        bridged session are dropped; that session's own stream already
        carries them.
        """
        if os.path.isabs(session_id):
            for bridged in self.running_bridged():
                if bridged.working_directory and _paths_overlap(session_id, bridged.working_directory):
                    logger.debug("Ignoring hook %s for %s: bridged session %s owns it",
                                 phase.value, session_id, bridged.session_id)
                    return False

        key = session_key(session_id, agent_type)
        session = self._sessions.get(key)
        if session is None:
            session = AgentSession(
                session_id=key,
                provider=provider,
                working_directory=session_id if os.path.isabs(session_id) else "",
                agent_type=agent_type,
                status=AgentStatus.RUNNING,
                mode=LaunchMode.EXTERNAL,
                external=True,
            )
            self._sessions[key] = session
            self._publish_sessions()
        elif session.external and phase not in _END_PHASES:
            self._set_status(session, AgentStatus.RUNNING)

        details = dict(details or {})
        tool_kind = normalize_tool_name(tool_name) if tool_name else None
        if tool_kind is not None:
            command = details.get("command") if isinstance(details.get("command"), str) else None
            tool_kind, file_path = refine_execute(tool_kind, command, file_path)

        event = CanonicalEvent(
            session_id=key,
            phase=phase,
            provider=session.provider,
            tool_kind=tool_kind,
            tool_name=tool_name,
            file_path=file_path,
            message=message,
            details=details,
            agent_type=agent_type,
        )
        if timestamp is not None:
            event.timestamp = timestamp
        self.emit(session, event)

        if session.external and phase in _END_PHASES:
            self._set_status(session, AgentStatus.COMPLETED)
        return True

    def emit(self, session: AgentSession, event: CanonicalEvent) -> bool:
        """Deduplicate, update the session and publish. Returns False if suppressed."""
        if not self._dedup.should_emit_event(event):
            logger.debug("Session %s: duplicate %s suppressed", session.session_id, event.phase.value)
            return False
        session.touch(event.file_path if event.tool_kind is not None else None)
        self._sink.publish_event(event)

        if event.tool_kind in FILE_MODIFYING_KINDS and event.file_path and not event.inferred:
            path = event.file_path
            if not os.path.isabs(path) and session.working_directory:
                path = os.path.join(session.working_directory, path)
            path = os.path.normpath(path)
            if not session.external:
                self._claims[path] = time.monotonic()
            self._schedule_refresh(event.tool_kind.value.lower(), path)
        return True

    # ── Internals: launch ──

    def _choose_launch(
        self, provider: Provider, prompt: str, resume_token: str | None,
    ) -> LaunchSpec:
        auto = self._config.auto_approve
        structured = provider.build_acp_launch(auto_approve=auto) if provider.acp_available() else None
        if structured is not None and self._config.prefer_structured_protocol and not resume_token:
            return structured
        if provider.is_available():
            return provider.build_launch(prompt, resume_token=resume_token, auto_approve=auto)
        if structured is not None:
            return structured
        raise ProviderUnavailableError(provider.name, f"'{provider.command}' not found on PATH")

    async def _launch(
        self, session: AgentSession, provider: Provider, launch: LaunchSpec, prompt: str,
    ) -> None:
        generation = self._generations.get(session.session_id, 0) + 1
        self._generations[session.session_id] = generation
        if session.status is not AgentStatus.RUNNING:
            validate_transition(session.status, AgentStatus.RUNNING)
            session.status = AgentStatus.RUNNING
        session.mode = launch.mode
        session.touch()
        self._publish_sessions()

        env = None
        if launch.env:
            env = os.environ.copy()
            env.update(launch.env)
        structured = launch.mode is LaunchMode.STRUCTURED
        try:
            process = await asyncio.create_subprocess_exec(
                *launch.argv,
                stdin=asyncio.subprocess.PIPE if structured else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=session.working_directory or None,
                env=env,
                bufsize=0,
            )
        except (OSError, ValueError) as exc:
            logger.error("Session %s launch failed: %s", session.session_id, exc)
            session.pid = None
            self._set_status(session, AgentStatus.ERROR)
            raise LaunchFailureError(session.session_id, str(exc)) from exc

        handle = _ProcessHandle(
            process=process, provider=provider, generation=generation, mode=launch.mode,
        )
        self._handles[session.session_id] = handle
        session.pid = process.pid
        self.start()

        if structured:
            handle.tasks.append(asyncio.create_task(
                self._run_structured(session.session_id, handle, prompt)
            ))
        else:
            handle.tasks.append(asyncio.create_task(
                self._run_stream(session.session_id, handle)
            ))
        logger.info("Session %s started pid=%s", session.session_id, process.pid)

    async def _drain_stderr(self, session_id: str, handle: _ProcessHandle) -> None:
        stream = handle.process.stderr
        if stream is None:
            return
        buffer = LineBuffer()
        while True:
            chunk = await stream.read(_READ_CHUNK)
            lines = buffer.feed(chunk) if chunk else buffer.flush()
            for line in lines:
                if line.strip():
                    logger.debug("Session %s stderr: %s", session_id, line)
                    handle.stderr_tail.append(line)
                    del handle.stderr_tail[:-_STDERR_TAIL_LINES]
            if not chunk:
                return

    async def _run_stream(self, session_id: str, handle: _ProcessHandle) -> None:
        process = handle.process
        stderr_task = asyncio.create_task(self._drain_stderr(session_id, handle))
        try:
            while True:
                chunk = await process.stdout.read(_READ_CHUNK)
                if not chunk:
                    break
                self.submit_output(session_id, handle.generation, chunk)
            for line in handle.buffer.flush():
                self._queue.put_nowait(_LineItem(session_id, handle.generation, line))
            await stderr_task
            returncode = await process.wait()
        except asyncio.CancelledError:
            stderr_task.cancel()
            raise
        except Exception:
            logger.exception("Session %s: output reader failed", session_id)
            stderr_task.cancel()
            returncode = process.returncode if process.returncode is not None else -1
        reason = handle.stderr_tail[-1] if handle.stderr_tail else ""
        self._queue.put_nowait(_ExitItem(session_id, handle.generation, returncode, reason))

    async def _run_structured(self, session_id: str, handle: _ProcessHandle, prompt: str) -> None:
        process = handle.process
        session = self._sessions[session_id]
        stderr_task = asyncio.create_task(self._drain_stderr(session_id, handle))

        def on_event(event: ParsedStreamEvent) -> None:
            self._queue.put_nowait(_EventItem(session_id, handle.generation, event))

        client = AcpClient(
            process.stdout,
            process.stdin,
            working_directory=session.working_directory,
            on_event=on_event,
            auto_approve=self._config.auto_approve,
            tool_call_memory_seconds=self._config.tool_call_memory_seconds,
            label=f"session {session_id}",
        )
        succeeded = False
        try:
            stop_reason = await client.run(prompt)
            succeeded = True
            on_event(ParsedStreamEvent(
                phase=HookPhase.RESULT,
                message=f"Completed ({stop_reason})",
                details={"success": True, "stopReason": stop_reason},
            ))
        except ProtocolError as exc:
            logger.warning("Session %s: %s", session_id, exc)
            on_event(ParsedStreamEvent(
                phase=HookPhase.RESULT,
                message=f"Error: {exc.detail}",
                details={"success": False},
            ))
        except (ConnectionError, BrokenPipeError) as exc:
            logger.warning("Session %s: ACP transport failed: %s", session_id, exc)
        except Exception:
            logger.exception("Session %s: ACP client failed", session_id)

        # The adapter stays alive after the prompt; close it down.
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        try:
            await asyncio.wait_for(process.wait(), timeout=_ACP_SHUTDOWN_GRACE_SECONDS)
        except asyncio.TimeoutError:
            self._signal(process, signal.SIGTERM)
            await process.wait()
        stderr_task.cancel()
        self._queue.put_nowait(_ExitItem(
            session_id, handle.generation, 0 if succeeded else 1,
        ))

    def submit_output(self, session_id: str, generation: int, chunk: bytes) -> None:
        """Buffer a raw output chunk and queue every completed line."""
        handle = self._handles.get(session_id)
        if handle is None or handle.generation != generation:
            return
        for line in handle.buffer.feed(chunk):
            self._queue.put_nowait(_LineItem(session_id, generation, line))

    @staticmethod
    def _signal(process: Any, sig: int) -> None:
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass

    async def _stop_handle(self, session_id: str, handle: _ProcessHandle) -> None:
        handle.terminating = True
        if handle.process.returncode is None:
            logger.info("Session %s terminating pid=%s", session_id, handle.process.pid)
            self._signal(handle.process, signal.SIGTERM)
        try:
            await asyncio.wait_for(handle.exited.wait(), timeout=_TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Session %s did not exit after SIGTERM; killing", session_id)
            self._signal(handle.process, signal.SIGKILL)
            await handle.exited.wait()

    # ── Internals: dispatch ──

    async def _dispatch_loop(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                self._dispatch(item)
            except Exception:
                logger.exception("Dispatcher failed on %s for session %s",
                                 type(item).__name__, getattr(item, "session_id", "?"))

    def _dispatch(self, item: _LineItem | _EventItem | _ExitItem) -> None:
        session = self._sessions.get(item.session_id)
        handle = self._handles.get(item.session_id)
        if session is None or handle is None or handle.generation != item.generation:
            return

        if isinstance(item, _LineItem):
            for parsed in handle.provider.parse_events(item.line, session.working_directory):
                self._emit_parsed(session, parsed)
        elif isinstance(item, _EventItem):
            self._emit_parsed(session, canonicalize(item.event))
        elif isinstance(item, _ExitItem):
            self._handle_exit(session, handle, item)

    def _emit_parsed(self, session: AgentSession, parsed: ParsedStreamEvent) -> None:
        if parsed.resume_token and session.can_resume:
            session.resume_token = parsed.resume_token
        self.emit(session, parsed.to_canonical(session.session_id, session.provider))

    def _handle_exit(self, session: AgentSession, handle: _ProcessHandle, item: _ExitItem) -> None:
        del self._handles[session.session_id]
        session.pid = None
        if handle.terminating:
            status = AgentStatus.COMPLETED
        elif item.returncode == 0:
            status = AgentStatus.COMPLETED
        else:
            status = AgentStatus.ERROR
        logger.info(
            "Session %s exited rc=%s status=%s%s",
            session.session_id, item.returncode, status.value,
            f" ({item.reason})" if item.reason and status is AgentStatus.ERROR else "",
        )
        self._set_status(session, status)
        handle.exited.set()

    # ── Internals: state ──

    def _set_status(self, session: AgentSession, target: AgentStatus) -> None:
        if session.status is target:
            return
        validate_transition(session.status, target)
        session.status = target
        session.touch()
        self._publish_sessions()

    def _remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._generations.pop(session_id, None)
        self._dedup.forget(session_id)
        logger.info("Session %s removed", session_id)
        self._publish_sessions()

    def _publish_sessions(self) -> None:
        self._sink.publish_sessions(self.snapshot())

    def _schedule_refresh(self, action: str, path: str) -> None:
        loop = asyncio.get_running_loop()
        timer: asyncio.TimerHandle

        def fire() -> None:
            self._pending_timers.discard(timer)
            self._sink.publish_filesystem_change(action, path)

        timer = loop.call_later(self._config.fs_refresh_delay_seconds, fire)
        self._pending_timers.add(timer)
