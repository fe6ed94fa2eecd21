"""Abstract base for agent CLI providers.

Each provider wraps one agent command-line tool. It knows how to build
the launch command (stream mode, and optionally the structured-protocol
adapter), and how to parse one raw output line into canonical events.
Parsers are pure: identical input always yields identical output.
"""
from __future__ import annotations

import abc
import json
import logging
import shlex
import shutil
from dataclasses import dataclass, field
from typing import Any

from ..errors import MalformedOutputError
from ..models import AgentType, CanonicalEvent, HookPhase, LaunchMode, ProviderId, ToolKind
from ..shell_heuristics import refine_execute
from .tool_names import normalize_tool_name

logger = logging.getLogger(__name__)

_PATH_KEYS = ("file_path", "path", "dir_path", "target_file", "filePath", "filename")
_COMMAND_KEYS = ("command", "cmd", "script")


@dataclass
class ParsedStreamEvent:
    """Provider-neutral event produced by a parser, before session binding."""
    phase: HookPhase
    tool_kind: ToolKind | None = None
    tool_name: str | None = None
    file_path: str | None = None
    message: str | None = None
    command: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    resume_token: str | None = None
    agent_type: AgentType = AgentType.MAIN

    def to_canonical(
        self, session_id: str, provider: ProviderId, *, inferred: bool = False,
    ) -> CanonicalEvent:
        details = dict(self.details)
        if self.command and "command" not in details:
            details["command"] = self.command
        return CanonicalEvent(
            session_id=session_id,
            phase=self.phase,
            provider=provider,
            tool_kind=self.tool_kind,
            tool_name=self.tool_name,
            file_path=self.file_path,
            message=self.message,
            details=details,
            agent_type=self.agent_type,
            inferred=inferred,
        )


@dataclass(frozen=True)
class LaunchSpec:
    """argv + environment for one agent process."""
    argv: list[str]
    mode: LaunchMode = LaunchMode.STREAM
    env: dict[str, str] | None = None


def first_string(params: Any, keys: tuple[str, ...]) -> str | None:
    if not isinstance(params, dict):
        return None
    for key in keys:
        value = params.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def extract_path(params: Any) -> str | None:
    return first_string(params, _PATH_KEYS)


def extract_command(params: Any) -> str | None:
    if isinstance(params, dict):
        value = params.get("command")
        # Codex sends argv lists: ["bash", "-lc", "rm -rf x"]
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return shlex.join(value)
    return first_string(params, _COMMAND_KEYS)


def tool_event(
    raw_name: str | None,
    params: Any,
    working_directory: str | None,
    *,
    phase: HookPhase = HookPhase.PRE_TOOL,
    details: dict[str, Any] | None = None,
) -> ParsedStreamEvent:
    """Build a tool event from a native name and its argument map."""
    name = raw_name or "Unknown"
    return ParsedStreamEvent(
        phase=phase,
        tool_kind=normalize_tool_name(name),
        tool_name=name,
        file_path=extract_path(params) or working_directory,
        command=extract_command(params),
        details=dict(details if details is not None else (params if isinstance(params, dict) else {})),
    )


def canonicalize(event: ParsedStreamEvent) -> ParsedStreamEvent:
    """Secondary pass: shell heuristics on Execute events."""
    if event.tool_kind is ToolKind.EXECUTE and event.command:
        kind, path = refine_execute(event.tool_kind, event.command, None)
        if kind is not ToolKind.EXECUTE:
            event.tool_kind = kind
            event.file_path = path or event.file_path
    return event


class Provider(abc.ABC):
    """Abstract provider interface.

    Subclasses set the class attributes below and implement
    ``build_args`` and ``parse_payload``.
    """

    provider_id: ProviderId
    display_name: str = ""
    color: str = "#AA00FF"
    icon: str = "●"
    default_command: str = ""
    default_acp_command: tuple[str, ...] = ()
    resumable: bool = False
    spawnable: bool = True
    # Executable basenames recognised by process discovery.
    process_names: tuple[str, ...] = ()

    def __init__(
        self,
        command: str | None = None,
        acp_command: list[str] | None = None,
    ) -> None:
        self._command = self.resolve_command(command or "", self.default_command)
        self._acp_command = list(acp_command) if acp_command else list(self.default_acp_command)

    @property
    def name(self) -> str:
        return self.provider_id.value

    @property
    def command(self) -> str:
        return self._command

    @property
    def acp_command(self) -> list[str]:
        return list(self._acp_command)

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Prefer an explicit command that resolves on PATH, else the fallback.

        An explicit command that does not resolve is kept as-is so it
        shows up in "unavailable" errors.
        """
        if command:
            if shutil.which(command):
                return command
            if fallback and shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s for provider %s",
                    command, fallback, self.provider_id.value,
                )
                return fallback
            return command
        return fallback or ""

    # ── Availability ──

    def is_available(self) -> bool:
        """Whether the stream CLI resolves on PATH right now."""
        return bool(self._command) and shutil.which(self._command) is not None

    def acp_available(self) -> bool:
        """Whether the structured-protocol adapter resolves on PATH right now."""
        return bool(self._acp_command) and shutil.which(self._acp_command[0]) is not None

    def can_launch(self) -> bool:
        """Whether either launch mode is installed."""
        return self.spawnable and (self.is_available() or self.acp_available())

    # ── Launch ──

    @abc.abstractmethod
    def build_args(
        self, prompt: str, *, resume_token: str | None, auto_approve: bool,
    ) -> list[str]:
        """CLI arguments (without the executable) for a stream-mode run."""

    def build_launch(
        self,
        prompt: str,
        *,
        resume_token: str | None = None,
        auto_approve: bool = True,
    ) -> LaunchSpec:
        args = self.build_args(prompt, resume_token=resume_token, auto_approve=auto_approve)
        return LaunchSpec(argv=[self._command, *args], mode=LaunchMode.STREAM)

    def build_acp_args(self, auto_approve: bool) -> list[str]:
        return []

    def build_acp_launch(self, *, auto_approve: bool = True) -> LaunchSpec | None:
        """Launch spec for the structured-protocol adapter, or None if there is none."""
        if not self._acp_command:
            return None
        argv = [*self._acp_command, *self.build_acp_args(auto_approve)]
        return LaunchSpec(
            argv=argv,
            mode=LaunchMode.STRUCTURED,
            env={"PYTHONUNBUFFERED": "1", "TERM": "dumb"},
        )

    # ── Parsing ──

    @abc.abstractmethod
    def parse_payload(
        self, payload: dict[str, Any], working_directory: str | None,
    ) -> list[ParsedStreamEvent]:
        """Turn one decoded JSON object into zero or more events."""

    def decode_line(self, line: str) -> dict[str, Any] | None:
        """Decode one output line. Raises MalformedOutputError for non-object JSON."""
        stripped = line.strip()
        if not stripped:
            return None
        if not stripped.startswith("{"):
            # Plain progress output; not an error.
            return None
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError as exc:
            raise MalformedOutputError(stripped, f"invalid JSON: {exc.msg}") from exc
        if not isinstance(payload, dict):
            raise MalformedOutputError(stripped, "expected a JSON object")
        return payload

    def parse_events(
        self, line: str, working_directory: str | None = None,
    ) -> list[ParsedStreamEvent]:
        """Parse one complete line into every event it carries, in order.

        Malformed input is logged and skipped, never raised.
        """
        try:
            payload = self.decode_line(line)
            if payload is None:
                return []
            events = self.parse_payload(payload, working_directory)
        except MalformedOutputError as exc:
            logger.debug("%s: skipping line: %s", self.name, exc)
            return []
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.debug("%s: parser rejected line (%s): %.120s", self.name, exc, line)
            return []
        return [canonicalize(e) for e in events]

    def parse_line(
        self, line: str, working_directory: str | None = None,
    ) -> ParsedStreamEvent | None:
        """Parse one line into zero-or-one event (the first it carries)."""
        events = self.parse_events(line, working_directory)
        return events[0] if events else None

    def describe(self) -> dict[str, Any]:
        """Row for the providers listing; availability is resolved now."""
        return {
            "id": self.name,
            "name": self.display_name,
            "available": self.can_launch(),
            "spawnable": self.spawnable,
            "canResume": self.resumable,
            "structured": self.spawnable and self.acp_available(),
            "color": self.color,
            "icon": self.icon,
        }
