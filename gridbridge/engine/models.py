"""Core data models for the bridge engine.

All dataclasses and enums shared by providers, the process manager
and the observer. Single source of truth to avoid circular imports.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ProviderId(str, Enum):
    """Every agent CLI the bridge knows how to launch or recognise."""
    CLAUDE = "claude"
    GEMINI = "gemini"
    CODEX = "codex"
    GOOSE = "goose"
    KILOCODE = "kilocode"
    OPENCODE = "opencode"
    KIMI = "kimi"
    AIDER = "aider"
    CLINE = "cline"
    AUGMENT = "augment"
    QWEN = "qwen"
    COPILOT = "copilot"
    GENERIC = "generic"

    @classmethod
    def parse(cls, value: Any) -> ProviderId | None:
        """Return the member for *value*, or None when it is not a provider."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class AgentType(str, Enum):
    MAIN = "main"
    SUBAGENT = "subagent"


class AgentStatus(str, Enum):
    """Session statuses. See lifecycle.py for transition rules."""
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class HookPhase(str, Enum):
    """Lifecycle phase of a canonical event."""
    SESSION_START = "session-start"
    SESSION_END = "session-end"
    SUBAGENT_START = "subagent-start"
    SUBAGENT_STOP = "subagent-stop"
    PRE_TOOL = "pre-tool"
    POST_TOOL = "post-tool"
    ASSISTANT_TEXT = "assistant-text"
    RESULT = "result"

    @classmethod
    def parse(cls, value: Any) -> HookPhase | None:
        """Accept canonical values and native hook names (``PreToolUse``...)."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        phase = _HOOK_ALIASES.get(value.strip())
        if phase is not None:
            return phase
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


_HOOK_ALIASES: dict[str, HookPhase] = {
    "SessionStart": HookPhase.SESSION_START,
    "SessionEnd": HookPhase.SESSION_END,
    "Stop": HookPhase.SESSION_END,
    "SubagentStart": HookPhase.SUBAGENT_START,
    "SubagentStop": HookPhase.SUBAGENT_STOP,
    "PreToolUse": HookPhase.PRE_TOOL,
    "PostToolUse": HookPhase.POST_TOOL,
    "AssistantMessage": HookPhase.ASSISTANT_TEXT,
    "Result": HookPhase.RESULT,
}


class ToolKind(str, Enum):
    """Canonical tool vocabulary shared by every provider."""
    READ = "Read"
    WRITE = "Write"
    EDIT = "Edit"
    DELETE = "Delete"
    EXECUTE = "Execute"
    SEARCH = "Search"
    GLOB = "Glob"
    SPAWN_SUBTASK = "Spawn-subtask"
    FETCH = "Fetch"
    ASK = "Ask"
    UNKNOWN = "Unknown"


# Tool kinds whose effect is visible on disk.
FILE_MODIFYING_KINDS = frozenset({ToolKind.WRITE, ToolKind.EDIT, ToolKind.DELETE})


class FsAction(str, Enum):
    """Disambiguated filesystem change kinds."""
    CREATE = "create"
    MODIFY = "modify"
    REMOVE = "remove"


FS_ACTION_TOOL_KIND: dict[FsAction, ToolKind] = {
    FsAction.CREATE: ToolKind.WRITE,
    FsAction.MODIFY: ToolKind.EDIT,
    FsAction.REMOVE: ToolKind.DELETE,
}


class LaunchMode(str, Enum):
    STREAM = "stream"
    STRUCTURED = "acp"
    EXTERNAL = "external"


def make_session_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class AgentSession:
    """One tracked agent instance, bridged or externally observed."""
    session_id: str
    provider: ProviderId
    working_directory: str
    agent_type: AgentType = AgentType.MAIN
    status: AgentStatus = AgentStatus.RUNNING
    current_path: str | None = None
    last_activity_time: int = field(default_factory=now_ms)
    resume_token: str | None = None
    can_resume: bool = False
    mode: LaunchMode = LaunchMode.STREAM
    # External sessions never own an OS process handle.
    external: bool = False
    pid: int | None = None

    def touch(self, path: str | None = None) -> None:
        if path:
            self.current_path = path
        self.last_activity_time = now_ms()

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "sessionId": self.session_id,
            "provider": self.provider.value,
            "agentType": self.agent_type.value,
            "status": self.status.value,
            "workingDirectory": self.working_directory,
            "currentPath": self.current_path,
            "lastActivityTime": self.last_activity_time,
            "resumeToken": self.resume_token,
            "canResume": self.can_resume,
            "mode": self.mode.value,
            "external": self.external,
            "pid": self.pid,
        })


@dataclass
class CanonicalEvent:
    """The normalized unit of observation broadcast to observers."""
    session_id: str
    phase: HookPhase
    provider: ProviderId
    tool_kind: ToolKind | None = None
    file_path: str | None = None
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)
    agent_type: AgentType = AgentType.MAIN
    tool_name: str | None = None
    # Set for events synthesized by filesystem attribution.
    inferred: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = _drop_none({
            "timestamp": self.timestamp,
            "sessionId": self.session_id,
            "phase": self.phase.value,
            "toolKind": self.tool_kind.value if self.tool_kind else None,
            "toolName": self.tool_name,
            "filePath": self.file_path,
            "message": self.message,
            "provider": self.provider.value,
            "agentType": self.agent_type.value,
        })
        data["details"] = dict(self.details)
        data["inferred"] = self.inferred
        return data


@dataclass
class ObserverCandidate:
    """An externally discovered agent process that the bridge did not launch."""
    pid: int
    provider: ProviderId
    working_directory: str | None
    first_seen_time: float
    last_seen_time: float
    session_id: str = ""

    def __post_init__(self) -> None:
        if not self.session_id:
            self.session_id = f"observed-{self.provider.value}-{self.pid}"
