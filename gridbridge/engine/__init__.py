"""Bridge engine: provider adapters, session state and the process manager."""
from .models import (
    AgentSession,
    AgentStatus,
    AgentType,
    CanonicalEvent,
    FsAction,
    HookPhase,
    LaunchMode,
    ObserverCandidate,
    ProviderId,
    ToolKind,
)
from .config import BridgeConfig
from .errors import (
    BridgeError,
    LaunchFailureError,
    MalformedOutputError,
    NotResumableError,
    ProtocolError,
    ProviderUnavailableError,
    UnknownSessionError,
)
from .dedup import DedupWindow
from .process_manager import ProcessManager

__all__ = [
    "AgentSession",
    "AgentStatus",
    "AgentType",
    "CanonicalEvent",
    "FsAction",
    "HookPhase",
    "LaunchMode",
    "ObserverCandidate",
    "ProviderId",
    "ToolKind",
    "BridgeConfig",
    "BridgeError",
    "LaunchFailureError",
    "MalformedOutputError",
    "NotResumableError",
    "ProtocolError",
    "ProviderUnavailableError",
    "UnknownSessionError",
    "DedupWindow",
    "ProcessManager",
]
