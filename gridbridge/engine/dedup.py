"""Short-lived per-session memory of recently emitted event signatures.

A single logical action can surface twice, e.g. once from a native hook
and once from stream parsing. The window accepts the first report and
suppresses equal signatures until the TTL elapses.
"""
from __future__ import annotations

import hashlib
import time
from collections.abc import Callable

from .models import CanonicalEvent, HookPhase, ToolKind

_TEXT_PREFIX_CHARS = 100
_RESULT_PREFIX_CHARS = 50


def _prefix_hash(text: str, limit: int) -> str:
    return hashlib.sha1(text[:limit].encode("utf-8", errors="replace")).hexdigest()[:16]


def tool_signature(
    phase: HookPhase,
    tool_kind: ToolKind | None,
    file_path: str | None,
    discriminator: str | None = None,
) -> str:
    """Tool fingerprint. *discriminator* separates calls sharing a path,
    e.g. two shell commands run from the same working directory."""
    kind = tool_kind.value if tool_kind else ToolKind.UNKNOWN.value
    signature = f"tool:{phase.value}:{kind}:{file_path or ''}"
    if discriminator:
        signature += ":" + _prefix_hash(discriminator, _TEXT_PREFIX_CHARS)
    return signature


def _tool_discriminator(event: CanonicalEvent) -> str | None:
    # Command text is shared by hook and stream reports of the same call;
    # a protocol call id is the fallback when there is no command.
    for key in ("command", "toolCallId"):
        value = event.details.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def text_signature(message: str) -> str:
    return "text:" + _prefix_hash(message, _TEXT_PREFIX_CHARS)


def result_signature(message: str) -> str:
    return "result:" + _prefix_hash(message, _RESULT_PREFIX_CHARS)


def event_signature(event: CanonicalEvent) -> str:
    """Normalized fingerprint of a canonical event."""
    if event.phase in (HookPhase.PRE_TOOL, HookPhase.POST_TOOL):
        return tool_signature(
            event.phase, event.tool_kind, event.file_path, _tool_discriminator(event),
        )
    if event.phase is HookPhase.ASSISTANT_TEXT:
        return text_signature(event.message or "")
    if event.phase is HookPhase.RESULT:
        return result_signature(event.message or "")
    return f"lifecycle:{event.phase.value}:{event.agent_type.value}"


class DedupWindow:
    """Per-session TTL set of accepted signatures.

    Entries are pruned lazily on access; nothing needs cancelling.
    """

    def __init__(
        self,
        ttl_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, dict[str, float]] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def should_emit(self, session_id: str, signature: str) -> bool:
        """Record *signature* and return True unless it was seen within the TTL."""
        now = self._clock()
        entries = self._entries.setdefault(session_id, {})
        self._prune(entries, now)
        if signature in entries:
            return False
        entries[signature] = now + self._ttl
        return True

    def should_emit_event(self, event: CanonicalEvent) -> bool:
        return self.should_emit(event.session_id, event_signature(event))

    def forget(self, session_id: str) -> None:
        self._entries.pop(session_id, None)

    def prune(self) -> None:
        now = self._clock()
        for session_id in list(self._entries):
            entries = self._entries[session_id]
            self._prune(entries, now)
            if not entries:
                del self._entries[session_id]

    def __len__(self) -> int:
        return sum(len(e) for e in self._entries.values())

    @staticmethod
    def _prune(entries: dict[str, float], now: float) -> None:
        expired = [sig for sig, expiry in entries.items() if expiry <= now]
        for sig in expired:
            del entries[sig]
