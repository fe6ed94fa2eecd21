"""Message contracts carried by the observer channel.

Server -> client messages are tagged unions ``{type, payload}``.
Client -> server messages are parsed into typed dataclasses for safe
consumption by the server.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from ..engine.models import AgentSession, CanonicalEvent


# ── Server -> client ──

def event_message(event: CanonicalEvent) -> dict[str, Any]:
    return {"type": "event", "payload": event.to_dict()}


def sessions_message(sessions: list[AgentSession]) -> dict[str, Any]:
    return {"type": "sessions", "payload": [s.to_dict() for s in sessions]}


def filesystem_message(action: str, path: str) -> dict[str, Any]:
    return {"type": "filesystemChanged", "payload": {"action": action, "path": path}}


def error_message(message: str) -> dict[str, Any]:
    return {"type": "error", "payload": {"message": message}}


# ── Client -> server ──

@dataclass
class ClientMessage:
    """Base message from an observer."""
    type: str = ""


@dataclass
class WatchRequest(ClientMessage):
    type: str = "watch"
    path: str = ""


@dataclass
class SetObserverMode(ClientMessage):
    type: str = "setObserverMode"
    enabled: bool = False


@dataclass
class Ping(ClientMessage):
    type: str = "ping"


def _watch(data: dict[str, Any]) -> WatchRequest:
    path = data.get("path")
    if not isinstance(path, str) or not path:
        raise ValueError("watch requires a non-empty 'path'")
    return WatchRequest(path=path)


def _observer_mode(data: dict[str, Any]) -> SetObserverMode:
    enabled = data.get("enabled")
    if not isinstance(enabled, bool):
        raise ValueError("setObserverMode requires a boolean 'enabled'")
    return SetObserverMode(enabled=enabled)


_CLIENT_MESSAGE_MAP = {
    "watch": _watch,
    "setObserverMode": _observer_mode,
    "ping": lambda data: Ping(),
}


def parse_client_message(raw: str | bytes | dict[str, Any]) -> ClientMessage:
    """Parse one observer message. Raises ValueError when it is not understood."""
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON: {exc.msg}") from exc
    else:
        data = raw
    if not isinstance(data, dict):
        raise ValueError("message must be a JSON object")
    factory = _CLIENT_MESSAGE_MAP.get(data.get("type"))
    if factory is None:
        raise ValueError(f"unknown message type: {data.get('type')!r}")
    return factory(data)
