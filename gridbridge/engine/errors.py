"""Exception hierarchy for the bridge engine.

One exception per failure mode. Each carries the identifiers the
HTTP layer needs to build its response.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class ProviderUnavailableError(BridgeError):
    """Provider is unknown, observe-only, or its CLI is not on PATH."""
    def __init__(self, provider_id: str, reason: str):
        self.provider_id = provider_id
        self.reason = reason
        super().__init__(f"Provider '{provider_id}' is unavailable: {reason}")


class LaunchFailureError(BridgeError):
    """The OS refused to start the agent process."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to launch session {session_id}: {reason}")


class MalformedOutputError(BridgeError):
    """A single output line could not be parsed."""
    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        preview = line if len(line) <= 80 else line[:77] + "..."
        super().__init__(f"Malformed output ({reason}): {preview!r}")


class NotResumableError(BridgeError):
    """Resume attempted on a session that cannot be resumed."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Session {session_id} is not resumable: {reason}")


class UnknownSessionError(BridgeError):
    """Operation on a session id the bridge does not track."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Unknown session: {session_id}")


class ProtocolError(BridgeError):
    """The structured protocol peer answered a request with an error."""
    def __init__(self, method: str, detail: object):
        self.method = method
        self.detail = detail
        super().__init__(f"Protocol request '{method}' failed: {detail}")
