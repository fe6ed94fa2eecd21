"""Providers that share the generic JSON-lines parser, plus observe-only tools.

The generic parser understands Gemini-style ``stream-json`` and the
other common shapes: top-level ``tool_use`` records, nested
``tool_use``/``tool_call``/``functionCall`` objects, assistant
``message`` records and ``result`` records.
"""
from __future__ import annotations

from typing import Any

from ..models import HookPhase, ProviderId
from .base import ParsedStreamEvent, Provider, tool_event

_NESTED_TOOL_KEYS = ("tool_use", "tool_call", "functionCall")
_PARAM_KEYS = ("parameters", "input", "args", "arguments")


def _params_of(obj: dict[str, Any]) -> dict[str, Any]:
    for key in _PARAM_KEYS:
        value = obj.get(key)
        if isinstance(value, dict):
            return value
    return {}


def parse_generic_payload(
    payload: dict[str, Any], working_directory: str | None,
) -> list[ParsedStreamEvent]:
    ptype = payload.get("type")

    if ptype == "tool_use":
        name = payload.get("tool_name") or payload.get("name")
        return [tool_event(name, _params_of(payload), working_directory)]

    if ptype == "tool_result":
        # The matching tool_use was already reported.
        return []

    for key in _NESTED_TOOL_KEYS:
        nested = payload.get(key)
        if isinstance(nested, dict):
            name = nested.get("name") or nested.get("tool_name") or nested.get("function")
            return [tool_event(name, _params_of(nested), working_directory)]

    if ptype == "message" and payload.get("role") == "assistant" and not payload.get("delta"):
        content = payload.get("content")
        if isinstance(content, str) and content:
            return [ParsedStreamEvent(phase=HookPhase.ASSISTANT_TEXT, message=content)]
        return []

    if ptype == "text":
        text = payload.get("content") or payload.get("text")
        if isinstance(text, str) and text:
            return [ParsedStreamEvent(phase=HookPhase.ASSISTANT_TEXT, message=text)]
        return []

    if ptype == "result":
        success = payload.get("status") == "success" or (
            not payload.get("error") and not payload.get("is_error")
        )
        details: dict[str, Any] = {"success": success}
        stats = payload.get("stats")
        if isinstance(stats, dict):
            details.update(stats)
        message = payload.get("result") or payload.get("output") or "Completed"
        return [ParsedStreamEvent(phase=HookPhase.RESULT, message=str(message), details=details)]

    return []


class GenericStreamProvider(Provider):
    """Base for CLIs whose output the generic parser understands."""

    def parse_payload(
        self, payload: dict[str, Any], working_directory: str | None,
    ) -> list[ParsedStreamEvent]:
        return parse_generic_payload(payload, working_directory)


class KilocodeProvider(GenericStreamProvider):
    provider_id = ProviderId.KILOCODE
    display_name = "Kilocode"
    color = "#E91E63"
    icon = "◎"
    default_command = "kilocode"
    default_acp_command = ("kilo-acp",)
    process_names = ("kilocode", "kilo")

    def build_args(self, prompt: str, *, resume_token: str | None, auto_approve: bool) -> list[str]:
        return ["--json", prompt]


class OpenCodeProvider(GenericStreamProvider):
    provider_id = ProviderId.OPENCODE
    display_name = "OpenCode"
    color = "#76FF03"
    icon = "⬡"
    default_command = "opencode"
    default_acp_command = ("opencode", "acp")
    process_names = ("opencode",)

    def build_args(self, prompt: str, *, resume_token: str | None, auto_approve: bool) -> list[str]:
        return ["run", prompt]


class KimiProvider(GenericStreamProvider):
    provider_id = ProviderId.KIMI
    display_name = "Kimi CLI"
    color = "#FF4081"
    icon = "✦"
    default_command = "kimi"
    default_acp_command = ("kimi", "--acp")
    process_names = ("kimi",)

    def build_args(self, prompt: str, *, resume_token: str | None, auto_approve: bool) -> list[str]:
        return ["-p", prompt]


class AiderProvider(GenericStreamProvider):
    provider_id = ProviderId.AIDER
    display_name = "Aider"
    color = "#FF5252"
    icon = "▼"
    default_command = "aider"
    process_names = ("aider",)

    def build_args(self, prompt: str, *, resume_token: str | None, auto_approve: bool) -> list[str]:
        return ["--message", prompt, "--yes"]


class ObservedProvider(GenericStreamProvider):
    """A tool the bridge can recognise (discovery, hooks) but never launches."""

    spawnable = False

    def build_args(self, prompt: str, *, resume_token: str | None, auto_approve: bool) -> list[str]:
        raise NotImplementedError(f"{self.display_name} cannot be launched by the bridge")

    def build_acp_launch(self, *, auto_approve: bool = True) -> None:
        return None


class ClineProvider(ObservedProvider):
    provider_id = ProviderId.CLINE
    display_name = "Cline"
    color = "#009688"
    default_command = "cline"
    process_names = ("cline",)


class AugmentProvider(ObservedProvider):
    provider_id = ProviderId.AUGMENT
    display_name = "Augment"
    color = "#3F51B5"
    default_command = "augment"
    process_names = ("augment", "auggie")


class QwenProvider(ObservedProvider):
    provider_id = ProviderId.QWEN
    display_name = "Qwen Code"
    color = "#FFC107"
    default_command = "qwen"
    process_names = ("qwen",)


class CopilotProvider(ObservedProvider):
    provider_id = ProviderId.COPILOT
    display_name = "GitHub Copilot"
    color = "#56B6C2"
    default_command = "github-copilot"
    process_names = ("github-copilot", "copilot")


class GenericAgentProvider(ObservedProvider):
    provider_id = ProviderId.GENERIC
    display_name = "Generic Agent"
    color = "#AA00FF"
    default_command = ""
