"""Goose provider (``goose run --text <prompt> --output-format stream-json``)."""
from __future__ import annotations

from typing import Any

from ..models import HookPhase, ProviderId
from .base import ParsedStreamEvent, Provider, tool_event


class GooseProvider(Provider):
    provider_id = ProviderId.GOOSE
    display_name = "Goose"
    color = "#FF6600"
    icon = "▲"
    default_command = "goose"
    default_acp_command = ("goose", "acp")
    process_names = ("goose",)

    def build_args(
        self, prompt: str, *, resume_token: str | None, auto_approve: bool,
    ) -> list[str]:
        return ["run", "--text", prompt, "--output-format", "stream-json"]

    def parse_payload(
        self, payload: dict[str, Any], working_directory: str | None,
    ) -> list[ParsedStreamEvent]:
        ptype = payload.get("type")
        nested = payload.get("tool_call")
        if isinstance(nested, dict) or ptype == "tool_use":
            tool = nested if isinstance(nested, dict) else payload
            params = tool.get("arguments")
            if not isinstance(params, dict):
                params = tool.get("input") if isinstance(tool.get("input"), dict) else {}
            return [tool_event(tool.get("name") or tool.get("tool"), params, working_directory)]

        if ptype == "text" or payload.get("content"):
            text = payload.get("content") or payload.get("text")
            if isinstance(text, str) and text:
                return [ParsedStreamEvent(phase=HookPhase.ASSISTANT_TEXT, message=text)]
            return []

        if ptype == "result" or payload.get("done"):
            message = payload.get("result") or payload.get("output") or "Completed"
            return [ParsedStreamEvent(
                phase=HookPhase.RESULT, message=str(message), details={"success": True},
            )]
        return []
