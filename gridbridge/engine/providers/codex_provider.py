"""OpenAI Codex CLI provider.

Stream mode runs ``codex -q --json <prompt>``. Two JSONL dialects are
understood: the current ``exec --json`` item events and the older
``function_call``/``message`` records.

``exec --json`` event types:
  thread.started, turn.started, turn.completed, turn.failed,
  item.started, item.completed, error

Item types of interest:
  command_execution: shell commands
  file_edit / file_write / file_read: file operations
  mcp_tool_call: MCP tool invocations
  web_search: web lookups
  agent_message: text output
"""
from __future__ import annotations

from typing import Any

from ..models import HookPhase, ProviderId, ToolKind
from .base import ParsedStreamEvent, Provider, tool_event

_FILE_ITEM_KINDS = {
    "file_edit": ("Edit", ToolKind.EDIT),
    "file_write": ("Write", ToolKind.WRITE),
    "file_read": ("Read", ToolKind.READ),
}


class CodexProvider(Provider):
    provider_id = ProviderId.CODEX
    display_name = "Codex CLI"
    color = "#10A37F"
    icon = "■"
    default_command = "codex"
    default_acp_command = ("codex-acp",)
    process_names = ("codex",)

    def build_args(
        self, prompt: str, *, resume_token: str | None, auto_approve: bool,
    ) -> list[str]:
        return ["-q", "--json", prompt]

    def _item_event(
        self, item: dict[str, Any], phase: HookPhase, working_directory: str | None,
    ) -> ParsedStreamEvent | None:
        item_type = item.get("type", "")
        if item_type == "command_execution":
            return tool_event("shell", {"command": item.get("command", "")}, working_directory, phase=phase)
        if item_type in _FILE_ITEM_KINDS:
            name, _ = _FILE_ITEM_KINDS[item_type]
            return tool_event(name, item, working_directory, phase=phase, details={})
        if item_type == "mcp_tool_call":
            args = item.get("arguments") or item.get("input") or {}
            return tool_event(item.get("tool_name") or item.get("name"), args, working_directory, phase=phase)
        if item_type == "web_search":
            return tool_event("web_search", {"query": item.get("query", "")}, None, phase=phase)
        return None

    def parse_payload(
        self, payload: dict[str, Any], working_directory: str | None,
    ) -> list[ParsedStreamEvent]:
        ptype = payload.get("type", "")
        item = payload.get("item")

        if ptype == "item.started" and isinstance(item, dict):
            event = self._item_event(item, HookPhase.PRE_TOOL, working_directory)
            return [event] if event else []

        if ptype == "item.completed" and isinstance(item, dict):
            if item.get("type") == "agent_message":
                text = item.get("text")
                return [ParsedStreamEvent(phase=HookPhase.ASSISTANT_TEXT, message=text)] if text else []
            event = self._item_event(item, HookPhase.POST_TOOL, working_directory)
            if event is not None:
                event.details["success"] = item.get("status") != "failed"
            return [event] if event else []

        if ptype == "turn.completed":
            usage = payload.get("usage")
            details: dict[str, Any] = {"success": True}
            if isinstance(usage, dict):
                details["usage"] = usage
            return [ParsedStreamEvent(phase=HookPhase.RESULT, message="Completed", details=details)]

        if ptype in ("turn.failed", "error"):
            error = payload.get("error") or payload.get("message") or "Codex reported an error"
            if isinstance(error, dict):
                error = error.get("message") or str(error)
            return [ParsedStreamEvent(
                phase=HookPhase.RESULT, message=f"Error: {error}", details={"success": False},
            )]

        # Older JSONL dialect.
        if ptype == "function_call" or isinstance(payload.get("tool_use"), dict):
            tool = payload.get("tool_use") or payload
            args = tool.get("arguments")
            if not isinstance(args, dict):
                args = {}
            return [tool_event(tool.get("name") or tool.get("function"), args, working_directory)]

        if ptype == "message" or payload.get("content"):
            text = payload.get("content") or payload.get("text") or payload.get("message")
            if isinstance(text, str) and text:
                return [ParsedStreamEvent(phase=HookPhase.ASSISTANT_TEXT, message=text)]
            return []

        if ptype == "result" or payload.get("status") == "completed":
            message = payload.get("result") or payload.get("output") or "Completed"
            return [ParsedStreamEvent(
                phase=HookPhase.RESULT,
                message=str(message),
                details={"success": not payload.get("error")},
            )]

        return []
