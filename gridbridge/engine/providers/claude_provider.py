"""Claude Code provider.

Stream mode runs ``claude -p <prompt> --output-format stream-json
--verbose``. One ``assistant`` line may carry several content blocks,
so this provider yields every block; ``parse_line`` still returns only
the first. The ``result`` line carries the session id that later
resumes the conversation via ``--resume``.
"""
from __future__ import annotations

from typing import Any

from ..models import HookPhase, ProviderId
from .base import ParsedStreamEvent, Provider, tool_event


class ClaudeProvider(Provider):
    provider_id = ProviderId.CLAUDE
    display_name = "Claude Code"
    color = "#00FFFF"
    icon = "●"
    default_command = "claude"
    default_acp_command = ("claude-agent-acp",)
    resumable = True
    process_names = ("claude",)

    def build_args(
        self, prompt: str, *, resume_token: str | None, auto_approve: bool,
    ) -> list[str]:
        args = ["-p", prompt, "--output-format", "stream-json", "--verbose"]
        if resume_token:
            args.extend(["--resume", resume_token])
        if auto_approve:
            args.append("--dangerously-skip-permissions")
        return args

    def parse_payload(
        self, payload: dict[str, Any], working_directory: str | None,
    ) -> list[ParsedStreamEvent]:
        ptype = payload.get("type")

        if ptype == "assistant":
            message = payload.get("message") or {}
            events: list[ParsedStreamEvent] = []
            for block in message.get("content") or []:
                if not isinstance(block, dict):
                    continue
                btype = block.get("type")
                if btype == "tool_use":
                    events.append(tool_event(
                        block.get("name"), block.get("input") or {}, working_directory,
                    ))
                elif btype == "text" and block.get("text"):
                    events.append(ParsedStreamEvent(
                        phase=HookPhase.ASSISTANT_TEXT, message=block["text"],
                    ))
            return events

        if ptype == "result":
            session_id = payload.get("session_id")
            details = {
                "success": not payload.get("is_error", False),
                "duration_ms": payload.get("duration_ms"),
                "num_turns": payload.get("num_turns"),
                "cost_usd": payload.get("total_cost_usd"),
                "claudeSessionId": session_id,
            }
            return [ParsedStreamEvent(
                phase=HookPhase.RESULT,
                message=payload.get("result") or "",
                details={k: v for k, v in details.items() if v is not None},
                resume_token=session_id if isinstance(session_id, str) else None,
            )]

        # system/init, user tool_result blocks, stream deltas
        return []
