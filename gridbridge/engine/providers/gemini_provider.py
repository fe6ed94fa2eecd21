"""Gemini CLI provider.

Stream mode runs ``gemini -p <prompt> --output-format stream-json``;
structured mode runs ``gemini --experimental-acp``. ``--yolo`` turns
off confirmation prompts in both.
"""
from __future__ import annotations

from typing import Any

from ..models import ProviderId
from .base import ParsedStreamEvent, Provider
from .generic_provider import parse_generic_payload


class GeminiProvider(Provider):
    provider_id = ProviderId.GEMINI
    display_name = "Gemini CLI"
    color = "#4285F4"
    icon = "◆"
    default_command = "gemini"
    default_acp_command = ("gemini", "--experimental-acp")
    process_names = ("gemini",)

    def build_args(
        self, prompt: str, *, resume_token: str | None, auto_approve: bool,
    ) -> list[str]:
        args = ["-p", prompt, "--output-format", "stream-json"]
        if auto_approve:
            args.append("--yolo")
        return args

    def build_acp_args(self, auto_approve: bool) -> list[str]:
        return ["--yolo"] if auto_approve else []

    def parse_payload(
        self, payload: dict[str, Any], working_directory: str | None,
    ) -> list[ParsedStreamEvent]:
        # Older builds emitted bare functionCall objects.
        if payload.get("type") == "functionCall":
            return parse_generic_payload({"functionCall": payload}, working_directory)
        return parse_generic_payload(payload, working_directory)
