"""Client side of the Agent Client Protocol (ACP) over stdio.

JSON-RPC 2.0, one message per line. The bridge acts as the client:

1. ``initialize``   capability negotiation
2. ``session/new``  session bound to the working directory
3. ``session/prompt``  prompt submission; resolves with a stop reason

While the prompt runs the agent sends ``session/update`` notifications
(tool calls, assistant message chunks) and may call back with
``session/request_permission``, which is always answered with an
allow option when auto-approve is on.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any
from urllib.parse import unquote, urlparse

from .. import __version__
from .dedup import DedupWindow
from .errors import ProtocolError
from .models import HookPhase, ToolKind
from .providers.base import ParsedStreamEvent
from .providers.tool_names import kind_from_acp

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1
METHOD_NOT_FOUND = -32601
_ALLOW_KINDS = ("allow_always", "allow_once")


async def read_line_unbounded(stream: asyncio.StreamReader) -> bytes:
    """Read a full line from *stream* with no size limit.

    Unlike ``StreamReader.readline()`` this never raises
    ``LimitOverrunError``: when the buffer fills before a newline, the
    buffered bytes are drained and accumulation continues.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(await stream.readuntil(b"\n"))
            return b"".join(chunks)
        except asyncio.LimitOverrunError as exc:
            chunks.append(await stream.read(exc.consumed))
        except asyncio.IncompleteReadError as exc:
            chunks.append(exc.partial)
            return b"".join(chunks)


def _strip_file_uri(value: str) -> str:
    if value.startswith("file://"):
        return unquote(urlparse(value).path)
    return value


class AcpClient:
    """Drives one ACP agent process for a single prompt.

    ``on_event`` receives ParsedStreamEvents in arrival order; it is
    called from the reader task and must not block.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        working_directory: str,
        on_event: Callable[[ParsedStreamEvent], None],
        auto_approve: bool = True,
        tool_call_memory_seconds: float = 2.0,
        label: str = "acp",
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._cwd = working_directory
        self._on_event = on_event
        self._auto_approve = auto_approve
        self._label = label
        self._request_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._seen_tool_calls = DedupWindow(tool_call_memory_seconds)
        self._text_buffer: list[str] = []
        self._acp_session_id: str | None = None
        self._reader_task: asyncio.Task | None = None

    @property
    def acp_session_id(self) -> str | None:
        return self._acp_session_id

    # ── Public ──

    async def run(self, prompt: str) -> str:
        """Handshake, submit *prompt*, and return the stop reason.

        Raises ProtocolError when the agent rejects a request or the
        stream closes first.
        """
        self._reader_task = asyncio.create_task(self._read_loop())
        try:
            await self.request("initialize", {
                "protocolVersion": PROTOCOL_VERSION,
                "clientCapabilities": {},
                "clientInfo": {"name": "gridbridge", "version": __version__},
            })
            created = await self.request("session/new", {
                "cwd": self._cwd,
                "mcpServers": [],
            })
            self._acp_session_id = (created or {}).get("sessionId")
            if not self._acp_session_id:
                raise ProtocolError("session/new", "no sessionId in response")
            logger.info("%s: ACP session %s created", self._label, self._acp_session_id)

            result = await self.request("session/prompt", {
                "sessionId": self._acp_session_id,
                "prompt": [{"type": "text", "text": prompt}],
            })
            self._flush_text(force=True)
            return str((result or {}).get("stopReason", "end_turn"))
        finally:
            if self._reader_task is not None:
                self._reader_task.cancel()

    async def request(self, method: str, params: dict[str, Any]) -> Any:
        self._request_id += 1
        request_id = self._request_id
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
            if self._reader_task is not None:
                # The reader only fails futures pending when it exits.
                await asyncio.wait({future, self._reader_task}, return_when=asyncio.FIRST_COMPLETED)
                if not future.done():
                    raise ProtocolError(method, "agent closed the connection")
            response = await future
        finally:
            self._pending.pop(request_id, None)
        if "error" in response:
            raise ProtocolError(method, response["error"])
        return response.get("result")

    # ── Transport ──

    async def _send(self, message: dict[str, Any]) -> None:
        self._writer.write(json.dumps(message).encode("utf-8") + b"\n")
        await self._writer.drain()

    async def _read_loop(self) -> None:
        try:
            while True:
                line = await read_line_unbounded(self._reader)
                if not line:
                    break
                await self._handle_line(line)
        except (ConnectionError, BrokenPipeError) as exc:
            logger.warning("%s: ACP stream error: %s", self._label, exc)
        finally:
            closed = ProtocolError("stream", "agent closed the connection")
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(closed)

    async def _handle_line(self, line: bytes) -> None:
        try:
            message = json.loads(line.decode("utf-8", errors="replace"))
        except json.JSONDecodeError:
            logger.debug("%s: skipping non-JSON line", self._label)
            return
        if not isinstance(message, dict):
            return

        method = message.get("method")
        msg_id = message.get("id")
        if method is None:
            future = self._pending.get(msg_id) if isinstance(msg_id, int) else None
            if future is not None and not future.done():
                future.set_result(message)
            return
        if msg_id is not None:
            await self._handle_request(msg_id, method, message.get("params") or {})
        else:
            self._handle_notification(method, message.get("params") or {})

    # ── Agent -> client ──

    async def _handle_request(self, msg_id: Any, method: str, params: dict[str, Any]) -> None:
        if method == "session/request_permission":
            await self._send({"jsonrpc": "2.0", "id": msg_id, "result": self._permission_outcome(params)})
            return
        logger.debug("%s: unsupported agent request %s", self._label, method)
        await self._send({
            "jsonrpc": "2.0",
            "id": msg_id,
            "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"},
        })

    def _permission_outcome(self, params: dict[str, Any]) -> dict[str, Any]:
        options = [o for o in params.get("options") or [] if isinstance(o, dict)]
        if self._auto_approve:
            for kind in _ALLOW_KINDS:
                for option in options:
                    if option.get("kind") == kind and option.get("optionId"):
                        return {"outcome": {"outcome": "selected", "optionId": option["optionId"]}}
            if options and options[0].get("optionId"):
                return {"outcome": {"outcome": "selected", "optionId": options[0]["optionId"]}}
        return {"outcome": {"outcome": "cancelled"}}

    def _handle_notification(self, method: str, params: dict[str, Any]) -> None:
        if method != "session/update":
            return
        update = params.get("update") or {}
        kind = update.get("sessionUpdate")
        if kind == "tool_call":
            self._flush_text(force=True)
            event = self._tool_call_event(update)
            if event is not None:
                self._on_event(event)
        elif kind == "agent_message_chunk":
            content = update.get("content") or {}
            text = content.get("text") if isinstance(content, dict) else None
            if text:
                self._text_buffer.append(text)
                self._flush_text(force=False)

    def _tool_call_event(self, update: dict[str, Any]) -> ParsedStreamEvent | None:
        call_id = update.get("toolCallId")
        if call_id and not self._seen_tool_calls.should_emit(self._acp_session_id or "", str(call_id)):
            return None

        title = update.get("title") or ""
        tool_kind = kind_from_acp(update.get("kind"), title)
        path = self._cwd
        locations = update.get("locations") or []
        if locations and isinstance(locations[0], dict):
            loc = locations[0].get("path") or locations[0].get("uri")
            if isinstance(loc, str) and loc:
                path = _strip_file_uri(loc)

        raw_input = update.get("rawInput")
        command = None
        if isinstance(raw_input, dict) and isinstance(raw_input.get("command"), str):
            command = raw_input["command"]
        elif tool_kind is ToolKind.EXECUTE and title:
            command = title

        return ParsedStreamEvent(
            phase=HookPhase.PRE_TOOL,
            tool_kind=tool_kind,
            tool_name=update.get("kind") or title or None,
            file_path=path,
            command=command,
            details={k: v for k, v in {"toolCallId": call_id, "title": title}.items() if v},
        )

    def _flush_text(self, force: bool) -> None:
        """Emit buffered message chunks up to the last newline (or all, if forced)."""
        if not self._text_buffer:
            return
        text = "".join(self._text_buffer)
        if force:
            self._text_buffer.clear()
            emit = text
        else:
            cut = text.rfind("\n")
            if cut < 0:
                return
            emit, rest = text[: cut + 1], text[cut + 1:]
            self._text_buffer[:] = [rest] if rest else []
        if emit.strip():
            self._on_event(ParsedStreamEvent(phase=HookPhase.ASSISTANT_TEXT, message=emit.strip()))
