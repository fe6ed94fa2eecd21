from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from gridbridge.engine.acp_client import METHOD_NOT_FOUND, AcpClient, read_line_unbounded
from gridbridge.engine.errors import ProtocolError
from gridbridge.engine.models import HookPhase, ToolKind
from gridbridge.engine.providers.base import ParsedStreamEvent


class _ScriptedAgent:
    """Answers client requests by feeding lines into the client's reader."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        updates: list[dict[str, Any]] | None = None,
        fail_method: str | None = None,
        close_on_prompt: bool = False,
        close_after: str | None = None,
    ) -> None:
        self._reader = reader
        self._close_after = close_after
        self._updates = updates or []
        self._fail_method = fail_method
        self._close_on_prompt = close_on_prompt
        self.sent: list[dict[str, Any]] = []
        self._closed = False

    def _close(self) -> None:
        self._closed = True
        self._reader.feed_eof()

    def _feed(self, message: dict[str, Any]) -> None:
        self._reader.feed_data(json.dumps(message).encode("utf-8") + b"\n")

    def write(self, data: bytes) -> None:
        message = json.loads(data)
        self.sent.append(message)
        if self._closed:
            return
        method = message.get("method")
        if method is None:
            return
        if method == self._fail_method:
            self._feed({"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32000, "message": "nope"}})
            return
        if method == "initialize":
            self._feed({"jsonrpc": "2.0", "id": message["id"], "result": {"protocolVersion": 1}})
            if self._close_after == "initialize":
                self._close()
        elif method == "session/new":
            self._feed({"jsonrpc": "2.0", "id": message["id"], "result": {"sessionId": "acp-1"}})
        elif method == "session/prompt":
            for update in self._updates:
                self._feed(update)
            if self._close_on_prompt:
                self._close()
                return
            self._feed({"jsonrpc": "2.0", "id": message["id"], "result": {"stopReason": "end_turn"}})

    async def drain(self) -> None:
        return None


def _update(update: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "method": "session/update", "params": {"sessionId": "acp-1", "update": update}}


def _client(agent: _ScriptedAgent, reader: asyncio.StreamReader, events: list[ParsedStreamEvent]) -> AcpClient:
    return AcpClient(
        reader, agent,  # type: ignore[arg-type]
        working_directory="/repo",
        on_event=events.append,
        label="test",
    )


@pytest.mark.asyncio
async def test_prompt_turn_produces_tool_and_text_events() -> None:
    reader = asyncio.StreamReader()
    agent = _ScriptedAgent(reader, updates=[
        _update({
            "sessionUpdate": "tool_call", "toolCallId": "tc1", "title": "Edit a.py",
            "kind": "edit", "locations": [{"path": "/repo/a.py"}],
        }),
        _update({"sessionUpdate": "tool_call", "toolCallId": "tc1", "title": "Edit a.py", "kind": "edit"}),
        _update({"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": "Hello "}}),
        _update({"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": "world\nmore"}}),
    ])
    events: list[ParsedStreamEvent] = []
    client = _client(agent, reader, events)

    stop_reason = await client.run("do it")

    assert stop_reason == "end_turn"
    assert client.acp_session_id == "acp-1"
    assert [e.phase for e in events] == [HookPhase.PRE_TOOL, HookPhase.ASSISTANT_TEXT, HookPhase.ASSISTANT_TEXT]
    assert events[0].tool_kind is ToolKind.EDIT
    assert events[0].file_path == "/repo/a.py"
    assert events[0].details == {"toolCallId": "tc1", "title": "Edit a.py"}
    assert events[1].message == "Hello world"
    assert events[2].message == "more"

    methods = [m.get("method") for m in agent.sent]
    assert methods == ["initialize", "session/new", "session/prompt"]
    assert agent.sent[1]["params"] == {"cwd": "/repo", "mcpServers": []}
    assert agent.sent[2]["params"]["prompt"] == [{"type": "text", "text": "do it"}]


@pytest.mark.asyncio
async def test_execute_tool_call_carries_command_and_uri_paths() -> None:
    reader = asyncio.StreamReader()
    agent = _ScriptedAgent(reader, updates=[
        _update({"sessionUpdate": "tool_call", "toolCallId": "t1", "title": "rm -rf dist", "kind": "execute"}),
        _update({
            "sessionUpdate": "tool_call", "toolCallId": "t2", "title": "Read",
            "kind": "read", "locations": [{"uri": "file:///repo/my%20file.txt"}],
        }),
    ])
    events: list[ParsedStreamEvent] = []
    await _client(agent, reader, events).run("x")
    assert events[0].tool_kind is ToolKind.EXECUTE
    assert events[0].command == "rm -rf dist"
    assert events[0].file_path == "/repo"
    assert events[1].file_path == "/repo/my file.txt"


@pytest.mark.asyncio
async def test_permission_requests_are_answered() -> None:
    reader = asyncio.StreamReader()
    agent = _ScriptedAgent(reader, updates=[
        {
            "jsonrpc": "2.0", "id": "perm-1", "method": "session/request_permission",
            "params": {"options": [
                {"optionId": "no", "kind": "reject_once"},
                {"optionId": "yes", "kind": "allow_once"},
            ]},
        },
        {"jsonrpc": "2.0", "id": "fs-1", "method": "fs/read_text_file", "params": {}},
    ])
    await _client(agent, reader, []).run("x")
    replies = {m["id"]: m for m in agent.sent if "method" not in m}
    assert replies["perm-1"]["result"] == {"outcome": {"outcome": "selected", "optionId": "yes"}}
    assert replies["fs-1"]["error"]["code"] == METHOD_NOT_FOUND


@pytest.mark.asyncio
async def test_error_response_raises_protocol_error() -> None:
    reader = asyncio.StreamReader()
    agent = _ScriptedAgent(reader, fail_method="session/new")
    with pytest.raises(ProtocolError) as excinfo:
        await _client(agent, reader, []).run("x")
    assert excinfo.value.method == "session/new"


@pytest.mark.asyncio
async def test_stream_closing_mid_prompt_raises() -> None:
    reader = asyncio.StreamReader()
    agent = _ScriptedAgent(reader, close_on_prompt=True)
    with pytest.raises(ProtocolError):
        await _client(agent, reader, []).run("x")


@pytest.mark.asyncio
async def test_request_after_stream_closed_fails_instead_of_hanging() -> None:
    reader = asyncio.StreamReader()
    agent = _ScriptedAgent(reader, close_after="initialize")
    with pytest.raises(ProtocolError) as excinfo:
        await asyncio.wait_for(_client(agent, reader, []).run("x"), timeout=2.0)
    assert excinfo.value.method == "session/new"


@pytest.mark.asyncio
async def test_read_line_unbounded_handles_long_lines() -> None:
    reader = asyncio.StreamReader(limit=16)
    payload = b"x" * 100 + b"\n"
    reader.feed_data(payload + b"tail")
    reader.feed_eof()
    assert await read_line_unbounded(reader) == payload
    assert await read_line_unbounded(reader) == b"tail"
    assert await read_line_unbounded(reader) == b""
