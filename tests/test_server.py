from __future__ import annotations

import json
from dataclasses import dataclass, field
from unittest.mock import AsyncMock, patch

import pytest
from aiohttp.test_utils import AioHTTPTestCase

from gridbridge.engine.config import BridgeConfig
from gridbridge.engine.errors import (
    LaunchFailureError,
    NotResumableError,
    ProviderUnavailableError,
)
from gridbridge.engine.models import AgentSession, AgentStatus, LaunchMode, ProviderId
from gridbridge.server.server import GridServer


@dataclass
class _Request:
    match_info: dict[str, str] = field(default_factory=dict)
    body: dict | None = None

    @property
    def can_read_body(self) -> bool:
        return self.body is not None

    async def json(self) -> dict:
        return self.body or {}


def _json_payload(resp) -> dict:
    return json.loads(resp.text)


def _server() -> GridServer:
    return GridServer(BridgeConfig(fs_refresh_delay_seconds=0.01))


def _completed_session(session_id: str = "s1") -> AgentSession:
    return AgentSession(
        session_id=session_id,
        provider=ProviderId.CLAUDE,
        working_directory="/repo",
        status=AgentStatus.COMPLETED,
    )


@pytest.mark.asyncio
async def test_create_session_returns_id_provider_and_mode() -> None:
    server = _server()
    session = AgentSession(session_id="new-1", provider=ProviderId.GEMINI, working_directory="/repo",
                           mode=LaunchMode.STRUCTURED)
    with patch.object(server.manager, "spawn", AsyncMock(return_value=session)) as spawn:
        resp = await server._handle_create_session(_Request(body={
            "provider": "gemini", "workingDirectory": "/repo", "prompt": "hello",
        }))
    assert resp.status == 200
    assert _json_payload(resp) == {"sessionId": "new-1", "provider": "gemini", "mode": "acp"}
    spawn.assert_awaited_once_with("gemini", "/repo", "hello", None)


@pytest.mark.asyncio
async def test_create_session_validation_and_errors() -> None:
    server = _server()
    resp = await server._handle_create_session(_Request(body={"provider": "claude"}))
    assert resp.status == 400
    assert "workingDirectory" in _json_payload(resp)["error"]

    body = {"provider": "nope", "workingDirectory": "/repo", "prompt": "x"}
    with patch.object(server.manager, "spawn",
                      AsyncMock(side_effect=ProviderUnavailableError("nope", "unsupported provider"))):
        resp = await server._handle_create_session(_Request(body=body))
    assert resp.status == 400
    assert "unsupported provider" in _json_payload(resp)["error"]

    with patch.object(server.manager, "spawn",
                      AsyncMock(side_effect=LaunchFailureError("s9", "permission denied"))):
        resp = await server._handle_create_session(_Request(body=body))
    assert resp.status == 500
    assert _json_payload(resp) == {
        "error": "Failed to launch agent", "details": "permission denied", "sessionId": "s9",
    }


@pytest.mark.asyncio
async def test_resume_session_errors() -> None:
    server = _server()
    resp = await server._handle_resume_session(_Request(match_info={"id": "missing"}, body={"prompt": "x"}))
    assert resp.status == 404

    server.manager._sessions["s1"] = _completed_session()
    resp = await server._handle_resume_session(_Request(match_info={"id": "s1"}, body={}))
    assert resp.status == 400

    with patch.object(server.manager, "resume",
                      AsyncMock(side_effect=NotResumableError("s1", "no resume token was reported"))):
        resp = await server._handle_resume_session(_Request(match_info={"id": "s1"}, body={"prompt": "x"}))
    assert resp.status == 400
    assert "no resume token" in _json_payload(resp)["error"]

    with patch.object(server.manager, "resume", AsyncMock(return_value=server.manager.get("s1"))):
        resp = await server._handle_resume_session(_Request(match_info={"id": "s1"}, body={"prompt": "x"}))
    assert resp.status == 200
    assert _json_payload(resp) == {"sessionId": "s1"}


@pytest.mark.asyncio
async def test_delete_session() -> None:
    server = _server()
    resp = await server._handle_delete_session(_Request(match_info={"id": "missing"}))
    assert resp.status == 404

    server.manager._sessions["s1"] = _completed_session()
    resp = await server._handle_delete_session(_Request(match_info={"id": "s1"}))
    assert resp.status == 200
    assert _json_payload(resp) == {"success": True}


@pytest.mark.asyncio
async def test_list_sessions_and_providers() -> None:
    server = _server()
    server.manager._sessions["s1"] = _completed_session()
    resp = await server._handle_list_sessions(_Request())
    assert [s["sessionId"] for s in _json_payload(resp)] == ["s1"]

    resp = await server._handle_list_providers(_Request())
    providers = {p["id"]: p for p in _json_payload(resp)}
    assert set(providers) == {pid.value for pid in ProviderId}
    assert providers["claude"]["canResume"] is True
    assert providers["cline"]["spawnable"] is False
    assert providers["cline"]["available"] is False


@pytest.mark.asyncio
async def test_hook_ingestion() -> None:
    server = _server()
    resp = await server._handle_hook_event(_Request(body={"sessionId": "/proj"}))
    assert resp.status == 400

    resp = await server._handle_hook_event(_Request(body={"sessionId": "/proj", "hookEvent": "Bogus"}))
    assert resp.status == 400

    resp = await server._handle_hook_event(_Request(body={
        "sessionId": "/proj", "hookEvent": "SessionStart", "provider": "gemini",
    }))
    assert _json_payload(resp) == {"success": True, "sessionCount": 1}
    session = server.manager.get("/proj")
    assert session.provider is ProviderId.GEMINI
    assert session.external

    resp = await server._handle_hook_event(_Request(body={
        "sessionId": "/proj", "hookEvent": "PreToolUse", "toolName": "Read",
        "filePath": "/proj/a.py", "agentType": "subagent",
    }))
    assert _json_payload(resp) == {"success": True, "sessionCount": 2}


@pytest.mark.asyncio
async def test_health() -> None:
    server = _server()
    payload = _json_payload(await server._handle_health(_Request()))
    assert payload["status"] == "ok"
    assert payload["sessions"] == 0
    assert payload["observers"] == 0
    assert payload["observerMode"] is False
    assert payload["watchedPath"] is None


@pytest.mark.asyncio
async def test_hook_rejects_non_string_fields() -> None:
    server = _server()
    for name, value in (("toolName", 7), ("filePath", ["a.py"]), ("message", {"x": 1})):
        resp = await server._handle_hook_event(_Request(body={
            "sessionId": "/proj", "hookEvent": "PreToolUse", name: value,
        }))
        assert resp.status == 400
        assert name in _json_payload(resp)["error"]
    assert server.manager.snapshot() == []


@pytest.mark.asyncio
async def test_hook_timestamp_accepts_iso_strings() -> None:
    server = _server()
    with patch.object(server.manager, "ingest_hook", return_value=True) as ingest:
        resp = await server._handle_hook_event(_Request(body={
            "sessionId": "/proj", "hookEvent": "SessionStart",
            "timestamp": "2024-01-01T00:00:00.000Z",
        }))
        assert resp.status == 200
        assert ingest.call_args.kwargs["timestamp"] == 1704067200000

        await server._handle_hook_event(_Request(body={
            "sessionId": "/proj", "hookEvent": "SessionStart", "timestamp": 1704067200123,
        }))
        assert ingest.call_args.kwargs["timestamp"] == 1704067200123

        resp = await server._handle_hook_event(_Request(body={
            "sessionId": "/proj", "hookEvent": "SessionStart", "timestamp": "yesterday",
        }))
        assert resp.status == 400
        assert ingest.call_count == 2


class TestGridServerHttp(AioHTTPTestCase):
    async def get_application(self):
        self.grid_server = _server()
        return self.grid_server.app

    async def test_websocket_stream(self):
        ws = await self.client.ws_connect("/ws")
        first = await ws.receive_json(timeout=2)
        assert first == {"type": "sessions", "payload": []}

        await ws.send_str("not json")
        error = await ws.receive_json(timeout=2)
        assert error == {"type": "error", "payload": {"message": "Invalid message format"}}

        await ws.send_json({"type": "ping"})
        assert (await ws.receive_json(timeout=2))["type"] == "sessions"

        resp = await self.client.post("/api/events", json={"sessionId": "/proj", "hookEvent": "SessionStart"})
        assert resp.status == 200
        sessions = await ws.receive_json(timeout=2)
        assert sessions["type"] == "sessions"
        assert sessions["payload"][0]["sessionId"] == "/proj"
        event = await ws.receive_json(timeout=2)
        assert event["type"] == "event"
        assert event["payload"]["phase"] == "session-start"

        resp = await self.client.get("/health")
        assert (await resp.json())["observers"] == 1
        await ws.close()

    async def test_watch_missing_directory_reports_error(self):
        ws = await self.client.ws_connect("/ws")
        await ws.receive_json(timeout=2)
        await ws.send_json({"type": "watch", "path": "/definitely/not/here"})
        error = await ws.receive_json(timeout=2)
        assert error["type"] == "error"
        assert "Cannot watch" in error["payload"]["message"]
        await ws.close()

    async def test_create_session_rejects_bad_json(self):
        resp = await self.client.post("/sessions", data="{oops", headers={"Content-Type": "application/json"})
        assert resp.status == 400

    async def test_unknown_provider_is_400(self):
        resp = await self.client.post(
            "/sessions",
            json={"provider": "no-such-cli", "workingDirectory": "/tmp", "prompt": "hi"},
        )
        assert resp.status == 400
        resp = await self.client.get("/sessions")
        assert await resp.json() == []
