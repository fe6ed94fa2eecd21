"""HTTP + WebSocket server for the bridge.

Exposes a small REST API for launching and managing agent sessions,
an ingestion endpoint for native hook scripts, and a WebSocket channel
that streams canonical events and session snapshots to observers.

Usage:
    gridbridge [--host HOST] [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from aiohttp import WSMsgType, web

from ..adapters.broadcast import BroadcastHub, ObserverChannel
from ..adapters.events import (
    Ping,
    SetObserverMode,
    WatchRequest,
    error_message,
    parse_client_message,
)
from ..adapters.observer import ObserverCoordinator
from ..adapters.process_discovery import ProcessDiscovery
from ..engine.config import BridgeConfig
from ..engine.errors import (
    LaunchFailureError,
    NotResumableError,
    ProviderUnavailableError,
    UnknownSessionError,
)
from ..engine.models import AgentType, HookPhase, ProviderId
from ..engine.process_manager import ProcessManager
from ..engine.providers.registry import ProviderRegistry, build_provider_registry

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> int | None:
    """Epoch milliseconds from a number or an ISO-8601 string.

    Raises ValueError for a string that is not ISO-8601.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if not isinstance(value, str):
        raise ValueError(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


class GridServer:
    """aiohttp application wiring the manager, hub and observer together."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        registry: ProviderRegistry | None = None,
        discovery: ProcessDiscovery | None = None,
        watch_path: str | None = None,
        observer_mode: bool = False,
    ) -> None:
        self._config = config or BridgeConfig()
        self._watch_path = watch_path
        self._observer_mode = observer_mode
        self._host = self._config.host
        self._port = self._config.port
        self._registry = registry or build_provider_registry(self._config.provider_commands)
        self._hub = BroadcastHub(queue_size=self._config.observer_queue_size)
        self._manager = ProcessManager(self._registry, self._hub, self._config)
        self._hub.set_snapshot_source(self._manager.snapshot)
        self._observer = ObserverCoordinator(
            self._manager,
            self._hub,
            discovery or ProcessDiscovery(
                self._registry.by_process_name(),
                max_depth=self._config.max_discovery_depth,
            ),
            self._config,
        )
        self._started_at = time.time()

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._on_startup)
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def manager(self) -> ProcessManager:
        return self._manager

    @property
    def hub(self) -> BroadcastHub:
        return self._hub

    @property
    def observer(self) -> ObserverCoordinator:
        return self._observer

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-grid-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f",
                             request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/ws", self._handle_ws)

        r.add_get("/sessions", self._handle_list_sessions)
        r.add_post("/sessions", self._handle_create_session)
        r.add_post("/sessions/{id}/resume", self._handle_resume_session)
        r.add_delete("/sessions/{id}", self._handle_delete_session)

        r.add_get("/providers", self._handle_list_providers)
        r.add_post("/api/events", self._handle_hook_event)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        self._manager.start()
        self._registry.validate()
        if self._watch_path:
            await self._observer.watch(self._watch_path)
        if self._observer_mode:
            await self._observer.set_enabled(True)

    async def _on_shutdown(self, app: web.Application) -> None:
        logger.info("Shutting down: %d session(s), %d observer(s)",
                    len(self._manager.snapshot()), self._hub.channel_count)
        await self._observer.shutdown()
        await self._manager.shutdown()
        self._hub.close_all()

    async def start(self) -> None:
        """Serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        logger.info("Bridge listening on %s:%d", self._host, self._port)
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    # ── Helpers ──

    @staticmethod
    async def _read_json(request: web.Request) -> tuple[dict[str, Any], web.Response | None]:
        if not request.can_read_body:
            return {}, None
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return {}, web.json_response({"error": "Request body must be JSON"}, status=400)
        if not isinstance(body, dict):
            return {}, web.json_response({"error": "Request body must be a JSON object"}, status=400)
        return body, None

    @staticmethod
    def _missing(body: dict[str, Any], *fields: str) -> list[str]:
        return [f for f in fields if not isinstance(body.get(f), str) or not body[f].strip()]

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "sessions": len(self._manager.snapshot()),
            "observers": self._hub.channel_count,
            "observerMode": self._observer.enabled,
            "watchedPath": self._observer.root,
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
        })

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        return web.json_response([s.to_dict() for s in self._manager.snapshot()])

    async def _handle_list_providers(self, request: web.Request) -> web.Response:
        return web.json_response([p.describe() for p in self._registry.all()])

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err:
            return err
        missing = self._missing(body, "provider", "workingDirectory", "prompt")
        if missing:
            return web.json_response(
                {"error": f"Missing required fields: {', '.join(missing)}"}, status=400,
            )
        resume_token = body.get("resumeToken")
        if resume_token is not None and not isinstance(resume_token, str):
            return web.json_response({"error": "resumeToken must be a string"}, status=400)

        try:
            session = await self._manager.spawn(
                body["provider"], body["workingDirectory"], body["prompt"], resume_token or None,
            )
        except ProviderUnavailableError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        except LaunchFailureError as exc:
            return web.json_response(
                {"error": "Failed to launch agent", "details": exc.reason, "sessionId": exc.session_id},
                status=500,
            )
        return web.json_response({
            "sessionId": session.session_id,
            "provider": session.provider.value,
            "mode": session.mode.value,
        })

    async def _handle_resume_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        body, err = await self._read_json(request)
        if err:
            return err
        if self._manager.get(session_id) is None:
            return web.json_response({"error": f"Session {session_id} not found"}, status=404)
        if self._missing(body, "prompt"):
            return web.json_response({"error": "Missing required field: prompt"}, status=400)
        try:
            session = await self._manager.resume(session_id, body["prompt"])
        except UnknownSessionError as exc:
            return web.json_response({"error": str(exc)}, status=404)
        except (NotResumableError, ProviderUnavailableError) as exc:
            return web.json_response({"error": str(exc)}, status=400)
        except LaunchFailureError as exc:
            return web.json_response(
                {"error": "Failed to launch agent", "details": exc.reason, "sessionId": exc.session_id},
                status=500,
            )
        return web.json_response({"sessionId": session.session_id})

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        try:
            await self._manager.terminate(session_id)
        except UnknownSessionError:
            return web.json_response({"error": f"Session {session_id} not found"}, status=404)
        return web.json_response({"success": True})

    async def _handle_hook_event(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err:
            return err
        missing = self._missing(body, "sessionId", "hookEvent")
        if missing:
            return web.json_response(
                {"error": f"Missing required fields: {', '.join(missing)}"}, status=400,
            )
        phase = HookPhase.parse(body["hookEvent"])
        if phase is None:
            return web.json_response({"error": f"Unknown hookEvent: {body['hookEvent']}"}, status=400)

        invalid = [
            f for f in ("toolName", "filePath", "message")
            if body.get(f) is not None and not isinstance(body[f], str)
        ]
        if invalid:
            return web.json_response(
                {"error": f"Fields must be strings: {', '.join(invalid)}"}, status=400,
            )
        try:
            timestamp = _parse_timestamp(body.get("timestamp"))
        except ValueError:
            return web.json_response({"error": f"Invalid timestamp: {body['timestamp']}"}, status=400)

        agent_type = AgentType.SUBAGENT if body.get("agentType") == "subagent" else AgentType.MAIN
        provider = ProviderId.parse(body.get("provider")) or ProviderId.CLAUDE
        details = body.get("details") if isinstance(body.get("details"), dict) else {}
        accepted = self._manager.ingest_hook(
            body["sessionId"],
            phase,
            provider=provider,
            agent_type=agent_type,
            tool_name=body.get("toolName") or None,
            file_path=body.get("filePath") or None,
            details=details,
            message=body.get("message"),
            timestamp=timestamp,
        )
        if not accepted:
            return web.json_response({"success": True, "ignored": True})
        return web.json_response({"success": True, "sessionCount": len(self._manager.snapshot())})

    # ── WebSocket ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        channel = self._hub.connect(label=request.get("req_id", ""))
        pump = asyncio.create_task(self._pump(ws, channel))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_client_message(channel, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", ws.exception())
        finally:
            self._hub.disconnect(channel)
            pump.cancel()
        return ws

    @staticmethod
    async def _pump(ws: web.WebSocketResponse, channel: ObserverChannel) -> None:
        while True:
            message = await channel.get()
            if message is None:
                break
            try:
                await ws.send_json(message)
            except ConnectionResetError:
                break
        if not ws.closed:
            await ws.close()

    async def _handle_client_message(self, channel: ObserverChannel, raw: str) -> None:
        try:
            message = parse_client_message(raw)
        except ValueError as exc:
            logger.debug("Rejected client message: %s", exc)
            channel.offer(error_message("Invalid message format"))
            return

        if isinstance(message, WatchRequest):
            try:
                await self._observer.watch(message.path)
            except (FileNotFoundError, OSError) as exc:
                channel.offer(error_message(f"Cannot watch {message.path}: {exc}"))
        elif isinstance(message, SetObserverMode):
            await self._observer.set_enabled(message.enabled)
        elif isinstance(message, Ping):
            self._hub.send_snapshot(channel)
