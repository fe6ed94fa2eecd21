from __future__ import annotations

from unittest.mock import patch

import pytest

from gridbridge.adapters.broadcast import BroadcastHub
from gridbridge.adapters.observer import ObserverCoordinator
from gridbridge.adapters.process_discovery import DiscoveredProcess
from gridbridge.engine.config import BridgeConfig
from gridbridge.engine.models import FsAction, HookPhase, ProviderId, ToolKind
from gridbridge.engine.process_manager import ProcessManager
from gridbridge.engine.providers.registry import build_provider_registry


class _FakeWatcher:
    def __init__(self) -> None:
        self.root: str | None = None

    async def watch(self, root: str) -> None:
        self.root = root

    async def stop(self) -> None:
        self.root = None


class _FakeDiscovery:
    def __init__(self, found: list[DiscoveredProcess] | None = None) -> None:
        self.found = found or []
        self.calls: list[tuple[str, set[int] | None]] = []

    async def scan(self, root: str, exclude_pids: set[int] | None = None) -> list[DiscoveredProcess]:
        self.calls.append((root, exclude_pids))
        return list(self.found)


def _coordinator(holders: set[int] | None = None, discovery: _FakeDiscovery | None = None):
    config = BridgeConfig(candidate_grace_seconds=10.0)
    hub = BroadcastHub()
    manager = ProcessManager(build_provider_registry(), hub, config)
    hub.set_snapshot_source(manager.snapshot)

    async def lookup(path: str, pids: list[int]) -> set[int]:
        return set(holders or ()) & set(pids)

    coordinator = ObserverCoordinator(
        manager, hub, discovery or _FakeDiscovery(), config,
        holder_lookup=lookup, watcher=_FakeWatcher(),
    )
    return coordinator, manager, hub


def _proc(pid: int, wd: str, provider: ProviderId = ProviderId.CLAUDE) -> DiscoveredProcess:
    return DiscoveredProcess(pid=pid, provider=provider, working_directory=wd)


@pytest.mark.asyncio
async def test_candidates_are_promoted_and_demoted_after_grace() -> None:
    coordinator, manager, _ = _coordinator()
    coordinator.apply_scan([_proc(11, "/repo")], now=0.0)
    session = manager.get("observed-claude-11")
    assert session is not None and session.external and session.pid == 11

    coordinator.apply_scan([], now=5.0)
    assert manager.get("observed-claude-11") is not None
    coordinator.apply_scan([], now=10.5)
    assert manager.get("observed-claude-11") is None
    assert coordinator.candidates() == []


@pytest.mark.asyncio
async def test_scan_once_uses_watched_root_and_excludes_owned_pids() -> None:
    discovery = _FakeDiscovery([_proc(21, "/repo")])
    coordinator, manager, _ = _coordinator(discovery=discovery)
    await coordinator.scan_once()
    assert discovery.calls == []  # nothing watched yet

    await coordinator.watch("/repo")
    await coordinator.scan_once()
    assert discovery.calls == [("/repo", set())]
    assert [c.pid for c in coordinator.candidates()] == [21]


@pytest.mark.asyncio
async def test_change_attributed_to_deepest_working_directory() -> None:
    coordinator, manager, _ = _coordinator()
    coordinator.apply_scan([_proc(1, "/repo/a")], now=0.0)
    coordinator.apply_scan([_proc(1, "/repo/a"), _proc(2, "/repo", ProviderId.GEMINI)], now=1.0)

    event = await coordinator.attribute(FsAction.MODIFY, "/repo/a/x.py")

    assert event is not None
    assert event.session_id == "observed-claude-1"
    assert event.phase is HookPhase.POST_TOOL
    assert event.tool_kind is ToolKind.EDIT
    assert event.inferred is True
    assert event.details == {"action": "modify", "pid": 1}
    assert manager.get("observed-claude-1").current_path == "/repo/a/x.py"


@pytest.mark.asyncio
async def test_open_file_holder_outranks_proximity() -> None:
    coordinator, manager, _ = _coordinator(holders={2})
    coordinator.apply_scan([_proc(1, "/repo/a"), _proc(2, "/repo", ProviderId.GEMINI)], now=0.0)
    event = await coordinator.attribute(FsAction.CREATE, "/repo/a/new.py")
    assert event.session_id == "observed-gemini-2"
    assert event.tool_kind is ToolKind.WRITE


@pytest.mark.asyncio
async def test_single_candidate_is_attributed_directly() -> None:
    coordinator, manager, _ = _coordinator()
    coordinator.apply_scan([_proc(5, "/somewhere/else")], now=0.0)
    event = await coordinator.attribute(FsAction.REMOVE, "/repo/gone.txt")
    assert event.session_id == "observed-claude-5"
    assert event.tool_kind is ToolKind.DELETE


@pytest.mark.asyncio
async def test_no_scoring_candidate_means_no_event() -> None:
    coordinator, manager, _ = _coordinator()
    coordinator.apply_scan([_proc(1, "/x"), _proc(2, "/y")], now=0.0)
    assert await coordinator.attribute(FsAction.MODIFY, "/repo/file.txt") is None


@pytest.mark.asyncio
async def test_paths_claimed_by_bridged_sessions_are_skipped() -> None:
    coordinator, manager, _ = _coordinator()
    coordinator.apply_scan([_proc(1, "/repo")], now=0.0)
    with patch.object(manager, "claims_path", return_value=True):
        assert await coordinator.attribute(FsAction.MODIFY, "/repo/a.py") is None


@pytest.mark.asyncio
async def test_filesystem_change_always_published() -> None:
    coordinator, manager, hub = _coordinator()
    channel = hub.connect("t")
    await channel.get()  # snapshot
    coordinator.on_filesystem_change(FsAction.CREATE, "/repo/new.txt")
    message = await channel.get()
    assert message == {"type": "filesystemChanged", "payload": {"action": "create", "path": "/repo/new.txt"}}


@pytest.mark.asyncio
async def test_disabling_observer_mode_demotes_everyone() -> None:
    coordinator, manager, _ = _coordinator()
    await coordinator.set_enabled(True)
    assert coordinator.enabled
    coordinator.apply_scan([_proc(1, "/repo"), _proc(2, "/repo")], now=0.0)
    assert len(manager.snapshot()) == 2
    await coordinator.set_enabled(False)
    assert manager.snapshot() == []
    await coordinator.shutdown()
