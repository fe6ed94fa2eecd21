"""Observer mode: tracking and attributing unbridged agent activity.

Two independent timers feed this coordinator: the periodic process
discovery scan and the debounced filesystem watcher. Both mutate the
candidate set only while holding one lock, so a scan can never remove a
candidate that an in-flight attribution is still scoring.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable

from ..engine.attribution import pick_candidate
from ..engine.config import BridgeConfig
from ..engine.models import (
    FS_ACTION_TOOL_KIND,
    CanonicalEvent,
    FsAction,
    HookPhase,
    ObserverCandidate,
)
from ..engine.process_manager import ProcessManager
from .broadcast import BroadcastHub
from .fs_watcher import FilesystemWatcher
from .process_discovery import DiscoveredProcess, ProcessDiscovery, open_file_holders

logger = logging.getLogger(__name__)

HolderLookup = Callable[[str, list[int]], Awaitable[set[int]]]


class ObserverCoordinator:
    """Owns the candidate set and the filesystem watcher."""

    def __init__(
        self,
        manager: ProcessManager,
        hub: BroadcastHub,
        discovery: ProcessDiscovery,
        config: BridgeConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        holder_lookup: HolderLookup = open_file_holders,
        watcher: FilesystemWatcher | None = None,
    ) -> None:
        self._manager = manager
        self._hub = hub
        self._discovery = discovery
        self._config = config or BridgeConfig()
        self._clock = clock
        self._holder_lookup = holder_lookup
        self._watcher = watcher or FilesystemWatcher(
            self.on_filesystem_change, self._config.fs_debounce_seconds,
        )
        self._candidates: dict[int, ObserverCandidate] = {}
        self._lock = asyncio.Lock()
        self._enabled = False
        self._scan_task: asyncio.Task | None = None
        self._attribution_tasks: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def root(self) -> str | None:
        return self._watcher.root

    def candidates(self) -> list[ObserverCandidate]:
        return sorted(self._candidates.values(), key=lambda c: (c.first_seen_time, c.pid))

    # ── Control ──

    async def watch(self, path: str) -> None:
        """Start watching a working tree for changes and agent processes."""
        await self._watcher.watch(path)
        if self._enabled:
            self._restart_scan()

    async def set_enabled(self, enabled: bool) -> None:
        if enabled == self._enabled:
            return
        self._enabled = enabled
        logger.info("Observer mode %s", "enabled" if enabled else "disabled")
        if enabled:
            self._restart_scan()
            return
        await self._cancel_scan()
        async with self._lock:
            for candidate in list(self._candidates.values()):
                self._demote(candidate)

    async def shutdown(self) -> None:
        self._enabled = False
        await self._cancel_scan()
        for task in list(self._attribution_tasks):
            task.cancel()
        await self._watcher.stop()

    def _restart_scan(self) -> None:
        if self._scan_task is not None:
            self._scan_task.cancel()
        self._scan_task = asyncio.create_task(self._discovery_loop())

    async def _cancel_scan(self) -> None:
        task, self._scan_task = self._scan_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ── Discovery ──

    async def _discovery_loop(self) -> None:
        while True:
            await self.scan_once()
            await asyncio.sleep(self._config.discovery_interval_seconds)

    async def scan_once(self) -> None:
        root = self.root
        if not root:
            return
        try:
            found = await self._discovery.scan(root, exclude_pids=self._manager.owned_pids())
        except OSError as exc:
            logger.debug("Discovery scan failed: %s", exc)
            found = []
        async with self._lock:
            self.apply_scan(found, self._clock())

    def apply_scan(self, found: list[DiscoveredProcess], now: float) -> None:
        """Promote newly seen processes and demote ones gone past the grace period.

        Caller holds the lock (or owns the loop exclusively, as in tests).
        """
        for proc in found:
            candidate = self._candidates.get(proc.pid)
            if candidate is None:
                candidate = ObserverCandidate(
                    pid=proc.pid,
                    provider=proc.provider,
                    working_directory=proc.working_directory,
                    first_seen_time=now,
                    last_seen_time=now,
                )
                self._candidates[proc.pid] = candidate
                self._manager.track_external(candidate)
            else:
                candidate.last_seen_time = now
                if proc.working_directory:
                    candidate.working_directory = proc.working_directory

        grace = self._config.candidate_grace_seconds
        for candidate in list(self._candidates.values()):
            if now - candidate.last_seen_time > grace:
                self._demote(candidate)

    def _demote(self, candidate: ObserverCandidate) -> None:
        self._candidates.pop(candidate.pid, None)
        self._manager.remove_external(candidate.session_id)
        logger.info("Candidate pid=%d (%s) no longer observed", candidate.pid, candidate.provider.value)

    # ── Filesystem ──

    def on_filesystem_change(self, action: FsAction, path: str) -> None:
        """Debounced watcher callback (event loop thread)."""
        self._hub.publish_filesystem_change(action.value, path)
        if not self._enabled or not self._candidates:
            return
        task = asyncio.create_task(self.attribute(action, path))
        self._attribution_tasks.add(task)
        task.add_done_callback(self._attribution_tasks.discard)

    async def attribute(self, action: FsAction, path: str) -> CanonicalEvent | None:
        """Attribute one settled change to an unbridged candidate, if any fits."""
        path = os.path.normpath(path)
        async with self._lock:
            if self._manager.claims_path(path):
                return None
            candidates = self.candidates()
            if not candidates:
                return None
            if len(candidates) == 1:
                winner: ObserverCandidate | None = candidates[0]
            else:
                try:
                    holders = await self._holder_lookup(path, [c.pid for c in candidates])
                except OSError as exc:
                    logger.debug("Open-file lookup failed for %s: %s", path, exc)
                    holders = set()
                winner = pick_candidate(candidates, path, holders)
            if winner is None:
                logger.debug("Change to %s not attributed (%d candidates)", path, len(candidates))
                return None

            session = self._manager.get(winner.session_id)
            if session is None:
                return None
            event = CanonicalEvent(
                session_id=session.session_id,
                phase=HookPhase.POST_TOOL,
                provider=session.provider,
                tool_kind=FS_ACTION_TOOL_KIND[action],
                file_path=path,
                details={"action": action.value, "pid": winner.pid},
                inferred=True,
            )
            if not self._manager.emit(session, event):
                return None
            logger.debug("Attributed %s %s to pid=%d", action.value, path, winner.pid)
            return event
