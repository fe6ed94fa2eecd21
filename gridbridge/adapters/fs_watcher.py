"""Recursive filesystem watching with per-path debounce.

watchdog reports changes from its own thread with an imprecise kind
(a save can arrive as delete+create, a rename as a move). Raw events
are marshalled onto the event loop, coalesced per path for the
debounce interval, and then disambiguated by re-checking whether the
path still exists.
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..engine.models import FsAction

logger = logging.getLogger(__name__)

IGNORED_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv"})


def is_ignored(path: str) -> bool:
    return any(part in IGNORED_DIRS for part in Path(path).parts)


def settle_action(exists: bool, hints: set[str]) -> FsAction:
    """Disambiguate a burst of raw event kinds using a fresh existence check."""
    if not exists:
        return FsAction.REMOVE
    if "created" in hints and "deleted" not in hints:
        return FsAction.CREATE
    return FsAction.MODIFY


class _ThreadBridgeHandler(FileSystemEventHandler):
    """Runs on watchdog's thread; only hands raw events to the loop."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_raw: Callable[[str, str], None],
    ) -> None:
        self._loop = loop
        self._on_raw = on_raw

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory and event.event_type == "modified":
            return
        if event.event_type in ("opened", "closed", "closed_no_write"):
            return
        if event.event_type == "moved":
            self._forward(event.src_path, "deleted")
            self._forward(getattr(event, "dest_path", ""), "created")
            return
        self._forward(event.src_path, event.event_type)

    def _forward(self, path: str | bytes, kind: str) -> None:
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        if not path or is_ignored(path):
            return
        self._loop.call_soon_threadsafe(self._on_raw, path, kind)


class FilesystemWatcher:
    """Watches one root recursively and reports settled changes.

    ``on_change(action, path)`` is called on the event loop at most once
    per path per debounce interval.
    """

    def __init__(
        self,
        on_change: Callable[[FsAction, str], None],
        debounce_seconds: float = 1.0,
        observer_factory: Callable[[], Observer] = Observer,
    ) -> None:
        self._on_change = on_change
        self._debounce = debounce_seconds
        self._observer_factory = observer_factory
        self._observer: Observer | None = None
        self._root: str | None = None
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._hints: dict[str, set[str]] = {}

    @property
    def root(self) -> str | None:
        return self._root

    async def watch(self, root: str) -> None:
        """Start watching *root*, replacing any previous root."""
        root = os.path.abspath(root)
        if root == self._root and self._observer is not None:
            return
        if not os.path.isdir(root):
            raise FileNotFoundError(f"Not a directory: {root}")
        await self.stop()
        loop = asyncio.get_running_loop()
        observer = self._observer_factory()
        observer.schedule(_ThreadBridgeHandler(loop, self.notify), root, recursive=True)
        observer.start()
        self._observer = observer
        self._root = root
        logger.info("Watching %s (debounce=%.2fs)", root, self._debounce)

    async def stop(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._hints.clear()
        if self._observer is not None:
            observer, self._observer = self._observer, None
            observer.stop()
            # join() blocks until watchdog's thread exits.
            await asyncio.to_thread(observer.join, 2.0)
            logger.info("Stopped watching %s", self._root)
        self._root = None

    def notify(self, path: str, kind: str) -> None:
        """Record one raw event (loop thread) and restart the path's debounce timer."""
        self._hints.setdefault(path, set()).add(kind)
        existing = self._timers.pop(path, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[path] = loop.call_later(self._debounce, self._settle, path)

    def _settle(self, path: str) -> None:
        self._timers.pop(path, None)
        hints = self._hints.pop(path, set())
        action = settle_action(os.path.lexists(path), hints)
        try:
            self._on_change(action, path)
        except Exception:
            logger.exception("Filesystem change handler failed for %s", path)
