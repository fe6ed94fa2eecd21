"""Fan-out of canonical events and session snapshots to observers.

Each connected observer owns a bounded queue. Delivery never blocks:
a channel that is closed or backed up is dropped, and the remaining
observers still receive the message. The hub only reads session
snapshots; it never mutates session state.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from ..engine.models import AgentSession, CanonicalEvent
from .events import event_message, filesystem_message, sessions_message

logger = logging.getLogger(__name__)


class ObserverChannel:
    """One observer's outbound queue."""

    def __init__(self, maxsize: int = 1000, label: str = "") -> None:
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._closed_event = asyncio.Event()
        self.label = label

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, message: dict[str, Any]) -> bool:
        """Enqueue without blocking. Returns False if the channel cannot accept it."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    async def get(self) -> dict[str, Any] | None:
        """Next message, or None once the channel is closed."""
        if self._closed:
            return None
        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed_event.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not getter.done():
                getter.cancel()
        if getter.done() and not getter.cancelled() and not self._closed:
            return getter.result()
        return None

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._closed = True
        self._closed_event.set()


class BroadcastHub:
    """Registry of observer channels; implements the process manager's sink."""

    def __init__(
        self,
        snapshot_source: Callable[[], list[AgentSession]] | None = None,
        queue_size: int = 1000,
    ) -> None:
        self._channels: list[ObserverChannel] = []
        self._snapshot_source = snapshot_source
        self._queue_size = queue_size

    def set_snapshot_source(self, source: Callable[[], list[AgentSession]]) -> None:
        self._snapshot_source = source

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    def connect(self, label: str = "") -> ObserverChannel:
        """Register a new observer and queue the current session list for it."""
        channel = ObserverChannel(self._queue_size, label=label)
        self._channels.append(channel)
        self.send_snapshot(channel)
        logger.info("Observer connected %s active=%d", label, len(self._channels))
        return channel

    def disconnect(self, channel: ObserverChannel) -> None:
        channel.close()
        if channel in self._channels:
            self._channels.remove(channel)
            logger.info("Observer disconnected %s active=%d", channel.label, len(self._channels))

    def send_snapshot(self, channel: ObserverChannel) -> None:
        sessions = self._snapshot_source() if self._snapshot_source else []
        if not channel.offer(sessions_message(sessions)):
            self._drop(channel)

    def broadcast(self, message: dict[str, Any]) -> int:
        """Deliver *message* to every channel that can take it; returns the count."""
        delivered = 0
        for channel in list(self._channels):
            if channel.offer(message):
                delivered += 1
            else:
                self._drop(channel)
        return delivered

    def close_all(self) -> None:
        for channel in list(self._channels):
            self.disconnect(channel)

    def _drop(self, channel: ObserverChannel) -> None:
        logger.warning(
            "Dropping observer %s (closed=%s pending=%d)",
            channel.label, channel.closed, channel.pending(),
        )
        self.disconnect(channel)

    # ── EventSink ──

    def publish_event(self, event: CanonicalEvent) -> None:
        self.broadcast(event_message(event))

    def publish_sessions(self, sessions: list[AgentSession]) -> None:
        self.broadcast(sessions_message(sessions))

    def publish_filesystem_change(self, action: str, path: str) -> None:
        self.broadcast(filesystem_message(action, path))
