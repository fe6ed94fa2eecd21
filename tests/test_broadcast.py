from __future__ import annotations

import asyncio

import pytest

from gridbridge.adapters.broadcast import BroadcastHub, ObserverChannel
from gridbridge.engine.models import AgentSession, CanonicalEvent, HookPhase, ProviderId


def _session() -> AgentSession:
    return AgentSession(session_id="s1", provider=ProviderId.CLAUDE, working_directory="/repo")


@pytest.mark.asyncio
async def test_connect_sends_snapshot_first() -> None:
    hub = BroadcastHub(lambda: [_session()])
    channel = hub.connect("t")
    message = await channel.get()
    assert message["type"] == "sessions"
    assert message["payload"][0]["sessionId"] == "s1"


@pytest.mark.asyncio
async def test_events_reach_every_observer_in_order() -> None:
    hub = BroadcastHub(lambda: [])
    a, b = hub.connect("a"), hub.connect("b")
    for channel in (a, b):
        await channel.get()  # snapshot
    for i in range(3):
        hub.publish_event(CanonicalEvent(
            session_id="s1", phase=HookPhase.ASSISTANT_TEXT,
            provider=ProviderId.CLAUDE, message=f"m{i}",
        ))
    for channel in (a, b):
        messages = [await channel.get() for _ in range(3)]
        assert [m["payload"]["message"] for m in messages] == ["m0", "m1", "m2"]


@pytest.mark.asyncio
async def test_backed_up_observer_is_dropped_without_affecting_others() -> None:
    hub = BroadcastHub(lambda: [], queue_size=2)
    slow = hub.connect("slow")
    fast = hub.connect("fast")
    await fast.get()
    hub.publish_filesystem_change("modify", "/repo/a")
    await fast.get()
    # slow still holds snapshot + first change; the next message overflows it.
    hub.publish_filesystem_change("modify", "/repo/b")
    assert slow.closed
    assert hub.channel_count == 1
    message = await fast.get()
    assert message["payload"]["path"] == "/repo/b"


@pytest.mark.asyncio
async def test_disconnect_unblocks_reader() -> None:
    hub = BroadcastHub(lambda: [])
    channel = hub.connect()
    await channel.get()
    waiter = asyncio.create_task(channel.get())
    await asyncio.sleep(0)
    hub.disconnect(channel)
    assert await asyncio.wait_for(waiter, timeout=1.0) is None
    assert hub.channel_count == 0
    assert not channel.offer({"type": "late"})


@pytest.mark.asyncio
async def test_close_all() -> None:
    hub = BroadcastHub(lambda: [])
    channels = [hub.connect(str(i)) for i in range(3)]
    hub.close_all()
    assert hub.channel_count == 0
    assert all(c.closed for c in channels)


@pytest.mark.asyncio
async def test_offer_on_full_channel() -> None:
    channel = ObserverChannel(maxsize=1)
    assert channel.offer({"n": 1})
    assert not channel.offer({"n": 2})
    assert channel.pending() == 1
