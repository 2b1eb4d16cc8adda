import asyncio

import pytest

from services.stream_relay import StreamRelay


async def _collect(relay: StreamRelay, session_id: str):
    return [event async for event in relay.subscribe(session_id)]


@pytest.mark.asyncio
async def test_late_subscriber_gets_history_then_live_events():
    relay = StreamRelay(retention_seconds=60)
    relay.open("s-1")
    relay.publish_fragment("s-1", "## Findings\n")

    collector = asyncio.create_task(_collect(relay, "s-1"))
    await asyncio.sleep(0)
    relay.publish_fragment("s-1", "Reentrancy in withdraw()")
    relay.complete("s-1", credits_charged=10)
    events = await asyncio.wait_for(collector, timeout=1)

    assert [event.kind for event in events] == ["content", "content", "complete"]
    assert events[1].data == {"body": "Reentrancy in withdraw()"}
    assert events[2].data == {"status": "completed", "credits_charged": 10}
    assert events[2].to_sse() == 'event: complete\ndata: {"status": "completed", "credits_charged": 10}\n\n'


@pytest.mark.asyncio
async def test_only_first_terminal_event_is_published():
    relay = StreamRelay(retention_seconds=60)
    relay.open("s-2")

    assert relay.fail("s-2", "Audit timed out", refunded_credits=10) is True
    assert relay.complete("s-2") is False
    relay.publish_fragment("s-2", "late fragment")

    events = await _collect(relay, "s-2")
    assert [event.kind for event in events] == ["error"]
    assert events[0].data["message"] == "Audit timed out"


@pytest.mark.asyncio
async def test_unknown_channel_yields_nothing():
    relay = StreamRelay(retention_seconds=60)

    assert await _collect(relay, "missing") == []
    assert relay.has_channel("missing") is False


def test_prune_drops_only_closed_channels_past_retention():
    relay = StreamRelay(retention_seconds=30)
    relay.open("open")
    relay.open("closed")
    relay.complete("closed")

    assert relay.prune() == 0
    closed_at = relay._channels["closed"].closed_at
    assert relay.prune(now=closed_at + 31) == 1
    assert relay.has_channel("open")
    assert not relay.has_channel("closed")
    assert len(relay) == 1
