import asyncio
import json
from contextlib import asynccontextmanager

import pytest
import websockets

from mobiurban.backend import BackendError
from mobiurban.models import DriverListing, DriverProfile
from mobiurban.realtime import (
    DRIVER_UPDATES_TOPIC,
    FEED_LOST_MESSAGE,
    LOAD_ERROR_MESSAGE,
    DriverFeed,
    FeedEvent,
    RealtimeChannel,
    RealtimeError,
)


class FakeSocket:
    def __init__(self, frames, *, linger=0.0, error=None):
        self.frames = list(frames)
        self.linger = linger
        self.error = error
        self.sent = []

    async def send(self, data):
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame
        if self.linger:
            await asyncio.sleep(self.linger)
        if self.error is not None:
            raise self.error


def _connector(socket, urls=None):
    @asynccontextmanager
    async def connect(url):
        if urls is not None:
            urls.append(url)
        yield socket

    return connect


def _channel(socket, **kwargs):
    return RealtimeChannel(
        "wss://example.supabase.co/realtime/v1/websocket?apikey=k&vsn=1.0.0",
        "k",
        DRIVER_UPDATES_TOPIC,
        table="driver_profiles",
        connect=_connector(socket),
        **kwargs,
    )


def _change(record):
    return json.dumps(
        {
            "topic": "realtime:driver-updates",
            "event": "postgres_changes",
            "payload": {"data": {"type": "UPDATE", "table": "driver_profiles", "record": record}},
            "ref": None,
        }
    )


def test_join_message_subscribes_to_table_changes():
    channel = _channel(FakeSocket([]))

    message = channel.join_message()

    assert message["topic"] == "realtime:driver-updates"
    assert message["event"] == "phx_join"
    assert message["payload"]["config"]["postgres_changes"] == [
        {"event": "*", "schema": "public", "table": "driver_profiles"}
    ]
    assert message["payload"]["access_token"] == "k"
    assert channel.heartbeat_message()["topic"] == "phoenix"
    assert int(channel.leave_message()["ref"]) > int(message["ref"])


def test_listen_delivers_changes_and_leaves():
    socket = FakeSocket(
        [
            json.dumps({"topic": "realtime:driver-updates", "event": "phx_reply", "payload": {"status": "ok"}}),
            "not json",
            json.dumps({"topic": "realtime:driver-updates", "event": "presence_state", "payload": {}}),
            _change({"id": "p1", "is_online": True}),
            _change({"id": "p2", "is_online": False}),
        ]
    )
    received = []

    async def on_change(data):
        received.append(data["record"]["id"])

    asyncio.run(_channel(socket).listen(on_change))

    assert received == ["p1", "p2"]
    assert socket.sent[0]["event"] == "phx_join"
    assert socket.sent[-1]["event"] == "phx_leave"


def test_listen_accepts_plain_callbacks():
    socket = FakeSocket([_change({"id": "p1"})])
    received = []

    asyncio.run(_channel(socket).listen(received.append))

    assert received[0]["type"] == "UPDATE"


def test_rejected_join_raises():
    socket = FakeSocket(
        [
            json.dumps(
                {
                    "topic": "realtime:driver-updates",
                    "event": "phx_reply",
                    "payload": {"status": "error", "response": {"reason": "unauthorized"}},
                }
            )
        ]
    )

    with pytest.raises(RealtimeError, match="rejected"):
        asyncio.run(_channel(socket).listen(lambda data: None))

    assert socket.sent[-1]["event"] == "phx_leave"


def test_server_closing_channel_raises():
    socket = FakeSocket([json.dumps({"topic": "realtime:driver-updates", "event": "phx_close", "payload": {}})])

    with pytest.raises(RealtimeError, match="closed by the server"):
        asyncio.run(_channel(socket).listen(lambda data: None))


def test_heartbeats_are_sent_while_listening():
    socket = FakeSocket([], linger=0.2)

    asyncio.run(_channel(socket, heartbeat_interval=0.02).listen(lambda data: None))

    heartbeats = [message for message in socket.sent if message["event"] == "heartbeat"]
    assert heartbeats
    assert all(message["topic"] == "phoenix" for message in heartbeats)


def test_connection_loss_is_wrapped():
    socket = FakeSocket([], error=websockets.ConnectionClosed(None, None))

    with pytest.raises(RealtimeError, match="Realtime connection closed"):
        asyncio.run(_channel(socket).listen(lambda data: None))


def test_connect_failure_is_wrapped():
    @asynccontextmanager
    async def refuse(url):
        raise ConnectionRefusedError("refused")
        yield  # pragma: no cover

    channel = RealtimeChannel("ws://localhost:1/socket", "k", "t", table="driver_profiles", connect=refuse)

    with pytest.raises(RealtimeError, match="Failed to connect"):
        asyncio.run(channel.listen(lambda data: None))


# ----------------------------------------------------------------------
# DriverFeed
# ----------------------------------------------------------------------


def _listing(profile_id="p1"):
    profile = DriverProfile(
        id=profile_id,
        user_id="u1",
        vehicle_model="Onix",
        vehicle_plate="ABC1D23",
        vehicle_color="Prata",
        vehicle_year=2021,
        price_per_km=2.5,
        is_online=True,
    )
    return DriverListing.combine(profile, None)


class ScriptedChannel:
    def __init__(self, changes=1, *, hold=True):
        self.changes = changes
        self.hold = hold
        self.cancelled = False

    async def listen(self, on_change):
        for index in range(self.changes):
            await on_change({"type": "UPDATE", "index": index})
        if self.hold:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise


def test_feed_publishes_snapshot_on_change_and_stops_with_last_listener():
    channel = ScriptedChannel()
    fetches = []

    def fetch():
        fetches.append(1)
        return [_listing()]

    feed = DriverFeed(fetch, lambda: channel)

    async def scenario():
        async with feed.subscribe() as queue:
            assert feed.running
            assert feed.listener_count == 1
            event = await asyncio.wait_for(queue.get(), timeout=2)
        return event

    event = asyncio.run(scenario())

    assert event.type == "drivers"
    assert [driver.id for driver in event.drivers] == ["p1"]
    assert fetches == [1]
    assert channel.cancelled
    assert not feed.running
    assert feed.listener_count == 0


def test_feed_runs_single_subscription_for_many_listeners():
    channels = []

    def factory():
        channels.append(ScriptedChannel(changes=0))
        return channels[-1]

    feed = DriverFeed(lambda: [], factory)

    async def scenario():
        async with feed.subscribe():
            async with feed.subscribe():
                await asyncio.sleep(0)
                assert feed.listener_count == 2
            assert feed.running
        assert not feed.running

    asyncio.run(scenario())

    assert len(channels) == 1


def test_feed_reports_fetch_errors():
    def fetch():
        raise BackendError("boom", status_code=500)

    feed = DriverFeed(fetch, ScriptedChannel)

    async def scenario():
        async with feed.subscribe() as queue:
            return await asyncio.wait_for(queue.get(), timeout=2)

    event = asyncio.run(scenario())

    assert event == FeedEvent(type="error", message=LOAD_ERROR_MESSAGE)


def test_feed_announces_lost_subscription():
    feed = DriverFeed(lambda: [_listing()], lambda: ScriptedChannel(hold=False))

    async def scenario():
        async with feed.subscribe() as queue:
            first = await asyncio.wait_for(queue.get(), timeout=2)
            second = await asyncio.wait_for(queue.get(), timeout=2)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.type == "drivers"
    assert second == FeedEvent(type="error", message=FEED_LOST_MESSAGE)


def test_publish_drops_oldest_event_when_listener_lags():
    feed = DriverFeed(lambda: [], ScriptedChannel, queue_size=2)

    async def scenario():
        async with feed.subscribe() as queue:
            for index in range(3):
                feed.publish(FeedEvent(type="error", message=str(index)))
            return [queue.get_nowait().message for _ in range(queue.qsize())]

    assert asyncio.run(scenario()) == ["1", "2"]


def test_next_listener_after_lost_subscription_starts_fresh_channel():
    channels = []

    def factory():
        channel = ScriptedChannel(hold=len(channels) > 0)
        channels.append(channel)
        return channel

    feed = DriverFeed(lambda: [_listing()], factory)

    async def scenario():
        async with feed.subscribe() as first:
            await asyncio.wait_for(first.get(), timeout=2)
            lost = await asyncio.wait_for(first.get(), timeout=2)
            assert not feed.running

            async with feed.subscribe() as second:
                assert feed.running
                snapshot = await asyncio.wait_for(second.get(), timeout=2)
        return lost, snapshot

    lost, snapshot = asyncio.run(scenario())

    assert lost == FeedEvent(type="error", message=FEED_LOST_MESSAGE)
    assert snapshot.type == "drivers"
    assert [driver.id for driver in snapshot.drivers] == ["p1"]
    assert len(channels) == 2
    assert channels[1].cancelled
