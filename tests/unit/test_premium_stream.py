"""
Unit Tests for the Live Premium Stream Relay

These tests verify that:
- A connection receives ":ok", then "subscribed" (or "error"), then ticks and heartbeats
- A failed subscription degrades the stream without closing it
- close() is idempotent, always releases the subscriber and blocks later writes
- A client disconnect (consumer cancelled) tears the relay down
- Worker messages are reshaped into PremiumTick records

A fake broker subscriber stands in for Redis.

Run with:
    pytest tests/unit/test_premium_stream.py -v
"""

import asyncio
import json
from typing import List, Optional

import pytest

from services.broker import BrokerSubscriber
from services.premium_stream import (
    ChannelClosed,
    FrameChannel,
    PremiumStreamRelay,
    StreamState,
    encode_comment,
    encode_event,
    parse_message,
    reshape_premium_message,
)


CHANNEL = "kimchi:premium"


# ============================================
# Test Doubles
# ============================================

class FakeSubscriber(BrokerSubscriber):
    """In-memory subscriber; tests push messages with deliver()."""

    def __init__(
        self,
        count: int = 1,
        error: Optional[Exception] = None,
        disconnect_error: Optional[Exception] = None
    ):
        super().__init__()
        self.count = count
        self.error = error
        self.disconnect_error = disconnect_error
        self.channels: List[str] = []
        self.disconnects = 0

    async def subscribe(self, channel: str) -> int:
        if self.error is not None:
            raise self.error
        self.channels.append(channel)
        return self.count

    async def disconnect(self) -> None:
        self.disconnects += 1
        if self.disconnect_error is not None:
            raise self.disconnect_error

    def deliver(self, data: str) -> None:
        self._dispatch(CHANNEL, data)


async def next_frame(frames) -> str:
    return await asyncio.wait_for(frames.__anext__(), timeout=1.0)


def decode(frame: str):
    """Split an event frame into (event, data)."""
    event_line, data_line = frame.rstrip("\n").split("\n")
    return event_line[len("event: "):], json.loads(data_line[len("data: "):])


WORKER_MESSAGE = {
    "results": [
        {
            "name": "BTC",
            "korean_ex": "upbit",
            "foreign_ex": "binance",
            "ex_rates": [
                {"exchange": "binance", "ex_rate": 1.032},
                {"exchange": "bybit", "ex_rate": "1.036"},
            ],
        }
    ]
}


# ============================================
# Tests for Frame Encoding
# ============================================

class TestEncoding:
    """SSE wire format"""

    def test_event_frame(self):
        assert encode_event("tick", {"a": 1}) == 'event: tick\ndata: {"a":1}\n\n'

    def test_event_data_has_no_newlines(self):
        frame = encode_event("tick", {"text": "line1\nline2"})
        assert frame.count("\n") == 3

    def test_comment_frame(self):
        assert encode_comment("ok") == ":ok\n\n"


# ============================================
# Tests for Message Reshaping
# ============================================

class TestReshape:
    """Worker message -> PremiumTick records"""

    def test_first_strategy(self):
        ticks = reshape_premium_message(WORKER_MESSAGE, "first")
        assert ticks == [{
            "symbol": "BTC",
            "premium": 1.032,
            "domesticExchange": "upbit",
            "foreignExchange": "binance",
            "perExchangeRates": [
                {"exchange": "binance", "rate": 1.032},
                {"exchange": "bybit", "rate": 1.036},
            ],
        }]

    def test_mean_strategy(self):
        ticks = reshape_premium_message(WORKER_MESSAGE, "mean")
        assert ticks[0]["premium"] == pytest.approx(1.034)

    def test_unparseable_rate_is_null(self):
        message = {"results": [{"name": "ETH", "ex_rates": [{"exchange": "okx", "ex_rate": "n/a"}]}]}
        tick = reshape_premium_message(message, "first")[0]
        assert tick["premium"] is None
        assert tick["perExchangeRates"] == [{"exchange": "okx", "rate": None}]

    def test_no_rates(self):
        tick = reshape_premium_message({"results": [{"name": "XRP"}]}, "mean")[0]
        assert tick["premium"] is None
        assert tick["perExchangeRates"] == []

    def test_malformed_record_keeps_the_others(self):
        message = {
            "results": [
                WORKER_MESSAGE["results"][0],
                {"name": 1000, "ex_rates": [{"exchange": 5, "ex_rate": 1.01}]},
                {"name": "ETH", "ex_rates": 5},
            ]
        }
        ticks = reshape_premium_message(message, "first")

        assert [t["symbol"] for t in ticks] == ["BTC", "1000"]
        assert ticks[1]["perExchangeRates"] == [{"exchange": "5", "rate": 1.01}]

    def test_other_messages_pass_through(self):
        assert reshape_premium_message({"type": "status"}) == {"type": "status"}
        assert reshape_premium_message("plain text") == "plain text"

    def test_parse_message(self):
        assert parse_message('{"a": 1}') == {"a": 1}
        assert parse_message("not json") == "not json"
        assert parse_message(b"\xff") == "\ufffd"


# ============================================
# Tests for FrameChannel
# ============================================

class TestFrameChannel:
    """Bounded outbound buffer"""

    @pytest.mark.asyncio
    async def test_put_and_get(self):
        channel = FrameChannel(maxsize=2)
        assert channel.put("a") is True
        assert await channel.get() == "a"

    @pytest.mark.asyncio
    async def test_full_buffer_drops(self):
        channel = FrameChannel(maxsize=1)
        assert channel.put("a") is True
        assert channel.put("b") is False

    @pytest.mark.asyncio
    async def test_put_after_close_raises(self):
        channel = FrameChannel(maxsize=1)
        channel.close()
        with pytest.raises(ChannelClosed):
            channel.put("a")

    @pytest.mark.asyncio
    async def test_close_wakes_reader(self):
        channel = FrameChannel(maxsize=4)
        reader = asyncio.create_task(channel.get())
        await asyncio.sleep(0)
        channel.close()
        assert await asyncio.wait_for(reader, timeout=1.0) is None
        assert await channel.get() is None


# ============================================
# Tests for the Relay
# ============================================

class TestRelayLifecycle:
    """State machine and frame sequence"""

    @pytest.mark.asyncio
    async def test_ok_subscribed_then_ticks(self):
        subscriber = FakeSubscriber(count=1)
        relay = PremiumStreamRelay(subscriber, CHANNEL, heartbeat_interval=60)
        frames = relay.frames()

        assert await next_frame(frames) == ":ok\n\n"

        event, data = decode(await next_frame(frames))
        assert event == "subscribed"
        assert data == {"type": "subscribed", "channel": CHANNEL, "count": 1}
        assert relay.state is StreamState.STREAMING
        assert subscriber.channels == [CHANNEL]

        subscriber.deliver(json.dumps(WORKER_MESSAGE))
        event, data = decode(await next_frame(frames))
        assert event == "tick"
        assert data["type"] == "tick"
        assert data["channel"] == CHANNEL
        assert data["payload"][0]["symbol"] == "BTC"

        await frames.aclose()
        assert relay.state is StreamState.CLOSED
        assert subscriber.disconnects == 1

    @pytest.mark.asyncio
    async def test_subscribe_failure_degrades(self):
        subscriber = FakeSubscriber(error=ConnectionError("Connection refused"))
        relay = PremiumStreamRelay(subscriber, CHANNEL, heartbeat_interval=0.01)
        frames = relay.frames()

        assert await next_frame(frames) == ":ok\n\n"
        event, data = decode(await next_frame(frames))
        assert event == "error"
        assert data == {"type": "error", "message": "Connection refused"}
        assert relay.state is StreamState.DEGRADED

        # the connection stays open and keeps sending heartbeats
        assert (await next_frame(frames)).startswith(":hb ")

        await frames.aclose()
        assert subscriber.disconnects == 1

    @pytest.mark.asyncio
    async def test_heartbeat_frames(self):
        relay = PremiumStreamRelay(FakeSubscriber(), CHANNEL, heartbeat_interval=0.01)
        frames = relay.frames()
        await next_frame(frames)
        await next_frame(frames)

        heartbeat = await next_frame(frames)
        assert heartbeat.startswith(":hb ")
        assert heartbeat.endswith("\n\n")
        assert heartbeat[4:-2].isdigit()

        await frames.aclose()

    @pytest.mark.asyncio
    async def test_broker_error_after_subscribe(self):
        subscriber = FakeSubscriber()
        relay = PremiumStreamRelay(subscriber, CHANNEL, heartbeat_interval=60)
        frames = relay.frames()
        await next_frame(frames)
        await next_frame(frames)

        subscriber.on_error(ConnectionResetError("Connection reset by peer"))

        event, data = decode(await next_frame(frames))
        assert event == "error"
        assert relay.state is StreamState.DEGRADED
        await frames.aclose()

    @pytest.mark.asyncio
    async def test_open_twice_raises(self):
        relay = PremiumStreamRelay(FakeSubscriber(), CHANNEL, heartbeat_interval=60)
        relay.open()
        with pytest.raises(RuntimeError):
            relay.open()
        await relay.close()


class TestRelayClose:
    """Teardown guarantees"""

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        subscriber = FakeSubscriber()
        relay = PremiumStreamRelay(subscriber, CHANNEL, heartbeat_interval=60)
        relay.open()

        await relay.close()
        await relay.close()

        assert relay.state is StreamState.CLOSED
        assert subscriber.disconnects == 1

    @pytest.mark.asyncio
    async def test_close_survives_subscriber_disconnect_failure(self):
        subscriber = FakeSubscriber(disconnect_error=RuntimeError("connection already gone"))
        relay = PremiumStreamRelay(subscriber, CHANNEL, heartbeat_interval=60)
        relay.open()

        await relay.close()

        assert relay.state is StreamState.CLOSED
        assert subscriber.disconnects == 1

    @pytest.mark.asyncio
    async def test_close_before_open(self):
        subscriber = FakeSubscriber()
        relay = PremiumStreamRelay(subscriber, CHANNEL)
        await relay.close()
        assert relay.state is StreamState.CLOSED
        assert subscriber.disconnects == 1

    @pytest.mark.asyncio
    async def test_no_writes_after_close(self):
        subscriber = FakeSubscriber()
        relay = PremiumStreamRelay(subscriber, CHANNEL, heartbeat_interval=60)
        relay.open()
        await relay.close()

        subscriber.deliver(json.dumps(WORKER_MESSAGE))
        relay.handle_broker_error(ConnectionError("late"))

        assert relay._write(encode_comment("late")) is False
        assert relay.state is StreamState.CLOSED
        assert await relay._frames.get() is None

    @pytest.mark.asyncio
    async def test_client_disconnect_releases_subscriber(self):
        subscriber = FakeSubscriber()
        relay = PremiumStreamRelay(subscriber, CHANNEL, heartbeat_interval=60)
        received = []

        async def consume():
            async for frame in relay.frames():
                received.append(frame)

        task = asyncio.create_task(consume())
        while len(received) < 2:
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert relay.state is StreamState.CLOSED
        assert subscriber.disconnects == 1

    @pytest.mark.asyncio
    async def test_full_buffer_drops_frames(self):
        relay = PremiumStreamRelay(FakeSubscriber(), CHANNEL, heartbeat_interval=60, queue_size=1)
        relay.open()

        relay.handle_message(CHANNEL, "{}")

        assert await relay._frames.get() == ":ok\n\n"
        await relay.close()
