"""
Live Premium Stream Relay

Relays premium ticks from a broker channel to one server-sent-events client.

One PremiumStreamRelay exists per HTTP connection and exclusively owns that
connection's subscription, heartbeat task, frame channel and state.

State machine:

    INIT ──open()──> SUBSCRIBING ──subscribe ok──> STREAMING
                          │                            │
                          └──subscribe failed──> DEGRADED <──listener broke──┘
                                                   │
    any state ──close() / client disconnect──> CLOSING ──> CLOSED

    INIT         ":ok" comment queued so the client sees headers immediately
    SUBSCRIBING  broker subscribe in flight; heartbeats already running
    STREAMING    every broker message becomes a "tick" frame
    DEGRADED     an "error" frame was sent; heartbeats continue, connection stays open
    CLOSING      heartbeat cancelled, subscriber disconnected, channel closed
    CLOSED       terminal; every further write is dropped

Once CLOSING is entered no frame is written. A write that hits an already
closed FrameChannel raises ChannelClosed, which the relay treats as CLOSED.

Wire format:
    event: subscribed\\ndata: {"type": "subscribed", "channel": "...", "count": 1}\\n\\n
    event: tick\\ndata: {"type": "tick", "channel": "...", "payload": [...]}\\n\\n
    event: error\\ndata: {"type": "error", "message": "..."}\\n\\n
    :ok\\n\\n
    :hb 1704110400123\\n\\n

Usage (FastAPI):
    relay = PremiumStreamRelay(broker.create_subscriber(), channel)
    return StreamingResponse(relay.frames(), media_type="text/event-stream")
"""

import asyncio
import json
import math
from enum import Enum
from typing import Any, AsyncIterator, List, Optional

from pydantic import ValidationError

from core.config import settings
from core.logging import get_logger, log_stream_event
from core.schemas import ExchangeRate, PremiumTick
from core.utils.time import current_utc_timestamp
from services.broker import BrokerSubscriber


logger = get_logger(__name__)


# ============================================
# Frame Encoding
# ============================================

def encode_event(event: str, data: Any) -> str:
    """One SSE event frame. The JSON body never contains raw newlines."""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, separators=(',', ':'))}\n\n"


def encode_comment(text: str) -> str:
    """One SSE comment frame (ignored by EventSource, keeps proxies awake)."""
    return f":{text}\n\n"


# ============================================
# Message Reshaping
# ============================================

def parse_message(raw: Any) -> Any:
    """JSON-decode a broker message, falling back to the raw value."""
    if not isinstance(raw, (str, bytes, bytearray)):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else raw


def _headline_premium(rates: List[ExchangeRate], strategy: str) -> Optional[float]:
    if not rates:
        return None
    if strategy == "mean":
        values = [r.rate for r in rates if r.rate is not None]
        return math.fsum(values) / len(values) if values else None
    return rates[0].rate


def _to_rate(entry: Any) -> ExchangeRate:
    if not isinstance(entry, dict):
        return ExchangeRate()
    try:
        rate = float(entry["ex_rate"])
    except (KeyError, TypeError, ValueError):
        rate = None
    return ExchangeRate(
        exchange=entry.get("exchange") or entry.get("foreign_ex") or entry.get("name"),
        rate=rate
    )


def reshape_premium_message(message: Any, strategy: Optional[str] = None) -> Any:
    """
    Flatten a worker message into PremiumTick records.

    A message carrying a "results" array of per-symbol records becomes a list of
    {symbol, premium, domesticExchange, foreignExchange, perExchangeRates}.
    Anything else is forwarded unchanged.

    Args:
        message: Parsed broker message
        strategy: "first" (premium = first listed rate) or "mean" (average of rates);
                  defaults to settings.premium_rate_strategy

    Example:
        >>> reshape_premium_message({"results": [{"name": "BTC", "korean_ex": "upbit",
        ...     "foreign_ex": "binance", "ex_rates": [{"exchange": "binance", "ex_rate": 1.032}]}]})
        [{'symbol': 'BTC', 'premium': 1.032, 'domesticExchange': 'upbit', 'foreignExchange': 'binance',
          'perExchangeRates': [{'exchange': 'binance', 'rate': 1.032}]}]
    """
    if not isinstance(message, dict) or not isinstance(message.get("results"), list):
        return message

    strategy = strategy or settings.premium_rate_strategy
    ticks = []
    for item in message["results"]:
        if not isinstance(item, dict):
            continue
        try:
            rates = [_to_rate(entry) for entry in item.get("ex_rates") or []]
            tick = PremiumTick(
                symbol=item.get("name"),
                premium=_headline_premium(rates, strategy),
                domestic_exchange=item.get("korean_ex"),
                foreign_exchange=item.get("foreign_ex"),
                per_exchange_rates=rates
            )
        except (ValidationError, TypeError) as e:
            logger.warning(f"Skipping malformed premium record {item.get('name')!r}: {e}")
            continue
        ticks.append(tick.model_dump(by_alias=True))
    return ticks


# ============================================
# Frame Channel
# ============================================

class ChannelClosed(Exception):
    """Raised when writing to a FrameChannel that has been closed."""

    pass


class FrameChannel:
    """
    Bounded outbound frame buffer for one connection.

    Frames are whole strings, so a dropped frame is dropped entirely and a
    client never receives a partial frame.
    """

    def __init__(self, maxsize: int):
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, frame: str) -> bool:
        """
        Queue a frame without blocking.

        Returns:
            bool: False if the buffer is full and the frame was dropped

        Raises:
            ChannelClosed: If the channel was closed
        """
        if self._closed:
            raise ChannelClosed("frame channel is closed")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    async def get(self) -> Optional[str]:
        """Next frame, or None once the channel is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        """Discard buffered frames and wake the reader with the end marker."""
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)


# ============================================
# Relay
# ============================================

class StreamState(str, Enum):
    INIT = "init"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    DEGRADED = "degraded"
    CLOSING = "closing"
    CLOSED = "closed"


class PremiumStreamRelay:
    """
    Per-connection broker-to-SSE relay.

    Attributes:
        subscriber: Dedicated broker subscriber (owned; disconnected on close)
        channel: Broker channel name
        heartbeat_interval: Seconds between ":hb" comments
        state: Current StreamState

    Example:
        >>> relay = PremiumStreamRelay(subscriber, "kimchi:premium")
        >>> async for frame in relay.frames():
        ...     await send(frame)
    """

    def __init__(
        self,
        subscriber: BrokerSubscriber,
        channel: str,
        heartbeat_interval: Optional[float] = None,
        queue_size: Optional[int] = None,
        rate_strategy: Optional[str] = None
    ):
        self.subscriber = subscriber
        self.channel = channel
        self.heartbeat_interval = heartbeat_interval or settings.sse_heartbeat_interval
        self.rate_strategy = rate_strategy or settings.premium_rate_strategy
        self.state = StreamState.INIT

        self._frames = FrameChannel(queue_size or settings.sse_queue_size)
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._subscribe_task: Optional[asyncio.Task] = None

        subscriber.on_message = self.handle_message
        subscriber.on_error = self.handle_broker_error

    @property
    def closed(self) -> bool:
        return self.state in (StreamState.CLOSING, StreamState.CLOSED)

    # ============================================
    # Lifecycle
    # ============================================

    def open(self) -> None:
        """
        Flush the opening comment, start the heartbeat and begin subscribing.

        Raises:
            RuntimeError: If the relay was already opened
        """
        if self.state is not StreamState.INIT:
            raise RuntimeError(f"relay already opened (state={self.state.value})")

        self._write(encode_comment("ok"))
        self.state = StreamState.SUBSCRIBING
        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        self._subscribe_task = asyncio.create_task(self._subscribe())

    async def frames(self) -> AsyncIterator[str]:
        """
        Async iterator of encoded frames for StreamingResponse.

        Ends only when the relay is closed. When the consumer stops iterating
        (client disconnect cancels the response task), the finally block
        closes the relay.
        """
        if self.state is StreamState.INIT:
            self.open()
        try:
            while True:
                frame = await self._frames.get()
                if frame is None:
                    break
                yield frame
        finally:
            await self.close()

    async def close(self) -> None:
        """Tear down the connection. Idempotent; re-entrant calls are no-ops."""
        if self.closed:
            return
        self.state = StreamState.CLOSING

        pending = [
            task for task in (self._heartbeat_task, self._subscribe_task)
            if task is not None and not task.done()
        ]
        for task in pending:
            task.cancel()
        self._frames.close()

        # the response task may itself be cancelled (client disconnect);
        # teardown must still reach the broker
        await asyncio.shield(self._finish_close(pending))

    async def _finish_close(self, pending: List[asyncio.Task]) -> None:
        try:
            for task in pending:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            try:
                await self.subscriber.disconnect()
            except Exception as e:
                log_stream_event(self.channel, "error", f"disconnect failed: {e}")
        finally:
            self.state = StreamState.CLOSED
            log_stream_event(self.channel, "closed")

    # ============================================
    # Event Handlers
    # ============================================

    async def _subscribe(self) -> None:
        try:
            count = await self.subscriber.subscribe(self.channel)
        except Exception as e:
            if self.closed:
                return
            log_stream_event(self.channel, "error", f"subscribe failed: {e}")
            self._write(encode_event("error", {"type": "error", "message": str(e) or e.__class__.__name__}))
            self.state = StreamState.DEGRADED
            return

        if self.closed:
            return
        self.state = StreamState.STREAMING
        log_stream_event(self.channel, "subscribed", f"count={count}")
        self._write(encode_event("subscribed", {"type": "subscribed", "channel": self.channel, "count": count}))

    def handle_message(self, channel: str, raw: Any) -> None:
        """Broker callback: reshape one message and queue a tick frame."""
        if self.closed:
            return
        logger.debug(f"Tick received on {channel}")
        payload = reshape_premium_message(parse_message(raw), self.rate_strategy)
        self._write(encode_event("tick", {"type": "tick", "channel": channel, "payload": payload}))

    def handle_broker_error(self, error: Exception) -> None:
        """Broker callback: the subscription broke after it was established."""
        if self.closed:
            return
        self._write(encode_event("error", {"type": "error", "message": str(error) or error.__class__.__name__}))
        self.state = StreamState.DEGRADED

    async def _heartbeat(self) -> None:
        while not self.closed:
            await asyncio.sleep(self.heartbeat_interval)
            self._write(encode_comment(f"hb {current_utc_timestamp(milliseconds=True)}"))

    def _write(self, frame: str) -> bool:
        """
        Queue one frame unless the relay is closing.

        Returns:
            bool: True if the frame was queued
        """
        if self.closed:
            return False
        try:
            queued = self._frames.put(frame)
        except ChannelClosed:
            self.state = StreamState.CLOSED
            return False

        if not queued:
            log_stream_event(self.channel, "dropped", "outbound buffer full")
        return queued
