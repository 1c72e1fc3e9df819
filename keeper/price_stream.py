"""
Live slab price stream over the RPC websocket.

Subscribes to slab accounts with ``accountSubscribe``, decodes a price from
each notification and keeps a bounded history per slab. Connection loss is
handled by ReconnectPolicy: exponential backoff, reset on every successful
open, and a terminal STOPPED state after too many consecutive failures.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

import aiohttp

from keeper.events import EventBus, EventType

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECONNECT_ATTEMPTS = 10
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 60.0
DEFAULT_HISTORY_SIZE = 100

PriceDecoder = Callable[[bytes], Optional[int]]


class StreamState(Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    STOPPED = "stopped"


class ReconnectPolicy:
    """Connection state machine with no I/O and no clock.

    ``on_close`` returns the delay before the next connect, or None once the
    stream is stopped (explicitly or by running out of attempts).
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.state = StreamState.CLOSED
        self.attempt = 0
        self.exhausted = False

    def delay_for(self, attempt: int) -> float:
        """Delay after the ``attempt``-th consecutive failure (1-based)."""
        return min(self.base_delay * (2 ** max(attempt - 1, 0)), self.max_delay)

    def on_connecting(self) -> bool:
        if self.state is StreamState.STOPPED:
            return False
        self.state = StreamState.CONNECTING
        return True

    def on_open(self) -> None:
        if self.state is StreamState.STOPPED:
            return
        self.state = StreamState.OPEN
        self.attempt = 0

    def on_close(self) -> Optional[float]:
        if self.state is StreamState.STOPPED:
            return None
        self.attempt += 1
        if self.attempt >= self.max_attempts:
            self.state = StreamState.STOPPED
            self.exhausted = True
            return None
        self.state = StreamState.CLOSED
        return self.delay_for(self.attempt)

    def stop(self) -> None:
        self.state = StreamState.STOPPED

    def reset(self) -> None:
        self.state = StreamState.CLOSED
        self.attempt = 0
        self.exhausted = False


@dataclass(frozen=True)
class PricePoint:
    price_e6: int
    slot: Optional[int]
    timestamp: float


class U64PriceDecoder:
    """Read a little-endian u64 price at a fixed offset of the account data."""

    def __init__(self, offset: int):
        if offset < 0:
            raise ValueError("offset must be non-negative")
        self.offset = offset

    def __call__(self, data: bytes) -> Optional[int]:
        end = self.offset + 8
        if len(data) < end:
            return None
        value = int.from_bytes(data[self.offset:end], "little")
        return value or None


def _account_bytes(value: dict) -> Optional[bytes]:
    data = value.get("data") if isinstance(value, dict) else None
    if isinstance(data, list) and len(data) == 2 and data[1] == "base64":
        try:
            return base64.b64decode(data[0])
        except ValueError:
            return None
    return None


class PriceStreamEngine:
    """Account-subscription client that turns slab updates into prices."""

    def __init__(
        self,
        ws_url: str,
        bus: EventBus,
        decoder: PriceDecoder,
        *,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        history_size: int = DEFAULT_HISTORY_SIZE,
        heartbeat: float = 30.0,
        commitment: str = "confirmed",
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.ws_url = ws_url
        self.bus = bus
        self.decoder = decoder
        self.history_size = history_size
        self.heartbeat = heartbeat
        self.commitment = commitment
        self.policy = ReconnectPolicy(max_reconnect_attempts, base_delay, max_delay)
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._clock = clock

        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._task: Optional[asyncio.Task] = None
        self._request_ids = itertools.count(1)

        self._wanted: Set[str] = set()
        self.pending_subscriptions: Set[str] = set()
        self._slab_to_sub: Dict[str, int] = {}
        self._sub_to_slab: Dict[int, str] = {}
        self._requests: Dict[int, Tuple[str, str]] = {}  # id -> (method, slab)
        self._history: Dict[str, Deque[PricePoint]] = {}
        self._messages_received = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> StreamState:
        return self.policy.state

    @property
    def reconnect_attempt(self) -> int:
        return self.policy.attempt

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self.policy.reset()
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        logger.info(f"Starting price stream ({len(self._wanted)} slabs)")
        self._task = asyncio.create_task(self._run())
        self._task.add_done_callback(self._handle_task_exception)

    async def stop(self) -> None:
        self.policy.stop()

        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.debug("Price stream task cancelled")
        self._task = None

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._clear_subscriptions()
        logger.info("Price stream stopped")

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(f"Price stream task crashed: {exc}", exc_info=exc)

    async def _run(self) -> None:
        while self.policy.on_connecting():
            try:
                async with self._session.ws_connect(self.ws_url, heartbeat=self.heartbeat) as ws:
                    self._ws = ws
                    await self._on_open()
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            await self._handle_text(msg.data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            logger.error(f"Price stream error: {ws.exception()}")
                            break
                        elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                            logger.warning(f"Price stream closed: code={ws.close_code}")
                            break
            except aiohttp.WSServerHandshakeError as e:
                logger.error(f"Price stream handshake failed: {e}")
            except aiohttp.ClientError as e:
                logger.error(f"Price stream client error: {e}")
            except asyncio.TimeoutError:
                logger.warning("Price stream connection timeout")
            except Exception as e:
                logger.error(f"Price stream unexpected error: {type(e).__name__}: {e}")
            finally:
                self._ws = None

            delay = await self._on_closed()
            if delay is None:
                break
            logger.info(f"Reconnecting price stream in {delay:.1f}s (attempt {self.policy.attempt})")
            await self._sleep(delay)

    async def _on_open(self) -> None:
        self.policy.on_open()
        logger.info("Price stream connected")
        await self.bus.emit(EventType.STREAM_CONNECTED, {"slabs": len(self._wanted)}, source="price_stream")
        pending = sorted(self.pending_subscriptions)
        self.pending_subscriptions.clear()
        for slab in pending:
            await self._send_subscribe(slab)

    async def _on_closed(self) -> Optional[float]:
        was_stopped = self.policy.state is StreamState.STOPPED
        self._clear_subscriptions()
        delay = self.policy.on_close()
        if was_stopped:
            return None
        await self.bus.emit(
            EventType.STREAM_DISCONNECTED,
            {"attempt": self.policy.attempt, "retry_in": delay},
            source="price_stream",
        )
        if self.policy.exhausted:
            logger.error(f"Price stream giving up after {self.policy.attempt} failed reconnects")
            await self.bus.emit(EventType.STREAM_EXHAUSTED, {"attempts": self.policy.attempt}, source="price_stream")
        return delay

    def _clear_subscriptions(self) -> None:
        # Subscription ids die with the socket; everything wanted is re-sent on open
        self._slab_to_sub.clear()
        self._sub_to_slab.clear()
        self._requests.clear()
        self.pending_subscriptions = set(self._wanted)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _is_open(self) -> bool:
        return self.policy.state is StreamState.OPEN and self._ws is not None and not self._ws.closed

    async def subscribe_to_slab(self, slab: str) -> None:
        if slab in self._wanted:
            return
        self._wanted.add(slab)
        if self._is_open():
            await self._send_subscribe(slab)
        else:
            self.pending_subscriptions.add(slab)

    async def unsubscribe_from_slab(self, slab: str) -> None:
        if slab not in self._wanted:
            return
        self._wanted.discard(slab)
        self.pending_subscriptions.discard(slab)
        self._history.pop(slab, None)
        sub_id = self._slab_to_sub.pop(slab, None)
        if sub_id is not None:
            self._sub_to_slab.pop(sub_id, None)
            if self._is_open():
                await self._send_request("accountUnsubscribe", [sub_id], slab)

    def subscribed_slabs(self) -> List[str]:
        return sorted(self._wanted)

    def subscription_id(self, slab: str) -> Optional[int]:
        return self._slab_to_sub.get(slab)

    async def _send_subscribe(self, slab: str) -> None:
        params = [slab, {"encoding": "base64", "commitment": self.commitment}]
        await self._send_request("accountSubscribe", params, slab)

    async def _send_request(self, method: str, params: list, slab: str) -> None:
        request_id = next(self._request_ids)
        self._requests[request_id] = (method, slab)
        try:
            await self._ws.send_json({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            self._requests.pop(request_id, None)
            if method == "accountSubscribe":
                self.pending_subscriptions.add(slab)
            logger.warning(f"Failed to send {method} for {slab[:8]}...: {e}")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _handle_text(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning(f"Ignoring non-JSON stream message: {raw[:80]}")
            return
        await self.handle_message(message)

    async def handle_message(self, message: dict) -> None:
        self._messages_received += 1
        if "id" in message and message.get("id") in self._requests:
            await self._handle_response(message)
        elif message.get("method") == "accountNotification":
            await self._handle_notification(message.get("params") or {})

    async def _handle_response(self, message: dict) -> None:
        method, slab = self._requests.pop(message["id"])
        if "error" in message:
            logger.warning(f"{method} for {slab[:8]}... rejected: {message['error']}")
            return
        if method != "accountSubscribe":
            return

        sub_id = message.get("result")
        if not isinstance(sub_id, int):
            logger.warning(f"Unexpected subscription id for {slab[:8]}...: {sub_id!r}")
            return
        if slab not in self._wanted:
            # Unsubscribed while the request was in flight
            await self._send_request("accountUnsubscribe", [sub_id], slab)
            return
        self._slab_to_sub[slab] = sub_id
        self._sub_to_slab[sub_id] = slab
        logger.debug(f"Subscribed to {slab[:8]}... as {sub_id}")

    async def _handle_notification(self, params: dict) -> None:
        slab = self._sub_to_slab.get(params.get("subscription"))
        if slab is None:
            return
        result = params.get("result") or {}
        slot = (result.get("context") or {}).get("slot")
        data = _account_bytes(result.get("value") or {})
        if data is None:
            return
        price_e6 = self.decoder(data)
        if price_e6 is None:
            return

        point = PricePoint(price_e6=price_e6, slot=slot, timestamp=self._clock())
        history = self._history.get(slab)
        if history is None:
            history = self._history[slab] = deque(maxlen=self.history_size)
        history.append(point)

        await self.bus.emit(
            EventType.PRICE_UPDATED,
            {"market_id": slab, "price_e6": price_e6, "slot": slot, "source": "stream"},
            source="price_stream",
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_latest_price(self, slab: str) -> Optional[PricePoint]:
        history = self._history.get(slab)
        return history[-1] if history else None

    def get_history(self, slab: str) -> List[PricePoint]:
        return list(self._history.get(slab, ()))

    def get_stats(self) -> dict:
        return {
            "state": self.state.value,
            "reconnect_attempt": self.policy.attempt,
            "subscribed": len(self._wanted),
            "active_subscriptions": len(self._sub_to_slab),
            "pending_subscriptions": len(self.pending_subscriptions),
            "messages_received": self._messages_received,
        }
