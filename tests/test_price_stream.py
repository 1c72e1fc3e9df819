"""
Unit tests for the slab price stream.

Tests:
- ReconnectPolicy delays, exhaustion and reset
- Subscription bookkeeping across responses and reconnects
- Notification decoding and bounded history
- Connect loop giving up after repeated failures
"""

import base64
import struct
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from keeper.events import EventType
from keeper.price_stream import PriceStreamEngine, ReconnectPolicy, StreamState, U64PriceDecoder

SLAB_A = "SlabA1111111111111111111111111111111111111"
SLAB_B = "SlabB1111111111111111111111111111111111111"
PRICE_OFFSET = 8


class FakeWebSocket:
    def __init__(self):
        self.sent = []
        self.closed = False

    async def send_json(self, payload):
        self.sent.append(payload)

    async def close(self):
        self.closed = True


def account_data(price_e6: int) -> str:
    raw = bytes(PRICE_OFFSET) + struct.pack("<Q", price_e6) + bytes(16)
    return base64.b64encode(raw).decode()


def notification(sub_id: int, price_e6: int, slot: int = 1) -> dict:
    return {
        "jsonrpc": "2.0",
        "method": "accountNotification",
        "params": {
            "subscription": sub_id,
            "result": {
                "context": {"slot": slot},
                "value": {"data": [account_data(price_e6), "base64"], "owner": "x", "lamports": 1},
            },
        },
    }


@pytest.fixture
def engine(bus, recording_sleep):
    return PriceStreamEngine(
        "wss://rpc.example",
        bus,
        U64PriceDecoder(PRICE_OFFSET),
        history_size=3,
        session=MagicMock(closed=False),
        sleep=recording_sleep,
        clock=lambda: 1000.0,
    )


async def open_engine(engine) -> FakeWebSocket:
    ws = FakeWebSocket()
    engine._ws = ws
    engine.policy.on_connecting()
    await engine._on_open()
    return ws


class TestReconnectPolicy:

    def test_delay_doubles_and_caps(self):
        policy = ReconnectPolicy(max_attempts=20, base_delay=1.0, max_delay=60.0)
        delays = [policy.on_close() for _ in range(8)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0]

    def test_stops_after_max_attempts(self):
        policy = ReconnectPolicy(max_attempts=10)
        delays = [policy.on_close() for _ in range(10)]

        assert all(d is not None for d in delays[:9])
        assert delays[9] is None
        assert policy.state is StreamState.STOPPED
        assert policy.exhausted
        assert policy.on_connecting() is False

    def test_open_resets_attempts(self):
        policy = ReconnectPolicy()
        policy.on_close()
        policy.on_close()
        policy.on_connecting()
        policy.on_open()

        assert policy.attempt == 0
        assert policy.on_close() == 1.0

    def test_explicit_stop_is_terminal(self):
        policy = ReconnectPolicy()
        policy.stop()
        assert policy.on_close() is None
        policy.on_open()
        assert policy.state is StreamState.STOPPED
        assert not policy.exhausted


class TestDecoder:

    def test_reads_u64_at_offset(self):
        raw = base64.b64decode(account_data(1_234_567))
        assert U64PriceDecoder(PRICE_OFFSET)(raw) == 1_234_567

    def test_short_or_zero_data(self):
        decoder = U64PriceDecoder(PRICE_OFFSET)
        assert decoder(bytes(10)) is None
        assert decoder(bytes(32)) is None

    def test_negative_offset_rejected(self):
        with pytest.raises(ValueError):
            U64PriceDecoder(-1)


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_subscribe_while_closed_is_queued(self, engine):
        await engine.subscribe_to_slab(SLAB_A)
        await engine.subscribe_to_slab(SLAB_A)

        assert engine.pending_subscriptions == {SLAB_A}
        assert engine.subscribed_slabs() == [SLAB_A]

    @pytest.mark.asyncio
    async def test_pending_flushed_on_open(self, engine, bus):
        await engine.subscribe_to_slab(SLAB_A)
        await engine.subscribe_to_slab(SLAB_B)

        ws = await open_engine(engine)

        assert [m["method"] for m in ws.sent] == ["accountSubscribe", "accountSubscribe"]
        assert {m["params"][0] for m in ws.sent} == {SLAB_A, SLAB_B}
        assert ws.sent[0]["params"][1]["encoding"] == "base64"
        assert engine.pending_subscriptions == set()
        assert len(bus.get_history([EventType.STREAM_CONNECTED])) == 1

    @pytest.mark.asyncio
    async def test_response_maps_subscription(self, engine):
        ws = await open_engine(engine)
        await engine.subscribe_to_slab(SLAB_A)
        await engine.subscribe_to_slab(SLAB_A)

        assert len(ws.sent) == 1
        await engine.handle_message({"jsonrpc": "2.0", "id": ws.sent[0]["id"], "result": 42})

        assert engine.subscription_id(SLAB_A) == 42

    @pytest.mark.asyncio
    async def test_unsubscribe_sends_request(self, engine):
        ws = await open_engine(engine)
        await engine.subscribe_to_slab(SLAB_A)
        await engine.handle_message({"id": ws.sent[0]["id"], "result": 42})

        await engine.unsubscribe_from_slab(SLAB_A)
        await engine.unsubscribe_from_slab(SLAB_A)

        assert ws.sent[-1]["method"] == "accountUnsubscribe"
        assert ws.sent[-1]["params"] == [42]
        assert len(ws.sent) == 2
        assert engine.subscription_id(SLAB_A) is None

    @pytest.mark.asyncio
    async def test_late_confirmation_for_dropped_slab_is_unsubscribed(self, engine):
        ws = await open_engine(engine)
        await engine.subscribe_to_slab(SLAB_A)
        await engine.unsubscribe_from_slab(SLAB_A)

        await engine.handle_message({"id": ws.sent[0]["id"], "result": 7})

        assert ws.sent[-1]["method"] == "accountUnsubscribe"
        assert ws.sent[-1]["params"] == [7]
        assert engine.subscription_id(SLAB_A) is None

    @pytest.mark.asyncio
    async def test_disconnect_requeues_everything(self, engine, bus):
        ws = await open_engine(engine)
        await engine.subscribe_to_slab(SLAB_A)
        await engine.handle_message({"id": ws.sent[0]["id"], "result": 42})

        delay = await engine._on_closed()

        assert delay == 1.0
        assert engine.subscription_id(SLAB_A) is None
        assert engine.pending_subscriptions == {SLAB_A}
        disconnected = bus.get_history([EventType.STREAM_DISCONNECTED])
        assert disconnected[0].data == {"attempt": 1, "retry_in": 1.0}


class TestNotifications:

    @pytest.mark.asyncio
    async def test_notification_updates_history_and_emits(self, engine, bus):
        ws = await open_engine(engine)
        await engine.subscribe_to_slab(SLAB_A)
        await engine.handle_message({"id": ws.sent[0]["id"], "result": 42})

        await engine.handle_message(notification(42, 1_500_000, slot=99))

        latest = engine.get_latest_price(SLAB_A)
        assert latest.price_e6 == 1_500_000
        assert latest.slot == 99
        assert latest.timestamp == 1000.0
        event = bus.get_history([EventType.PRICE_UPDATED])[0]
        assert event.data["source"] == "stream"
        assert event.data["market_id"] == SLAB_A

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, engine):
        ws = await open_engine(engine)
        await engine.subscribe_to_slab(SLAB_A)
        await engine.handle_message({"id": ws.sent[0]["id"], "result": 42})

        for price in (1, 2, 3, 4, 5):
            await engine.handle_message(notification(42, price * 1_000_000))

        assert [p.price_e6 for p in engine.get_history(SLAB_A)] == [3_000_000, 4_000_000, 5_000_000]

    @pytest.mark.asyncio
    async def test_unknown_subscription_ignored(self, engine, bus):
        await open_engine(engine)
        await engine.handle_message(notification(999, 1_000_000))

        assert bus.get_history([EventType.PRICE_UPDATED]) == []
        assert engine.get_stats()["messages_received"] == 1

    @pytest.mark.asyncio
    async def test_non_json_text_ignored(self, engine):
        await engine._handle_text("not json")
        assert engine.get_stats()["messages_received"] == 0


class TestConnectLoop:

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_failures(self, bus, recording_sleep):
        session = MagicMock(closed=False)
        session.ws_connect.side_effect = aiohttp.ClientConnectionError("refused")
        engine = PriceStreamEngine(
            "wss://rpc.example",
            bus,
            U64PriceDecoder(PRICE_OFFSET),
            max_reconnect_attempts=10,
            session=session,
            sleep=recording_sleep,
        )

        await engine.start()
        await engine._task

        assert session.ws_connect.call_count == 10
        assert recording_sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0, 60.0]
        assert engine.state is StreamState.STOPPED
        assert len(bus.get_history([EventType.STREAM_EXHAUSTED])) == 1

    @pytest.mark.asyncio
    async def test_stop_before_start_is_safe(self, engine):
        await engine.stop()
        assert engine.state is StreamState.STOPPED


@pytest.mark.asyncio
async def test_unsubscribe_drops_price_history(engine):
    ws = await open_engine(engine)
    await engine.subscribe_to_slab(SLAB_A)
    await engine.handle_message({"id": ws.sent[0]["id"], "result": 42})
    await engine.handle_message(notification(42, 1_000_000))
    assert engine.get_latest_price(SLAB_A) is not None

    await engine.unsubscribe_from_slab(SLAB_A)

    assert engine.get_history(SLAB_A) == []
    assert engine.get_latest_price(SLAB_A) is None
    assert SLAB_A not in engine._history
