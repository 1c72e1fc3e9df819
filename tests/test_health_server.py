"""
Tests for the keeper status server.
"""

from typing import Optional

import pytest
from aiohttp import test_utils

from keeper.health_server import create_app
from keeper.models import CrankOutcome, CycleResult
from keeper.registry import MarketRegistry

SLAB = "SlabA1111111111111111111111111111111111111"


class StubScheduler:
    def __init__(self, running: bool = True):
        self.is_running = running
        self.registry = MarketRegistry()
        self.registry.reconcile([SLAB])
        self.crank_calls = []

    def get_stats(self) -> dict:
        return {"state": "idle", "running": self.is_running, "markets": len(self.registry)}

    def get_status(self) -> dict:
        return self.registry.snapshot()

    def get_last_cycle_result(self) -> Optional[dict]:
        return {"success": 1, "failed": 0, "skipped": 0}

    async def crank_all(self) -> CycleResult:
        result = CycleResult()
        result.record(SLAB, CrankOutcome.SUCCESS)
        return result

    async def crank_market_outcome(self, market_id: str) -> CrankOutcome:
        self.crank_calls.append(market_id)
        self.registry.record_result(market_id, True, now=1.0)
        return CrankOutcome.SUCCESS


async def make_client(scheduler, api_key: str = "") -> test_utils.TestClient:
    client = test_utils.TestClient(test_utils.TestServer(create_app(scheduler, None, api_key)))
    await client.start_server()
    return client


@pytest.mark.asyncio
async def test_health_reports_running_scheduler():
    client = await make_client(StubScheduler())
    try:
        resp = await client.get("/health")
        body = await resp.json()
    finally:
        await client.close()

    assert resp.status == 200
    assert body["status"] == "healthy"
    assert body["stream"] == {"status": "disabled"}
    assert body["last_cycle"]["success"] == 1


@pytest.mark.asyncio
async def test_health_unavailable_when_stopped():
    client = await make_client(StubScheduler(running=False))
    try:
        resp = await client.get("/health")
    finally:
        await client.close()

    assert resp.status == 503


@pytest.mark.asyncio
async def test_live():
    client = await make_client(StubScheduler(running=False))
    try:
        resp = await client.get("/live")
        text = await resp.text()
    finally:
        await client.close()

    assert resp.status == 200
    assert text == "OK"


@pytest.mark.asyncio
async def test_crank_status_lists_markets():
    client = await make_client(StubScheduler())
    try:
        body = await (await client.get("/crank/status")).json()
    finally:
        await client.close()

    assert body["running"] is True
    assert body["markets"][SLAB]["is_active"] is True


@pytest.mark.asyncio
async def test_crank_all_requires_key():
    client = await make_client(StubScheduler(), api_key="secret")
    try:
        denied = await client.post("/crank/all")
        allowed = await client.post("/crank/all", headers={"X-API-Key": "secret"})
        body = await allowed.json()
    finally:
        await client.close()

    assert denied.status == 401
    assert allowed.status == 200
    assert body == {"success": 1, "failed": 0, "skipped": 0}


@pytest.mark.asyncio
async def test_crank_single_market():
    scheduler = StubScheduler()
    client = await make_client(scheduler)
    try:
        resp = await client.post(f"/crank/{SLAB}")
        body = await resp.json()
    finally:
        await client.close()

    assert resp.status == 200
    assert body["outcome"] == "success"
    assert body["status"]["success_count"] == 1
    assert scheduler.crank_calls == [SLAB]


@pytest.mark.asyncio
async def test_crank_unknown_market():
    scheduler = StubScheduler()
    client = await make_client(scheduler)
    try:
        resp = await client.post("/crank/UnknownSlab")
    finally:
        await client.close()

    assert resp.status == 404
    assert scheduler.crank_calls == []
