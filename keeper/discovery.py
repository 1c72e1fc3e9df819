"""Market discovery: where the keeper learns which slabs exist.

Sources return ``MarketConfig`` objects for one program id. Records use the
market listing's snake_case field names::

    {"slab_address": "...", "mint_address": "...", "program_id": "...",
     "oracle_authority": "...", "index_feed_id": "00..00",
     "oracle_account": "...", "authority_price_e6": 1000000}
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiohttp
from solders.pubkey import Pubkey

from keeper.errors import DiscoveryError, MarketConfigError
from keeper.models import ADMIN_FEED_ID, MarketConfig

logger = logging.getLogger(__name__)


def _valid_pubkey(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        Pubkey.from_string(value)
    except ValueError:
        return False
    return True


def _parse_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def market_from_record(record: Dict[str, Any], program_id: str) -> MarketConfig:
    """Build a MarketConfig from a listing record.

    Raises MarketConfigError when the slab address is unusable.
    """
    slab = (record.get("slab_address") or record.get("slab") or "").strip()
    if not _valid_pubkey(slab):
        raise MarketConfigError(f"Invalid slab address: {slab!r}", market_id=slab or None)

    oracle_authority = record.get("oracle_authority") or None
    if oracle_authority and not _valid_pubkey(oracle_authority):
        raise MarketConfigError(f"Invalid oracle authority: {oracle_authority!r}", market_id=slab)

    oracle_account = record.get("oracle_account") or None
    if oracle_account and not _valid_pubkey(oracle_account):
        raise MarketConfigError(f"Invalid oracle account: {oracle_account!r}", market_id=slab)

    return MarketConfig(
        slab_address=slab,
        program_id=record.get("program_id") or program_id,
        collateral_mint=record.get("mint_address") or record.get("collateral_mint") or "",
        index_feed_id=record.get("index_feed_id") or ADMIN_FEED_ID,
        oracle_account=oracle_account,
        oracle_authority=oracle_authority,
        authority_price_e6=_parse_int(record.get("authority_price_e6") or record.get("initial_price_e6")),
        symbol=record.get("symbol"),
    )


def markets_from_records(records: Iterable[Dict[str, Any]], program_id: str) -> List[MarketConfig]:
    """Convert records, dropping (and logging) unusable ones and other programs' markets."""
    markets = []
    for record in records:
        if not isinstance(record, dict):
            logger.warning(f"Skipping malformed market record: {record!r}")
            continue
        record_program = record.get("program_id")
        if record_program and record_program != program_id:
            continue
        try:
            markets.append(market_from_record(record, program_id))
        except MarketConfigError as e:
            logger.warning(f"Skipping market record: {e}")
    return markets


class MarketSource(ABC):
    """Something that can list the markets of a program."""

    @abstractmethod
    async def discover_markets(self, program_id: str) -> List[MarketConfig]:
        """Return every market currently deployed under ``program_id``."""

    async def close(self) -> None:
        pass


class StaticMarketSource(MarketSource):
    """Markets from a JSON file and/or a fixed list of slab addresses.

    The file is re-read on every discovery so edits take effect without a
    restart.
    """

    def __init__(self, path: Optional[str] = None, slabs: Optional[List[str]] = None):
        self.path = Path(path) if path else None
        self.slabs = list(slabs or [])

    def _load_file(self) -> List[Dict[str, Any]]:
        if self.path is None:
            return []
        if not self.path.exists():
            raise MarketConfigError(f"Markets file not found: {self.path}")
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("markets", [])
        if not isinstance(data, list):
            raise MarketConfigError(f"Markets file must hold a list: {self.path}")
        return data

    async def discover_markets(self, program_id: str) -> List[MarketConfig]:
        records = self._load_file()
        records.extend({"slab_address": slab} for slab in self.slabs)
        return markets_from_records(records, program_id)


class HttpMarketSource(MarketSource):
    """Markets from the dashboard listing endpoint (``GET /api/markets``)."""

    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
    ):
        self.url = base_url.rstrip("/")
        if not self.url.endswith("/api/markets"):
            self.url += "/api/markets"
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    async def discover_markets(self, program_id: str) -> List[MarketConfig]:
        session = await self._get_session()
        try:
            async with session.get(self.url) as resp:
                if resp.status != 200:
                    raise DiscoveryError(f"Market listing returned HTTP {resp.status}", status=resp.status)
                data = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise DiscoveryError(f"Market listing request failed: {e}") from e

        records = data.get("markets", []) if isinstance(data, dict) else data
        return markets_from_records(records or [], program_id)

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()


class CompositeMarketSource(MarketSource):
    """Union of several sources; later sources override earlier ones per slab."""

    def __init__(self, sources: List[MarketSource]):
        self.sources = sources

    async def discover_markets(self, program_id: str) -> List[MarketConfig]:
        merged: Dict[str, MarketConfig] = {}
        for source in self.sources:
            for market in await source.discover_markets(program_id):
                merged[market.slab_address] = market
        return list(merged.values())

    async def close(self) -> None:
        for source in self.sources:
            await source.close()
