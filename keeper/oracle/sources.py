"""External REST price feeds.

Each feed turns a token mint into a list of quoted pairs; the most liquid
pair supplies the price. Any malformed, empty or illiquid answer raises
PriceValidationError, any transport failure raises PriceSourceError.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from keeper.errors import PriceSourceError, PriceValidationError
from keeper.models import PriceSource

logger = logging.getLogger(__name__)

PRICE_E6_MULTIPLIER = 1_000_000
USER_AGENT = "percolator-keeper/0.1"


@dataclass
class QuotedPair:
    """One trading pair as reported by a feed."""
    address: str
    price_usd: Optional[float]
    liquidity_usd: float
    dex: str = ""


def _safe_float(value: Any) -> Optional[float]:
    """Parse a number; None for missing or non-numeric input."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_price_e6(price: float) -> int:
    return int(round(price * PRICE_E6_MULTIPLIER))


def select_price_e6(pairs: List[QuotedPair], source: str) -> int:
    """Validate a pair list and return the most liquid pair's price in e6."""
    if not pairs:
        raise PriceValidationError("no pairs", source=source, reason="no_pairs")

    best = max(pairs, key=lambda p: p.liquidity_usd)
    if not best.liquidity_usd > 0:
        raise PriceValidationError("no liquidity", source=source, reason="no_liquidity")

    price = best.price_usd
    if price is None or math.isnan(price) or math.isinf(price):
        raise PriceValidationError(f"non-numeric price {price!r}", source=source, reason="non_numeric")
    if price <= 0:
        raise PriceValidationError(f"non-positive price {price}", source=source, reason="non_positive")

    price_e6 = to_price_e6(price)
    if price_e6 <= 0:
        raise PriceValidationError(f"price {price} rounds to zero", source=source, reason="non_positive")
    return price_e6


class PriceFeed(ABC):
    """A single external price API."""

    source: PriceSource
    name: str = "feed"

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"User-Agent": USER_AGENT})
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def _get_json(self, url: str) -> Dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.get(url) as resp:
                if resp.status != 200:
                    raise PriceSourceError(f"{self.name} returned HTTP {resp.status}", status=resp.status)
                return await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise PriceSourceError(f"{self.name} request failed: {e}") from e
        except ValueError as e:
            raise PriceSourceError(f"{self.name} returned invalid JSON: {e}") from e

    @abstractmethod
    async def fetch_pairs(self, mint: str) -> List[QuotedPair]:
        """Return every pair the feed knows for ``mint``."""

    async def fetch_price_e6(self, mint: str) -> int:
        pairs = await self.fetch_pairs(mint)
        return select_price_e6(pairs, self.source.value)


class DexScreenerFeed(PriceFeed):
    """DexScreener token endpoint (primary)."""

    source = PriceSource.EXTERNAL_A
    name = "dexscreener"

    def __init__(self, session: Optional[aiohttp.ClientSession] = None,
                 base_url: str = "https://api.dexscreener.com/latest/dex/tokens"):
        super().__init__(session)
        self.base_url = base_url.rstrip("/")

    async def fetch_pairs(self, mint: str) -> List[QuotedPair]:
        data = await self._get_json(f"{self.base_url}/{mint}")
        pairs = []
        for raw in data.get("pairs") or []:
            liquidity = raw.get("liquidity") or {}
            pairs.append(QuotedPair(
                address=raw.get("pairAddress", ""),
                price_usd=_safe_float(raw.get("priceUsd")),
                liquidity_usd=_safe_float(liquidity.get("usd")) or 0.0,
                dex=raw.get("dexId", ""),
            ))
        return pairs


class GeckoTerminalFeed(PriceFeed):
    """GeckoTerminal pools-by-token endpoint (secondary)."""

    source = PriceSource.EXTERNAL_B
    name = "geckoterminal"

    def __init__(self, session: Optional[aiohttp.ClientSession] = None,
                 base_url: str = "https://api.geckoterminal.com/api/v2",
                 network: str = "solana"):
        super().__init__(session)
        self.base_url = base_url.rstrip("/")
        self.network = network

    async def fetch_pairs(self, mint: str) -> List[QuotedPair]:
        data = await self._get_json(f"{self.base_url}/networks/{self.network}/tokens/{mint}/pools")
        token_id = f"{self.network}_{mint}"
        pairs = []
        for pool in data.get("data") or []:
            attrs = pool.get("attributes") or {}
            relationships = pool.get("relationships") or {}
            quote_id = ((relationships.get("quote_token") or {}).get("data") or {}).get("id")
            # The token may sit on either side of the pool
            if quote_id == token_id:
                price = _safe_float(attrs.get("quote_token_price_usd"))
            else:
                price = _safe_float(attrs.get("base_token_price_usd"))
            pairs.append(QuotedPair(
                address=attrs.get("address", ""),
                price_usd=price,
                liquidity_usd=_safe_float(attrs.get("reserve_in_usd")) or 0.0,
                dex=((relationships.get("dex") or {}).get("data") or {}).get("id", ""),
            ))
        return pairs
