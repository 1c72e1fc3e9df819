"""Price resolution across external feeds with caching and request dedup.

Lookup order for a token:

1. An in-flight fetch for the same token, if any (shared result)
2. Each feed in priority order, bounded by a timeout
3. The last good price, if younger than ``cache_max_age_ms``

A quote that moves more than ``max_deviation_pct`` away from the last good
price is rejected like any other invalid quote.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from keeper.errors import PriceValidationError
from keeper.models import PriceCacheEntry, PriceSource
from keeper.oracle.sources import PriceFeed

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_CACHE_MAX_AGE_MS = 60_000
DEFAULT_MAX_DEVIATION_PCT = 30.0


def _now_ms() -> int:
    return int(time.time() * 1000)


class PriceSourceResolver:
    """Resolve a USD price (e6) for a token mint."""

    def __init__(
        self,
        feeds: Sequence[PriceFeed],
        timeout: float = DEFAULT_TIMEOUT,
        cache_max_age_ms: int = DEFAULT_CACHE_MAX_AGE_MS,
        max_deviation_pct: Optional[float] = DEFAULT_MAX_DEVIATION_PCT,
        clock: Optional[Callable[[], int]] = None,
    ):
        if not feeds:
            raise ValueError("At least one price feed is required")
        self.feeds: List[PriceFeed] = list(feeds)
        self.timeout = timeout
        self.cache_max_age_ms = cache_max_age_ms
        self.max_deviation_pct = max_deviation_pct
        self._clock = clock or _now_ms
        self._cache: Dict[str, PriceCacheEntry] = {}
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._warned: Set[Tuple[str, str, str]] = set()
        self.fetch_count = 0

    async def fetch_price(self, token_id: str) -> Optional[PriceCacheEntry]:
        """Return a validated price for ``token_id`` or None."""
        task = self._in_flight.get(token_id)
        if task is None:
            task = asyncio.ensure_future(self._resolve(token_id))
            self._in_flight[token_id] = task
            task.add_done_callback(lambda t, key=token_id: self._release(key, t))
        # One cancelled caller must not cancel the fetch other callers share
        return await asyncio.shield(task)

    def _release(self, token_id: str, task: asyncio.Future) -> None:
        if self._in_flight.get(token_id) is task:
            del self._in_flight[token_id]

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def _resolve(self, token_id: str) -> Optional[PriceCacheEntry]:
        self.fetch_count += 1
        for feed in self.feeds:
            price_e6 = await self._query_feed(feed, token_id)
            if price_e6 is None:
                continue
            entry = PriceCacheEntry(price_e6=price_e6, fetched_at_ms=self._clock(), source=feed.source)
            self._cache[token_id] = entry
            logger.debug(f"Price for {token_id[:8]}... from {feed.name}: {price_e6}")
            return entry

        return self._cached_fallback(token_id)

    async def _query_feed(self, feed: PriceFeed, token_id: str) -> Optional[int]:
        try:
            price_e6 = await asyncio.wait_for(feed.fetch_price_e6(token_id), timeout=self.timeout)
            self._check_deviation(token_id, feed.name, price_e6)
            return price_e6
        except PriceValidationError as e:
            self._warn_once(token_id, feed.name, e.reason, f"{feed.name} rejected price for {token_id[:8]}...: {e}")
        except asyncio.TimeoutError:
            logger.warning(f"{feed.name} timed out after {self.timeout}s for {token_id[:8]}...")
        except Exception as e:
            logger.warning(f"{feed.name} failed for {token_id[:8]}...: {e}")
        return None

    def _check_deviation(self, token_id: str, source: str, price_e6: int) -> None:
        """Raise PriceValidationError when ``price_e6`` jumps too far from the last good price."""
        last = self._cache.get(token_id)
        if self.max_deviation_pct is None or last is None or last.price_e6 <= 0:
            return
        deviation_pct = abs(price_e6 - last.price_e6) * 100 // last.price_e6
        if deviation_pct > self.max_deviation_pct:
            raise PriceValidationError(
                f"moved {deviation_pct}% from last price {last.price_e6} to {price_e6}",
                source=source,
                reason="deviation",
            )

    def _warn_once(self, token_id: str, source: str, reason: str, message: str) -> None:
        key = (token_id, source, reason)
        if key in self._warned:
            logger.debug(message)
            return
        self._warned.add(key)
        logger.warning(message)

    def _cached_fallback(self, token_id: str) -> Optional[PriceCacheEntry]:
        cached = self._cache.get(token_id)
        if cached is None:
            return None
        age_ms = self._clock() - cached.fetched_at_ms
        if age_ms >= self.cache_max_age_ms:
            logger.warning(f"Cached price for {token_id[:8]}... is stale ({age_ms / 1000:.0f}s old), rejecting")
            return None
        return PriceCacheEntry(price_e6=cached.price_e6, fetched_at_ms=cached.fetched_at_ms, source=PriceSource.CACHED)

    def get_cached(self, token_id: str) -> Optional[PriceCacheEntry]:
        return self._cache.get(token_id)

    async def close(self) -> None:
        for task in list(self._in_flight.values()):
            task.cancel()
        self._in_flight.clear()
        for feed in self.feeds:
            await feed.close()
