"""Market registry: which markets the keeper tracks and how they are doing.

All mutators are synchronous and never await, so each call is atomic with
respect to other tasks on the event loop.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Union

from keeper.errors import truncate_message
from keeper.models import MarketConfig, MarketEntry

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 10
DEFAULT_MISSING_DISCOVERY_LIMIT = 3


@dataclass
class ReconcileReport:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    refreshed: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


@dataclass
class ResultChange:
    """Activity transition caused by a recorded result."""
    deactivated: bool = False
    reactivated: bool = False


class MarketRegistry:
    """Owns every MarketEntry. Other components read snapshots."""

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        missing_discovery_limit: int = DEFAULT_MISSING_DISCOVERY_LIMIT,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if missing_discovery_limit < 1:
            raise ValueError("missing_discovery_limit must be at least 1")
        self.failure_threshold = failure_threshold
        self.missing_discovery_limit = missing_discovery_limit
        self._entries: Dict[str, MarketEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, market_id: str) -> bool:
        return market_id in self._entries

    def reconcile(
        self,
        discovered: Union[Mapping[str, Optional[MarketConfig]], Iterable[str]],
    ) -> ReconcileReport:
        """Merge a discovery result into the tracked set.

        Markets absent from ``discovered`` accumulate a miss; they are
        dropped once the miss count reaches the limit. A market seen again
        has its miss count cleared.
        """
        if isinstance(discovered, Mapping):
            found: Dict[str, Optional[MarketConfig]] = dict(discovered)
        else:
            found = {market_id: None for market_id in discovered}

        report = ReconcileReport()

        for market_id, entry in list(self._entries.items()):
            if market_id in found:
                if entry.missing_discovery_count:
                    logger.info(f"Market {market_id[:8]}... re-observed after {entry.missing_discovery_count} misses")
                entry.missing_discovery_count = 0
                if found[market_id] is not None:
                    entry.config = found[market_id]
                report.refreshed.append(market_id)
                continue

            entry.missing_discovery_count += 1
            if entry.missing_discovery_count >= self.missing_discovery_limit:
                del self._entries[market_id]
                report.removed.append(market_id)
                logger.info(f"Removed market {market_id[:8]}... after {entry.missing_discovery_count} missed discoveries")
            else:
                report.missing.append(market_id)

        for market_id, config in found.items():
            if market_id not in self._entries and market_id not in report.removed:
                self._entries[market_id] = MarketEntry(market_id=market_id, config=config)
                report.added.append(market_id)

        if report.added:
            logger.info(f"Tracking {len(report.added)} new market(s), {len(self._entries)} total")
        return report

    def record_result(
        self,
        market_id: str,
        success: bool,
        error: Optional[BaseException | str] = None,
        now: Optional[float] = None,
    ) -> ResultChange:
        """Update counters after a crank attempt.

        Unknown markets are ignored: they may have been evicted while the
        crank was in flight.
        """
        change = ResultChange()
        entry = self._entries.get(market_id)
        if entry is None:
            logger.debug(f"Ignoring result for untracked market {market_id[:8]}...")
            return change

        entry.last_crank_timestamp = time.time() if now is None else now
        if success:
            entry.success_count += 1
            entry.consecutive_failures = 0
            entry.last_error = None
            if not entry.is_active:
                entry.is_active = True
                change.reactivated = True
                logger.info(f"Market {market_id[:8]}... reactivated")
        else:
            entry.failure_count += 1
            entry.consecutive_failures += 1
            if error is not None:
                entry.last_error = truncate_message(str(error) or type(error).__name__)
            if entry.is_active and entry.consecutive_failures >= self.failure_threshold:
                entry.is_active = False
                change.deactivated = True
                logger.warning(
                    f"Market {market_id[:8]}... deactivated after "
                    f"{entry.consecutive_failures} consecutive failures"
                )
        return change

    def get(self, market_id: str) -> Optional[MarketEntry]:
        return self._entries.get(market_id)

    def active_set(self) -> List[MarketEntry]:
        return [e for e in self._entries.values() if e.is_active]

    def inactive_set(self) -> List[MarketEntry]:
        return [e for e in self._entries.values() if not e.is_active]

    def all_entries(self) -> List[MarketEntry]:
        return list(self._entries.values())

    def market_ids(self) -> List[str]:
        return list(self._entries)

    def snapshot(self) -> Dict[str, dict]:
        return {market_id: entry.to_status() for market_id, entry in self._entries.items()}
