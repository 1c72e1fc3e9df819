"""Shared data types for markets, prices and crank cycles."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

ADMIN_FEED_ID = "0" * 64


class OracleMode(Enum):
    """Where a market's index price comes from."""
    ADMIN = "admin"        # keeper pushes the price before cranking
    EXTERNAL = "external"  # on-chain oracle account is read by the program


class PriceSource(Enum):
    EXTERNAL_A = "external_a"
    EXTERNAL_B = "external_b"
    CACHED = "cached"
    ON_CHAIN = "on_chain"


class CrankOutcome(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


def is_admin_feed(feed_id: Optional[str]) -> bool:
    """An empty or all-zero feed id means the admin pushes prices."""
    if not feed_id:
        return True
    stripped = feed_id.lower().removeprefix("0x")
    return set(stripped) <= {"0"}


@dataclass
class MarketConfig:
    """Static description of a market as returned by discovery."""
    slab_address: str
    program_id: str
    collateral_mint: str = ""
    index_feed_id: str = ADMIN_FEED_ID
    oracle_account: Optional[str] = None
    oracle_authority: Optional[str] = None
    authority_price_e6: int = 0
    symbol: Optional[str] = None

    @property
    def oracle_mode(self) -> OracleMode:
        return OracleMode.ADMIN if is_admin_feed(self.index_feed_id) else OracleMode.EXTERNAL

    @property
    def market_id(self) -> str:
        return self.slab_address

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["oracle_mode"] = self.oracle_mode.value
        return data


@dataclass
class MarketEntry:
    """Per-market crank bookkeeping. Owned by the registry."""
    market_id: str
    config: Optional[MarketConfig] = None
    last_crank_timestamp: Optional[float] = None
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    is_active: bool = True
    missing_discovery_count: int = 0
    last_error: Optional[str] = None

    def to_status(self) -> Dict[str, Any]:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "consecutive_failures": self.consecutive_failures,
            "is_active": self.is_active,
            "last_crank_timestamp": self.last_crank_timestamp,
            "missing_discovery_count": self.missing_discovery_count,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class PriceCacheEntry:
    """A resolved price in micro-units (1e-6 USD)."""
    price_e6: int
    fetched_at_ms: int
    source: PriceSource

    @property
    def price(self) -> float:
        return self.price_e6 / 1_000_000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price_e6": self.price_e6,
            "fetched_at_ms": self.fetched_at_ms,
            "source": self.source.value,
        }


@dataclass
class CycleResult:
    """Tally of one crank cycle."""
    success: int = 0
    failed: int = 0
    skipped: int = 0
    outcomes: Dict[str, CrankOutcome] = field(default_factory=dict)

    def record(self, market_id: str, outcome: CrankOutcome) -> None:
        self.outcomes[market_id] = outcome
        if outcome is CrankOutcome.SUCCESS:
            self.success += 1
        elif outcome is CrankOutcome.FAILED:
            self.failed += 1
        else:
            self.skipped += 1

    @property
    def total(self) -> int:
        return self.success + self.failed + self.skipped

    def to_dict(self) -> Dict[str, int]:
        return {"success": self.success, "failed": self.failed, "skipped": self.skipped}
