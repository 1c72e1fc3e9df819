from keeper.oracle.resolver import PriceSourceResolver
from keeper.oracle.sources import (
    DexScreenerFeed,
    GeckoTerminalFeed,
    PriceFeed,
    QuotedPair,
    select_price_e6,
    to_price_e6,
)

__all__ = [
    "DexScreenerFeed",
    "GeckoTerminalFeed",
    "PriceFeed",
    "PriceSourceResolver",
    "QuotedPair",
    "select_price_e6",
    "to_price_e6",
]
