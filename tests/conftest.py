"""
Keeper test configuration.

Shared fixtures: an isolated event bus, a throwaway signer, scripted price
feeds, a mocked RPC client and a sleep that records instead of waiting.
"""

import os
import sys
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

# Add project root to path FIRST
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from keeper.events import EventBus
from keeper.errors import PriceSourceError
from keeper.models import PriceSource
from keeper.oracle.sources import PriceFeed, QuotedPair


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ScriptedFeed(PriceFeed):
    """Price feed whose answers are queued by the test.

    Each queued item is a list of QuotedPair, or an exception instance to raise.
    """

    def __init__(self, source: PriceSource = PriceSource.EXTERNAL_A, name: str = "scripted"):
        super().__init__(session=MagicMock())
        self.source = source
        self.name = name
        self.responses: List = []
        self.calls: List[str] = []
        self.default = None

    def respond(self, *items) -> "ScriptedFeed":
        self.responses.extend(items)
        return self

    async def fetch_pairs(self, mint: str) -> List[QuotedPair]:
        self.calls.append(mint)
        item = self.responses.pop(0) if self.responses else self.default
        if item is None:
            raise PriceSourceError(f"{self.name} unavailable")
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        pass


def pair(price, liquidity: float = 50_000.0, address: str = "pair") -> QuotedPair:
    return QuotedPair(address=address, price_usd=price, liquidity_usd=liquidity)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def signer():
    return Keypair()


@pytest.fixture
def program_id():
    return str(Pubkey.new_unique())


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def feed_a():
    return ScriptedFeed(PriceSource.EXTERNAL_A, "feed_a")


@pytest.fixture
def feed_b():
    return ScriptedFeed(PriceSource.EXTERNAL_B, "feed_b")


def make_rpc_client(
    *,
    send_side_effect=None,
    status_err=None,
    status: Optional[TransactionConfirmationStatus] = TransactionConfirmationStatus.Confirmed,
) -> AsyncMock:
    """AsyncClient double that confirms every transaction by default."""
    client = AsyncMock()
    client.get_latest_blockhash.return_value = MagicMock(value=MagicMock(blockhash=Hash.default()))
    if send_side_effect is not None:
        client.send_raw_transaction.side_effect = send_side_effect
    else:
        client.send_raw_transaction.return_value = MagicMock(value=Signature.default())
    client.get_signature_statuses.return_value = MagicMock(
        value=[MagicMock(err=status_err, confirmation_status=status)]
    )
    return client


@pytest.fixture
def rpc_client():
    return make_rpc_client()
