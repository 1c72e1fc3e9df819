"""Transaction submission with size checks, retry and a replay window."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.models import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.signature import Signature
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from keeper.abi import compute_budget_instructions
from keeper.errors import (
    ConfirmationError,
    DuplicateSubmissionError,
    KeeperError,
    PermanentError,
    RpcError,
    RpcTimeoutError,
    TransactionError,
    TransactionTooLargeError,
)

logger = logging.getLogger(__name__)

# Solana packet data limit (IPv6 MTU minus headers)
MAX_TRANSACTION_SIZE = 1232

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 8.0
DEFAULT_REPLAY_TTL = 10.0

_CONFIRMED_STATUSES = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)

ReplayKey = Tuple[str, str]


def backoff_delay(attempt: int, base: float = DEFAULT_BASE_DELAY, max_delay: float = DEFAULT_MAX_DELAY) -> float:
    """Delay before retry number ``attempt + 1``: base, 2*base, 4*base ... capped."""
    return min(base * (2 ** attempt), max_delay)


@dataclass
class RecentSignature:
    signature: Optional[str]  # None while the submission is in flight
    inserted_at: float


class ReplayGuard:
    """Short window that rejects a repeat of the same market operation.

    Keys are ``(market_id, operation)``. A key is reserved before sending,
    stamped with the signature on success and released on failure so the
    next scheduled tick may try again.
    """

    def __init__(self, ttl: float = DEFAULT_REPLAY_TTL, max_entries: int = 5000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[ReplayKey, RecentSignature]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def _prune(self) -> None:
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items()
            if entry.signature is not None and now - entry.inserted_at >= self.ttl
        ]
        for key in expired:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def get(self, key: ReplayKey) -> Optional[RecentSignature]:
        self._prune()
        return self._entries.get(key)

    def reserve(self, key: ReplayKey) -> None:
        existing = self.get(key)
        if existing is not None:
            raise DuplicateSubmissionError(key[0], key[1], existing.signature)
        self._entries[key] = RecentSignature(signature=None, inserted_at=self._clock())

    def record(self, key: ReplayKey, signature: str) -> None:
        self._entries[key] = RecentSignature(signature=signature, inserted_at=self._clock())
        self._entries.move_to_end(key)

    def release(self, key: ReplayKey) -> None:
        self._entries.pop(key, None)


class TransactionSubmitter:
    """Sign, send and confirm instruction sets against one RPC endpoint."""

    def __init__(
        self,
        rpc_url: str = "",
        *,
        client: Optional[AsyncClient] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        replay_ttl: float = DEFAULT_REPLAY_TTL,
        compute_unit_price: int = 0,
        compute_unit_limit: int = 0,
        rpc_timeout: float = 15.0,
        confirm_timeout: float = 30.0,
        poll_interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        replay_guard: Optional[ReplayGuard] = None,
    ):
        if client is None and not rpc_url:
            raise ValueError("rpc_url or client is required")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.rpc_url = rpc_url
        self._client = client
        self._owns_client = client is None
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.compute_unit_price = compute_unit_price
        self.compute_unit_limit = compute_unit_limit
        self.rpc_timeout = rpc_timeout
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self.replay_guard = replay_guard if replay_guard is not None else ReplayGuard(ttl=replay_ttl)

        self._stats: Dict[str, int] = {"submitted": 0, "failed": 0, "duplicates": 0, "retries": 0}

    def _get_client(self) -> AsyncClient:
        if self._client is None:
            self._client = AsyncClient(self.rpc_url, commitment=Confirmed, timeout=self.rpc_timeout)
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.close()
            self._client = None

    def build_transaction(self, instructions: Sequence[Instruction], signer: Keypair, blockhash: Hash) -> Transaction:
        ixs: List[Instruction] = compute_budget_instructions(self.compute_unit_price, self.compute_unit_limit)
        ixs.extend(instructions)
        message = Message.new_with_blockhash(ixs, signer.pubkey(), blockhash)
        return Transaction([signer], message, blockhash)

    def check_size(self, instructions: Sequence[Instruction], signer: Keypair) -> int:
        """Raise TransactionTooLargeError when the signed wire size exceeds the limit.

        Blockhash length is fixed, so a placeholder gives the exact size.
        """
        size = len(bytes(self.build_transaction(instructions, signer, Hash.default())))
        if size > MAX_TRANSACTION_SIZE:
            raise TransactionTooLargeError(size, MAX_TRANSACTION_SIZE)
        return size

    async def submit(
        self,
        instructions: Sequence[Instruction],
        signer: Keypair,
        *,
        market_id: str,
        operation: str = "crank",
    ) -> str:
        """Send ``instructions`` signed by ``signer`` and return the signature.

        Raises:
            TransactionTooLargeError: payload exceeds the wire limit (not retried)
            DuplicateSubmissionError: same market and operation inside the replay window
            TransactionError: every attempt failed
        """
        if not instructions:
            raise ValueError("No instructions to submit")

        self.check_size(instructions, signer)

        key = (market_id, operation)
        try:
            self.replay_guard.reserve(key)
        except DuplicateSubmissionError:
            self._stats["duplicates"] += 1
            logger.info(f"Skipping duplicate {operation} for {market_id[:8]}...")
            raise

        try:
            signature = await self._send_with_retry(instructions, signer, market_id)
        except BaseException:
            self.replay_guard.release(key)
            self._stats["failed"] += 1
            raise

        self.replay_guard.record(key, signature)
        self._stats["submitted"] += 1
        return signature

    async def _send_with_retry(self, instructions: Sequence[Instruction], signer: Keypair, market_id: str) -> str:
        last_error: Optional[BaseException] = None
        for attempt in range(self.max_attempts):
            try:
                return await self._attempt(instructions, signer)
            except PermanentError:
                raise
            except Exception as e:
                last_error = e
                if attempt + 1 >= self.max_attempts:
                    break
                delay = backoff_delay(attempt, self.base_delay, self.max_delay)
                self._stats["retries"] += 1
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_attempts} for {market_id[:8]}... failed "
                    f"({type(e).__name__}: {e}), retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

        raise TransactionError(
            f"Transaction failed after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
            last_error=last_error,
        )

    async def _attempt(self, instructions: Sequence[Instruction], signer: Keypair) -> str:
        client = self._get_client()
        try:
            blockhash_resp = await asyncio.wait_for(
                client.get_latest_blockhash(commitment=Confirmed), timeout=self.rpc_timeout
            )
            tx = self.build_transaction(instructions, signer, blockhash_resp.value.blockhash)
            raw = bytes(tx)
            if len(raw) > MAX_TRANSACTION_SIZE:
                raise TransactionTooLargeError(len(raw), MAX_TRANSACTION_SIZE)

            opts = TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
            send_resp = await asyncio.wait_for(client.send_raw_transaction(raw, opts=opts), timeout=self.rpc_timeout)
            signature = send_resp.value
            logger.debug(f"Transaction sent: {str(signature)[:16]}...")
        except KeeperError:
            raise
        except asyncio.TimeoutError as e:
            raise RpcTimeoutError(f"RPC call timed out after {self.rpc_timeout}s") from e
        except Exception as e:
            raise RpcError(f"{type(e).__name__}: {e}") from e

        await self._confirm(client, signature)
        return str(signature)

    async def _confirm(self, client: AsyncClient, signature: Signature) -> None:
        """Poll signature status until confirmed, failed or out of time."""
        polls = max(1, math.ceil(self.confirm_timeout / self.poll_interval))
        for _ in range(polls):
            try:
                resp = await asyncio.wait_for(client.get_signature_statuses([signature]), timeout=self.rpc_timeout)
                value = resp.value[0] if resp.value else None
            except asyncio.TimeoutError:
                value = None
            except Exception as exc:
                logger.debug(f"Status check failed: {exc}")
                value = None

            if value is not None:
                if value.err:
                    raise ConfirmationError(f"Transaction failed on-chain: {value.err}", signature=str(signature))
                if value.confirmation_status in _CONFIRMED_STATUSES:
                    return
            await self._sleep(self.poll_interval)

        raise ConfirmationError(
            f"Transaction not confirmed within {self.confirm_timeout}s", signature=str(signature)
        )

    def get_stats(self) -> Dict[str, int]:
        stats = dict(self._stats)
        stats["replay_window"] = len(self.replay_guard)
        return stats
