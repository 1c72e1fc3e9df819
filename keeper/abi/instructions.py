"""Instruction encoders for the market program.

Crank (tag 5):       u8 tag | u16 caller_idx | u8 allow_panic
Push price (tag 17): u8 tag | u64 price_e6 | i64 timestamp

All integers little-endian.
"""

from __future__ import annotations

import struct
from typing import List, Union

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.sysvar import CLOCK

TAG_KEEPER_CRANK = 5
TAG_PUSH_ORACLE_PRICE = 17

# caller_idx sentinel for a crank that anyone may send
PERMISSIONLESS_CALLER = 0xFFFF

U64_MAX = 2 ** 64 - 1
I64_MIN = -(2 ** 63)
I64_MAX = 2 ** 63 - 1

IntLike = Union[int, str]


def _to_int(value: IntLike, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValueError(f"{name} must be an integer or decimal string, got {value!r}")


def _as_pubkey(value: Union[str, Pubkey]) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    return Pubkey.from_string(value)


def encode_keeper_crank(caller_idx: int = PERMISSIONLESS_CALLER, allow_panic: bool = False) -> bytes:
    if not 0 <= caller_idx <= 0xFFFF:
        raise ValueError(f"caller_idx out of range: {caller_idx}")
    return struct.pack("<BHB", TAG_KEEPER_CRANK, caller_idx, 1 if allow_panic else 0)


def encode_push_oracle_price(price_e6: IntLike, timestamp: IntLike) -> bytes:
    price = _to_int(price_e6, "price_e6")
    ts = _to_int(timestamp, "timestamp")
    if not 0 <= price <= U64_MAX:
        raise ValueError(f"price_e6 out of u64 range: {price}")
    if not I64_MIN <= ts <= I64_MAX:
        raise ValueError(f"timestamp out of i64 range: {ts}")
    return struct.pack("<BQq", TAG_PUSH_ORACLE_PRICE, price, ts)


def build_keeper_crank_instruction(
    program_id: Union[str, Pubkey],
    payer: Union[str, Pubkey],
    slab: Union[str, Pubkey],
    oracle: Union[str, Pubkey],
    caller_idx: int = PERMISSIONLESS_CALLER,
    allow_panic: bool = False,
) -> Instruction:
    """Crank accounts: payer, slab, clock sysvar, oracle.

    Admin-oracle markets pass the slab itself as the oracle account.
    """
    accounts = [
        AccountMeta(_as_pubkey(payer), is_signer=True, is_writable=True),
        AccountMeta(_as_pubkey(slab), is_signer=False, is_writable=True),
        AccountMeta(CLOCK, is_signer=False, is_writable=False),
        AccountMeta(_as_pubkey(oracle), is_signer=False, is_writable=False),
    ]
    return Instruction(_as_pubkey(program_id), encode_keeper_crank(caller_idx, allow_panic), accounts)


def build_push_oracle_price_instruction(
    program_id: Union[str, Pubkey],
    authority: Union[str, Pubkey],
    slab: Union[str, Pubkey],
    price_e6: IntLike,
    timestamp: IntLike,
) -> Instruction:
    accounts = [
        AccountMeta(_as_pubkey(authority), is_signer=True, is_writable=True),
        AccountMeta(_as_pubkey(slab), is_signer=False, is_writable=True),
    ]
    return Instruction(_as_pubkey(program_id), encode_push_oracle_price(price_e6, timestamp), accounts)


def compute_budget_instructions(unit_price: int, unit_limit: int) -> List[Instruction]:
    """Priority fee (micro-lamports per unit) and compute unit cap."""
    instructions = []
    if unit_price > 0:
        instructions.append(set_compute_unit_price(unit_price))
    if unit_limit > 0:
        instructions.append(set_compute_unit_limit(unit_limit))
    return instructions
