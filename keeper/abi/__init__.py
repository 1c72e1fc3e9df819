from keeper.abi.instructions import (
    PERMISSIONLESS_CALLER,
    TAG_KEEPER_CRANK,
    TAG_PUSH_ORACLE_PRICE,
    build_keeper_crank_instruction,
    build_push_oracle_price_instruction,
    compute_budget_instructions,
    encode_keeper_crank,
    encode_push_oracle_price,
)

__all__ = [
    "PERMISSIONLESS_CALLER",
    "TAG_KEEPER_CRANK",
    "TAG_PUSH_ORACLE_PRICE",
    "build_keeper_crank_instruction",
    "build_push_oracle_price_instruction",
    "compute_budget_instructions",
    "encode_keeper_crank",
    "encode_push_oracle_price",
]
