"""Crank signer loading.

Accepted forms, tried in order:
- JSON byte array (``[12, 34, ...]``), as written by ``solana-keygen``
- path to a file holding such an array
- base58-encoded 64-byte secret key
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import base58
from solders.keypair import Keypair

from keeper.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _from_bytes(raw: bytes, origin: str) -> Keypair:
    if len(raw) != 64:
        raise ConfigurationError(f"Keypair from {origin} must be 64 bytes, got {len(raw)}")
    return Keypair.from_bytes(raw)


def _from_json_array(text: str, origin: str) -> Keypair:
    try:
        values = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Keypair from {origin} is not valid JSON: {e}") from e
    if not isinstance(values, list) or not all(isinstance(v, int) and 0 <= v < 256 for v in values):
        raise ConfigurationError(f"Keypair from {origin} must be a JSON array of bytes")
    return _from_bytes(bytes(values), origin)


def load_keypair(value: str) -> Keypair:
    """Load a keypair from a JSON array, a keypair file path or base58."""
    value = (value or "").strip()
    if not value:
        raise ConfigurationError("CRANK_KEYPAIR is not set")

    if value.startswith("["):
        return _from_json_array(value, "CRANK_KEYPAIR")

    path = Path(value).expanduser()
    if path.suffix == ".json" or path.exists():
        if not path.exists():
            raise ConfigurationError(f"Keypair file not found: {path}")
        keypair = _from_json_array(path.read_text(encoding="utf-8"), str(path))
        logger.info(f"Loaded crank keypair {str(keypair.pubkey())[:8]}... from {path}")
        return keypair

    try:
        raw = base58.b58decode(value)
    except ValueError as e:
        raise ConfigurationError(f"CRANK_KEYPAIR is not valid base58: {e}") from e
    return _from_bytes(raw, "base58")
