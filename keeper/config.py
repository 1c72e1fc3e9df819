"""
Configuration for the keeper service.

Values come from the environment; a ``.env`` file is loaded first with
``override=False`` so real environment variables always win.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from keeper.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.devnet.solana.com"


@dataclass
class SchedulerConfig:
    crank_interval: float = 30.0
    inactive_crank_interval: float = 300.0
    discovery_interval: float = 300.0
    batch_size: int = 3
    batch_delay: float = 1.0
    failure_threshold: int = 10
    missing_discovery_limit: int = 3


@dataclass
class PriceConfig:
    api_timeout: float = 10.0
    cache_max_age_ms: int = 60_000
    # reject quotes that move further than this from the last good price
    max_deviation_pct: float = 30.0
    dexscreener_url: str = "https://api.dexscreener.com/latest/dex/tokens"
    geckoterminal_url: str = "https://api.geckoterminal.com/api/v2"


@dataclass
class SubmitterConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    replay_ttl: float = 10.0
    compute_unit_price: int = 50_000
    compute_unit_limit: int = 500_000
    confirm_timeout: float = 30.0
    rpc_timeout: float = 15.0
    commitment: str = "confirmed"


@dataclass
class StreamConfig:
    enabled: bool = True
    max_reconnect_attempts: int = 10
    base_delay: float = 1.0
    max_delay: float = 60.0
    history_size: int = 100
    heartbeat: float = 30.0
    # byte offset of the u64 price inside slab account data
    price_offset: Optional[int] = None


@dataclass
class HealthConfig:
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8081
    api_key: str = ""


@dataclass
class KeeperConfig:
    """Top-level keeper configuration."""

    rpc_url: str = DEFAULT_RPC_URL
    ws_url: str = ""
    program_ids: List[str] = field(default_factory=list)
    crank_keypair: str = ""

    # market discovery
    markets_file: str = ""
    markets_api_url: str = ""
    static_markets: List[str] = field(default_factory=list)

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    price: PriceConfig = field(default_factory=PriceConfig)
    submitter: SubmitterConfig = field(default_factory=SubmitterConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    health: HealthConfig = field(default_factory=HealthConfig)

    log_level: str = "INFO"
    json_logs: bool = False
    log_file: str = ""

    def __post_init__(self):
        """Set up derived values."""
        if self.rpc_url and not self.ws_url:
            self.ws_url = derive_ws_url(self.rpc_url)

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty when usable)."""
        problems = []
        if not self.rpc_url:
            problems.append("SOLANA_RPC_URL is not set")
        if not self.program_ids:
            problems.append("PROGRAM_ID is not set")
        if not self.crank_keypair:
            problems.append("CRANK_KEYPAIR is not set")
        if not (self.markets_file or self.markets_api_url or self.static_markets):
            problems.append("No market source configured (KEEPER_MARKETS_FILE, KEEPER_MARKETS_API_URL or KEEPER_MARKETS)")
        if self.scheduler.batch_size < 1:
            problems.append("KEEPER_BATCH_SIZE must be at least 1")
        if self.scheduler.crank_interval <= 0:
            problems.append("KEEPER_CRANK_INTERVAL must be positive")
        if self.submitter.replay_ttl >= self.scheduler.crank_interval:
            problems.append("KEEPER_REPLAY_TTL must be shorter than KEEPER_CRANK_INTERVAL")
        return problems


def derive_ws_url(rpc_url: str) -> str:
    if rpc_url.startswith("https://"):
        return "wss://" + rpc_url[len("https://"):]
    if rpc_url.startswith("http://"):
        return "ws://" + rpc_url[len("http://"):]
    return rpc_url


def _split_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_optional_int(name: str) -> Optional[int]:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    return _env_int(name, 0)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def load_config(env_file: Optional[str] = None, strict: bool = False) -> KeeperConfig:
    """Load configuration from environment variables.

    Args:
        env_file: Optional .env path. Defaults to ``.env`` in the working directory.
        strict: Raise ConfigurationError when required values are missing.
    """
    env_path = Path(env_file) if env_file else Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=False)
        logger.debug(f"Loaded environment from {env_path}")
    elif env_file:
        raise ConfigurationError(f"Env file not found: {env_file}")

    program_ids = _split_list(os.environ.get("PROGRAM_IDS", "") or os.environ.get("PROGRAM_ID", ""))

    config = KeeperConfig(
        rpc_url=os.environ.get("SOLANA_RPC_URL", DEFAULT_RPC_URL).strip(),
        ws_url=os.environ.get("SOLANA_WS_URL", "").strip(),
        program_ids=program_ids,
        crank_keypair=os.environ.get("CRANK_KEYPAIR", "").strip(),
        markets_file=os.environ.get("KEEPER_MARKETS_FILE", "").strip(),
        markets_api_url=os.environ.get("KEEPER_MARKETS_API_URL", "").strip(),
        static_markets=_split_list(os.environ.get("KEEPER_MARKETS", "")),
        scheduler=SchedulerConfig(
            crank_interval=_env_float("KEEPER_CRANK_INTERVAL", 30.0),
            inactive_crank_interval=_env_float("KEEPER_INACTIVE_CRANK_INTERVAL", 300.0),
            discovery_interval=_env_float("KEEPER_DISCOVERY_INTERVAL", 300.0),
            batch_size=_env_int("KEEPER_BATCH_SIZE", 3),
            batch_delay=_env_float("KEEPER_BATCH_DELAY", 1.0),
            failure_threshold=_env_int("KEEPER_FAILURE_THRESHOLD", 10),
        ),
        price=PriceConfig(
            api_timeout=_env_float("KEEPER_PRICE_TIMEOUT", 10.0),
            cache_max_age_ms=_env_int("KEEPER_PRICE_CACHE_MAX_AGE_MS", 60_000),
            max_deviation_pct=_env_float("KEEPER_PRICE_MAX_DEVIATION_PCT", 30.0),
        ),
        submitter=SubmitterConfig(
            max_attempts=_env_int("KEEPER_MAX_ATTEMPTS", 3),
            replay_ttl=_env_float("KEEPER_REPLAY_TTL", 10.0),
            compute_unit_price=_env_int("KEEPER_COMPUTE_UNIT_PRICE", 50_000),
            compute_unit_limit=_env_int("KEEPER_COMPUTE_UNIT_LIMIT", 500_000),
        ),
        stream=StreamConfig(
            enabled=_env_bool("KEEPER_STREAM_ENABLED", True),
            max_reconnect_attempts=_env_int("KEEPER_STREAM_MAX_RECONNECTS", 10),
            history_size=_env_int("KEEPER_PRICE_HISTORY_SIZE", 100),
            price_offset=_env_optional_int("KEEPER_STREAM_PRICE_OFFSET"),
        ),
        health=HealthConfig(
            enabled=_env_bool("KEEPER_HEALTH_ENABLED", True),
            host=os.environ.get("KEEPER_HEALTH_HOST", "0.0.0.0"),
            port=_env_int("KEEPER_HEALTH_PORT", 8081),
            api_key=os.environ.get("KEEPER_API_KEY", "").strip(),
        ),
        log_level=os.environ.get("KEEPER_LOG_LEVEL", "INFO").upper(),
        json_logs=_env_bool("KEEPER_JSON_LOGS", False),
        log_file=os.environ.get("KEEPER_LOG_FILE", "").strip(),
    )

    problems = config.validate()
    if problems:
        if strict:
            raise ConfigurationError("; ".join(problems), {"problems": problems})
        for problem in problems:
            logger.warning(f"Config: {problem}")

    return config
