"""
Run the keeper.

Usage:
    python -m keeper
    python -m keeper --once

Environment variables required:
    PROGRAM_ID      - market program id (or PROGRAM_IDS, comma separated)
    CRANK_KEYPAIR   - base58 secret key, JSON byte array or keypair file path
    one of KEEPER_MARKETS_FILE, KEEPER_MARKETS_API_URL, KEEPER_MARKETS

Optional:
    SOLANA_RPC_URL              - RPC endpoint (default: devnet)
    KEEPER_CRANK_INTERVAL       - seconds between cycles (default: 30)
    KEEPER_HEALTH_PORT          - status server port (default: 8081)
    KEEPER_STREAM_PRICE_OFFSET  - enables the account price stream
"""

import argparse
import asyncio
import json
import logging
import sys

from keeper.config import load_config
from keeper.errors import ConfigurationError
from keeper.logging_config import setup_logging
from keeper.service import KeeperService

logger = logging.getLogger("keeper")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="keeper", description="Crank keeper for perpetual markets")
    parser.add_argument("--env-file", help="Path to a .env file")
    parser.add_argument("--once", action="store_true", help="Run one discovery and crank cycle, then exit")
    parser.add_argument("--log-level", help="Override KEEPER_LOG_LEVEL")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--no-stream", action="store_true", help="Disable the account price stream")
    parser.add_argument("--no-health", action="store_true", help="Disable the status HTTP server")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.env_file, strict=True)
    except ConfigurationError as e:
        setup_logging("INFO")
        logger.error(f"Invalid configuration: {e}")
        return 2

    if args.no_stream:
        config.stream.enabled = False
    if args.no_health or args.once:
        config.health.enabled = False

    setup_logging(
        args.log_level or config.log_level,
        json_format=args.json_logs or config.json_logs,
        log_file=config.log_file or None,
    )

    try:
        service = KeeperService(config)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    if args.once:
        result = asyncio.run(service.run_once())
        print(json.dumps(result))
        return 0 if result["failed"] == 0 else 1

    asyncio.run(service.run_forever())
    return 0


if __name__ == "__main__":
    sys.exit(main())
