"""
Structured logging for the keeper.

Provides:
- Per-market and per-cycle context carried through asyncio tasks
- JSON formatting for machine parsing
- Human-readable console output
- Optional rotating log file
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4


market_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "market_id", default=None
)
cycle_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "cycle_id", default=None
)


class MarketContext:
    """Tag every log line emitted inside the block with a market id."""

    def __init__(self, market_id: str, cycle_id: Optional[str] = None):
        self.market_id = market_id
        self.cycle_id = cycle_id
        self._tokens = []

    def __enter__(self):
        self._tokens.append((market_id_var, market_id_var.set(self.market_id)))
        if self.cycle_id:
            self._tokens.append((cycle_id_var, cycle_id_var.set(self.cycle_id)))
        return self

    def __exit__(self, *args):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()


def new_cycle_id() -> str:
    return uuid4().hex[:12]


def _context_fields() -> Dict[str, str]:
    fields = {}
    market_id = market_id_var.get()
    cycle_id = cycle_id_var.get()
    if market_id:
        fields["market_id"] = market_id
    if cycle_id:
        fields["cycle_id"] = cycle_id
    return fields


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, include_traceback: bool = True, extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.include_traceback = include_traceback
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        log_data.update(_context_fields())
        log_data.update(self.extra_fields)

        if record.exc_info and self.include_traceback:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter that appends the market context."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        parts = [f"[{timestamp}]", f"[{record.levelname}]", f"[{record.name}]", record.getMessage()]

        context = _context_fields()
        if context:
            market_id = context.get("market_id")
            if market_id:
                context["market_id"] = market_id[:8]
            parts.append("[" + ", ".join(f"{k}={v}" for k, v in context.items()) + "]")

        if record.exc_info:
            parts.append("\n" + "".join(traceback.format_exception(*record.exc_info)))

        return " ".join(parts)


def setup_logging(
    level: Union[str, int] = logging.INFO,
    json_format: bool = False,
    log_file: Union[str, Path, None] = None,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Configure root logging.

    Args:
        level: Logging level name or number
        json_format: Emit JSON lines on the console
        log_file: Optional file path; always written as JSON with rotation
        max_bytes: Max size of log file before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Configured root logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(JSONFormatter() if json_format else ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    # Quiet chatty client libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("solana").setLevel(logging.WARNING)

    return root_logger
