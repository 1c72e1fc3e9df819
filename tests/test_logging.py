"""Tests for structured logging helpers."""

import json
import logging

from keeper.logging_config import (
    ConsoleFormatter,
    JSONFormatter,
    MarketContext,
    market_id_var,
    setup_logging,
)


def make_record(message: str = "cranked") -> logging.LogRecord:
    return logging.LogRecord("keeper.scheduler", logging.INFO, __file__, 10, message, None, None)


def test_json_formatter_includes_market_context():
    with MarketContext("SlabA111111", cycle_id="abc123"):
        line = JSONFormatter().format(make_record())

    data = json.loads(line)
    assert data["message"] == "cranked"
    assert data["market_id"] == "SlabA111111"
    assert data["cycle_id"] == "abc123"
    assert market_id_var.get() is None


def test_console_formatter_shortens_market_id():
    with MarketContext("SlabA1111111111"):
        line = ConsoleFormatter().format(make_record())

    assert "cranked" in line
    assert "market_id=SlabA111" in line
    assert "SlabA1111111111" not in line


def test_console_formatter_without_context():
    assert "[INFO]" in ConsoleFormatter().format(make_record())


def test_nested_contexts_restore():
    with MarketContext("outer"):
        with MarketContext("inner"):
            assert market_id_var.get() == "inner"
        assert market_id_var.get() == "outer"


def test_setup_logging_with_file(tmp_path):
    log_file = tmp_path / "logs" / "keeper.log"
    root = setup_logging("debug", log_file=log_file)
    try:
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 2
        logging.getLogger("keeper.test").info("hello")
        for handler in root.handlers:
            handler.flush()
        assert json.loads(log_file.read_text().splitlines()[-1])["message"] == "hello"
    finally:
        for handler in list(root.handlers):
            handler.close()
            root.removeHandler(handler)
        root.setLevel(logging.WARNING)
