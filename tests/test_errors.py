"""Tests for error types and classification."""

import asyncio

import aiohttp
import pytest

from keeper.errors import (
    ConfirmationError,
    DuplicateSubmissionError,
    ErrorCategory,
    MarketConfigError,
    PriceValidationError,
    RpcError,
    TransactionError,
    TransactionTooLargeError,
    classify_error,
    error_category,
    is_retryable,
)
from keeper.errors.exceptions import MAX_ERROR_MESSAGE_LENGTH, truncate_message


@pytest.mark.parametrize("error, category", [
    (RpcError("node down"), ErrorCategory.TRANSIENT),
    (ConfirmationError("not confirmed"), ErrorCategory.TRANSIENT),
    (asyncio.TimeoutError(), ErrorCategory.TRANSIENT),
    (aiohttp.ClientConnectionError("refused"), ErrorCategory.TRANSIENT),
    (TransactionTooLargeError(1300, 1232), ErrorCategory.DETERMINISTIC),
    (MarketConfigError("no oracle", market_id="m"), ErrorCategory.DETERMINISTIC),
    (PriceValidationError("bad", source="a", reason="non_positive"), ErrorCategory.VALIDATION),
    (DuplicateSubmissionError("m", "crank"), ErrorCategory.DUPLICATE),
    (RuntimeError("who knows"), ErrorCategory.UNKNOWN),
])
def test_classification_by_type(error, category):
    assert classify_error(error).category is category


def test_exhausted_retries_classified_by_last_error():
    error = TransactionError("gave up", attempts=3, last_error=RpcError("timeout"))
    classified = classify_error(error)

    assert classified.category is ErrorCategory.TRANSIENT
    assert classified.error_type == "RpcError"
    assert classified.message.startswith("gave up")


def test_message_text_is_not_inspected():
    # wording that looks permanent stays transient when the type says so
    assert classify_error(RpcError("custom program error: 0x1")).category is ErrorCategory.TRANSIENT


def test_retryable():
    assert is_retryable(RpcError("x"))
    assert not is_retryable(TransactionTooLargeError(2000, 1232))
    assert not is_retryable(DuplicateSubmissionError("m", "crank"))


def test_error_category_helper():
    assert error_category(None) is None
    assert error_category(MarketConfigError("x")) == "deterministic"


def test_long_messages_truncated():
    classified = classify_error(RpcError("x" * 1000))
    assert len(classified.message) <= MAX_ERROR_MESSAGE_LENGTH
    assert truncate_message("short") == "short"


def test_to_dict():
    error = TransactionTooLargeError(1300, 1232)
    assert error.to_dict()["details"] == {"size": 1300, "limit": 1232}
    assert classify_error(error).to_dict()["retryable"] is False
