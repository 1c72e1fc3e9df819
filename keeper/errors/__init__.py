"""Keeper error taxonomy."""
from keeper.errors.classification import (
    ClassifiedError,
    ErrorCategory,
    classify_error,
    error_category,
    is_retryable,
)
from keeper.errors.exceptions import (
    ConfigurationError,
    ConfirmationError,
    DiscoveryError,
    DuplicateSubmissionError,
    KeeperError,
    MarketConfigError,
    PermanentError,
    PriceSourceError,
    PriceValidationError,
    RpcError,
    RpcTimeoutError,
    TransactionError,
    TransactionTooLargeError,
    TransientError,
    truncate_message,
)

__all__ = [
    "ClassifiedError",
    "ConfigurationError",
    "ConfirmationError",
    "DiscoveryError",
    "DuplicateSubmissionError",
    "ErrorCategory",
    "KeeperError",
    "MarketConfigError",
    "PermanentError",
    "PriceSourceError",
    "PriceValidationError",
    "RpcError",
    "RpcTimeoutError",
    "TransactionError",
    "TransactionTooLargeError",
    "TransientError",
    "classify_error",
    "error_category",
    "is_retryable",
    "truncate_message",
]
