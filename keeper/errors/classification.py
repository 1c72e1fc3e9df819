"""Error classification for retry and reporting decisions."""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import aiohttp

from keeper.errors.exceptions import (
    DuplicateSubmissionError,
    PermanentError,
    PriceValidationError,
    TransactionError,
    TransientError,
    truncate_message,
)


class ErrorCategory(str, Enum):
    """How a failure should be handled."""
    TRANSIENT = "transient"
    DETERMINISTIC = "deterministic"
    VALIDATION = "validation"
    DUPLICATE = "duplicate"
    UNKNOWN = "unknown"


@dataclass
class ClassifiedError:
    """A failure with its category and a report-safe message."""
    category: ErrorCategory
    message: str
    error_type: str
    retryable: bool

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "message": self.message,
            "error_type": self.error_type,
            "retryable": self.retryable,
        }


def _unwrap(error: BaseException) -> BaseException:
    # Retry exhaustion keeps the last underlying failure.
    if isinstance(error, TransactionError) and error.last_error is not None:
        return error.last_error
    return error


def classify_error(error: BaseException) -> ClassifiedError:
    """Classify an exception by type. Message text is never inspected."""
    inner = _unwrap(error)
    message = truncate_message(str(error) or type(error).__name__)

    if isinstance(inner, PermanentError):
        category = ErrorCategory.DETERMINISTIC
    elif isinstance(inner, PriceValidationError):
        category = ErrorCategory.VALIDATION
    elif isinstance(inner, DuplicateSubmissionError):
        category = ErrorCategory.DUPLICATE
    elif isinstance(inner, (TransientError, asyncio.TimeoutError, aiohttp.ClientError, ConnectionError)):
        category = ErrorCategory.TRANSIENT
    else:
        category = ErrorCategory.UNKNOWN

    return ClassifiedError(
        category=category,
        message=message,
        error_type=type(inner).__name__,
        retryable=category in (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN),
    )


def is_retryable(error: BaseException) -> bool:
    """True when another attempt may succeed."""
    return classify_error(error).retryable


def error_category(error: Optional[BaseException]) -> Optional[str]:
    if error is None:
        return None
    return classify_error(error).category.value
