"""Keeper exception hierarchy.

Errors split into two families that decide retry behaviour:

- TransientError: may resolve on retry (RPC timeouts, congestion, dropped
  confirmations). Retried with bounded attempts.
- PermanentError: will not resolve on retry (oversize transactions, bad
  market configuration). Surfaced immediately.
"""
from typing import Any, Dict, Optional


MAX_ERROR_MESSAGE_LENGTH = 200


def truncate_message(message: str, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    """Clip a raw error message for the reporting surface."""
    message = str(message)
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."


class KeeperError(Exception):
    """Base exception for all keeper errors."""
    code: str = "KPR_001"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigurationError(KeeperError):
    """Configuration error."""
    code = "CFG_001"


class TransientError(KeeperError):
    """Errors that may resolve on retry."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **details):
        super().__init__(message, details)
        self.retry_after = retry_after


class PermanentError(KeeperError):
    """Errors that won't resolve on retry."""
    pass


class RpcError(TransientError):
    """RPC node returned an error or the send failed."""
    code = "RPC_001"


class RpcTimeoutError(RpcError):
    """RPC call exceeded its deadline."""
    code = "RPC_002"


class ConfirmationError(TransientError):
    """Transaction was sent but not confirmed."""
    code = "TX_003"

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message, signature=signature)
        self.signature = signature


class TransactionError(KeeperError):
    """Submission failed after exhausting retries."""
    code = "TX_001"

    def __init__(self, message: str, attempts: int = 0, last_error: Optional[BaseException] = None):
        super().__init__(message, {"attempts": attempts})
        self.attempts = attempts
        self.last_error = last_error


class TransactionTooLargeError(PermanentError):
    """Serialized transaction exceeds the wire size limit."""
    code = "TX_002"

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Transaction is {size} bytes, limit is {limit}",
            {"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit


class DuplicateSubmissionError(KeeperError):
    """Same market and operation were submitted within the replay window."""
    code = "TX_004"

    def __init__(self, market_id: str, operation: str, signature: Optional[str] = None):
        super().__init__(
            f"{operation} for {market_id} already submitted",
            {"market_id": market_id, "operation": operation, "signature": signature},
        )
        self.market_id = market_id
        self.operation = operation
        self.signature = signature


class MarketConfigError(PermanentError):
    """Market config is unusable (bad address, missing oracle account)."""
    code = "MKT_001"

    def __init__(self, message: str, market_id: Optional[str] = None):
        super().__init__(message, {"market_id": market_id})
        self.market_id = market_id


class PriceValidationError(KeeperError):
    """A price source answered with data that failed validation."""
    code = "PRC_001"

    def __init__(self, message: str, source: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(message, {"source": source, "reason": reason})
        self.source = source
        self.reason = reason or message


class PriceSourceError(TransientError):
    """A price source could not be reached."""
    code = "PRC_002"


class DiscoveryError(TransientError):
    """Market listing could not be fetched."""
    code = "MKT_002"
