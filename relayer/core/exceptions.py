"""
Custom exception classes for the relayer.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class RelayerException(Exception):
    """Base exception class for the market vault relayer."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(RelayerException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class ChainError(RelayerException):
    """Raised when a ledger RPC request fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CHAIN_ERROR", details)


class ConnectionLostError(ChainError):
    """Raised when the ledger connection dropped during a run."""

    def __init__(self, reason: str):
        super().__init__(f"Ledger connection lost: {reason}", {"reason": reason})
        self.code = "CONNECTION_LOST"


class TransactionFailedError(RelayerException):
    """Raised when a submitted transaction reaches a failure status."""

    def __init__(self, description: str, status: Any):
        super().__init__(
            f"{description} failed with status {status}",
            "TRANSACTION_FAILED",
            {"description": description, "status": str(status)}
        )
        self.status = status


class TransactionTimeoutError(RelayerException):
    """Raised when no resolving status arrives in time."""

    def __init__(self, description: str, timeout: float):
        super().__init__(
            f"{description} not included after {timeout}s",
            "TRANSACTION_TIMEOUT",
            {"description": description, "timeout": timeout}
        )


class CorruptStateError(RelayerException):
    """Raised when persisted relayer state cannot be parsed."""

    def __init__(self, path: str, reason: str):
        super().__init__(
            f"Corrupt state file {path}: {reason}",
            "CORRUPT_STATE",
            {"path": path, "reason": reason}
        )


class CursorRegressionError(RelayerException):
    """Raised when a save would move a cursor backwards."""

    def __init__(self, field: str, current: int, requested: int):
        super().__init__(
            f"Refusing to move {field} from {current} back to {requested}",
            "CURSOR_REGRESSION",
            {"field": field, "current": current, "requested": requested}
        )


class RunCancelledError(RelayerException):
    """Raised between units of work once a stop was requested."""

    def __init__(self, reason: str):
        super().__init__(f"Run cancelled: {reason}", "RUN_CANCELLED", {"reason": reason})


class TransactionUnknownError(RelayerException):
    """Raised when the status stream breaks after the transaction was sent."""

    def __init__(self, description: str, reason: str):
        super().__init__(
            f"{description} outcome unknown: {reason}",
            "TRANSACTION_UNKNOWN",
            {"description": description, "reason": reason}
        )
