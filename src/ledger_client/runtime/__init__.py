"""Runtime helpers for the ledger client: errors, status codes and entity ids"""

from .errors import (
    ErrorCode,
    LedgerError,
    PrecheckStatusError,
    RequestValidationError,
    BadEntityIdError,
    MaxAttemptsExceededError,
    ExecutionTimeoutError,
    ConnectionFailedError,
    TransportError,
    MirrorNodeError,
    is_retryable_transport_error,
)
from .status import Status
from .ids import AccountId, LedgerId, entity_checksum

__all__ = [
    "ErrorCode",
    "LedgerError",
    "PrecheckStatusError",
    "RequestValidationError",
    "BadEntityIdError",
    "MaxAttemptsExceededError",
    "ExecutionTimeoutError",
    "ConnectionFailedError",
    "TransportError",
    "MirrorNodeError",
    "is_retryable_transport_error",
    "Status",
    "AccountId",
    "LedgerId",
    "entity_checksum",
]
