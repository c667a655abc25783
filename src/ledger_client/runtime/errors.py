"""
Ledger Client Error Model

This module provides the error handling framework for the ledger client,
covering the terminal failures of request execution and the transport
conditions the retry loop classifies.
"""

from __future__ import annotations
import re
from typing import Optional, Dict, Any
from enum import IntEnum

import grpc


class ErrorCode(IntEnum):
    """Client error codes."""

    UNKNOWN = 1
    ILLEGAL_STATE = 2

    # Request errors (100-199)
    PRECHECK_FAILED = 100
    REQUEST_INVALID = 101
    BAD_ENTITY_ID = 102

    # Execution errors (200-299)
    MAX_ATTEMPTS_EXCEEDED = 200
    TIMEOUT = 201

    # Transport errors (300-399)
    CONNECTION_FAILED = 300
    TRANSPORT = 301
    MIRROR_NODE = 302


class LedgerError(Exception):
    """
    Base class for all ledger client errors.

    Provides structured error information shared by every failure the client
    surfaces to callers.
    """

    def __init__(self, message: str, code: ErrorCode = ErrorCode.UNKNOWN,
                 details: Optional[Dict[str, Any]] = None, cause: Optional[BaseException] = None):
        """
        Initialize a ledger error.

        Args:
            message: Error message
            code: Error code
            details: Additional error details
            cause: Underlying exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        parts = [f"[{self.code.name}] {self.message}"]
        if self.details:
            parts.append(f"Details: {self.details}")
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation."""
        result: Dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        if self.cause:
            result["cause"] = str(self.cause)
        return result


class PrecheckStatusError(LedgerError):
    """The ledger rejected the request during precheck; never retried."""

    def __init__(self, status, transaction_id: Any = None,
                 details: Optional[Dict[str, Any]] = None):
        name = getattr(status, "name", str(status))
        if transaction_id is None:
            message = f"Request failed precheck with status {name}"
        else:
            message = f"Transaction {transaction_id} failed precheck with status {name}"
        super().__init__(message, ErrorCode.PRECHECK_FAILED, details)
        self.status = status
        self.transaction_id = transaction_id


class RequestValidationError(LedgerError):
    """The request could not be built or failed local validation."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.REQUEST_INVALID,
                 details: Optional[Dict[str, Any]] = None, cause: Optional[BaseException] = None):
        super().__init__(message, code, details, cause)


class BadEntityIdError(RequestValidationError):
    """Entity id checksum does not match the client's ledger."""

    def __init__(self, entity_id: str, present_checksum: str, expected_checksum: str):
        super().__init__(
            f"Entity ID {entity_id}-{present_checksum} was incorrect",
            ErrorCode.BAD_ENTITY_ID,
            {"present_checksum": present_checksum, "expected_checksum": expected_checksum},
        )
        self.entity_id = entity_id
        self.present_checksum = present_checksum
        self.expected_checksum = expected_checksum


class MaxAttemptsExceededError(LedgerError):
    """Every allowed attempt was used without a definitive answer."""

    def __init__(self, last_error: Optional[BaseException] = None, attempts: Optional[int] = None):
        message = "exceeded maximum attempts for request"
        if last_error is not None:
            message += f" with last exception being {last_error}"
        details = {"attempts": attempts} if attempts is not None else None
        super().__init__(message, ErrorCode.MAX_ATTEMPTS_EXCEEDED, details, last_error)
        self.last_error = last_error
        self.attempts = attempts


class ExecutionTimeoutError(LedgerError, TimeoutError):
    """The overall deadline of a call elapsed."""

    def __init__(self, message: str = "request timed out", status: Any = None,
                 cause: Optional[BaseException] = None):
        details = {"last_status": getattr(status, "name", status)} if status is not None else None
        super().__init__(message, ErrorCode.TIMEOUT, details, cause)
        self.status = status


class ConnectionFailedError(LedgerError):
    """A node could not be reached within the attempt deadline."""

    def __init__(self, message: str, node_account_id: Any = None, cause: Optional[BaseException] = None):
        details = {"node": str(node_account_id)} if node_account_id is not None else None
        super().__init__(message, ErrorCode.CONNECTION_FAILED, details, cause)
        self.node_account_id = node_account_id


class TransportError(LedgerError):
    """Non-retryable transport failure."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, ErrorCode.TRANSPORT, None, cause)


class MirrorNodeError(LedgerError):
    """Mirror node request failed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, ErrorCode.MIRROR_NODE, details, cause)


RST_STREAM = re.compile(r".*\brst[^0-9a-zA-Z]stream\b.*", re.IGNORECASE | re.DOTALL)

RETRYABLE_STATUS_CODES = (
    grpc.StatusCode.UNAVAILABLE,
    grpc.StatusCode.RESOURCE_EXHAUSTED,
    grpc.StatusCode.DEADLINE_EXCEEDED,
)


def is_retryable_transport_error(error: Optional[BaseException]) -> bool:
    """
    Check if a transport error should be retried on another node.

    Args:
        error: Exception raised by the unary call

    Returns:
        True if the node was unreachable, overloaded or reset the stream
    """
    if error is None:
        return False

    if isinstance(error, ConnectionFailedError):
        return True

    if isinstance(error, grpc.RpcError) and hasattr(error, "code"):
        code = error.code()
        if code in RETRYABLE_STATUS_CODES:
            return True
        if code == grpc.StatusCode.INTERNAL:
            description = error.details() if hasattr(error, "details") else None
            return bool(description) and RST_STREAM.match(description) is not None

    return False


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
]
