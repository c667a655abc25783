"""
Ledger Client - request execution core

Drives serialized requests against a rotating, health-tracked set of
consensus nodes with retries, node backoff and deadlines.
"""

from .client import Client, ClientConfig
from .mirror import MirrorNodeClient
from .network import ExecutorService, Network, Node, NodeAddress, NodeAddressEntry
from .execution import (
    CallbackRequestKind,
    Executable,
    ExecutionState,
    RequestKind,
    RpcMethod,
    default_execution_state,
)
from .runtime.errors import *
from .runtime.status import Status
from .runtime.ids import AccountId, LedgerId, entity_checksum

__version__ = "0.1.0"
__all__ = [
    "Client",
    "ClientConfig",
    "MirrorNodeClient",
    "ExecutorService",
    "Network",
    "Node",
    "NodeAddress",
    "NodeAddressEntry",
    "CallbackRequestKind",
    "Executable",
    "ExecutionState",
    "RequestKind",
    "RpcMethod",
    "default_execution_state",
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
    "Status",
    "AccountId",
    "LedgerId",
    "entity_checksum",
]
