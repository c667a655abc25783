"""
Request execution engine.

Provides the execution state classification, the request kind contract,
single attempts and the retry loop with its sync and async entry points.
"""

from .state import ExecutionState, default_execution_state
from .request import RpcMethod, RequestKind, CallbackRequestKind
from .attempt import Attempt, AttemptResult, attempt_delay, grpc_unary_call
from .executable import Executable

__all__ = [
    "ExecutionState",
    "default_execution_state",
    "RpcMethod",
    "RequestKind",
    "CallbackRequestKind",
    "Attempt",
    "AttemptResult",
    "attempt_delay",
    "grpc_unary_call",
    "Executable",
]
