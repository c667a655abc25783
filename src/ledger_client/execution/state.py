"""
Execution outcome classification.

Every response classifier maps a node response to exactly one of these
states, and the retry loop decides what to do next from it alone.
"""

from enum import Enum
from typing import Union

from ..runtime.status import Status


class ExecutionState(Enum):
    """Outcome of one attempt."""
    SUCCESS = "success"
    RETRY = "retry"
    SERVER_ERROR = "server_error"
    REQUEST_ERROR = "request_error"


def default_execution_state(status: Union[Status, int]) -> ExecutionState:
    """
    Classify a precheck status the way most request kinds do.

    Args:
        status: Precheck status returned by the node

    Returns:
        SERVER_ERROR for node-specific failures, RETRY when the ledger is busy,
        SUCCESS for OK and REQUEST_ERROR for everything else
    """
    if status in (
        Status.PLATFORM_NOT_ACTIVE,
        Status.PLATFORM_TRANSACTION_NOT_CREATED,
        Status.INVALID_NODE_ACCOUNT,
    ):
        return ExecutionState.SERVER_ERROR
    if status == Status.BUSY:
        return ExecutionState.RETRY
    if status == Status.OK:
        return ExecutionState.SUCCESS
    return ExecutionState.REQUEST_ERROR
