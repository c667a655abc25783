"""
One try of a request against one node.

An Attempt is created by the retry loop, run on the worker pool and thrown
away. Running it never raises for retryable transport conditions; those come
back as a connection failure result so the loop can rotate nodes.
"""

from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..network.node import Node
from ..runtime.errors import (
    ConnectionFailedError,
    TransportError,
    is_retryable_transport_error,
)
from ..runtime.ids import AccountId
from .request import RpcMethod


logger = logging.getLogger(__name__)


def attempt_delay(attempt: int, min_backoff: float, max_backoff: float) -> float:
    """Delay applied after a retryable outcome of the 1-based attempt."""
    return min(min_backoff * 2 ** (attempt - 1), max_backoff)


@dataclass
class AttemptResult:
    """What came back from a node, before classification."""
    response: Any = None
    error: Optional[BaseException] = None
    connection_failure: bool = False
    latency: float = 0.0


def grpc_unary_call(attempt: Attempt) -> Any:
    """Send the attempt's request over the node's gRPC channel."""
    method = attempt.method
    stub = attempt.node.get_channel(attempt.timeout).unary_unary(
        method.name,
        request_serializer=method.request_serializer,
        response_deserializer=method.response_deserializer,
    )
    return stub(attempt.request, timeout=attempt.timeout)


class Attempt:
    """
    Binds one attempt number to one node.

    The deadline is the earlier of the overall deadline of the request and
    the per-call gRPC deadline counted from creation.
    """

    def __init__(
        self,
        number: int,
        node: Node,
        node_index: int,
        method: RpcMethod,
        request: Any,
        overall_deadline: float,
        grpc_deadline: float,
        delay: float,
        unary_call: Callable[[Attempt], Any] = grpc_unary_call,
    ):
        self.number = number
        self.node = node
        self.node_index = node_index
        self.method = method
        self.request = request
        self.delay = delay
        self.started_at = time.monotonic()
        self.deadline = min(overall_deadline, self.started_at + grpc_deadline)
        self._unary_call = unary_call

    @property
    def node_account_id(self) -> AccountId:
        return self.node.account_id

    @property
    def timeout(self) -> float:
        """Seconds left before this attempt's deadline."""
        return max(0.0, self.deadline - time.monotonic())

    def call(self) -> AttemptResult:
        """
        Connect to the node and perform the unary call.

        Returns:
            The response, a connection failure, or a non-retryable
            TransportError in the error field
        """
        try:
            if self.node.channel_failed_to_connect(self.timeout):
                return self._connection_failure(
                    ConnectionFailedError(
                        f"Failed to connect to node {self.node_account_id}", self.node_account_id
                    )
                )
            response = self._unary_call(self)
        except Exception as e:
            if is_retryable_transport_error(e):
                return self._connection_failure(e)
            return AttemptResult(
                error=TransportError(f"Call to node {self.node_account_id} failed", e),
                latency=self.latency,
            )

        logger.debug(
            f"Received response from node {self.node_account_id} "
            f"during attempt #{self.number} in {self.latency * 1000:.1f} ms"
        )
        return AttemptResult(response=response, latency=self.latency)

    def _connection_failure(self, error: BaseException) -> AttemptResult:
        logger.debug(f"Connection failure with node {self.node_account_id} during attempt #{self.number}: {error}")
        return AttemptResult(error=error, connection_failure=True, latency=self.latency)

    @property
    def latency(self) -> float:
        return time.monotonic() - self.started_at

    def __repr__(self) -> str:
        return f"Attempt(#{self.number}, node={self.node_account_id})"
