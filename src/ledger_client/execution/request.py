"""
Request kinds: the contract between the retry engine and concrete requests.

The engine never knows what it is sending. A request kind tells it which
gRPC method to call, how to build the wire request for a node, how to
classify the wire response and how to turn it into a result.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Union

from ..runtime.errors import PrecheckStatusError
from ..runtime.ids import AccountId
from ..runtime.status import Status
from .state import ExecutionState, default_execution_state


@dataclass(frozen=True)
class RpcMethod:
    """
    gRPC method descriptor.

    Without serializers, requests and responses travel as raw bytes.
    """
    name: str
    request_serializer: Optional[Callable[[Any], bytes]] = None
    response_deserializer: Optional[Callable[[bytes], Any]] = None


class RequestKind(ABC):
    """Base class for everything the engine can execute."""

    @property
    @abstractmethod
    def method(self) -> RpcMethod:
        """gRPC method the request is sent to."""

    @abstractmethod
    def build_request(self, node_account_id: AccountId) -> Any:
        """
        Build the wire request addressed to one node.

        Raises:
            RequestValidationError: If the request is invalid
        """

    @abstractmethod
    def classify(self, response: Any) -> Tuple[ExecutionState, Union[Status, int]]:
        """Map a wire response to an execution state and its precheck status."""

    def map_result(self, response: Any, node_account_id: AccountId, request: Any) -> Any:
        """Turn a successful wire response into the caller's result."""
        return response

    def validate_checksums(self, client) -> None:
        """Validate entity id checksums before the first attempt."""

    def map_status_error(self, status: Union[Status, int], response: Any) -> Exception:
        return PrecheckStatusError(status, self.transaction_id)

    @property
    def transaction_id(self) -> Any:
        return None


class CallbackRequestKind(RequestKind):
    """
    Request kind assembled from plain callables.

    Either classify or status_of must be given. With status_of only, the
    status is classified by default_execution_state.
    """

    def __init__(
        self,
        method: Union[RpcMethod, str],
        build_request: Callable[[AccountId], Any],
        classify: Optional[Callable[[Any], Tuple[ExecutionState, Union[Status, int]]]] = None,
        status_of: Optional[Callable[[Any], Union[Status, int]]] = None,
        map_result: Optional[Callable[[Any, AccountId, Any], Any]] = None,
        validate_checksums: Optional[Callable[[Any], None]] = None,
        transaction_id: Any = None,
    ):
        if classify is None and status_of is None:
            raise ValueError("either classify or status_of is required")

        self._method = RpcMethod(method) if isinstance(method, str) else method
        self._build_request = build_request
        self._classify = classify
        self._status_of = status_of
        self._map_result = map_result
        self._validate_checksums = validate_checksums
        self._transaction_id = transaction_id

    @property
    def method(self) -> RpcMethod:
        return self._method

    def build_request(self, node_account_id: AccountId) -> Any:
        return self._build_request(node_account_id)

    def classify(self, response: Any) -> Tuple[ExecutionState, Union[Status, int]]:
        if self._classify is not None:
            return self._classify(response)
        status = Status.from_code(self._status_of(response))
        return default_execution_state(status), status

    def map_result(self, response: Any, node_account_id: AccountId, request: Any) -> Any:
        if self._map_result is None:
            return response
        return self._map_result(response, node_account_id, request)

    def validate_checksums(self, client) -> None:
        if self._validate_checksums is not None:
            self._validate_checksums(client)

    @property
    def transaction_id(self) -> Any:
        return self._transaction_id
