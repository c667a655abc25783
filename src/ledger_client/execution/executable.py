"""
Retry engine.

An Executable drives one request kind through attempts against the
client's network until it gets a result, a precheck rejection, runs out of
attempts or runs out of time. The loop is the same for both entry points;
only the waiting differs. execute() blocks the caller while execute_async()
awaits the worker pool and sleeps with asyncio.
"""

from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Set, Tuple, Union

from ..network.network import select_node
from ..network.node import Node
from ..runtime.errors import (
    ExecutionTimeoutError,
    MaxAttemptsExceededError,
    PrecheckStatusError,
    RequestValidationError,
)
from ..runtime.ids import AccountId
from ..runtime.status import Status
from .attempt import Attempt, AttemptResult, attempt_delay, grpc_unary_call
from .request import RequestKind
from .state import ExecutionState


logger = logging.getLogger(__name__)


@dataclass
class _CallState:
    """Per-call bookkeeping. Never shared between calls."""
    node_account_ids: List[AccountId]
    nodes: List[Tuple[Node, ...]]
    deadline: float
    attempt: int = 1
    node_index: int = 0
    contacted: Set[AccountId] = field(default_factory=set)
    last_error: Optional[BaseException] = None
    last_status: Any = None
    done: bool = False
    result: Any = None

    @property
    def attempted_all_nodes(self) -> bool:
        return len(self.contacted) >= len(self.node_account_ids)

    def advance(self, index: int) -> None:
        self.node_index = (index + 1) % len(self.node_account_ids)


class Executable:
    """
    Executes a RequestKind with retries, node rotation and deadlines.

    Settings left unset fall back to the client's configuration.
    """

    def __init__(
        self,
        kind: RequestKind,
        node_account_ids: Optional[Sequence[Union[AccountId, str]]] = None,
        max_attempts: Optional[int] = None,
        min_backoff: Optional[float] = None,
        max_backoff: Optional[float] = None,
        grpc_deadline: Optional[float] = None,
        request_listener: Optional[Callable[[Any], Any]] = None,
        response_listener: Optional[Callable[[Any], Any]] = None,
        logger: Optional[logging.Logger] = None,
        unary_call: Callable[[Attempt], Any] = grpc_unary_call,
    ):
        """
        Initialize an executable.

        Args:
            kind: Request kind to execute
            node_account_ids: Restrict the request to these node accounts
            max_attempts: Attempt budget of a call
            min_backoff: Delay after the first retryable outcome, in seconds
            max_backoff: Upper bound on the delay between attempts, in seconds
            grpc_deadline: Upper bound on a single call, in seconds
            request_listener: Called with each wire request before it is sent
            response_listener: Called with each wire response once received
            logger: Logger for this executable
            unary_call: Performs the call of an attempt
        """
        self.kind = kind
        self._node_account_ids: List[AccountId] = []
        self._max_attempts: Optional[int] = None
        self._min_backoff: Optional[float] = None
        self._max_backoff: Optional[float] = None
        self._grpc_deadline: Optional[float] = None
        self._logger = logger
        self.unary_call = unary_call
        self.request_listener = request_listener or self._default_request_listener
        self.response_listener = response_listener or self._default_response_listener

        if node_account_ids is not None:
            self.node_account_ids = node_account_ids
        if max_attempts is not None:
            self.max_attempts = max_attempts
        if max_backoff is not None:
            self.max_backoff = max_backoff
        if min_backoff is not None:
            self.min_backoff = min_backoff
        if grpc_deadline is not None:
            self.grpc_deadline = grpc_deadline

    # =========================================================================
    # Settings
    # =========================================================================

    @property
    def node_account_ids(self) -> List[AccountId]:
        return list(self._node_account_ids)

    @node_account_ids.setter
    def node_account_ids(self, value: Sequence[Union[AccountId, str]]) -> None:
        ids = [AccountId._validate(v) for v in value]
        if not ids:
            raise ValueError("node_account_ids cannot be empty")
        self._node_account_ids = ids

    @property
    def max_attempts(self) -> Optional[int]:
        return self._max_attempts

    @max_attempts.setter
    def max_attempts(self, value: int) -> None:
        if value <= 0:
            raise ValueError("max_attempts must be greater than 0")
        self._max_attempts = value

    @property
    def min_backoff(self) -> Optional[float]:
        return self._min_backoff

    @min_backoff.setter
    def min_backoff(self, value: float) -> None:
        if value < 0:
            raise ValueError("min_backoff must be non-negative")
        if self._max_backoff is not None and value > self._max_backoff:
            raise ValueError("min_backoff must be less than or equal to max_backoff")
        self._min_backoff = value

    @property
    def max_backoff(self) -> Optional[float]:
        return self._max_backoff

    @max_backoff.setter
    def max_backoff(self, value: float) -> None:
        if value < 0:
            raise ValueError("max_backoff must be non-negative")
        if self._min_backoff is not None and value < self._min_backoff:
            raise ValueError("max_backoff must be greater than or equal to min_backoff")
        self._max_backoff = value

    @property
    def grpc_deadline(self) -> Optional[float]:
        return self._grpc_deadline

    @grpc_deadline.setter
    def grpc_deadline(self, value: float) -> None:
        if value <= 0:
            raise ValueError("grpc_deadline must be greater than 0")
        self._grpc_deadline = value

    @property
    def logger(self) -> logging.Logger:
        return self._logger or logger

    def _setting(self, value, default):
        return default if value is None else value

    # =========================================================================
    # Entry points
    # =========================================================================

    def execute(self, client, timeout: Optional[float] = None) -> Any:
        """
        Execute the request, blocking the calling thread.

        Args:
            client: Client providing the network, worker pool and defaults
            timeout: Overall deadline in seconds (default: client request_timeout)

        Returns:
            The mapped result of the first successful attempt

        Raises:
            PrecheckStatusError: The request was rejected
            RequestValidationError: The request could not be built or validated
            MaxAttemptsExceededError: The attempt budget was used up
            ExecutionTimeoutError: The overall deadline elapsed
            TransportError: A non-retryable transport failure occurred
        """
        state = self._begin(client, timeout)
        while True:
            attempt = self._next_attempt(client, state)
            result = client.executor.submit(attempt.call).result()
            delay = self._handle_result(client, state, attempt, result)
            if state.done:
                return state.result
            if delay > 0:
                time.sleep(min(delay, max(0.0, state.deadline - time.monotonic())))

    async def execute_async(self, client, timeout: Optional[float] = None) -> Any:
        """
        Execute the request without blocking the event loop.

        Calls run on the client's worker pool; delays between attempts are
        asyncio sleeps and never hold a worker thread.
        """
        state = self._begin(client, timeout)
        loop = asyncio.get_running_loop()
        while True:
            attempt = self._next_attempt(client, state)
            result = await loop.run_in_executor(client.executor, attempt.call)
            delay = self._handle_result(client, state, attempt, result)
            if state.done:
                return state.result
            if delay > 0:
                await asyncio.sleep(min(delay, max(0.0, state.deadline - time.monotonic())))

    # =========================================================================
    # Loop steps
    # =========================================================================

    def _begin(self, client, timeout: Optional[float]) -> _CallState:
        if self._min_backoff is not None and self._max_backoff is None \
                and self._min_backoff > client.max_backoff:
            raise ValueError("min_backoff must be less than or equal to max_backoff")
        if self._max_backoff is not None and self._min_backoff is None \
                and self._max_backoff < client.min_backoff:
            raise ValueError("max_backoff must be greater than or equal to min_backoff")

        self.kind.validate_checksums(client)

        # nodes are resolved once, later address book updates leave the call alone
        if self._node_account_ids:
            requested = self._node_account_ids
            candidates = zip(requested, client.network.resolve_nodes(requested))
        else:
            candidates = client.network.get_nodes_for_execute()
            requested = [account_id for account_id, _ in candidates]

        node_account_ids: List[AccountId] = []
        nodes: List[Tuple[Node, ...]] = []
        for account_id, resolved in candidates:
            if resolved:
                node_account_ids.append(account_id)
                nodes.append(resolved)
            else:
                self.logger.warning(f"Node account {account_id} is not in the client's network, skipping it")

        if not nodes:
            raise RequestValidationError(
                "none of the requested node account ids are in the client's network",
                details={"node_account_ids": [str(a) for a in requested]},
            )

        timeout = client.request_timeout if timeout is None else timeout
        return _CallState(
            node_account_ids=node_account_ids,
            nodes=nodes,
            deadline=time.monotonic() + timeout,
        )

    def _next_attempt(self, client, state: _CallState) -> Attempt:
        if time.monotonic() >= state.deadline:
            raise ExecutionTimeoutError(status=state.last_status, cause=state.last_error)

        max_attempts = self._setting(self._max_attempts, client.max_attempts)
        if state.attempt > max_attempts:
            raise MaxAttemptsExceededError(state.last_error, state.attempt - 1)

        index, node = select_node(state.nodes, state.node_index)
        account_id = state.node_account_ids[index]

        try:
            request = self.kind.build_request(account_id)
        except RequestValidationError:
            raise
        except Exception as e:
            raise RequestValidationError(f"failed to build request: {e}", cause=e) from e

        request = self.request_listener(request)
        delay = attempt_delay(
            state.attempt,
            self._setting(self._min_backoff, client.min_backoff),
            self._setting(self._max_backoff, client.max_backoff),
        )

        node.in_use()
        state.contacted.add(account_id)
        self.logger.debug(f"Sending request to node {account_id} ({node.address}) during attempt #{state.attempt}")

        return Attempt(
            state.attempt,
            node,
            index,
            self.kind.method,
            request,
            state.deadline,
            self._setting(self._grpc_deadline, client.grpc_deadline),
            delay,
            self.unary_call,
        )

    def _handle_result(self, client, state: _CallState, attempt: Attempt, result: AttemptResult) -> float:
        """
        Apply the outcome of an attempt to the call and its node.

        Returns:
            Seconds to wait before the next attempt
        """
        node = attempt.node

        if result.connection_failure:
            client.network.increase_backoff(node)
            state.last_error = result.error
            state.advance(attempt.node_index)
            state.attempt += 1
            self.logger.warning(
                f"Retrying with another node after failing to reach node {attempt.node_account_id} "
                f"during attempt #{attempt.number}: {result.error}"
            )
            return 0.0

        if result.error is not None:
            raise result.error

        response = self.response_listener(result.response)
        execution_state, status = self.kind.classify(response)
        state.last_status = status
        self.logger.debug(
            f"Node {attempt.node_account_id} returned {getattr(status, 'name', status)} "
            f"({execution_state.value}) during attempt #{attempt.number}"
        )

        if status == Status.INVALID_NODE_ACCOUNT:
            # rotate first, then penalize the node the request was built for
            state.advance(attempt.node_index)
            client.network.increase_backoff(node)
            self.logger.warning(
                f"Node {attempt.node_account_id} reported INVALID_NODE_ACCOUNT, "
                f"updating the address book"
            )
            client.schedule_network_update()
        elif execution_state in (ExecutionState.SUCCESS, ExecutionState.REQUEST_ERROR):
            client.network.decrease_backoff(node)
        else:
            client.network.increase_backoff(node)

        if execution_state == ExecutionState.SUCCESS:
            state.result = self.kind.map_result(response, attempt.node_account_id, attempt.request)
            state.done = True
            return 0.0

        if execution_state == ExecutionState.REQUEST_ERROR:
            raise self.kind.map_status_error(status, response)

        state.last_error = PrecheckStatusError(status, self.kind.transaction_id)
        state.attempt += 1

        if status != Status.INVALID_NODE_ACCOUNT:
            state.advance(attempt.node_index)

        if execution_state == ExecutionState.SERVER_ERROR:
            if not state.attempted_all_nodes:
                return 0.0
            # every node of the call failed, back off and start a new pass
            state.contacted.clear()

        self.logger.warning(
            f"Retrying in {attempt.delay:.2f}s after {getattr(status, 'name', status)} "
            f"from node {attempt.node_account_id} during attempt #{attempt.number}"
        )
        return attempt.delay

    # =========================================================================
    # Listeners
    # =========================================================================

    def _default_request_listener(self, request: Any) -> Any:
        if isinstance(request, (bytes, bytearray)):
            self.logger.debug(f"Request bytes: {bytes(request).hex()}")
        return request

    def _default_response_listener(self, response: Any) -> Any:
        if isinstance(response, (bytes, bytearray)):
            self.logger.debug(f"Response bytes: {bytes(response).hex()}")
        return response

    def __repr__(self) -> str:
        return f"Executable({type(self.kind).__name__})"
