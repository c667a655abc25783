"""
Tests for single attempts.
"""

import time
from unittest.mock import Mock, patch

import grpc
import pytest

from helpers import METHOD, FakeRpcError

from ledger_client import AccountId, ConnectionFailedError, TransportError
from ledger_client.execution.attempt import Attempt, attempt_delay, grpc_unary_call
from ledger_client.execution.request import RpcMethod
from ledger_client.network.node import Node, NodeAddress


@pytest.fixture
def node():
    return Node(AccountId(0, 0, 3), NodeAddress("127.0.0.1", 50211))


def make_attempt(node, unary_call, overall=60.0, grpc_deadline=10.0, method=METHOD):
    return Attempt(1, node, 0, method, b"request", time.monotonic() + overall, grpc_deadline, 0.25, unary_call)


class TestAttemptDelay:
    def test_delay_sequence(self):
        """0.25 s doubling per attempt up to 8 s, then constant."""
        delays = [attempt_delay(n, 0.25, 8.0) for n in range(1, 10)]
        assert delays == [0.25, 0.5, 1.0, 2.0, 4.0, 8.0, 8.0, 8.0, 8.0]

    def test_zero_minimum(self):
        assert attempt_delay(5, 0.0, 8.0) == 0.0


class TestAttemptDeadline:
    def test_grpc_deadline_bounds_the_call(self, node):
        attempt = make_attempt(node, Mock(), overall=60.0, grpc_deadline=10.0)
        assert 9.0 < attempt.timeout <= 10.0

    def test_overall_deadline_bounds_the_call(self, node):
        attempt = make_attempt(node, Mock(), overall=2.0, grpc_deadline=10.0)
        assert 1.0 < attempt.timeout <= 2.0

    def test_timeout_never_negative(self, node):
        attempt = make_attempt(node, Mock(), overall=-1.0)
        assert attempt.timeout == 0.0


class TestAttemptCall:
    """Test how call outcomes are reported."""

    def test_response(self, node):
        unary_call = Mock(return_value="response")
        attempt = make_attempt(node, unary_call)

        result = attempt.call()

        assert result.response == "response"
        assert result.error is None
        assert not result.connection_failure
        unary_call.assert_called_once_with(attempt)

    def test_connect_timeout_is_connection_failure(self, node, offline_grpc):
        offline_grpc["channel_ready_future"].return_value.result.side_effect = grpc.FutureTimeoutError()
        unary_call = Mock()

        result = make_attempt(node, unary_call).call()

        assert result.connection_failure
        assert isinstance(result.error, ConnectionFailedError)
        unary_call.assert_not_called()

    def test_certificate_fetch_bounded_by_attempt_deadline(self):
        node = Node(AccountId(0, 0, 3), NodeAddress("127.0.0.1", 50212))
        error = ConnectionFailedError("Failed to fetch certificate from 127.0.0.1:50212")
        unary_call = Mock()

        with patch.object(Node, "_fetch_certificate", side_effect=error) as fetch:
            result = make_attempt(node, unary_call, overall=60.0, grpc_deadline=0.5).call()

        assert result.connection_failure
        assert result.error is error
        unary_call.assert_not_called()
        timeout = fetch.call_args[0][1]
        assert 0 < timeout <= 0.5

    @pytest.mark.parametrize("error", [
        FakeRpcError(grpc.StatusCode.UNAVAILABLE),
        FakeRpcError(grpc.StatusCode.RESOURCE_EXHAUSTED),
        FakeRpcError(grpc.StatusCode.DEADLINE_EXCEEDED),
        FakeRpcError(grpc.StatusCode.INTERNAL, "Received Rst Stream"),
        FakeRpcError(grpc.StatusCode.INTERNAL, "stream terminated by RST_STREAM with error code: 2"),
        ConnectionFailedError("certificate mismatch"),
    ])
    def test_retryable_errors(self, node, error):
        result = make_attempt(node, Mock(side_effect=error)).call()

        assert result.connection_failure
        assert result.error is error

    @pytest.mark.parametrize("error", [
        FakeRpcError(grpc.StatusCode.INVALID_ARGUMENT),
        FakeRpcError(grpc.StatusCode.INTERNAL, "something else"),
        RuntimeError("bug"),
    ])
    def test_other_errors_are_transport_errors(self, node, error):
        result = make_attempt(node, Mock(side_effect=error)).call()

        assert not result.connection_failure
        assert isinstance(result.error, TransportError)
        assert result.error.cause is error

    def test_latency_recorded(self, node):
        result = make_attempt(node, Mock(return_value="r")).call()
        assert result.latency >= 0.0


class TestGrpcUnaryCall:
    def test_uses_node_channel(self, node):
        serializer = Mock()
        deserializer = Mock()
        method = RpcMethod("/proto.CryptoService/cryptoTransfer", serializer, deserializer)
        attempt = make_attempt(node, grpc_unary_call, method=method)
        channel = node.get_channel()

        response = attempt.call().response

        channel.unary_unary.assert_called_once_with(
            "/proto.CryptoService/cryptoTransfer",
            request_serializer=serializer,
            response_deserializer=deserializer,
        )
        stub = channel.unary_unary.return_value
        assert stub.call_args[0] == (b"request",)
        assert 0 < stub.call_args[1]["timeout"] <= 10.0
        assert response is stub.return_value
