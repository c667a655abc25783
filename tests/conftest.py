"""
Test bootstrap:
- Make tests/helpers importable as `helpers`
- Keep gRPC off the network: channels are mocks and always ready
- Provide small clients built on a fast backoff configuration
"""
import pathlib
import sys
from unittest.mock import MagicMock, patch

import pytest

TESTS_DIR = pathlib.Path(__file__).parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from helpers import network_map  # noqa: E402

from ledger_client import Client, ExecutorService  # noqa: E402


@pytest.fixture(autouse=True)
def offline_grpc():
    """Mock channel creation and readiness for every test."""
    ready = MagicMock()
    ready.result.return_value = None
    with patch("ledger_client.network.node.grpc.insecure_channel", side_effect=lambda *a, **kw: MagicMock()) as insecure, \
            patch("ledger_client.network.node.grpc.channel_ready_future", return_value=ready) as ready_future:
        yield {"insecure_channel": insecure, "channel_ready_future": ready_future}


@pytest.fixture
def executor():
    pool = ExecutorService(max_workers=2, thread_name_prefix="test-executor")
    yield pool
    pool.shutdown(wait=True, timeout=5)


@pytest.fixture
def make_client():
    """Factory for clients on an n-node network with millisecond backoffs."""
    clients = []

    def factory(node_count: int = 3, **settings):
        settings.setdefault("min_backoff", 0.001)
        settings.setdefault("max_backoff", 0.004)
        settings.setdefault("executor_threads", 2)
        settings.setdefault("network_update_period", None)
        client = Client.for_network(network_map(node_count), **settings)
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.close()


@pytest.fixture
def client(make_client):
    return make_client(3)
