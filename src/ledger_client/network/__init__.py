"""
Node network components for the ledger client.

Provides the shared worker pool, node endpoints with backoff clocks and the
health-aware network that selects nodes for each request.
"""

from .executor import ExecutorService
from .node import Node, NodeAddress, certificate_hash
from .network import Network, NodeAddressEntry, select_node

__all__ = [
    "ExecutorService",
    "Node",
    "NodeAddress",
    "certificate_hash",
    "Network",
    "NodeAddressEntry",
    "select_node",
]
