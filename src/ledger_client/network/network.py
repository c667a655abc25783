"""
Health-aware set of consensus nodes for one ledger.

A Network is shared by every in-flight request of a client. Node health is
guarded per node; the node list itself is an immutable tuple swapped
atomically when the address book changes, so readers never take a lock.
"""

from __future__ import annotations
import itertools
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from ..runtime.ids import AccountId, LedgerId
from .node import (
    DEFAULT_MAX_NODE_BACKOFF,
    DEFAULT_MIN_NODE_BACKOFF,
    Node,
    NodeAddress,
)


logger = logging.getLogger(__name__)


@dataclass
class NodeAddressEntry:
    """Address book entry for one node account."""
    account_id: AccountId
    addresses: List[NodeAddress] = field(default_factory=list)
    cert_hash: Optional[str] = None
    node_id: Optional[int] = None
    description: Optional[str] = None


def select_node(node_groups: Sequence[Sequence[Node]], start: int = 0) -> Tuple[int, Node]:
    """
    Pick the node for the next attempt of a request.

    Scans the nodes of each account from start (wrapping) for a healthy one.
    If every node is backing off, the one that will be readmitted soonest is
    used instead.

    Args:
        node_groups: Resolved nodes of each node account of the request
        start: Cursor of the request into node_groups

    Returns:
        Index into node_groups and the chosen node

    Raises:
        ValueError: If no account has a node
    """
    count = len(node_groups)
    best: Optional[Tuple[int, Node]] = None

    for offset in range(count):
        index = (start + offset) % count
        for node in node_groups[index]:
            if node.is_healthy():
                return index, node
            if best is None or node.get_remaining_backoff() < best[1].get_remaining_backoff():
                best = (index, node)

    if best is None:
        raise ValueError("none of the requested node account ids are in the network")

    logger.debug(
        f"All nodes are backing off, using {best[1].account_id} "
        f"with {best[1].get_remaining_backoff():.2f}s remaining"
    )
    return best


class Network:
    """
    Ordered collection of nodes with node selection and backoff bookkeeping.

    Holds no per-call state: the node cursor of a call lives with the call.
    """

    def __init__(
        self,
        network: Optional[Mapping[str, Union[AccountId, str]]] = None,
        ledger_id: Optional[LedgerId] = None,
        shard: int = 0,
        realm: int = 0,
        transport_security: bool = False,
        verify_certificates: bool = True,
        min_node_backoff: float = DEFAULT_MIN_NODE_BACKOFF,
        max_node_backoff: float = DEFAULT_MAX_NODE_BACKOFF,
        max_nodes_per_request: Optional[int] = None,
    ):
        """
        Initialize a network.

        Args:
            network: Mapping of "host:port" to node account id
            ledger_id: Ledger these nodes belong to
            shard: Shard scope of the network
            realm: Realm scope of the network
            transport_security: Use TLS ports and channels
            verify_certificates: Check node certificates against the address book
            min_node_backoff: Minimum node backoff in seconds
            max_node_backoff: Maximum node backoff in seconds
            max_nodes_per_request: Nodes tried per request (default: a third of the network)
        """
        if min_node_backoff > max_node_backoff:
            raise ValueError("min_node_backoff must be less than or equal to max_node_backoff")

        self.ledger_id = ledger_id
        self.shard = shard
        self.realm = realm
        self._transport_security = transport_security
        self._verify_certificates = verify_certificates
        self._min_node_backoff = min_node_backoff
        self._max_node_backoff = max_node_backoff
        self.max_nodes_per_request = max_nodes_per_request

        self._lock = threading.Lock()
        self._nodes: Tuple[Node, ...] = ()
        self._by_account: Dict[AccountId, Tuple[Node, ...]] = {}
        self._retired: List[Node] = []
        self._address_book: Dict[AccountId, NodeAddressEntry] = {}
        self._index = itertools.count()

        if network:
            self.set_network(network)

    @classmethod
    def for_network(cls, network: Mapping[str, Union[AccountId, str]], **kwargs) -> Network:
        """Build a network from a mapping of "host:port" to node account id."""
        return cls(network, **kwargs)

    # =========================================================================
    # Node set
    # =========================================================================

    @property
    def nodes(self) -> Tuple[Node, ...]:
        return self._nodes

    @property
    def node_account_ids(self) -> List[AccountId]:
        return list(self._by_account)

    @property
    def address_book(self) -> Dict[AccountId, NodeAddressEntry]:
        return dict(self._address_book)

    def __len__(self) -> int:
        return len(self._by_account)

    def get_network(self) -> Dict[str, AccountId]:
        """Current mapping of "host:port" to node account id."""
        return {str(node.address): node.account_id for node in self._nodes}

    def get_nodes(self, account_id: AccountId) -> Tuple[Node, ...]:
        return self._by_account.get(account_id, ())

    def set_network(self, network: Mapping[str, Union[AccountId, str]]) -> Network:
        """
        Replace the node set.

        Nodes present in both the old and new set keep their channel and
        health. Removed nodes are retired and closed when the network closes.
        """
        if not network:
            raise ValueError("network must contain at least one node")

        with self._lock:
            current = {(node.account_id, node.address): node for node in self._nodes}
            nodes: List[Node] = []
            seen = set()

            for address_str, account_id in network.items():
                account_id = AccountId._validate(account_id)
                address = self._apply_security(NodeAddress.from_string(address_str))
                if (account_id, address) in seen:
                    continue
                seen.add((account_id, address))

                entry = self._address_book.get(account_id)
                if entry is not None and entry.cert_hash:
                    address = address.with_cert_hash(entry.cert_hash)

                node = current.pop((account_id, address), None)
                if node is None:
                    node = Node(
                        account_id,
                        address,
                        self._min_node_backoff,
                        self._max_node_backoff,
                        self._verify_certificates,
                    )
                else:
                    node.set_address(address)
                nodes.append(node)

            self._retired.extend(current.values())
            self._publish(nodes)

        logger.info(f"Network set to {len(nodes)} nodes")
        return self

    def set_address_book(self, entries: Iterable[NodeAddressEntry]) -> Network:
        """
        Attach address book entries to the nodes.

        An entry without a certificate hash keeps the hash already known.
        """
        with self._lock:
            book: Dict[AccountId, NodeAddressEntry] = {}
            for entry in entries:
                previous = self._address_book.get(entry.account_id)
                if not entry.cert_hash and previous is not None:
                    entry.cert_hash = previous.cert_hash
                book[entry.account_id] = entry
            self._address_book = book

            for node in self._nodes:
                entry = book.get(node.account_id)
                if entry is not None and entry.cert_hash:
                    node.set_address(node.address.with_cert_hash(entry.cert_hash))

        return self

    def set_transport_security(self, transport_security: bool) -> Network:
        """Switch every node to its TLS or plaintext port, keeping node health."""
        with self._lock:
            if transport_security == self._transport_security:
                return self
            self._transport_security = transport_security

            nodes = []
            for node in self._nodes:
                nodes.append(Node.from_node(node, self._apply_security(node.address)))
                self._retired.append(node)
            self._publish(nodes)

        return self

    @property
    def transport_security(self) -> bool:
        return self._transport_security

    def _apply_security(self, address: NodeAddress) -> NodeAddress:
        return address.to_secure() if self._transport_security else address.to_insecure()

    def _publish(self, nodes: List[Node]) -> None:
        by_account: Dict[AccountId, List[Node]] = {}
        for node in nodes:
            by_account.setdefault(node.account_id, []).append(node)
        self._nodes = tuple(nodes)
        self._by_account = {key: tuple(value) for key, value in by_account.items()}

    # =========================================================================
    # Backoff
    # =========================================================================

    @property
    def min_node_backoff(self) -> float:
        return self._min_node_backoff

    @min_node_backoff.setter
    def min_node_backoff(self, value: float) -> None:
        if value > self._max_node_backoff:
            raise ValueError("min_node_backoff must be less than or equal to max_node_backoff")
        self._min_node_backoff = value
        for node in self._nodes:
            node.min_backoff = value

    @property
    def max_node_backoff(self) -> float:
        return self._max_node_backoff

    @max_node_backoff.setter
    def max_node_backoff(self, value: float) -> None:
        if value < self._min_node_backoff:
            raise ValueError("max_node_backoff must be greater than or equal to min_node_backoff")
        self._max_node_backoff = value
        for node in self._nodes:
            node.max_backoff = value

    def increase_backoff(self, node: Node) -> None:
        """
        Record a bad outcome from a node.

        The node may already be retired from this network. Its health is
        still updated for the calls that resolved it before the swap.
        """
        node.increase_backoff()

    def decrease_backoff(self, node: Node) -> None:
        node.decrease_backoff()

    # =========================================================================
    # Selection
    # =========================================================================

    def get_number_of_nodes_for_request(self) -> int:
        return self._nodes_for_request(len(self._by_account))

    def _nodes_for_request(self, count: int) -> int:
        if self.max_nodes_per_request is not None:
            return min(self.max_nodes_per_request, count)
        return math.ceil(count / 3)

    def get_node_account_ids_for_execute(self) -> List[AccountId]:
        """
        Choose the node accounts a new request will use.

        Accounts are taken in network order starting at a rotating index,
        healthy accounts first.
        """
        return [account_id for account_id, _ in self.get_nodes_for_execute()]

    def get_nodes_for_execute(self) -> List[Tuple[AccountId, Tuple[Node, ...]]]:
        """
        Choose the node accounts of a new request together with their nodes.

        Reads one snapshot of the node set, so a concurrent set_network never
        yields an account without nodes.
        """
        by_account = self._by_account
        account_ids = list(by_account)
        if not account_ids:
            raise ValueError("network has no nodes")

        start = next(self._index) % len(account_ids)
        rotated = account_ids[start:] + account_ids[:start]

        def healthy(account_id):
            return any(node.is_healthy() for node in by_account[account_id])

        def remaining(account_id):
            return min(node.get_remaining_backoff() for node in by_account[account_id])

        chosen = [a for a in rotated if healthy(a)]
        chosen += sorted((a for a in rotated if not healthy(a)), key=remaining)
        return [(a, by_account[a]) for a in chosen[:self._nodes_for_request(len(account_ids))]]

    def resolve_nodes(self, node_account_ids: Sequence[AccountId]) -> List[Tuple[Node, ...]]:
        """
        Resolve node accounts to their current nodes.

        The result is aligned with node_account_ids; accounts missing from
        the network resolve to an empty tuple. A call keeps the resolved
        nodes for its whole lifetime, so replacing the node set later does
        not affect it.
        """
        by_account = self._by_account
        return [by_account.get(account_id, ()) for account_id in node_account_ids]

    def get_node_for_execute(self, node_account_ids: Sequence[AccountId], start: int = 0) -> Tuple[int, Node]:
        """
        Select the node for the next attempt of a request.

        Args:
            node_account_ids: Node accounts of the request
            start: Cursor of the request into node_account_ids

        Returns:
            Index into node_account_ids and the chosen node

        Raises:
            ValueError: If no account maps to a node
        """
        return select_node(self.resolve_nodes(node_account_ids), start)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        """Close every channel, including those of retired nodes."""
        with self._lock:
            nodes = list(self._nodes) + self._retired
            self._retired = []

        for node in nodes:
            node.close()

        logger.info("Network closed")
