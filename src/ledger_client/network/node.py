"""
Consensus node endpoint: address, lazily created gRPC channel and backoff clock.
"""

from __future__ import annotations
import hashlib
import logging
import socket
import ssl
import threading
import time
from typing import Any, Callable, List, Optional

import grpc

from ..runtime.errors import ConnectionFailedError
from ..runtime.ids import AccountId


logger = logging.getLogger(__name__)

PORT_NODE_PLAIN = 50211
PORT_NODE_TLS = 50212
PORT_MIRROR_TLS = 443

DEFAULT_MIN_NODE_BACKOFF = 8.0
DEFAULT_MAX_NODE_BACKOFF = 3600.0

CHANNEL_OPTIONS = [
    ("grpc.keepalive_time_ms", 10_000),
    ("grpc.max_receive_message_length", 16 * 1024 * 1024),
]


class NodeAddress:
    """Host and port of a node, with the pinned certificate hash if known."""

    def __init__(self, host: str, port: int, cert_hash: Optional[str] = None):
        if not host:
            raise ValueError("NodeAddress host cannot be empty")
        if not 0 < port < 65536:
            raise ValueError(f"Invalid port: {port}")
        self.host = host
        self.port = port
        self.cert_hash = cert_hash.lower() if cert_hash else None

    @classmethod
    def from_string(cls, value: str) -> NodeAddress:
        """Parse "host:port"."""
        host, sep, port = value.strip().rpartition(":")
        if not sep or not host:
            raise ValueError(f"Failed to parse node address '{value}', expected host:port")
        try:
            return cls(host, int(port))
        except ValueError as e:
            raise ValueError(f"Failed to parse node address '{value}': {e}") from e

    @property
    def is_transport_secure(self) -> bool:
        return self.port in (PORT_NODE_TLS, PORT_MIRROR_TLS)

    def to_secure(self) -> NodeAddress:
        if self.port == PORT_NODE_PLAIN:
            return NodeAddress(self.host, PORT_NODE_TLS, self.cert_hash)
        return self

    def to_insecure(self) -> NodeAddress:
        if self.port == PORT_NODE_TLS:
            return NodeAddress(self.host, PORT_NODE_PLAIN, self.cert_hash)
        return self

    def with_cert_hash(self, cert_hash: Optional[str]) -> NodeAddress:
        return NodeAddress(self.host, self.port, cert_hash)

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    def __repr__(self) -> str:
        return f"NodeAddress('{self}')"

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, NodeAddress):
            return (self.host, self.port) == (other.host, other.port)
        if isinstance(other, str):
            return str(self) == other
        return False

    def __hash__(self) -> int:
        return hash((self.host, self.port))


def certificate_hash(pem: str) -> str:
    """Hex SHA-384 of a PEM-encoded certificate."""
    return hashlib.sha384(pem.encode("utf-8")).hexdigest()


class Node:
    """
    One consensus node.

    Health is an exponential backoff clock guarded by a per-node lock:
    failures double the backoff up to the maximum and push the readmission
    deadline out, successes halve it down to the minimum.
    """

    def __init__(
        self,
        account_id: AccountId,
        address: NodeAddress,
        min_backoff: float = DEFAULT_MIN_NODE_BACKOFF,
        max_backoff: float = DEFAULT_MAX_NODE_BACKOFF,
        verify_certificates: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize a node.

        Args:
            account_id: Node account id requests are addressed to
            address: Network address of the node
            min_backoff: Minimum node backoff in seconds
            max_backoff: Maximum node backoff in seconds
            verify_certificates: Check the server certificate against the pinned hash
            clock: Monotonic clock, replaceable in tests
        """
        if min_backoff > max_backoff:
            raise ValueError("min_backoff must be less than or equal to max_backoff")

        self.account_id = account_id
        self.address = address
        self.verify_certificates = verify_certificates
        self._clock = clock
        self._lock = threading.Lock()

        self._min_backoff = min_backoff
        self._max_backoff = max_backoff
        self._current_backoff = min_backoff
        self._backoff_deadline = clock()

        self.use_count = 0
        self.bad_status_count = 0
        self.last_used: Optional[float] = None

        self._channel: Optional[grpc.Channel] = None
        self._stale_channels: List[grpc.Channel] = []
        self._has_connected = False

    @classmethod
    def from_node(cls, node: Node, address: NodeAddress) -> Node:
        """Copy a node onto a new address, keeping its health state."""
        copy = cls(
            node.account_id,
            address,
            node._min_backoff,
            node._max_backoff,
            node.verify_certificates,
            node._clock,
        )
        with node._lock:
            copy._current_backoff = node._current_backoff
            copy._backoff_deadline = node._backoff_deadline
            copy.use_count = node.use_count
            copy.bad_status_count = node.bad_status_count
            copy.last_used = node.last_used
        return copy

    # =========================================================================
    # Backoff
    # =========================================================================

    @property
    def min_backoff(self) -> float:
        return self._min_backoff

    @min_backoff.setter
    def min_backoff(self, value: float) -> None:
        with self._lock:
            if value > self._max_backoff:
                raise ValueError("min_backoff must be less than or equal to max_backoff")
            self._min_backoff = value
            self._current_backoff = max(self._current_backoff, value)

    @property
    def max_backoff(self) -> float:
        return self._max_backoff

    @max_backoff.setter
    def max_backoff(self, value: float) -> None:
        with self._lock:
            if value < self._min_backoff:
                raise ValueError("max_backoff must be greater than or equal to min_backoff")
            self._max_backoff = value
            self._current_backoff = min(self._current_backoff, value)

    @property
    def current_backoff(self) -> float:
        return self._current_backoff

    def increase_backoff(self) -> None:
        """Double the backoff and start a new backoff window."""
        with self._lock:
            self.bad_status_count += 1
            self._current_backoff = min(self._current_backoff * 2, self._max_backoff)
            self._backoff_deadline = self._clock() + self._current_backoff
            backoff = self._current_backoff

        logger.debug(f"Node {self.account_id} backoff increased to {backoff:.2f}s")

    def decrease_backoff(self) -> None:
        """Halve the backoff after a usable response."""
        with self._lock:
            self._current_backoff = max(self._current_backoff / 2, self._min_backoff)

    def get_remaining_backoff(self) -> float:
        """Seconds until the node leaves its backoff window."""
        return max(0.0, self._backoff_deadline - self._clock())

    def is_healthy(self) -> bool:
        return self._backoff_deadline <= self._clock()

    def in_use(self) -> None:
        with self._lock:
            self.use_count += 1
            self.last_used = self._clock()

    # =========================================================================
    # Channel
    # =========================================================================

    def get_channel(self, timeout: Optional[float] = None) -> grpc.Channel:
        """
        Return the node's channel, creating it on first use.

        The TLS certificate is fetched without holding the node lock; the lock
        is only taken to publish the channel. When two threads race, the first
        published channel wins and the other is closed.

        Args:
            timeout: Bound in seconds on fetching the server certificate

        Raises:
            ConnectionFailedError: If the certificate cannot be fetched in time
                or does not match the pinned hash
        """
        channel = self._channel
        if channel is not None:
            return channel

        address = self.address
        created = self._create_channel(address, timeout)
        with self._lock:
            if self._channel is None and self.address.cert_hash == address.cert_hash:
                self._channel = created
                return created
            existing = self._channel

        created.close()
        if existing is None:
            # pinned hash changed while the certificate was being checked
            return self.get_channel(timeout)
        return existing

    def _create_channel(self, address: NodeAddress, timeout: Optional[float]) -> grpc.Channel:
        target = str(address)
        if not address.is_transport_secure:
            return grpc.insecure_channel(target, options=CHANNEL_OPTIONS)

        pem = self._fetch_certificate(address, timeout)
        if self.verify_certificates and address.cert_hash:
            actual = certificate_hash(pem)
            if actual != address.cert_hash:
                raise ConnectionFailedError(
                    f"Failed to confirm the server's certificate from a known address book. "
                    f"Expected hash {address.cert_hash}, received {actual}",
                    self.account_id,
                )

        credentials = grpc.ssl_channel_credentials(root_certificates=pem.encode("utf-8"))
        return grpc.secure_channel(target, credentials, options=CHANNEL_OPTIONS)

    def _fetch_certificate(self, address: NodeAddress, timeout: Optional[float]) -> str:
        # the certificate is pinned by hash, not validated against a CA
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        try:
            with socket.create_connection((address.host, address.port), timeout=timeout) as sock:
                with context.wrap_socket(sock, server_hostname=address.host) as tls:
                    der = tls.getpeercert(binary_form=True)
        except OSError as e:
            raise ConnectionFailedError(
                f"Failed to fetch certificate from {address}", self.account_id, e
            ) from e
        return ssl.DER_cert_to_PEM_cert(der)

    def set_address(self, address: NodeAddress) -> None:
        """
        Move the node to an equal address carrying a different pinned hash.

        A channel checked against the old hash is dropped so the next call
        verifies the new one. It is closed with the node, since attempts may
        still be using it.
        """
        with self._lock:
            if address.cert_hash != self.address.cert_hash and self._channel is not None:
                self._stale_channels.append(self._channel)
                self._channel = None
                self._has_connected = False
            self.address = address

    def channel_failed_to_connect(self, timeout: float) -> bool:
        """
        Wait up to timeout seconds for the channel to become ready.

        A successful connect is remembered, later calls return immediately.

        Returns:
            True if the channel could not connect in time
        """
        if self._has_connected:
            return False

        started = time.monotonic()
        channel = self.get_channel(timeout)
        remaining = max(0.0, timeout - (time.monotonic() - started))
        try:
            grpc.channel_ready_future(channel).result(timeout=remaining)
        except grpc.FutureTimeoutError:
            return True

        self._has_connected = True
        return False

    def close(self) -> None:
        """Close the channel if one was created, and any dropped by set_address."""
        with self._lock:
            channels = self._stale_channels
            if self._channel is not None:
                channels.append(self._channel)
            self._channel = None
            self._stale_channels = []
            self._has_connected = False
        for channel in channels:
            channel.close()

    def __repr__(self) -> str:
        return f"Node({self.account_id}, {self.address})"
