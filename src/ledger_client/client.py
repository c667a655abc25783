"""
Ledger client: configuration, shared network and worker pool.

A Client owns everything requests share: the node network, the worker pool
that performs node calls and the defaults every Executable falls back to.
Settings are read-only once the client is built.
"""

from __future__ import annotations
import logging
import threading
from concurrent.futures import Future
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, model_validator

from .mirror import MirrorNodeClient, to_network
from .network.executor import ExecutorService
from .network.network import Network, NodeAddressEntry
from .runtime.ids import AccountId, LedgerId


logger = logging.getLogger(__name__)


class ClientConfig(BaseModel):
    """
    Client configuration.

    Durations are in seconds.
    """
    network: Dict[str, AccountId] = Field(default_factory=dict, description="host:port to node account id")
    mirror_network: List[str] = Field(default_factory=list, description="Mirror node addresses")
    ledger_id: Optional[str] = Field(default=None, description="Network name or hex ledger id")
    shard: int = Field(default=0, ge=0)
    realm: int = Field(default=0, ge=0)

    request_timeout: float = Field(default=120.0, gt=0, description="Overall deadline of a request")
    grpc_deadline: float = Field(default=10.0, gt=0, description="Deadline of a single node call")
    min_backoff: float = Field(default=0.25, ge=0, description="First delay between attempts")
    max_backoff: float = Field(default=8.0, ge=0, description="Largest delay between attempts")
    min_node_backoff: float = Field(default=8.0, ge=0, description="Smallest node backoff")
    max_node_backoff: float = Field(default=3600.0, ge=0, description="Largest node backoff")
    max_attempts: int = Field(default=10, ge=1)
    close_timeout: float = Field(default=30.0, ge=0)
    network_update_period: Optional[float] = Field(default=86400.0, gt=0)

    executor_threads: Optional[int] = Field(default=None, ge=1)
    max_nodes_per_request: Optional[int] = Field(default=None, ge=1)
    transport_security: bool = False
    verify_certificates: bool = True

    @model_validator(mode="after")
    def check_backoff_bounds(self) -> "ClientConfig":
        if self.min_backoff > self.max_backoff:
            raise ValueError("min_backoff must be less than or equal to max_backoff")
        if self.min_node_backoff > self.max_node_backoff:
            raise ValueError("min_node_backoff must be less than or equal to max_node_backoff")
        if not self.network and not self.mirror_network:
            raise ValueError("either network or mirror_network must be set")
        return self


class Client:
    """
    Entry point shared by all requests.

    Example:
        >>> with Client.for_network({"127.0.0.1:50211": "0.0.3"}) as client:
        ...     result = Executable(kind).execute(client)
    """

    def __init__(self, config: ClientConfig, executor: Optional[ExecutorService] = None,
                 mirror_client: Optional[MirrorNodeClient] = None):
        """
        Initialize the client.

        Args:
            config: Client configuration
            executor: Worker pool to use; the client creates and owns one if omitted
            mirror_client: Mirror node client for address book updates
        """
        self._config = config
        self._ledger_id = LedgerId.from_string(config.ledger_id) if config.ledger_id else None

        self._owns_executor = executor is None
        self._executor = executor or ExecutorService(config.executor_threads)

        self._network = Network(
            ledger_id=self._ledger_id,
            shard=config.shard,
            realm=config.realm,
            transport_security=config.transport_security,
            verify_certificates=config.verify_certificates,
            min_node_backoff=config.min_node_backoff,
            max_node_backoff=config.max_node_backoff,
            max_nodes_per_request=config.max_nodes_per_request,
        )
        if config.network:
            self._network.set_network(config.network)

        if mirror_client is None and config.mirror_network:
            mirror_client = MirrorNodeClient(config.mirror_network[0])
        self._mirror_client = mirror_client

        self._update_lock = threading.Lock()
        self._pending_update: Optional[Future] = None
        self._update_timer: Optional[threading.Timer] = None
        self._closed = False

        if self._mirror_client is not None and config.network_update_period:
            self._schedule_periodic_update(config.network_update_period)

    @classmethod
    def from_config(cls, config: Union[ClientConfig, Mapping[str, Any]], **kwargs) -> Client:
        """Build a client from a ClientConfig or a plain mapping of its fields."""
        if not isinstance(config, ClientConfig):
            config = ClientConfig.model_validate(dict(config))
        return cls(config, **kwargs)

    @classmethod
    def for_network(cls, network: Mapping[str, Union[AccountId, str]], **settings) -> Client:
        """Build a client from a mapping of "host:port" to node account id."""
        return cls(ClientConfig(network=dict(network), **settings))

    @classmethod
    def for_mirror_network(cls, mirror_network: List[str], **settings) -> Client:
        """Build a client whose nodes come from a mirror node's address book."""
        client = cls(ClientConfig(mirror_network=mirror_network, **settings))
        try:
            client.update_network_from_address_book()
        except Exception:
            client.close()
            raise
        return client

    # =========================================================================
    # Settings
    # =========================================================================

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def ledger_id(self) -> Optional[LedgerId]:
        return self._ledger_id

    @property
    def network(self) -> Network:
        return self._network

    @property
    def executor(self) -> ExecutorService:
        return self._executor

    @property
    def mirror_network(self) -> List[str]:
        return list(self._config.mirror_network)

    @property
    def request_timeout(self) -> float:
        return self._config.request_timeout

    @property
    def grpc_deadline(self) -> float:
        return self._config.grpc_deadline

    @property
    def min_backoff(self) -> float:
        return self._config.min_backoff

    @property
    def max_backoff(self) -> float:
        return self._config.max_backoff

    @property
    def min_node_backoff(self) -> float:
        return self._network.min_node_backoff

    @property
    def max_node_backoff(self) -> float:
        return self._network.max_node_backoff

    @property
    def max_attempts(self) -> int:
        return self._config.max_attempts

    @property
    def close_timeout(self) -> float:
        return self._config.close_timeout

    # =========================================================================
    # Address book
    # =========================================================================

    def _apply_address_book(self, entries: List[NodeAddressEntry]) -> None:
        self._network.set_address_book(entries)
        network = to_network(entries)
        if network:
            self._network.set_network(network)
        logger.info(f"Network updated from address book with {len(entries)} nodes")

    def update_network_from_address_book(self) -> Client:
        """
        Replace the network with the mirror node's address book.

        Raises:
            ValueError: If no mirror network is configured
            MirrorNodeError: If the address book cannot be fetched
        """
        if self._mirror_client is None:
            raise ValueError("mirror_network is not configured")
        self._apply_address_book(self._mirror_client.get_address_book())
        return self

    async def update_network_from_address_book_async(self) -> Client:
        """Asynchronous variant of update_network_from_address_book."""
        if self._mirror_client is None:
            raise ValueError("mirror_network is not configured")
        self._apply_address_book(await self._mirror_client.get_address_book_async())
        return self

    def schedule_network_update(self) -> Optional[Future]:
        """
        Refresh the network on the worker pool without waiting for it.

        Only one refresh runs at a time; while one is pending its future is
        returned. Returns None when no mirror network is configured.
        """
        if self._mirror_client is None or self._closed:
            return None

        with self._update_lock:
            if self._pending_update is not None and not self._pending_update.done():
                return self._pending_update
            self._pending_update = self._executor.submit(self._update_network_logged)
            return self._pending_update

    def _update_network_logged(self) -> None:
        try:
            self.update_network_from_address_book()
        except Exception as e:
            logger.error(f"Failed to update the network from the address book: {e}")

    def _schedule_periodic_update(self, period: float) -> None:
        timer = threading.Timer(period, self._periodic_update, args=(period,))
        timer.daemon = True
        self._update_timer = timer
        timer.start()

    def _periodic_update(self, period: float) -> None:
        if self._closed:
            return
        self._update_network_logged()
        if not self._closed:
            self._schedule_periodic_update(period)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop address book updates, close node channels and the owned worker pool."""
        if self._closed:
            return
        self._closed = True

        if self._update_timer is not None:
            self._update_timer.cancel()

        self._network.close()
        if self._mirror_client is not None:
            self._mirror_client.close()
        if self._owns_executor:
            self._executor.shutdown(wait=True, timeout=self._config.close_timeout)

        logger.info("Client closed")

    def __enter__(self) -> Client:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
