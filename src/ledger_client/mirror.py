"""
Mirror node address book client.

Fetches the node list from a mirror node's REST API (/api/v1/network/nodes)
and turns it into address book entries and a network map. The synchronous
path uses requests, the asynchronous path aiohttp.
"""

from __future__ import annotations
import asyncio
import logging
import string
from typing import Dict, List, Optional

import aiohttp
import requests
from pydantic import BaseModel, Field, ValidationError

from .network.network import NodeAddressEntry
from .network.node import PORT_MIRROR_TLS, NodeAddress
from .runtime.errors import MirrorNodeError
from .runtime.ids import AccountId


logger = logging.getLogger(__name__)

NODES_PATH = "/api/v1/network/nodes"
DEFAULT_PAGE_SIZE = 25


# =============================================================================
# Payload models
# =============================================================================

class ServiceEndpoint(BaseModel):
    """One gRPC endpoint of a node."""
    ip_address_v4: Optional[str] = Field(default=None, description="IPv4 address")
    port: int = Field(gt=0, lt=65536, description="Port")
    domain_name: Optional[str] = Field(default=None, description="DNS name")

    @property
    def host(self) -> Optional[str]:
        return self.domain_name or self.ip_address_v4 or None


class NetworkNode(BaseModel):
    """Node record as returned by the mirror node."""
    node_account_id: AccountId
    node_id: Optional[int] = None
    description: Optional[str] = None
    node_cert_hash: Optional[str] = None
    service_endpoints: List[ServiceEndpoint] = Field(default_factory=list)


class PageLinks(BaseModel):
    next: Optional[str] = None


class NetworkNodesPage(BaseModel):
    """One page of /api/v1/network/nodes."""
    nodes: List[NetworkNode] = Field(default_factory=list)
    links: PageLinks = Field(default_factory=PageLinks)


def decode_cert_hash(value: Optional[str]) -> Optional[str]:
    """
    Normalize a node certificate hash to lowercase hex.

    The mirror node reports the hash as "0x" followed by the hex encoding of
    the ASCII hex digest; plain hex digests are accepted as well.
    """
    if not value:
        return None
    raw = value[2:] if value.startswith("0x") else value
    try:
        decoded = bytes.fromhex(raw).decode("ascii")
    except (ValueError, UnicodeDecodeError):
        return raw.lower()
    if decoded and all(c in string.hexdigits for c in decoded):
        return decoded.lower()
    return raw.lower()


def to_address_entry(node: NetworkNode) -> NodeAddressEntry:
    addresses = [
        NodeAddress(endpoint.host, endpoint.port)
        for endpoint in node.service_endpoints
        if endpoint.host
    ]
    return NodeAddressEntry(
        account_id=node.node_account_id,
        addresses=addresses,
        cert_hash=decode_cert_hash(node.node_cert_hash),
        node_id=node.node_id,
        description=node.description,
    )


def to_network(entries: List[NodeAddressEntry]) -> Dict[str, AccountId]:
    """Network map ("host:port" to node account id) of an address book."""
    network: Dict[str, AccountId] = {}
    for entry in entries:
        for address in entry.addresses:
            network[str(address)] = entry.account_id
    return network


def normalize_base_url(address: str) -> str:
    """Turn "host:port" or a URL into a base URL without trailing slash."""
    address = address.rstrip("/")
    if address.startswith(("http://", "https://")):
        return address

    host, sep, port = address.rpartition(":")
    if sep and port.isdigit() and int(port) != PORT_MIRROR_TLS:
        return f"http://{address}"
    return f"https://{host if sep and port.isdigit() else address}"


class MirrorNodeClient:
    """Reads the address book from a mirror node."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        page_size: int = DEFAULT_PAGE_SIZE,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the mirror node client.

        Args:
            base_url: Mirror node URL or "host:port"
            timeout: Request timeout in seconds
            page_size: Nodes per page
            session: Optional requests.Session for connection pooling
        """
        self._base_url = normalize_base_url(base_url)
        self._timeout = timeout
        self._page_size = page_size
        self._session = session or requests.Session()
        self._owns_session = session is None

    @property
    def base_url(self) -> str:
        return self._base_url

    def close(self) -> None:
        """Close the HTTP session if owned by this client."""
        if self._owns_session:
            self._session.close()

    def __enter__(self) -> MirrorNodeClient:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _first_url(self) -> str:
        return f"{self._base_url}{NODES_PATH}?limit={self._page_size}"

    def _next_url(self, page: NetworkNodesPage) -> Optional[str]:
        if not page.links.next:
            return None
        return f"{self._base_url}{page.links.next}"

    @staticmethod
    def _parse(url: str, payload) -> NetworkNodesPage:
        try:
            return NetworkNodesPage.model_validate(payload)
        except ValidationError as e:
            raise MirrorNodeError(f"Invalid address book payload from {url}", cause=e) from e

    def get_address_book(self) -> List[NodeAddressEntry]:
        """
        Fetch every page of the node list.

        Returns:
            Address book entries in mirror node order

        Raises:
            MirrorNodeError: If a request fails or the payload is invalid
        """
        entries: List[NodeAddressEntry] = []
        url: Optional[str] = self._first_url()

        while url:
            try:
                response = self._session.get(url, timeout=self._timeout)
                if response.status_code != 200:
                    raise MirrorNodeError(
                        f"HTTP {response.status_code}: {response.reason}",
                        details={"url": url, "status": response.status_code},
                    )
                payload = response.json()
            except requests.exceptions.RequestException as e:
                raise MirrorNodeError(f"HTTP request failed: {e}", details={"url": url}, cause=e) from e
            except ValueError as e:
                raise MirrorNodeError(f"Invalid JSON response: {e}", details={"url": url}, cause=e) from e

            page = self._parse(url, payload)
            entries.extend(to_address_entry(node) for node in page.nodes)
            url = self._next_url(page)

        logger.debug(f"Fetched {len(entries)} address book entries from {self._base_url}")
        return entries

    async def get_address_book_async(self) -> List[NodeAddressEntry]:
        """Asynchronous variant of get_address_book using aiohttp."""
        entries: List[NodeAddressEntry] = []
        url: Optional[str] = self._first_url()
        timeout = aiohttp.ClientTimeout(total=self._timeout)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            while url:
                try:
                    async with session.get(url) as response:
                        if response.status != 200:
                            raise MirrorNodeError(
                                f"HTTP {response.status}: {response.reason}",
                                details={"url": url, "status": response.status},
                            )
                        payload = await response.json()
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    raise MirrorNodeError(f"HTTP request failed: {e}", details={"url": url}, cause=e) from e
                except ValueError as e:
                    raise MirrorNodeError(f"Invalid JSON response: {e}", details={"url": url}, cause=e) from e

                page = self._parse(url, payload)
                entries.extend(to_address_entry(node) for node in page.nodes)
                url = self._next_url(page)

        logger.debug(f"Fetched {len(entries)} address book entries from {self._base_url}")
        return entries
