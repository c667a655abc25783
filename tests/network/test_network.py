"""
Tests for the node network: node set management and node selection.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from helpers import network_map

from ledger_client import AccountId, Network, NodeAddress, NodeAddressEntry
from ledger_client.network import select_node


def ids(*nums):
    return [AccountId(0, 0, n) for n in nums]


@pytest.fixture
def network():
    return Network.for_network(network_map(6))


class TestNetworkNodes:
    """Test building and replacing the node set."""

    def test_for_network(self, network):
        assert len(network) == 6
        assert network.node_account_ids == ids(3, 4, 5, 6, 7, 8)
        assert network.get_network()["127.0.0.1:50211"] == AccountId(0, 0, 3)

    def test_empty_network_rejected(self):
        with pytest.raises(ValueError):
            Network().set_network({})

    def test_backoff_bounds_validated(self):
        with pytest.raises(ValueError):
            Network(min_node_backoff=10, max_node_backoff=1)

    def test_set_network_keeps_existing_nodes(self, network):
        kept = network.get_nodes(AccountId(0, 0, 3))[0]
        kept.increase_backoff()

        network.set_network({"127.0.0.1:50211": "0.0.3", "127.0.0.9:50211": "0.0.9"})

        assert len(network) == 2
        assert network.get_nodes(AccountId(0, 0, 3))[0] is kept
        assert not kept.is_healthy()
        assert network.get_nodes(AccountId(0, 0, 9))[0].is_healthy()

    def test_retired_nodes_closed_on_close(self, network):
        removed = network.get_nodes(AccountId(0, 0, 8))[0]
        network.set_network(network_map(2))

        with patch.object(removed, "close") as close:
            network.close()
        close.assert_called_once()

    def test_duplicate_addresses_collapse(self):
        network = Network(
            {"127.0.0.1:50211": "0.0.3", "127.0.0.1:50212": "0.0.3"},
            transport_security=False,
        )
        assert len(network.nodes) == 1

    def test_account_with_several_addresses(self):
        network = Network({"127.0.0.1:50211": "0.0.3", "10.0.0.1:50211": "0.0.3"})
        assert len(network) == 1
        assert len(network.get_nodes(AccountId(0, 0, 3))) == 2


class TestAddressBook:
    """Test attaching address book entries."""

    def test_cert_hash_attached(self, network):
        network.set_address_book([NodeAddressEntry(AccountId(0, 0, 3), cert_hash="ab" * 48)])

        node = network.get_nodes(AccountId(0, 0, 3))[0]
        assert node.address.cert_hash == "ab" * 48

    def test_missing_cert_hash_keeps_previous(self, network):
        network.set_address_book([NodeAddressEntry(AccountId(0, 0, 3), cert_hash="ab" * 48)])
        network.set_address_book([NodeAddressEntry(AccountId(0, 0, 3))])

        assert network.address_book[AccountId(0, 0, 3)].cert_hash == "ab" * 48

    def test_new_nodes_pick_up_cert_hash(self):
        network = Network(network_map(1))
        network.set_address_book([NodeAddressEntry(AccountId(0, 0, 9), cert_hash="cd" * 48)])
        network.set_network({"127.0.0.9:50211": "0.0.9"})

        assert network.get_nodes(AccountId(0, 0, 9))[0].address.cert_hash == "cd" * 48


class TestTransportSecurity:
    """Test switching between TLS and plaintext ports."""

    def test_secure_network_uses_tls_ports(self):
        network = Network(network_map(2), transport_security=True)
        assert all(node.address.port == 50212 for node in network.nodes)

    def test_switch_keeps_health(self, network):
        node = network.get_nodes(AccountId(0, 0, 3))[0]
        node.increase_backoff()

        network.set_transport_security(True)

        switched = network.get_nodes(AccountId(0, 0, 3))[0]
        assert switched.address == NodeAddress("127.0.0.1", 50212)
        assert switched.current_backoff == node.current_backoff
        assert not switched.is_healthy()

        network.set_transport_security(False)
        assert network.get_nodes(AccountId(0, 0, 3))[0].address.port == 50211


class TestNodeBackoffSettings:
    def test_propagates_to_nodes(self, network):
        network.max_node_backoff = 120.0
        network.min_node_backoff = 1.0

        assert all(node.min_backoff == 1.0 for node in network.nodes)
        assert all(node.max_backoff == 120.0 for node in network.nodes)

    def test_invalid_bounds(self, network):
        with pytest.raises(ValueError):
            network.min_node_backoff = 10_000.0


class TestNodeSelection:
    """Test node selection for requests and attempts."""

    def test_a_third_of_the_network_per_request(self, network):
        assert network.get_number_of_nodes_for_request() == 2
        assert len(network.get_node_account_ids_for_execute()) == 2

    def test_small_networks_use_at_least_one_node(self):
        assert Network(network_map(1)).get_number_of_nodes_for_request() == 1
        assert Network(network_map(4)).get_number_of_nodes_for_request() == 2

    def test_max_nodes_per_request(self):
        network = Network(network_map(6), max_nodes_per_request=5)
        assert len(network.get_node_account_ids_for_execute()) == 5

        network.max_nodes_per_request = 50
        assert len(network.get_node_account_ids_for_execute()) == 6

    def test_rotating_start(self, network):
        """Consecutive requests start one node further along."""
        starts = [network.get_node_account_ids_for_execute()[0] for _ in range(7)]
        assert starts == ids(3, 4, 5, 6, 7, 8, 3)

    def test_healthy_accounts_first(self, network):
        network.get_nodes(AccountId(0, 0, 3))[0].increase_backoff()

        chosen = network.get_node_account_ids_for_execute()

        assert chosen == ids(4, 5)

    def test_unhealthy_accounts_by_remaining_backoff(self):
        network = Network(network_map(3), max_nodes_per_request=3)
        for num in (3, 4, 5):
            network.get_nodes(AccountId(0, 0, num))[0].increase_backoff()
        network.get_nodes(AccountId(0, 0, 3))[0].increase_backoff()

        assert network.get_node_account_ids_for_execute() == ids(4, 5, 3)

    def test_get_node_for_execute_first_healthy(self, network):
        index, node = network.get_node_for_execute(ids(3, 4, 5), 0)
        assert (index, node.account_id) == (0, AccountId(0, 0, 3))

    def test_get_node_for_execute_skips_backoff(self, network):
        network.get_nodes(AccountId(0, 0, 4))[0].increase_backoff()

        index, node = network.get_node_for_execute(ids(3, 4, 5), 1)

        assert (index, node.account_id) == (2, AccountId(0, 0, 5))

    def test_get_node_for_execute_wraps(self, network):
        index, node = network.get_node_for_execute(ids(3, 4, 5), 2)
        assert index == 2

        network.get_nodes(AccountId(0, 0, 5))[0].increase_backoff()
        index, node = network.get_node_for_execute(ids(3, 4, 5), 2)
        assert (index, node.account_id) == (0, AccountId(0, 0, 3))

    def test_all_backing_off_picks_soonest(self, network):
        """No permanent stall when every node is backing off."""
        for num in (3, 4, 5):
            network.get_nodes(AccountId(0, 0, num))[0].increase_backoff()
        network.get_nodes(AccountId(0, 0, 3))[0].increase_backoff()
        network.get_nodes(AccountId(0, 0, 5))[0].increase_backoff()

        index, node = network.get_node_for_execute(ids(3, 4, 5), 0)

        assert node.account_id == AccountId(0, 0, 4)
        assert index == 1

    def test_unknown_accounts(self, network):
        with pytest.raises(ValueError):
            network.get_node_for_execute(ids(99), 0)

    def test_resolve_nodes_aligned_with_accounts(self, network):
        resolved = network.resolve_nodes(ids(3, 99, 4))

        assert [len(nodes) for nodes in resolved] == [1, 0, 1]
        assert resolved[2][0].account_id == AccountId(0, 0, 4)

    def test_resolved_nodes_survive_set_network(self, network):
        resolved = network.resolve_nodes(ids(3, 4))

        network.set_network({"127.0.0.9:50211": "0.0.9"})

        index, node = select_node(resolved, 1)
        assert (index, node.account_id) == (1, AccountId(0, 0, 4))
        with pytest.raises(ValueError):
            network.get_node_for_execute(ids(3, 4), 0)

    def test_select_node_skips_empty_groups(self, network):
        index, node = select_node([(), network.get_nodes(AccountId(0, 0, 5))], 0)
        assert (index, node.account_id) == (1, AccountId(0, 0, 5))

    def test_backoff_routed_to_node(self, network):
        node = network.get_nodes(AccountId(0, 0, 3))[0]

        network.increase_backoff(node)
        network.increase_backoff(node)
        network.decrease_backoff(node)

        assert node.current_backoff == 16.0
        assert not node.is_healthy()


class TestAddressBookPinning:
    """A new pinned hash replaces a channel verified against the old one."""

    def test_set_address_book_drops_channel(self, network):
        node = network.get_nodes(AccountId(0, 0, 3))[0]
        old = node.get_channel()

        network.set_address_book([NodeAddressEntry(AccountId(0, 0, 3), cert_hash="ab" * 48)])

        assert node.get_channel() is not old
        old.close.assert_not_called()
        network.close()
        old.close.assert_called_once()

    def test_unchanged_hash_keeps_channel(self, network):
        network.set_address_book([NodeAddressEntry(AccountId(0, 0, 3), cert_hash="ab" * 48)])
        node = network.get_nodes(AccountId(0, 0, 3))[0]
        channel = node.get_channel()

        network.set_address_book([NodeAddressEntry(AccountId(0, 0, 3), cert_hash="ab" * 48)])
        network.set_network(network_map(6))

        assert network.get_nodes(AccountId(0, 0, 3))[0] is node
        assert node.get_channel() is channel


class TestNetworkConcurrency:
    """Selection stays consistent while the node set is swapped."""

    def test_selection_during_set_network(self):
        network = Network(network_map(6), max_nodes_per_request=3)
        small = {"127.0.0.9:50211": "0.0.9", "127.0.0.10:50211": "0.0.10"}
        known = set(ids(3, 4, 5, 6, 7, 8, 9, 10))
        stop = threading.Event()

        def swap():
            while not stop.is_set():
                network.set_network(small)
                network.set_network(network_map(6))

        def select():
            for _ in range(2000):
                account_ids = network.get_node_account_ids_for_execute()
                assert 1 <= len(account_ids) <= 3
                assert set(account_ids) <= known
                chosen = network.get_nodes_for_execute()
                assert all(nodes for _, nodes in chosen)
                select_node([nodes for _, nodes in chosen], 0)

        with ThreadPoolExecutor(max_workers=5) as pool:
            swapper = pool.submit(swap)
            selectors = [pool.submit(select) for _ in range(4)]
            try:
                for future in selectors:
                    future.result()
            finally:
                stop.set()
            swapper.result()

    def test_concurrent_backoff_updates(self, network):
        node = network.get_nodes(AccountId(0, 0, 3))[0]

        def hammer(i):
            for _ in range(200):
                if i % 2:
                    network.increase_backoff(node)
                else:
                    network.decrease_backoff(node)

        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(hammer, range(6)))

        assert network.min_node_backoff <= node.current_backoff <= network.max_node_backoff
        assert node.bad_status_count == 3 * 200
