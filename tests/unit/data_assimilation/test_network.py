"""Tests for the river network arena."""

import numpy as np
import pytest

from hydroassim.core.exceptions import ValidationError
from hydroassim.data_assimilation.least_squares.network import RiverNetwork, TopologyProvider


class TestTopology:

    def test_parents(self, branching_network):
        np.testing.assert_array_equal(np.sort(branching_network.parents(2)), [0, 1])
        np.testing.assert_array_equal(np.sort(branching_network.parents(4)), [2, 3])
        assert branching_network.parents(0).size == 0

    def test_upstream_of_is_transitive(self, branching_network):
        assert branching_network.upstream_of(4) == {0, 1, 2, 3}
        assert branching_network.upstream_of(2) == {0, 1}
        assert branching_network.upstream_of(6) == {5}

    def test_headwater_has_no_upstream(self, branching_network):
        assert branching_network.upstream_of(0) == set()

    def test_n_nodes(self, branching_network):
        assert branching_network.n_nodes == 7

    def test_node_out_of_range(self, branching_network):
        with pytest.raises(ValidationError):
            branching_network.upstream_of(7)
        with pytest.raises(ValidationError):
            branching_network.owner_of(-1)


class TestValidation:

    def test_cycle_rejected(self):
        with pytest.raises(ValidationError, match="cycle"):
            RiverNetwork(downstream=[1, 2, 0])

    def test_self_loop_rejected(self):
        with pytest.raises(ValidationError):
            RiverNetwork(downstream=[0])

    def test_unknown_downstream_rejected(self):
        with pytest.raises(ValidationError):
            RiverNetwork(downstream=[3, -1])

    def test_length_mismatch_rejected(self):
        with pytest.raises(ValidationError, match="assignments"):
            RiverNetwork(downstream=[1, -1], assignments=[0])

    def test_duplicate_link_ids_rejected(self):
        with pytest.raises(ValidationError, match="unique"):
            RiverNetwork(downstream=[1, -1], link_ids=[7, 7])

    def test_negative_assignment_rejected(self):
        with pytest.raises(ValidationError):
            RiverNetwork(downstream=[1, -1], assignments=[0, -1])


class TestPartitionAndLookup:

    def test_default_single_owner(self, branching_network):
        assert all(branching_network.owner_of(n) == 0 for n in range(7))
        np.testing.assert_array_equal(branching_network.local_nodes(0), np.arange(7))
        assert branching_network.local_nodes(1).size == 0

    def test_repartition_keeps_topology(self, branching_network):
        net = branching_network.repartition([0, 1, 0, 1, 0, 1, 0])
        assert net.owner_of(1) == 1
        np.testing.assert_array_equal(net.local_nodes(1), [1, 3, 5])
        assert net.upstream_of(4) == branching_network.upstream_of(4)
        np.testing.assert_array_equal(net.link_ids, branching_network.link_ids)

    def test_location_of_link(self, branching_network):
        assert branching_network.location_of(102) == 2
        assert branching_network.locations_of([104, 100]) == [4, 0]

    def test_unknown_link(self, branching_network):
        with pytest.raises(ValidationError, match="999"):
            branching_network.location_of(999)


class ModuloProvider(TopologyProvider):
    """Provider with no upstream links that deals nodes round-robin."""

    def __init__(self, n_nodes, size):
        self._n_nodes = n_nodes
        self.size = size

    @property
    def n_nodes(self):
        return self._n_nodes

    def upstream_of(self, node):
        return set()

    def owner_of(self, node):
        return node % self.size


class TestLocalNodes:

    def test_default_from_owner_of(self):
        provider = ModuloProvider(7, 3)
        np.testing.assert_array_equal(provider.local_nodes(1), [1, 4])
        assert provider.local_nodes(5).shape == (0,)

    def test_network_matches_owner_of(self, branching_network):
        network = branching_network.repartition([2, 0, 1, 2, 0, 1, 2])
        for rank in range(3):
            expected = [n for n in range(network.n_nodes) if network.owner_of(n) == rank]
            np.testing.assert_array_equal(network.local_nodes(rank), expected)
