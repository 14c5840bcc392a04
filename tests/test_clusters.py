import numpy as np
import pytest

from poreflow import ClusterAnalyzer, ClusterKind, Phase, ValidationError, label_clusters


def test_single_phase_network_is_one_spanning_cluster(lattice):
    analyzer = ClusterAnalyzer(lattice)
    clusters = analyzer.classify(ClusterKind.WATER)
    assert clusters.count == 1
    assert clusters.is_spanning
    assert clusters.clusters[0].size == lattice.element_count
    assert analyzer.latest(ClusterKind.WATER) is clusters
    assert analyzer.classify(ClusterKind.OIL).count == 0


def test_classification_is_idempotent(random_lattice):
    rng = np.random.default_rng(11)
    random_lattice.set_phase(rng.random(random_lattice.element_count) < 0.4, Phase.OIL)
    analyzer = ClusterAnalyzer(random_lattice)
    first = analyzer.classify(ClusterKind.WATER)
    second = analyzer.classify(ClusterKind.WATER)
    assert np.array_equal(first.labels, second.labels)
    assert first.partition() == second.partition()


def test_partition_does_not_depend_on_processing_order(random_lattice):
    rng = np.random.default_rng(5)
    mask = rng.random(random_lattice.element_count) < 0.6
    ptr, adjacency = random_lattice.adjacency_ptr, random_lattice.adjacency
    labels, count = label_clusters(mask, ptr, adjacency)
    for seed in range(3):
        order = np.random.default_rng(seed).permutation(random_lattice.element_count)
        shuffled, shuffled_count = label_clusters(mask, ptr, adjacency, order=order)
        assert shuffled_count == count
        # Ids follow the smallest member index, so labels match exactly
        assert np.array_equal(labels, shuffled)


def test_cut_row_splits_into_inlet_and_outlet_clusters(lattice):
    # Oil in the middle pore of the first x-row cuts that row's water path
    lattice.set_phase(1, Phase.OIL)
    clusters = ClusterAnalyzer(lattice).classify(ClusterKind.OIL)
    assert clusters.count == 1
    oil = clusters.cluster_of(1)
    assert oil is not None and 1 in oil and not oil.spanning
    assert clusters.cluster_of(0) is None


def test_outlet_connected_mask(lattice):
    P = lattice.pore_count
    # Surround the first node with oil so the inlet pore's water is isolated
    node = P + 0
    neighbours = lattice.adjacency[lattice.adjacency_ptr[node] : lattice.adjacency_ptr[node + 1]]
    lattice.set_phase(node, Phase.OIL)
    lattice.set_phase(neighbours[neighbours != 0], Phase.OIL)
    water = ClusterAnalyzer(lattice).classify(ClusterKind.WATER)
    escaped = water.outlet_connected_mask()
    assert not escaped[0]
    assert escaped[3]
    assert not water.cluster_of(0).outlet


def test_flowing_classification_needs_flows(lattice):
    analyzer = ClusterAnalyzer(lattice)
    with pytest.raises(ValidationError):
        analyzer.classify(ClusterKind.FLOWING)
    flows = np.zeros(lattice.element_count)
    P = lattice.pore_count
    # First x-row: four pores in series through three nodes
    flows[[0, 1, 2, 3, P, P + 1, P + 2]] = 1e-12
    flowing = analyzer.classify(ClusterKind.FLOWING, flows=flows)
    assert flowing.count == 1
    assert flowing.is_spanning


def test_ad_hoc_mask_is_not_stored(lattice):
    analyzer = ClusterAnalyzer(lattice)
    mask = np.zeros(lattice.element_count, dtype=bool)
    mask[:4] = True
    clusters = analyzer.classify(mask)
    assert clusters.kind is None
    assert analyzer.latest(ClusterKind.WATER) is None
    with pytest.raises(ValidationError):
        analyzer.classify(mask[:-1])


def test_connectivity_masks_and_cluster_ids(lattice):
    P = lattice.pore_count
    # Oil in the last pore of the first x-row reaches the outlet only
    lattice.set_phase(3, Phase.OIL)
    analyzer = ClusterAnalyzer(lattice)
    oil = analyzer.classify(ClusterKind.OIL)
    assert oil.spanning_clusters() == []
    assert not oil.spanning_mask().any()
    assert oil.outlet_connected_mask()[3]
    assert not oil.inlet_connected_mask().any()
    assert analyzer.cluster_id(ClusterKind.OIL, 3) == 0
    assert analyzer.cluster_id(ClusterKind.OIL, 0) == -1
    assert analyzer.cluster_id(ClusterKind.WATER, 0) == -1

    water = analyzer.classify(ClusterKind.WATER)
    assert len(water.spanning_clusters()) == 1
    assert water.spanning_mask()[0]
    assert water.inlet_connected_mask()[P]
    assert analyzer.cluster_id(ClusterKind.WATER, 0) == 0


def test_dimensions_are_classified_independently(random_lattice):
    network = random_lattice
    rng = np.random.default_rng(2)
    network.assign_wettability(np.where(rng.random(network.element_count) < 0.5, 0.3, 2.6))
    network.set_phase(rng.random(network.element_count) < 0.3, Phase.OIL)
    assert network.accessible.all()
    analyzer = ClusterAnalyzer(network)

    water = analyzer.classify(ClusterKind.WATER)
    water_wet = analyzer.classify(ClusterKind.WATER_WET)
    oil_wet = analyzer.classify(ClusterKind.OIL_WET)
    assert analyzer.latest(ClusterKind.WATER) is water
    assert analyzer.latest(ClusterKind.WATER_WET) is water_wet
    assert analyzer.latest(ClusterKind.OIL_WET) is oil_wet

    # Passes of other dimensions leave the stored water clusters unchanged
    assert np.array_equal(water.labels, ClusterAnalyzer(network).classify(ClusterKind.WATER).labels)
    for element in range(network.element_count):
        in_water = network.phase[element] == Phase.WATER
        is_water_wet = network.theta[element] < np.pi / 2
        assert (analyzer.cluster_id(ClusterKind.WATER, element) >= 0) == bool(in_water)
        assert (analyzer.cluster_id(ClusterKind.WATER_WET, element) >= 0) == bool(is_water_wet)
        assert (analyzer.cluster_id(ClusterKind.OIL_WET, element) >= 0) == (not is_water_wet)

    # Wettability and occupancy classes partition every element between them
    wet_members = sum(cluster.size for cluster in water_wet.clusters)
    oil_wet_members = sum(cluster.size for cluster in oil_wet.clusters)
    assert wet_members + oil_wet_members == network.element_count


def test_open_and_gas_dimensions(lattice):
    analyzer = ClusterAnalyzer(lattice)
    open_set = analyzer.classify(ClusterKind.OPEN)
    assert open_set.count == 1
    assert open_set.is_spanning
    assert analyzer.classify(ClusterKind.GAS).count == 0
    assert analyzer.cluster_id(ClusterKind.GAS, 0) == -1
    assert analyzer.cluster_id(ClusterKind.OPEN, lattice.element_count - 1) == 0
