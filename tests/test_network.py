"""Tests for shelter_epi.network: dynamic contact network."""

import math
import warnings

import networkx as nx
import numpy as np
import pytest

from shelter_epi.errors import ConfigurationError, NetworkApproximationWarning
from shelter_epi.network import (
    ContactNetwork,
    DissolutionCoefficients,
    FormationModel,
    MomentMatchingEstimator,
    TargetStats,
    advance_network,
    dissolution_coefficients,
    fit_network_model,
    form_to_targets,
    initialize_network,
)
from shelter_epi.population import PopulationRegistry, build_housing_layout
from shelter_epi.types import State


@pytest.fixture
def layout():
    return build_housing_layout(400, high_capacity=60, low_capacity=6,
                                high_fraction=0.25)


@pytest.fixture
def housing(layout):
    return layout.assignment(400)


@pytest.fixture
def fitted(layout):
    target = TargetStats(n_individuals=400, mean_degree=4.0,
                         same_housing_fraction=0.7,
                         mean_duration_same=20.0, mean_duration_between=4.0)
    return fit_network_model(target, layout)


# ═══════════════════════════════════════════════════════════════════════
# ESTIMATION
# ═══════════════════════════════════════════════════════════════════════

class TestDissolutionCoefficients:
    def test_geometric_mean_duration(self):
        coef = dissolution_coefficients(20.0, 4.0)
        assert coef.p_same == pytest.approx(1 / 20)
        assert coef.p_between == pytest.approx(1 / 4)
        assert coef.coef_same == pytest.approx(math.log(19))

    def test_departure_adjustment(self):
        coef = dissolution_coefficients(20.0, 4.0, departure_rate=0.01)
        # dissolution hazard + departure hazard = 1 / target duration
        assert coef.p_same == pytest.approx(1 / 20 - 0.01)
        assert coef.p_between == pytest.approx(1 / 4 - 0.01)

    def test_unit_duration_always_dissolves(self):
        coef = dissolution_coefficients(1.0, 1.0)
        assert coef.p_same == 1.0
        assert coef.coef_between == -math.inf

    def test_departure_exceeds_hazard(self):
        with pytest.raises(ConfigurationError, match="departure rate"):
            dissolution_coefficients(20.0, 4.0, departure_rate=0.06)

    def test_duration_below_one(self):
        with pytest.raises(ConfigurationError):
            dissolution_coefficients(0.5, 4.0)

    def test_probability_by_housing_match(self):
        coef = dissolution_coefficients(10.0, 2.0)
        p = coef.dissolution_probability(np.array([True, False]))
        np.testing.assert_allclose(p, [0.1, 0.5])


class TestMomentMatchingEstimator:
    def test_targets(self, fitted):
        formation, dissolution = fitted
        assert formation.target_edges == pytest.approx(800.0)
        assert formation.target_same_housing == pytest.approx(560.0)
        assert formation.n_reference == 400
        assert isinstance(dissolution, DissolutionCoefficients)

    def test_targets_scale_with_population(self, fitted):
        formation, _ = fitted
        edges, same = formation.targets(200)
        assert edges == pytest.approx(400.0)
        assert same == pytest.approx(280.0)

    def test_same_housing_capped(self):
        lay = build_housing_layout(10, low_capacity=2, high_fraction=0.0)
        target = TargetStats(n_individuals=10, mean_degree=4.0,
                             same_housing_fraction=1.0)
        with pytest.warns(NetworkApproximationWarning, match="capping"):
            formation, _ = MomentMatchingEstimator().fit(target, lay)
        assert formation.target_same_housing == 5.0

    def test_custom_estimator(self):
        class Fixed:
            def fit(self, target_stats, layout=None):
                return (FormationModel(10.0, 0.0, target_stats.n_individuals),
                        dissolution_coefficients(3.0, 3.0))

        formation, _ = fit_network_model(TargetStats(n_individuals=50),
                                         estimator=Fixed())
        assert formation.target_edges == 10.0


# ═══════════════════════════════════════════════════════════════════════
# CONTACT NETWORK
# ═══════════════════════════════════════════════════════════════════════

class TestContactNetwork:
    def test_symmetric_membership(self):
        net = ContactNetwork()
        net.add_tie(5, 2, timestep=0)
        assert (2, 5) in net
        assert (5, 2) in net
        assert net.has_tie(5, 2)
        np.testing.assert_array_equal(net.edge_array(), [[2, 5]])

    def test_duplicate_rejected(self):
        net = ContactNetwork()
        net.add_tie(1, 2, 0)
        with pytest.raises(ValueError):
            net.add_tie(2, 1, 0)

    def test_self_tie_rejected(self):
        net = ContactNetwork()
        with pytest.raises(ValueError):
            net.add_tie(3, 3, 0)
        assert (3, 3) not in net

    def test_dissolve_moves_to_history(self):
        net = ContactNetwork()
        net.add_tie(1, 2, 0)
        tie = net.dissolve_tie(2, 1, 4)
        assert len(net) == 0
        assert tie.dissolved_at == 4
        assert net.history == [tie]

    def test_neighbors_and_adjacency(self):
        net = ContactNetwork()
        net.add_tie(0, 1, 0)
        net.add_tie(0, 2, 0)
        net.add_tie(3, 1, 0)
        assert sorted(net.neighbors(0)) == [1, 2]
        assert sorted(net.neighbors(1)) == [0, 3]
        adj = net.adjacency()
        assert sorted(adj[1]) == [0, 3]

    def test_dissolve_incident(self):
        net = ContactNetwork()
        net.add_tie(0, 1, 0)
        net.add_tie(1, 2, 0)
        net.add_tie(3, 4, 0)
        assert net.dissolve_incident(np.array([1]), 5) == 2
        np.testing.assert_array_equal(net.edge_array(), [[3, 4]])

    def test_snapshot_history(self):
        net = ContactNetwork()
        net.add_tie(0, 1, 0)
        net.add_tie(2, 3, 2)
        net.dissolve_tie(0, 1, 3)
        np.testing.assert_array_equal(net.snapshot(1), [[0, 1]])
        np.testing.assert_array_equal(net.snapshot(2), [[0, 1], [2, 3]])
        np.testing.assert_array_equal(net.snapshot(3), [[2, 3]])

    def test_to_networkx(self):
        lay = build_housing_layout(4, low_capacity=2, high_fraction=0.0)
        reg = PopulationRegistry.from_layout(lay, np.zeros(4, dtype=np.int16))
        reg.set_state(np.array([1]), State.I, 0)
        net = ContactNetwork()
        net.add_tie(0, 1, 0)
        g = net.to_networkx(registry=reg)
        assert isinstance(g, nx.Graph)
        assert g.number_of_nodes() == 4
        assert g.has_edge(1, 0)
        assert g.nodes[1]['state'] == State.I
        assert g.nodes[3]['housing_unit'] == 1

    def test_copy_is_independent(self):
        net = ContactNetwork()
        net.add_tie(0, 1, 0)
        clone = net.copy()
        clone.dissolve_tie(0, 1, 1)
        assert (0, 1) in net
        assert net.history == []


# ═══════════════════════════════════════════════════════════════════════
# EVOLUTION
# ═══════════════════════════════════════════════════════════════════════

def _assert_valid_edges(net, active=None):
    edges = net.edge_array()
    assert np.all(edges[:, 0] < edges[:, 1])
    assert len({tuple(e) for e in edges.tolist()}) == len(edges)
    if active is not None:
        assert np.all(active[edges])


class TestInitializeNetwork:
    def test_hits_targets(self, fitted, housing):
        formation, _ = fitted
        active = np.ones(400, dtype=bool)
        net = initialize_network(formation, housing, active,
                                 np.random.default_rng(0))
        _assert_valid_edges(net)
        assert len(net) == 800
        assert np.count_nonzero(net.same_housing_mask(housing)) == 560

    def test_inactive_never_tied(self, fitted, housing):
        formation, _ = fitted
        active = np.ones(400, dtype=bool)
        active[::3] = False
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", NetworkApproximationWarning)
            net = initialize_network(formation, housing, active,
                                     np.random.default_rng(0))
        _assert_valid_edges(net, active)


class TestAdvanceNetwork:
    def test_mean_degree_preserved(self, fitted, housing):
        formation, dissolution = fitted
        active = np.ones(400, dtype=bool)
        rng = np.random.default_rng(3)
        net = initialize_network(formation, housing, active, rng)
        for t in range(1, 30):
            stats = advance_network(net, formation, dissolution, housing,
                                    active, t, rng)
            assert stats.n_edges == len(net)
            assert not stats.approximated
        _assert_valid_edges(net)
        assert 2 * len(net) / 400 == pytest.approx(4.0, rel=0.05)

    def test_dissolution_rates(self, fitted, housing):
        """Between-unit ties turn over faster than same-unit ties."""
        formation, dissolution = fitted
        active = np.ones(400, dtype=bool)
        rng = np.random.default_rng(11)
        net = initialize_network(formation, housing, active, rng)
        n_same = np.count_nonzero(net.same_housing_mask(housing))
        n_between = len(net) - n_same
        before = set(map(tuple, net.edge_array().tolist()))
        advance_network(net, formation, dissolution, housing, active, 1, rng)
        ended = [t for t in net.history if t.dissolved_at == 1]
        same_ended = sum(1 for t in ended if housing[t.a] == housing[t.b])
        between_ended = len(ended) - same_ended
        assert all(t.key in before for t in ended)
        assert same_ended / n_same == pytest.approx(1 / 20, abs=0.03)
        assert between_ended / n_between == pytest.approx(1 / 4, abs=0.1)

    def test_new_ties_activate_at_timestep(self, fitted, housing):
        formation, dissolution = fitted
        active = np.ones(400, dtype=bool)
        rng = np.random.default_rng(5)
        net = initialize_network(formation, housing, active, rng)
        stats = advance_network(net, formation, dissolution, housing, active, 7, rng)
        fresh = [t for t in net.ties() if t.activated_at == 7]
        assert len(fresh) == stats.formed
        assert stats.formed > 0

    def test_approximation_warning(self, housing):
        """An unreachable target warns and keeps the best approximation."""
        formation = FormationModel(target_edges=5000.0, target_same_housing=5000.0,
                                   n_reference=400, max_proposals_factor=1)
        dissolution = dissolution_coefficients(10.0, 10.0)
        active = np.ones(400, dtype=bool)
        net = ContactNetwork()
        with pytest.warns(NetworkApproximationWarning, match="best approximation"):
            stats = advance_network(net, formation, dissolution, housing,
                                    active, 1, np.random.default_rng(0))
        assert stats.approximated
        assert len(net) > 0
        _assert_valid_edges(net)

    def test_empty_population(self, fitted, housing):
        formation, dissolution = fitted
        active = np.zeros(400, dtype=bool)
        net = ContactNetwork()
        stats = form_to_targets(net, formation, housing, active, 1,
                                np.random.default_rng(0))
        assert len(net) == 0
        assert not stats.approximated

    def test_deterministic(self, fitted, housing):
        formation, dissolution = fitted
        active = np.ones(400, dtype=bool)

        def run(seed):
            rng = np.random.default_rng(seed)
            net = initialize_network(formation, housing, active, rng)
            for t in range(1, 5):
                advance_network(net, formation, dissolution, housing, active, t, rng)
            return net.edge_array()

        np.testing.assert_array_equal(run(9), run(9))
