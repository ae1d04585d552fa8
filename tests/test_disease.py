"""Tests for shelter_epi.disease: SEIQHRF state machine.

Covers:
  - Per-tie transmission probability and its closed form
  - One transition per individual per timestep, policy-ordered
  - Absorbing R and F
  - Hospital occupancy bookkeeping and the overcap fatality multiplier
  - Hospital cap = 0: every H→F trial runs at the overcap rate
"""

import numpy as np
import pytest

from shelter_epi.config import DiseaseSection
from shelter_epi.disease import (
    TransitionPolicy,
    disease_step,
    exposure_probability,
    exposure_step,
    fatality_probability,
    hospitalization_probability,
    per_tie_probability,
    transition_counts_array,
)
from shelter_epi.errors import ConfigurationError
from shelter_epi.population import PopulationRegistry
from shelter_epi.rates import CapacityController, RateTable
from shelter_epi.types import State, TRANSITIONS

FLAT_RATES = RateTable({0: [1.0, 1.0]})
NO_EDGES = np.zeros((0, 2), dtype=np.int64)


def zero_disease(**overrides) -> DiseaseSection:
    """DiseaseSection with every rate zero, then `overrides` applied."""
    cfg = DiseaseSection(
        act_rate_i=0.0, inf_prob_i=0.0, act_rate_q=0.0, inf_prob_q=0.0,
        ei_rate=0.0, iq_rate=0.0, ih_rate=0.0, qh_rate=0.0, qr_rate=0.0,
        hr_rate=0.0, hf_rate=0.0, hospital_cap=1000,
    )
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


def make_registry(states, ages=None) -> PopulationRegistry:
    states = np.asarray(states, dtype=np.int8)
    n = len(states)
    ages = np.zeros(n, dtype=np.int16) if ages is None else np.asarray(ages, dtype=np.int16)
    reg = PopulationRegistry(ages, np.zeros(n, dtype=np.int32))
    for s in State:
        idx = np.flatnonzero(states == s)
        if s != State.S:
            reg.set_state(idx, s, 0)
    return reg


def step(reg, cfg, edges=NO_EDGES, rates=FLAT_RATES, capacity=None,
         policy=None, t=1, seed=0):
    if capacity is None:
        capacity = CapacityController(
            cfg.hospital_cap, int(np.count_nonzero(reg.states == State.H)))
    stats = disease_step(reg, edges, rates, capacity, cfg,
                         policy or TransitionPolicy(), t,
                         np.random.default_rng(seed))
    return stats, capacity


# ═══════════════════════════════════════════════════════════════════════
# PROBABILITY FUNCTIONS
# ═══════════════════════════════════════════════════════════════════════

class TestProbabilities:
    def test_per_tie(self):
        assert per_tie_probability(3.0, 0.05) == pytest.approx(1 - 0.95 ** 3)
        assert per_tie_probability(0.0, 0.5) == 0.0
        assert per_tie_probability(2.0, 0.0) == 0.0
        assert per_tie_probability(1.0, 1.0) == 1.0

    def test_exposure_union(self):
        p = exposure_probability(np.array([0, 2]), np.array([1, 1]), 0.1, 0.2)
        np.testing.assert_allclose(p, [0.2, 1 - 0.81 * 0.8])

    def test_hospitalization_clipped(self):
        p = hospitalization_probability(0.5, np.array([0.5, 4.0]), 1.0)
        np.testing.assert_allclose(p, [0.25, 1.0])

    def test_fatality_overcap_factor(self):
        prop = np.array([1.0, 2.0])
        np.testing.assert_allclose(fatality_probability(0.1, prop, False, 3.0), [0.1, 0.2])
        np.testing.assert_allclose(fatality_probability(0.1, prop, True, 3.0), [0.3, 0.6])
        np.testing.assert_allclose(fatality_probability(0.4, prop, True, 3.0), [1.0, 1.0])


class TestTransitionPolicy:
    def test_default(self):
        assert TransitionPolicy().order[0] == 'S>E'

    def test_preempted_by(self):
        policy = TransitionPolicy()
        assert policy.preempted_by('I>H') == ('I>Q',)
        assert policy.preempted_by('Q>R') == ('Q>H',)
        assert policy.preempted_by('H>F') == ('H>R',)
        assert policy.preempted_by('E>I') == ()

    def test_invalid_rejected(self):
        with pytest.raises(ConfigurationError):
            TransitionPolicy(('S>E',))

    def test_from_config(self):
        cfg = DiseaseSection()
        cfg.transition_order = ['S>E', 'E>I', 'I>H', 'I>Q', 'Q>R', 'Q>H', 'H>F', 'H>R']
        assert TransitionPolicy.from_config(cfg).preempted_by('I>Q') == ('I>H',)


# ═══════════════════════════════════════════════════════════════════════
# TRANSMISSION
# ═══════════════════════════════════════════════════════════════════════

class TestExposureStep:
    def test_certain_transmission(self):
        states = np.array([State.S, State.I, State.S, State.Q], dtype=np.int8)
        active = np.ones(4, dtype=bool)
        edges = np.array([[0, 1], [2, 3]])
        hit = exposure_step(edges, states, active, 1.0, 0.0, np.random.default_rng(0))
        np.testing.assert_array_equal(hit, [0])

    def test_either_side(self):
        states = np.array([State.I, State.S], dtype=np.int8)
        hit = exposure_step(np.array([[0, 1]]), states, np.ones(2, dtype=bool),
                            1.0, 1.0, np.random.default_rng(0))
        np.testing.assert_array_equal(hit, [1])

    def test_non_infectious_neighbors(self):
        states = np.array([State.S, State.E, State.H, State.R, State.F], dtype=np.int8)
        edges = np.array([[0, 1], [0, 2], [0, 3], [0, 4]])
        hit = exposure_step(edges, states, np.ones(5, dtype=bool), 1.0, 1.0,
                            np.random.default_rng(0))
        assert len(hit) == 0

    def test_inactive_endpoint(self):
        states = np.array([State.S, State.I], dtype=np.int8)
        active = np.array([True, False])
        hit = exposure_step(np.array([[0, 1]]), states, active, 1.0, 1.0,
                            np.random.default_rng(0))
        assert len(hit) == 0

    def test_multiple_neighbors_union(self):
        """Empirical exposure matches 1 − (1−p_i)^n_i (1−p_q)^n_q."""
        n_s = 20000
        # Each susceptible k has two I neighbors and one Q neighbor
        states = np.full(n_s + 3, State.S, dtype=np.int8)
        i1, i2, q = n_s, n_s + 1, n_s + 2
        states[[i1, i2]] = State.I
        states[q] = State.Q
        s = np.arange(n_s)
        edges = np.concatenate([
            np.column_stack([s, np.full(n_s, i1)]),
            np.column_stack([s, np.full(n_s, i2)]),
            np.column_stack([s, np.full(n_s, q)]),
        ])
        active = np.ones(n_s + 3, dtype=bool)
        hit = exposure_step(edges, states, active, 0.1, 0.2, np.random.default_rng(4))
        expected = exposure_probability(np.array([2]), np.array([1]), 0.1, 0.2)[0]
        assert len(hit) / n_s == pytest.approx(expected, abs=0.015)


# ═══════════════════════════════════════════════════════════════════════
# TIMESTEP UPDATE
# ═══════════════════════════════════════════════════════════════════════

class TestDiseaseStep:
    def test_network_transmission(self):
        reg = make_registry([State.S, State.I, State.S])
        cfg = zero_disease(act_rate_i=1.0, inf_prob_i=1.0)
        stats, _ = step(reg, cfg, edges=np.array([[0, 1]]), t=3)
        assert reg.states[0] == State.E
        assert reg.states[2] == State.S
        assert reg.individuals['t_exposure'][0] == 3
        assert stats.transitions['S>E'] == 1

    def test_one_transition_per_timestep(self):
        """E→I happens, but the new I cannot also move to Q this timestep."""
        reg = make_registry([State.E] * 10)
        cfg = zero_disease(ei_rate=1.0, iq_rate=1.0)
        step(reg, cfg)
        assert np.all(reg.states == State.I)
        step(reg, cfg, t=2)
        assert np.all(reg.states == State.Q)

    def test_newly_exposed_not_infectious_same_step(self):
        reg = make_registry([State.S, State.I, State.S])
        cfg = zero_disease(act_rate_i=1.0, inf_prob_i=1.0, ei_rate=1.0)
        step(reg, cfg, edges=np.array([[0, 1], [0, 2]]))
        assert reg.states[0] == State.E
        # 2 neighbors 0, which was S in the snapshot
        assert reg.states[2] == State.S

    def test_policy_preemption_default(self):
        reg = make_registry([State.I] * 50)
        cfg = zero_disease(iq_rate=1.0, ih_rate=1.0)
        stats, _ = step(reg, cfg)
        assert np.all(reg.states == State.Q)
        assert stats.transitions['I>H'] == 0

    def test_policy_preemption_reordered(self):
        reg = make_registry([State.I] * 50)
        cfg = zero_disease(iq_rate=1.0, ih_rate=1.0)
        policy = TransitionPolicy(('S>E', 'E>I', 'I>H', 'I>Q', 'Q>H', 'Q>R', 'H>R', 'H>F'))
        stats, cap = step(reg, cfg, policy=policy)
        assert np.all(reg.states == State.H)
        assert cap.occupancy == 50

    def test_absorbing_states(self):
        reg = make_registry([State.R] * 5 + [State.F] * 5)
        cfg = zero_disease(act_rate_i=10.0, inf_prob_i=1.0, ei_rate=1.0,
                           iq_rate=1.0, ih_rate=1.0, qh_rate=1.0, qr_rate=1.0,
                           hr_rate=1.0, hf_rate=1.0)
        before = reg.states.copy()
        stats, _ = step(reg, cfg, edges=np.array([[0, 5], [1, 6]]))
        np.testing.assert_array_equal(reg.states, before)
        assert sum(stats.transitions.values()) == 0

    def test_hospital_bookkeeping(self):
        reg = make_registry([State.I] * 10 + [State.H] * 10)
        cfg = zero_disease(ih_rate=1.0, hr_rate=1.0)
        stats, cap = step(reg, cfg, t=4)
        assert cap.occupancy == 10
        cap.verify(reg.states, reg.active)
        discharged = np.arange(10, 20)
        assert np.all(reg.states[discharged] == State.R)
        assert np.all(reg.individuals['t_discharge'][discharged] == 4)
        assert np.all(reg.individuals['t_recovery'][discharged] == 4)
        assert np.all(reg.individuals['t_hospitalization'][:10] == 4)

    def test_age_stratified_hospitalization(self):
        rates = RateTable({0: [0.0, 0.0], 1: [1.0, 0.0]})
        reg = make_registry([State.I] * 20, ages=[0] * 10 + [1] * 10)
        step(reg, zero_disease(ih_rate=1.0), rates=rates)
        assert np.all(reg.states[:10] == State.I)
        assert np.all(reg.states[10:] == State.H)

    def test_hosp_tcoeff(self):
        rates = RateTable({0: [0.5, 0.0]})
        reg = make_registry([State.Q] * 40)
        step(reg, zero_disease(qh_rate=1.0, hosp_tcoeff=2.0), rates=rates)
        assert np.all(reg.states == State.H)

    def test_missing_age_group_raises(self):
        rates = RateTable({0: [1.0, 1.0]})
        reg = make_registry([State.I], ages=[3])
        with pytest.raises(ConfigurationError):
            step(reg, zero_disease(ih_rate=0.5), rates=rates)

    def test_departed_individuals_ignored(self):
        reg = make_registry([State.E] * 4)
        reg.deactivate(np.array([0, 1]), 0)
        step(reg, zero_disease(ei_rate=1.0))
        assert np.all(reg.states[:2] == State.E)
        assert np.all(reg.states[2:] == State.I)

    def test_transition_counts_array(self):
        reg = make_registry([State.E] * 3)
        stats, _ = step(reg, zero_disease(ei_rate=1.0))
        arr = transition_counts_array(stats)
        assert arr.shape == (len(TRANSITIONS),)
        assert arr[list(TRANSITIONS).index('E>I')] == 3
        assert arr.sum() == 3


# ═══════════════════════════════════════════════════════════════════════
# CARE CAPACITY
# ═══════════════════════════════════════════════════════════════════════

class TestOvercap:
    N = 40000

    def _death_fraction(self, cap, seed=0):
        reg = make_registry([State.H] * self.N)
        cfg = zero_disease(hf_rate=0.01, hf_overcap_multiplier=3.0, hospital_cap=cap)
        stats, _ = step(reg, cfg, seed=seed)
        return stats, np.mean(reg.states == State.F)

    def test_under_cap_base_rate(self):
        stats, frac = self._death_fraction(cap=self.N)
        assert not stats.overcap
        assert frac == pytest.approx(0.01, abs=0.003)

    def test_over_cap_multiplied_rate(self):
        stats, frac = self._death_fraction(cap=10)
        assert stats.overcap
        assert frac == pytest.approx(0.03, abs=0.005)

    def test_overcap_sees_same_step_admissions(self):
        """Admissions push occupancy over the cap before H→F is evaluated."""
        reg = make_registry([State.H] * 5 + [State.I] * 5)
        cfg = zero_disease(ih_rate=1.0, hospital_cap=7)
        stats, cap = step(reg, cfg)
        assert cap.occupancy == 10
        assert stats.overcap
        assert cap.overcap_steps == 1

    def test_overcap_after_discharges(self):
        """H→R exits under the default order count before H→F."""
        reg = make_registry([State.H] * 10)
        cfg = zero_disease(hr_rate=1.0, hospital_cap=5)
        stats, cap = step(reg, cfg)
        assert cap.occupancy == 0
        assert not stats.overcap


class TestZeroCapacity:
    def test_first_admission_is_overcap(self):
        reg = make_registry([State.I] + [State.S] * 5)
        stats, cap = step(reg, zero_disease(ih_rate=1.0, hospital_cap=0))
        assert cap.occupancy == 1
        assert stats.overcap

    def test_every_hf_trial_uses_overcap_rate(self):
        """Cap 0: anyone in H at H→F time faces r·k, never r."""
        n = 40000
        reg = make_registry([State.I] * n)
        cfg = zero_disease(ih_rate=1.0, hf_rate=0.01, hf_overcap_multiplier=4.0,
                           hospital_cap=0)
        capacity = CapacityController(0)
        step(reg, cfg, capacity=capacity, t=1, seed=1)
        assert np.all(reg.states == State.H)
        stats, _ = step(reg, cfg, capacity=capacity, t=2, seed=2)
        assert stats.overcap
        frac = np.mean(reg.states == State.F)
        assert frac == pytest.approx(0.04, abs=0.006)
        assert frac > 0.02
