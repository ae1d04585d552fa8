"""Epidemic state machine: SEIQHRF on a dynamic contact network.

Implements:
  - SEIQHRF compartments: S→E→I→{Q|H}, Q→{H|R}, H→{R|F}
  - Network transmission: one Bernoulli trial per active tie between a
    susceptible and an I (or Q) neighbor,
        p_tie = 1 − (1 − inf_prob)^act_rate
    with separate (act_rate, inf_prob) pairs for the I and Q channels;
    exposure if any trial succeeds
  - Fixed per-timestep progression probabilities (E→I, I→Q, Q→R, H→R)
  - Age-stratified hospitalization: base × hosp propensity × hosp_tcoeff
  - Age-stratified fatality: base × fatality propensity, × overcap
    multiplier while H-occupancy exceeds the hospital cap
  - Tie-break policy: one transition per individual per timestep; for a
    given source state, transitions earlier in the policy order preempt
    later ones

Every decision in a timestep reads the start-of-timestep state snapshot.
The one intra-timestep dependency is H-occupancy: H→F consults
is_overcap() after the timestep's admissions (I→H, Q→H) are committed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Sequence, Tuple

import numpy as np

from shelter_epi.config import DiseaseSection, validate_transition_order
from shelter_epi.population import PopulationRegistry
from shelter_epi.rates import CapacityController, RateTable
from shelter_epi.types import DEFAULT_TRANSITION_ORDER, State, TRANSITIONS


# ═══════════════════════════════════════════════════════════════════════
# TRANSITION POLICY
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TransitionPolicy:
    """Validated evaluation order of the eight transitions."""
    order: Tuple[str, ...] = DEFAULT_TRANSITION_ORDER

    def __post_init__(self):
        validate_transition_order(list(self.order))
        object.__setattr__(self, 'order', tuple(self.order))

    @classmethod
    def from_config(cls, cfg: DiseaseSection) -> "TransitionPolicy":
        return cls(tuple(cfg.transition_order))

    def preempted_by(self, name: str) -> Tuple[str, ...]:
        """Transitions from the same source state that are tried first."""
        source = TRANSITIONS[name][0]
        idx = self.order.index(name)
        return tuple(
            t for t in self.order[:idx] if TRANSITIONS[t][0] == source
        )


# ═══════════════════════════════════════════════════════════════════════
# PROBABILITY FUNCTIONS
# ═══════════════════════════════════════════════════════════════════════

def per_tie_probability(act_rate: float, inf_prob: float) -> float:
    """Transmission probability across one tie in one timestep."""
    return 1.0 - (1.0 - inf_prob) ** act_rate


def exposure_probability(n_i: np.ndarray, n_q: np.ndarray,
                         p_i: float, p_q: float) -> np.ndarray:
    """Union probability of at least one successful trial.

    Given n_i I-neighbors and n_q Q-neighbors with independent per-tie
    trials. Closed form of what exposure_step() samples tie by tie.
    """
    return 1.0 - (1.0 - p_i) ** n_i * (1.0 - p_q) ** n_q


def hospitalization_probability(base_rate: float, propensity: np.ndarray,
                                tcoeff: float) -> np.ndarray:
    return np.clip(base_rate * propensity * tcoeff, 0.0, 1.0)


def fatality_probability(base_rate: float, propensity: np.ndarray,
                         overcap: bool, overcap_multiplier: float) -> np.ndarray:
    factor = overcap_multiplier if overcap else 1.0
    return np.clip(base_rate * propensity * factor, 0.0, 1.0)


# ═══════════════════════════════════════════════════════════════════════
# TRANSMISSION (S → E)
# ═══════════════════════════════════════════════════════════════════════

def exposure_step(
    edges: np.ndarray,
    states: np.ndarray,
    active: np.ndarray,
    p_i: float,
    p_q: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw one trial per qualifying tie; return the newly exposed ids.

    A qualifying tie joins an active susceptible to an active neighbor in
    I (probability p_i) or Q (probability p_q). Draws are made in edge
    order, a-side trials before b-side trials.

    Args:
        edges: (m, 2) active ties.
        states: Snapshot of states, indexed by individual id.
        active: Active flags, indexed by individual id.
        p_i: Per-tie probability for I neighbors.
        p_q: Per-tie probability for Q neighbors.
        rng: Disease RNG stream.

    Returns:
        Sorted unique ids of susceptibles exposed this timestep.
    """
    if len(edges) == 0:
        return np.zeros(0, dtype=np.int64)
    a = edges[:, 0]
    b = edges[:, 1]
    live = active[a] & active[b]
    sa = states[a]
    sb = states[b]

    targets = []
    probs = []
    for susc, other_state, susc_side in ((a, sb, sa), (b, sa, sb)):
        s_mask = live & (susc_side == State.S)
        i_mask = s_mask & (other_state == State.I)
        q_mask = s_mask & (other_state == State.Q)
        mask = i_mask | q_mask
        targets.append(susc[mask])
        probs.append(np.where(i_mask[mask], p_i, p_q))

    targets = np.concatenate(targets)
    probs = np.concatenate(probs)
    if len(targets) == 0:
        return np.zeros(0, dtype=np.int64)
    success = rng.random(len(targets)) < probs
    return np.unique(targets[success])


# ═══════════════════════════════════════════════════════════════════════
# TIMESTEP UPDATE
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class DiseaseStepStats:
    """Transition counts from one timestep."""
    timestep: int
    transitions: Dict[str, int] = field(
        default_factory=lambda: {name: 0 for name in TRANSITIONS}
    )
    overcap: bool = False


def disease_step(
    registry: PopulationRegistry,
    edges: np.ndarray,
    rate_table: RateTable,
    capacity: CapacityController,
    cfg: DiseaseSection,
    policy: TransitionPolicy,
    timestep: int,
    rng: np.random.Generator,
) -> DiseaseStepStats:
    """Advance every active individual by one timestep.

    Sequence (default policy):
      1. S → E   along active ties to I/Q neighbors
      2. E → I
      3. I → Q, then I → H for those not quarantined
      4. Q → H, then Q → R
      5. H → R, then H → F with the post-admission overcap status

    Side effects: state and entry timestamps in `registry`; admissions
    and exits on `capacity`. H → R also stamps t_discharge.

    Args:
        registry: Population registry (mutated).
        edges: (m, 2) ties active this timestep.
        rate_table: Age-stratified propensities.
        capacity: Hospital occupancy controller (mutated).
        cfg: Disease configuration section.
        policy: Transition evaluation order.
        timestep: Current timestep (entry timestamps get this value).
        rng: Disease RNG stream.

    Returns:
        DiseaseStepStats with per-transition counts.
    """
    stats = DiseaseStepStats(timestep=timestep)
    snapshot = registry.states.copy()
    active = registry.active.copy()
    ages = registry.age_groups
    moved = np.zeros(len(snapshot), dtype=bool)

    fixed = {
        'E>I': cfg.ei_rate,
        'I>Q': cfg.iq_rate,
        'Q>R': cfg.qr_rate,
        'H>R': cfg.hr_rate,
    }

    for name in policy.order:
        source, target = TRANSITIONS[name]

        if name == 'S>E':
            hit = exposure_step(
                edges, snapshot, active,
                per_tie_probability(cfg.act_rate_i, cfg.inf_prob_i),
                per_tie_probability(cfg.act_rate_q, cfg.inf_prob_q),
                rng,
            )
        else:
            if name == 'H>F':
                stats.overcap = capacity.is_overcap()
                if stats.overcap:
                    capacity.overcap_steps += 1
            cand = np.flatnonzero((snapshot == source) & active & ~moved)
            if len(cand) == 0:
                continue
            if name in fixed:
                p = np.full(len(cand), fixed[name])
            elif name == 'I>H':
                p = hospitalization_probability(
                    cfg.ih_rate, rate_table.hosp_propensity(ages[cand]), cfg.hosp_tcoeff,
                )
            elif name == 'Q>H':
                p = hospitalization_probability(
                    cfg.qh_rate, rate_table.hosp_propensity(ages[cand]), cfg.hosp_tcoeff,
                )
            else:  # H>F
                p = fatality_probability(
                    cfg.hf_rate, rate_table.fatality_propensity(ages[cand]),
                    stats.overcap, cfg.hf_overcap_multiplier,
                )
            hit = cand[rng.random(len(cand)) < p]

        if len(hit) == 0:
            continue
        registry.set_state(hit, target, timestep)
        moved[hit] = True
        stats.transitions[name] = len(hit)

        if target == State.H:
            capacity.admit(len(hit))
        if source == State.H:
            capacity.discharge(len(hit))
            if target == State.R:
                registry.stamp(hit, 't_discharge', timestep)

    return stats


def transition_counts_array(stats: DiseaseStepStats,
                            names: Sequence[str] = tuple(TRANSITIONS)) -> np.ndarray:
    """Per-transition counts as an int array in `names` order."""
    return np.array([stats.transitions[n] for n in names], dtype=np.int64)
