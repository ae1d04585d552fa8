"""Dynamic contact network: tie formation and dissolution per timestep.

Implements:
  - Edge set keyed by unordered individual-id pairs, each Tie carrying its
    activation and dissolution timestep. Adjacency is derived, never stored.
  - Dissolution: one Bernoulli trial per active tie, probability from
    persistence log-odds coefficients that depend on whether the two
    endpoints share a housing unit:
        p_diss = 1 / (1 + exp(coef))      coef = log(D_adj − 1)
    where D_adj is the target mean duration adjusted for departures
    (ties also end when an endpoint leaves):
        1 / D_adj = 1 / D − departure_rate
  - Formation: propose within-housing and between-housing pairs until the
    formation targets (edge count, same-housing edge count) are restored,
    up to a proposal budget. Targets scale with the current active
    population so mean degree is preserved under arrivals/departures.
  - Best-effort approximation: if a target is still outside tolerance
    when the budget runs out, the network keeps what it has and emits a
    NetworkApproximationWarning. It never blocks or fails.
  - Estimation interface: NetworkEstimator.fit(target_stats, layout) →
    (FormationModel, DissolutionCoefficients). MomentMatchingEstimator is
    the bundled implementation; any object with the same `fit` works.
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Protocol, Tuple

import networkx as nx
import numpy as np

from shelter_epi.errors import ConfigurationError, NetworkApproximationWarning
from shelter_epi.types import Tie, tie_key


# ═══════════════════════════════════════════════════════════════════════
# MODEL OBJECTS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class TargetStats:
    """Cross-sectional and duration targets the network should reproduce."""
    n_individuals: int
    mean_degree: float = 4.0
    same_housing_fraction: float = 0.7
    mean_duration_same: float = 60.0
    mean_duration_between: float = 5.0
    departure_rate: float = 0.0
    tolerance: float = 0.05
    max_proposals_factor: int = 20


@dataclass
class FormationModel:
    """Formation targets fitted for a reference population size."""
    target_edges: float
    target_same_housing: float
    n_reference: int
    tolerance: float = 0.05
    max_proposals_factor: int = 20

    def targets(self, n_active: int) -> Tuple[float, float]:
        """(edges, same-housing edges) scaled to the current population."""
        if self.n_reference <= 0:
            return 0.0, 0.0
        scale = n_active / self.n_reference
        return self.target_edges * scale, self.target_same_housing * scale


@dataclass
class DissolutionCoefficients:
    """Persistence log-odds per tie class (same housing vs. between)."""
    coef_same: float
    coef_between: float
    duration_same: float
    duration_between: float

    @property
    def p_same(self) -> float:
        return 1.0 / (1.0 + math.exp(self.coef_same))

    @property
    def p_between(self) -> float:
        return 1.0 / (1.0 + math.exp(self.coef_between))

    def dissolution_probability(self, same_housing: np.ndarray) -> np.ndarray:
        """Per-tie dissolution probability for this timestep."""
        return np.where(same_housing, self.p_same, self.p_between)


def dissolution_coefficients(
    duration_same: float,
    duration_between: float,
    departure_rate: float = 0.0,
) -> DissolutionCoefficients:
    """Derive persistence coefficients from target mean durations.

    Args:
        duration_same: Mean tie duration (timesteps) within a housing unit.
        duration_between: Mean tie duration between housing units.
        departure_rate: Per-timestep departure probability; shortens the
            dissolution-only duration needed to hit the observed mean.

    Raises:
        ConfigurationError: If a duration is < 1 or the departure rate
            alone already ends ties faster than the target duration.
    """
    coefs = []
    for label, duration in (('same', duration_same), ('between', duration_between)):
        if not math.isfinite(duration) or duration < 1:
            raise ConfigurationError(
                f"mean tie duration ({label}) must be >= 1, got {duration}"
            )
        hazard = 1.0 / duration - departure_rate
        if hazard <= 0:
            raise ConfigurationError(
                f"departure rate {departure_rate} alone exceeds the target "
                f"dissolution hazard for {label}-housing ties (duration {duration})"
            )
        d_adj = 1.0 / hazard
        # d_adj == 1 means every tie ends after one step: p_diss = 1
        coefs.append(math.log(d_adj - 1.0) if d_adj > 1.0 else -math.inf)
    return DissolutionCoefficients(
        coef_same=coefs[0],
        coef_between=coefs[1],
        duration_same=duration_same,
        duration_between=duration_between,
    )


class NetworkEstimator(Protocol):
    """Anything that turns target statistics into a generator + coefficients."""

    def fit(
        self,
        target_stats: TargetStats,
        layout=None,
    ) -> Tuple[FormationModel, DissolutionCoefficients]:
        ...


class MomentMatchingEstimator:
    """Targets straight from the summary statistics.

    Expected edges = mean_degree × n / 2, of which a
    same_housing_fraction share lies within units. When a layout is
    given, the same-housing target is capped at the number of
    within-unit pairs available.
    """

    def fit(
        self,
        target_stats: TargetStats,
        layout=None,
    ) -> Tuple[FormationModel, DissolutionCoefficients]:
        ts = target_stats
        if ts.n_individuals < 0 or ts.mean_degree < 0:
            raise ConfigurationError("target statistics must be non-negative")
        edges = ts.mean_degree * ts.n_individuals / 2.0
        same = edges * ts.same_housing_fraction
        if layout is not None:
            sizes = layout.unit_sizes()
            max_same = float(np.sum(sizes * (sizes - 1) // 2))
            if same > max_same:
                warnings.warn(
                    f"same-housing target {same:.1f} exceeds the {max_same:.0f} "
                    f"within-unit pairs available; capping",
                    NetworkApproximationWarning,
                    stacklevel=2,
                )
                same = max_same
        formation = FormationModel(
            target_edges=edges,
            target_same_housing=same,
            n_reference=ts.n_individuals,
            tolerance=ts.tolerance,
            max_proposals_factor=ts.max_proposals_factor,
        )
        dissolution = dissolution_coefficients(
            ts.mean_duration_same, ts.mean_duration_between, ts.departure_rate,
        )
        return formation, dissolution


def fit_network_model(
    target_stats: TargetStats,
    layout=None,
    estimator: Optional[NetworkEstimator] = None,
) -> Tuple[FormationModel, DissolutionCoefficients]:
    """Fit formation/dissolution with `estimator` (moment matching by default)."""
    estimator = estimator if estimator is not None else MomentMatchingEstimator()
    return estimator.fit(target_stats, layout)


# ═══════════════════════════════════════════════════════════════════════
# CONTACT NETWORK
# ═══════════════════════════════════════════════════════════════════════

class ContactNetwork:
    """Edge set of Ties keyed by normalised (a, b) pairs, a < b.

    Active ties live in `_active` (insertion order is the draw order, so
    replays are deterministic). Dissolved ties move to `history`.
    """

    def __init__(self):
        self._active: Dict[Tuple[int, int], Tie] = {}
        self.history: List[Tie] = []

    def __len__(self) -> int:
        return len(self._active)

    def __contains__(self, pair) -> bool:
        a, b = pair
        if a == b:
            return False
        return tie_key(a, b) in self._active

    @property
    def n_ties(self) -> int:
        return len(self._active)

    def ties(self) -> Iterator[Tie]:
        return iter(self._active.values())

    def has_tie(self, a: int, b: int) -> bool:
        return (a, b) in self

    def add_tie(self, a: int, b: int, timestep: int) -> Tie:
        """Activate a new tie.

        Raises:
            ValueError: On a self-tie or a tie that is already active.
        """
        key = tie_key(a, b)
        if key in self._active:
            raise ValueError(f"tie {key} is already active")
        tie = Tie(key[0], key[1], activated_at=int(timestep))
        self._active[key] = tie
        return tie

    def dissolve_tie(self, a: int, b: int, timestep: int) -> Tie:
        """End an active tie at `timestep`."""
        tie = self._active.pop(tie_key(a, b))
        tie.dissolve(timestep)
        self.history.append(tie)
        return tie

    def edge_array(self) -> np.ndarray:
        """(m, 2) int64 array of active ties, a < b per row."""
        if not self._active:
            return np.zeros((0, 2), dtype=np.int64)
        return np.array(list(self._active.keys()), dtype=np.int64)

    def adjacency(self) -> Dict[int, List[int]]:
        """Derived neighbor index over active ties."""
        adj: Dict[int, List[int]] = {}
        for a, b in self._active:
            adj.setdefault(a, []).append(b)
            adj.setdefault(b, []).append(a)
        return adj

    def neighbors(self, uid: int) -> List[int]:
        uid = int(uid)
        out = []
        for a, b in self._active:
            if a == uid:
                out.append(b)
            elif b == uid:
                out.append(a)
        return out

    def same_housing_mask(self, housing_units: np.ndarray) -> np.ndarray:
        edges = self.edge_array()
        if len(edges) == 0:
            return np.zeros(0, dtype=bool)
        return housing_units[edges[:, 0]] == housing_units[edges[:, 1]]

    def dissolve_incident(self, uids: np.ndarray, timestep: int) -> int:
        """Dissolve every active tie touching any id in `uids`."""
        if len(uids) == 0 or not self._active:
            return 0
        edges = self.edge_array()
        hit = np.isin(edges, uids).any(axis=1)
        for a, b in edges[hit]:
            self.dissolve_tie(int(a), int(b), timestep)
        return int(np.count_nonzero(hit))

    def snapshot(self, timestep: int) -> np.ndarray:
        """(m, 2) array of ties active during `timestep`."""
        pairs = [t.key for t in self._active.values() if t.activated_at <= timestep]
        pairs.extend(t.key for t in self.history if t.active_at(timestep))
        if not pairs:
            return np.zeros((0, 2), dtype=np.int64)
        return np.array(sorted(pairs), dtype=np.int64)

    def to_networkx(self, timestep: Optional[int] = None, registry=None) -> nx.Graph:
        """Graph view for visualization collaborators.

        Args:
            timestep: Ties active during this timestep (None = current ties).
            registry: Optional PopulationRegistry; adds active individuals as
                nodes with state, age_group and housing_unit attributes.
        """
        g = nx.Graph()
        if registry is not None:
            data = registry.individuals
            for row in data[data['active']]:
                g.add_node(
                    int(row['uid']),
                    state=int(row['state']),
                    age_group=int(row['age_group']),
                    housing_unit=int(row['housing_unit']),
                )
        edges = self.edge_array() if timestep is None else self.snapshot(timestep)
        g.add_edges_from((int(a), int(b)) for a, b in edges)
        return g

    def copy(self) -> "ContactNetwork":
        """Deep copy; replicates never share a network."""
        net = ContactNetwork()
        for key, tie in self._active.items():
            net._active[key] = Tie(tie.a, tie.b, tie.activated_at)
        net.history = [
            Tie(t.a, t.b, t.activated_at, t.dissolved_at) for t in self.history
        ]
        return net


# ═══════════════════════════════════════════════════════════════════════
# PER-TIMESTEP EVOLUTION
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class NetworkStepStats:
    """Diagnostics from one network advance."""
    timestep: int
    n_edges: int = 0
    n_same_housing: int = 0
    target_edges: float = 0.0
    target_same_housing: float = 0.0
    dissolved: int = 0
    formed: int = 0
    approximated: bool = False


def _within_unit_candidates(
    active_ids: np.ndarray,
    housing_units: np.ndarray,
    n: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw n candidate pairs that share a housing unit."""
    units = housing_units[active_ids]
    order = np.argsort(units, kind='stable')
    members = active_ids[order]
    unit_ids, starts, sizes = np.unique(
        units[order], return_index=True, return_counts=True,
    )
    pairs = sizes.astype(np.float64) * (sizes - 1) / 2.0
    ok = sizes >= 2
    if n <= 0 or not ok.any():
        return np.zeros((0, 2), dtype=np.int64)
    starts, sizes, pairs = starts[ok], sizes[ok], pairs[ok]
    pick = rng.choice(len(sizes), size=n, p=pairs / pairs.sum())
    size = sizes[pick]
    i = (rng.random(n) * size).astype(np.int64)
    j = (rng.random(n) * (size - 1)).astype(np.int64)
    j = np.where(j >= i, j + 1, j)
    return np.column_stack([members[starts[pick] + i], members[starts[pick] + j]])


def _between_unit_candidates(
    active_ids: np.ndarray,
    housing_units: np.ndarray,
    n: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw n candidate pairs living in different housing units."""
    if n <= 0 or len(active_ids) < 2:
        return np.zeros((0, 2), dtype=np.int64)
    a = active_ids[rng.integers(0, len(active_ids), size=n)]
    b = active_ids[rng.integers(0, len(active_ids), size=n)]
    keep = housing_units[a] != housing_units[b]
    return np.column_stack([a[keep], b[keep]])


def _form_ties(
    network: ContactNetwork,
    candidates: np.ndarray,
    needed: int,
    timestep: int,
) -> int:
    formed = 0
    for a, b in candidates:
        if formed >= needed:
            break
        a = int(a)
        b = int(b)
        if a == b or (a, b) in network:
            continue
        network.add_tie(a, b, timestep)
        formed += 1
    return formed


def form_to_targets(
    network: ContactNetwork,
    formation: FormationModel,
    housing_units: np.ndarray,
    active: np.ndarray,
    timestep: int,
    rng: np.random.Generator,
) -> NetworkStepStats:
    """Add ties until the formation targets are met or the budget runs out."""
    active_ids = np.flatnonzero(active).astype(np.int64)
    target_edges, target_same = formation.targets(len(active_ids))
    target_between = target_edges - target_same

    same_mask = network.same_housing_mask(housing_units)
    n_same = int(np.count_nonzero(same_mask))
    n_between = network.n_ties - n_same

    need_same = int(round(target_same)) - n_same
    need_between = int(round(target_between)) - n_between
    formed = 0
    if need_same > 0:
        budget = need_same * formation.max_proposals_factor
        cand = _within_unit_candidates(active_ids, housing_units, budget, rng)
        got = _form_ties(network, cand, need_same, timestep)
        n_same += got
        formed += got
    if need_between > 0:
        budget = need_between * formation.max_proposals_factor
        cand = _between_unit_candidates(active_ids, housing_units, budget, rng)
        got = _form_ties(network, cand, need_between, timestep)
        n_between += got
        formed += got

    stats = NetworkStepStats(
        timestep=timestep,
        n_edges=n_same + n_between,
        n_same_housing=n_same,
        target_edges=target_edges,
        target_same_housing=target_same,
        formed=formed,
    )
    stats.approximated = not (
        _within_tolerance(stats.n_edges, target_edges, formation.tolerance)
        and _within_tolerance(n_same, target_same, formation.tolerance)
    )
    return stats


def _within_tolerance(observed: float, target: float, tolerance: float) -> bool:
    # Rounding alone can leave a gap of one tie on small targets
    return abs(observed - target) <= max(tolerance * target, 1.0)


def initialize_network(
    formation: FormationModel,
    housing_units: np.ndarray,
    active: np.ndarray,
    rng: np.random.Generator,
    timestep: int = 0,
) -> ContactNetwork:
    """Cross-sectional starting network: formation only, from empty."""
    network = ContactNetwork()
    stats = form_to_targets(network, formation, housing_units, active, timestep, rng)
    if stats.approximated:
        _warn_approximation(stats)
    return network


def advance_network(
    network: ContactNetwork,
    formation: FormationModel,
    dissolution: DissolutionCoefficients,
    housing_units: np.ndarray,
    active: np.ndarray,
    timestep: int,
    rng: np.random.Generator,
) -> NetworkStepStats:
    """One timestep of tie dissolution followed by formation. In place.

    Sequence:
      1. One dissolution draw per active tie (insertion order)
      2. Formation proposals toward the population-scaled targets
      3. Tolerance check → NetworkApproximationWarning if missed

    Args:
        network: Network to update (mutated).
        formation: Fitted formation model.
        dissolution: Fitted dissolution coefficients.
        housing_units: Housing unit id per individual id.
        active: Active flag per individual id.
        timestep: Current timestep; new ties activate and dissolved ties
            end at this value.
        rng: Network RNG stream.

    Returns:
        NetworkStepStats for this timestep.
    """
    edges = network.edge_array()
    dissolved = 0
    if len(edges) > 0:
        same = housing_units[edges[:, 0]] == housing_units[edges[:, 1]]
        p = dissolution.dissolution_probability(same)
        ends = rng.random(len(edges)) < p
        for a, b in edges[ends]:
            network.dissolve_tie(int(a), int(b), timestep)
        dissolved = int(np.count_nonzero(ends))

    stats = form_to_targets(network, formation, housing_units, active, timestep, rng)
    stats.dissolved = dissolved
    if stats.approximated:
        _warn_approximation(stats)
    return stats


def _warn_approximation(stats: NetworkStepStats) -> None:
    warnings.warn(
        f"t={stats.timestep}: network has {stats.n_edges} ties "
        f"({stats.n_same_housing} same-housing), targets "
        f"{stats.target_edges:.1f} ({stats.target_same_housing:.1f}); "
        f"keeping best approximation",
        NetworkApproximationWarning,
        stacklevel=3,
    )
