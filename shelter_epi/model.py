"""Replicate driver: one full time-stepped run of the shelter epidemic.

Per timestep t = 1..horizon, in fixed order:
  1. Network advance       (tie dissolution, then formation)
  2. Arrivals/departures   (optional background churn)
  3. State machine         (S→E → E→I → I→Q/H → Q→H/R → H→R/F)
  4. Capacity verification (H-occupancy counter vs. individuals in H)
  5. Record counts, transition incidence, network diagnostics

Exposure sees the timestep's network before progression consumes it, and
H→F sees the timestep's completed admissions. Row 0 of every series is
the initial state.

A replicate either completes or raises: ConfigurationError before t=1,
CapacityInvariantViolation or ReplicateAborted mid-horizon. Partial
results are never returned.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import numpy as np

from shelter_epi.config import SimulationConfig, validate_config
from shelter_epi.disease import TransitionPolicy, disease_step, transition_counts_array
from shelter_epi.errors import ConfigurationError, ReplicateAborted
from shelter_epi.network import (
    ContactNetwork,
    DissolutionCoefficients,
    FormationModel,
    NetworkEstimator,
    TargetStats,
    advance_network,
    fit_network_model,
    initialize_network,
)
from shelter_epi.population import (
    HousingLayout,
    PopulationRegistry,
    assign_age_groups,
    build_housing_layout,
    seed_initial_states,
)
from shelter_epi.rates import CapacityController, RateTable
from shelter_epi.rng import create_replicate_streams
from shelter_epi.snapshots import NetworkSnapshot, NetworkSnapshotRecorder
from shelter_epi.types import N_STATES, NULL_TIME, State, TRANSITIONS
from shelter_epi.vital import vital_step

# step_callback(t, horizon, counts) → stop reason or None
StepCallback = Callable[[int, int, np.ndarray], Optional[str]]


# ═══════════════════════════════════════════════════════════════════════
# INPUTS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationInputs:
    """Everything the engine consumes besides scalar parameters.

    Shared read-only across replicates; each replicate copies the layout
    and the initial network before mutating them.
    """
    layout: HousingLayout
    age_groups: np.ndarray
    rate_table: RateTable
    formation: FormationModel
    dissolution: DissolutionCoefficients
    initial_network: Optional[ContactNetwork] = None

    @property
    def n_individuals(self) -> int:
        return len(self.age_groups)


def build_inputs(
    config: SimulationConfig,
    seed: Optional[int] = None,
    estimator: Optional[NetworkEstimator] = None,
) -> SimulationInputs:
    """Build a layout, age structure, rate table and fitted network model.

    Stand-in for the external data and estimation collaborators: the
    layout comes from the housing section, ages are drawn from the
    configured proportions, and the network model is fitted with
    `estimator` (moment matching by default).

    Args:
        config: Simulation configuration.
        seed: Seed for the age draw (default: config.simulation.seed).
        estimator: Optional NetworkEstimator.
    """
    pop = config.population
    rng = np.random.default_rng(config.simulation.seed if seed is None else seed)
    layout = build_housing_layout(
        pop.n_individuals,
        config.housing.high_capacity,
        config.housing.low_capacity,
        config.housing.high_fraction,
    )
    ages = assign_age_groups(pop.n_individuals, pop.age_group_proportions, rng)
    net = config.network
    target = TargetStats(
        n_individuals=pop.n_individuals,
        mean_degree=net.mean_degree,
        same_housing_fraction=net.same_housing_fraction,
        mean_duration_same=net.mean_duration_same,
        mean_duration_between=net.mean_duration_between,
        departure_rate=config.vital.departure_rate,
        tolerance=net.tolerance,
        max_proposals_factor=net.max_proposals_factor,
    )
    formation, dissolution = fit_network_model(target, layout, estimator)
    return SimulationInputs(
        layout=layout,
        age_groups=ages,
        rate_table=RateTable.from_config(config.rate_table),
        formation=formation,
        dissolution=dissolution,
    )


def validate_inputs(inputs: SimulationInputs, config: SimulationConfig) -> None:
    """Cross-check inputs against the configuration before any timestep.

    Raises:
        ConfigurationError: On a population size mismatch, a housing layout
            that does not cover the population, an incomplete rate table,
            or an initial network touching unknown individuals.
    """
    n = config.population.n_individuals
    if inputs.n_individuals != n:
        raise ConfigurationError(
            f"inputs describe {inputs.n_individuals} individuals, "
            f"config requests n={n}"
        )
    inputs.layout.validate(n)
    inputs.rate_table.validate_coverage(np.unique(inputs.age_groups))
    inputs.rate_table.validate_coverage(config.population.age_group_proportions)
    if inputs.initial_network is not None:
        edges = inputs.initial_network.edge_array()
        if len(edges) and (edges.min() < 0 or edges.max() >= n):
            raise ConfigurationError(
                "initial network references individuals outside 0..n-1"
            )


# ═══════════════════════════════════════════════════════════════════════
# RESULT
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ReplicateResult:
    """Output of one replicate. Series have length horizon + 1."""
    replicate_id: int = 0
    horizon: int = 0
    counts: Optional[np.ndarray] = None          # (T+1, 7) per-state counts
    population: Optional[np.ndarray] = None      # (T+1,) active population
    incidence: Optional[np.ndarray] = None       # (T+1, 8) per-transition counts
    individuals: Optional[np.ndarray] = None     # INDIVIDUAL_DTYPE timestamp table

    # Care capacity
    overcap: Optional[np.ndarray] = None         # (T+1,) overcap at H→F evaluation
    peak_occupancy: int = 0

    # Network diagnostics
    network_edges: Optional[np.ndarray] = None
    network_same_housing: Optional[np.ndarray] = None
    network_formed: Optional[np.ndarray] = None
    network_dissolved: Optional[np.ndarray] = None
    network_approximated: Optional[np.ndarray] = None

    # Vital dynamics
    arrivals: Optional[np.ndarray] = None
    departures: Optional[np.ndarray] = None
    rejected_arrivals: Optional[np.ndarray] = None

    snapshots: Dict[int, NetworkSnapshot] = field(default_factory=dict)

    @property
    def final_counts(self) -> Dict[str, int]:
        return {s.name: int(self.counts[-1, s]) for s in State}

    def series(self, state: State) -> np.ndarray:
        """Per-timestep count of one state."""
        return self.counts[:, int(state)]

    @property
    def cumulative_exposures(self) -> int:
        """Individuals exposed during the simulated window."""
        return int(np.count_nonzero(self.individuals['t_exposure'] != NULL_TIME))

    @property
    def total_deaths(self) -> int:
        return int(np.count_nonzero(self.individuals['state'] == State.F))

    @property
    def peak_hospitalized(self) -> int:
        return int(self.counts[:, State.H].max())

    @property
    def overcap_steps(self) -> int:
        return int(np.count_nonzero(self.overcap))

    @property
    def n_network_warnings(self) -> int:
        return int(np.count_nonzero(self.network_approximated))


# ═══════════════════════════════════════════════════════════════════════
# DRIVER
# ═══════════════════════════════════════════════════════════════════════

def run_replicate(
    inputs: SimulationInputs,
    config: SimulationConfig,
    seed: "int | np.random.SeedSequence",
    replicate_id: int = 0,
    step_callback: Optional[StepCallback] = None,
) -> ReplicateResult:
    """Run one replicate from the initial partition to the horizon.

    Args:
        inputs: Layout, ages, rate table and fitted network model.
        config: Simulation configuration.
        seed: Integer seed or SeedSequence for this replicate's streams.
        replicate_id: Index recorded in the result.
        step_callback: Called after every committed timestep with
            (t, horizon, counts). A non-None return aborts the replicate.

    Returns:
        ReplicateResult.

    Raises:
        ConfigurationError: Before t=1, on invalid config or inputs.
        CapacityInvariantViolation: If H bookkeeping breaks.
        ReplicateAborted: If step_callback requested a stop.
    """
    validate_config(config)
    validate_inputs(inputs, config)
    policy = TransitionPolicy.from_config(config.disease)
    horizon = config.simulation.horizon
    streams = create_replicate_streams(seed)

    # ── Initial state ────────────────────────────────────────────────
    layout = inputs.layout.copy()
    registry = PopulationRegistry.from_layout(layout, inputs.age_groups)
    seed_initial_states(registry, config.population.initial_partition(),
                        streams['init'])
    capacity = CapacityController(
        config.disease.hospital_cap,
        occupancy=int(np.count_nonzero(registry.states == State.H)),
    )
    if inputs.initial_network is not None:
        network = inputs.initial_network.copy()
    else:
        network = initialize_network(
            inputs.formation, registry.housing_units, registry.active,
            streams['network'],
        )

    recorder = NetworkSnapshotRecorder(config.simulation.snapshot_times)

    counts = np.zeros((horizon + 1, N_STATES), dtype=np.int64)
    population = np.zeros(horizon + 1, dtype=np.int64)
    incidence = np.zeros((horizon + 1, len(TRANSITIONS)), dtype=np.int64)
    overcap = np.zeros(horizon + 1, dtype=bool)
    net_edges = np.zeros(horizon + 1, dtype=np.int64)
    net_same = np.zeros(horizon + 1, dtype=np.int64)
    net_formed = np.zeros(horizon + 1, dtype=np.int64)
    net_dissolved = np.zeros(horizon + 1, dtype=np.int64)
    net_approx = np.zeros(horizon + 1, dtype=bool)
    arrivals = np.zeros(horizon + 1, dtype=np.int64)
    departures = np.zeros(horizon + 1, dtype=np.int64)
    rejected = np.zeros(horizon + 1, dtype=np.int64)

    counts[0] = registry.counts()
    population[0] = registry.n_active
    net_edges[0] = network.n_ties
    net_same[0] = int(np.count_nonzero(network.same_housing_mask(registry.housing_units)))
    net_formed[0] = network.n_ties
    recorder.capture(0, network, registry)

    # ── Time loop ────────────────────────────────────────────────────
    for t in range(1, horizon + 1):
        nstats = advance_network(
            network, inputs.formation, inputs.dissolution,
            registry.housing_units, registry.active, t, streams['network'],
        )

        vstats = vital_step(
            registry, layout, network, capacity, config.vital,
            config.population.age_group_proportions, t, streams['vital'],
        )

        dstats = disease_step(
            registry, network.edge_array(), inputs.rate_table, capacity,
            config.disease, policy, t, streams['disease'],
        )

        capacity.verify(registry.states, registry.active)

        counts[t] = registry.counts()
        population[t] = registry.n_active
        incidence[t] = transition_counts_array(dstats)
        overcap[t] = dstats.overcap
        net_edges[t] = network.n_ties
        net_same[t] = nstats.n_same_housing
        net_formed[t] = nstats.formed
        net_dissolved[t] = nstats.dissolved
        net_approx[t] = nstats.approximated
        arrivals[t] = vstats.arrivals
        departures[t] = vstats.departures
        rejected[t] = vstats.rejected_arrivals
        recorder.capture(t, network, registry)

        if step_callback is not None:
            reason = step_callback(t, horizon, counts[t].copy())
            if reason is not None:
                raise ReplicateAborted(reason, t)

    return ReplicateResult(
        replicate_id=replicate_id,
        horizon=horizon,
        counts=counts,
        population=population,
        incidence=incidence,
        individuals=registry.transition_table(),
        overcap=overcap,
        peak_occupancy=capacity.peak_occupancy,
        network_edges=net_edges,
        network_same_housing=net_same,
        network_formed=net_formed,
        network_dissolved=net_dissolved,
        network_approximated=net_approx,
        arrivals=arrivals,
        departures=departures,
        rejected_arrivals=rejected,
        snapshots=dict(recorder.snapshots),
    )
