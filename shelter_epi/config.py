"""Configuration system for shelter_epi.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → sweep overrides

Every rate in DiseaseSection and VitalSection is a per-timestep
probability and must lie in [0, 1]. Act rates are expected acts per tie
per timestep and must be finite and non-negative.

Design decisions:
  - Hospital overcap is a multiplier on the base H→F probability, not a
    replacement rate
  - Transition tie-break order is configuration, validated here
  - The rate table lives next to the scalar parameters so a single YAML
    file describes a complete scenario
"""

from __future__ import annotations

import copy
import dataclasses
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from shelter_epi.errors import ConfigurationError
from shelter_epi.types import DEFAULT_TRANSITION_ORDER, State, TRANSITIONS


# ═══════════════════════════════════════════════════════════════════════
# DEFAULTS
# ═══════════════════════════════════════════════════════════════════════

# Ten-year age bands: 0 = 0–9, 1 = 10–19, ..., 8 = 80+
DEFAULT_AGE_PROPORTIONS = {
    0: 0.33, 1: 0.15, 2: 0.21, 3: 0.17, 4: 0.08,
    5: 0.04, 6: 0.015, 7: 0.004, 8: 0.001,
}

# age_group → [hospitalization propensity, fatality propensity]
DEFAULT_RATE_TABLE = {
    0: [0.05, 0.00],
    1: [0.10, 0.10],
    2: [0.40, 0.20],
    3: [0.60, 0.30],
    4: [1.00, 0.80],
    5: [2.10, 2.60],
    6: [4.30, 6.40],
    7: [6.60, 13.0],
    8: [9.40, 29.0],
}


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationSection:
    """Run timing and control."""
    horizon: int = 180                  # timesteps (days) per replicate
    n_replicates: int = 10
    seed: int = 42                      # master seed for all replicates
    workers: int = 1                    # 1 = serial
    snapshot_times: List[int] = field(default_factory=list)


@dataclass
class PopulationSection:
    """Population size, age structure and initial partition."""
    n_individuals: int = 1000
    age_group_proportions: Dict[int, float] = field(
        default_factory=lambda: dict(DEFAULT_AGE_PROPORTIONS)
    )
    initial_infected: int = 1
    # State name → count. Overrides initial_infected when given.
    initial_counts: Optional[Dict[str, int]] = None

    def initial_partition(self) -> Dict[State, int]:
        """Resolve the initial count per state (sums to n_individuals)."""
        if self.initial_counts is not None:
            partition = {s: 0 for s in State}
            for name, count in self.initial_counts.items():
                partition[State[name]] = int(count)
            return partition
        partition = {s: 0 for s in State}
        partition[State.I] = int(self.initial_infected)
        partition[State.S] = int(self.n_individuals) - int(self.initial_infected)
        return partition


@dataclass
class HousingSection:
    """Shelter layout: two unit types of different capacity."""
    high_capacity: int = 60         # residents per high-capacity unit
    low_capacity: int = 6           # residents per low-capacity unit
    high_fraction: float = 0.25     # share of the population in high-capacity units


@dataclass
class NetworkSection:
    """Target statistics handed to the network estimator.

    Formation: mean degree and the share of ties within a housing unit.
    Dissolution: mean tie durations (timesteps) by housing match.
    """
    mean_degree: float = 4.0
    same_housing_fraction: float = 0.7
    mean_duration_same: float = 60.0
    mean_duration_between: float = 5.0
    tolerance: float = 0.05          # relative tolerance on each target statistic
    max_proposals_factor: int = 20   # proposals per missing tie


@dataclass
class DiseaseSection:
    """SEIQHRF transition parameters (all per timestep)."""
    # Contact channels: expected acts per tie × per-act infection probability
    act_rate_i: float = 3.0
    inf_prob_i: float = 0.05
    act_rate_q: float = 0.5
    inf_prob_q: float = 0.02

    # Progression
    ei_rate: float = 0.2        # E → I
    iq_rate: float = 0.15       # I → Q
    ih_rate: float = 0.01       # I → H (× hosp propensity × hosp_tcoeff)
    qh_rate: float = 0.01       # Q → H (× hosp propensity × hosp_tcoeff)
    qr_rate: float = 0.07       # Q → R
    hr_rate: float = 0.07       # H → R
    hf_rate: float = 0.01       # H → F (× fatality propensity)

    # Care capacity
    hospital_cap: int = 5
    hf_overcap_multiplier: float = 2.0
    hosp_tcoeff: float = 1.0

    transition_order: List[str] = field(
        default_factory=lambda: list(DEFAULT_TRANSITION_ORDER)
    )


@dataclass
class VitalSection:
    """Background arrivals and departures.

    arrival_rate: expected arrivals per current resident per timestep.
    departure_rate: per-individual departure probability per timestep;
    departure_rates overrides it per state name.
    """
    arrival_rate: float = 0.0
    departure_rate: float = 0.0
    departure_rates: Dict[str, float] = field(default_factory=dict)

    @property
    def enabled(self) -> bool:
        return (
            self.arrival_rate > 0
            or self.departure_rate > 0
            or any(r > 0 for r in self.departure_rates.values())
        )

    def departure_probabilities(self) -> List[float]:
        """Departure probability indexed by State value."""
        return [
            float(self.departure_rates.get(s.name, self.departure_rate))
            for s in State
        ]


@dataclass
class SimulationConfig:
    """Complete simulation configuration.

    Load from YAML via `load_config()`. Sections map 1:1 to YAML top-level keys.
    """
    simulation: SimulationSection = field(default_factory=SimulationSection)
    population: PopulationSection = field(default_factory=PopulationSection)
    housing: HousingSection = field(default_factory=HousingSection)
    network: NetworkSection = field(default_factory=NetworkSection)
    disease: DiseaseSection = field(default_factory=DiseaseSection)
    vital: VitalSection = field(default_factory=VitalSection)
    rate_table: Dict[int, List[float]] = field(
        default_factory=lambda: copy.deepcopy(DEFAULT_RATE_TABLE)
    )


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added

    Args:
        base: Base dictionary (modified in place).
        override: Override dictionary.

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig."""
    sections = {}
    section_map = {
        'simulation': SimulationSection,
        'population': PopulationSection,
        'housing': HousingSection,
        'network': NetworkSection,
        'disease': DiseaseSection,
        'vital': VitalSection,
    }
    for key, cls in section_map.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()

    pop = sections['population']
    pop.age_group_proportions = {
        int(k): float(v) for k, v in pop.age_group_proportions.items()
    }

    if isinstance(data.get('rate_table'), dict):
        sections['rate_table'] = {
            int(k): [float(x) for x in v] for k, v in data['rate_table'].items()
        }

    return SimulationConfig(**sections)


def config_to_dict(config: SimulationConfig) -> Dict:
    """Plain-dict form of a config (YAML-serialisable)."""
    return dataclasses.asdict(config)


# ═══════════════════════════════════════════════════════════════════════
# VALIDATION
# ═══════════════════════════════════════════════════════════════════════

def _check_probability(name: str, value: float) -> None:
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ConfigurationError(f"{name} must be a finite number, got {value!r}")
    if value < 0 or value > 1:
        raise ConfigurationError(f"{name} must be in [0, 1], got {value}")


def _check_non_negative(name: str, value: float) -> None:
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ConfigurationError(f"{name} must be a finite number, got {value!r}")
    if value < 0:
        raise ConfigurationError(f"{name} must be >= 0, got {value}")


def validate_transition_order(order: List[str]) -> None:
    """Check a tie-break order names every transition once.

    Every H-entry transition (I>H, Q>H) must precede H>F, so that the
    overcap check sees the timestep's completed admissions.

    Raises:
        ConfigurationError: On unknown, missing, duplicated or misordered
            transitions.
    """
    unknown = [t for t in order if t not in TRANSITIONS]
    if unknown:
        raise ConfigurationError(
            f"disease.transition_order has unknown transitions {unknown}; "
            f"valid: {sorted(TRANSITIONS)}"
        )
    if len(order) != len(set(order)) or set(order) != set(TRANSITIONS):
        raise ConfigurationError(
            f"disease.transition_order must list each of {sorted(TRANSITIONS)} "
            f"exactly once, got {list(order)}"
        )
    hf = order.index('H>F')
    for entry in ('I>H', 'Q>H'):
        if order.index(entry) > hf:
            raise ConfigurationError(
                f"disease.transition_order: {entry} must precede H>F"
            )


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ConfigurationError on failure.

    Checks:
      - Run control is positive and consistent
      - Every per-timestep probability is finite and in [0, 1]
      - Act rates and multipliers are finite and non-negative
      - Age proportions are a distribution covered by the rate table
      - The initial partition sums to the population size
      - Transition order is a valid policy
    """
    sim = config.simulation
    if sim.horizon < 1:
        raise ConfigurationError(f"simulation.horizon must be >= 1, got {sim.horizon}")
    if sim.n_replicates < 1:
        raise ConfigurationError(
            f"simulation.n_replicates must be >= 1, got {sim.n_replicates}"
        )
    if sim.seed < 0:
        raise ConfigurationError("simulation.seed must be non-negative")
    if sim.workers < 1:
        raise ConfigurationError(f"simulation.workers must be >= 1, got {sim.workers}")
    for t in sim.snapshot_times:
        if t < 0 or t > sim.horizon:
            raise ConfigurationError(
                f"simulation.snapshot_times entry {t} outside [0, {sim.horizon}]"
            )

    # Population
    pop = config.population
    if pop.n_individuals < 1:
        raise ConfigurationError(
            f"population.n_individuals must be >= 1, got {pop.n_individuals}"
        )
    if not pop.age_group_proportions:
        raise ConfigurationError("population.age_group_proportions is empty")
    for age, p in pop.age_group_proportions.items():
        _check_non_negative(f"population.age_group_proportions[{age}]", p)
    total = sum(pop.age_group_proportions.values())
    if not math.isclose(total, 1.0, abs_tol=1e-6):
        raise ConfigurationError(
            f"population.age_group_proportions must sum to 1, got {total:.6f}"
        )
    if pop.initial_counts is not None:
        bad = [k for k in pop.initial_counts if k not in State.__members__]
        if bad:
            raise ConfigurationError(
                f"population.initial_counts has unknown states {bad}"
            )
        if any(int(v) < 0 for v in pop.initial_counts.values()):
            raise ConfigurationError("population.initial_counts must be >= 0")
    partition = pop.initial_partition()
    if sum(partition.values()) != pop.n_individuals or partition[State.S] < 0:
        raise ConfigurationError(
            f"initial partition {({s.name: n for s, n in partition.items()})} "
            f"does not sum to n_individuals={pop.n_individuals}"
        )

    # Housing
    h = config.housing
    if h.high_capacity < 1 or h.low_capacity < 1:
        raise ConfigurationError("housing capacities must be >= 1")
    _check_probability("housing.high_fraction", h.high_fraction)

    # Network targets
    net = config.network
    _check_non_negative("network.mean_degree", net.mean_degree)
    _check_probability("network.same_housing_fraction", net.same_housing_fraction)
    for name in ('mean_duration_same', 'mean_duration_between'):
        value = getattr(net, name)
        _check_non_negative(f"network.{name}", value)
        if value < 1:
            raise ConfigurationError(f"network.{name} must be >= 1, got {value}")
    _check_non_negative("network.tolerance", net.tolerance)
    if net.max_proposals_factor < 1:
        raise ConfigurationError("network.max_proposals_factor must be >= 1")

    # Disease
    d = config.disease
    for name in ('act_rate_i', 'act_rate_q', 'hf_overcap_multiplier', 'hosp_tcoeff'):
        _check_non_negative(f"disease.{name}", getattr(d, name))
    for name in ('inf_prob_i', 'inf_prob_q', 'ei_rate', 'iq_rate', 'ih_rate',
                 'qh_rate', 'qr_rate', 'hr_rate', 'hf_rate'):
        _check_probability(f"disease.{name}", getattr(d, name))
    if d.hospital_cap < 0:
        raise ConfigurationError(
            f"disease.hospital_cap must be >= 0, got {d.hospital_cap}"
        )
    validate_transition_order(d.transition_order)

    # Vital dynamics
    v = config.vital
    _check_non_negative("vital.arrival_rate", v.arrival_rate)
    _check_probability("vital.departure_rate", v.departure_rate)
    for name, rate in v.departure_rates.items():
        if name not in State.__members__:
            raise ConfigurationError(f"vital.departure_rates has unknown state '{name}'")
        _check_probability(f"vital.departure_rates[{name}]", rate)

    # Rate table must cover every age group that can appear
    missing = sorted(set(pop.age_group_proportions) - set(config.rate_table))
    if missing:
        raise ConfigurationError(f"rate_table missing age groups {missing}")
    for age, entry in config.rate_table.items():
        if len(entry) != 2:
            raise ConfigurationError(
                f"rate_table[{age}] must be [hosp_propensity, fatality_propensity]"
            )
        _check_non_negative(f"rate_table[{age}][0]", entry[0])
        _check_non_negative(f"rate_table[{age}][1]", entry[1])


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    sweep_overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → sweep overrides.
    Each layer overrides only the fields it specifies.

    Args:
        base_path: Path to base configuration YAML.
        scenario_path: Optional scenario override YAML.
        sweep_overrides: Optional dict of parameter sweep overrides.

    Returns:
        Validated SimulationConfig.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ConfigurationError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if sweep_overrides is not None:
        deep_merge(config_dict, sweep_overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    validate_config(config)
    return config
