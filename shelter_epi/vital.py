"""Background arrivals and departures.

Departures: each active individual leaves with the departure probability
of its current state (per-state override, else the global rate). A
departure removes the individual from its housing unit's residents,
dissolves every tie it holds, and releases its hospital bed if in H.

Arrivals: Poisson(arrival_rate × active population) newcomers per
timestep, all susceptible, age group drawn from the configured age
distribution, placed in the housing unit with the most free capacity.
Newcomers that find every unit full are rejected and counted.

With both rates zero nothing is drawn, so enabling the module never
shifts other streams and the population size is exactly invariant.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

import numpy as np

from shelter_epi.config import VitalSection
from shelter_epi.network import ContactNetwork
from shelter_epi.population import HousingLayout, PopulationRegistry, assign_age_groups
from shelter_epi.rates import CapacityController
from shelter_epi.types import State


@dataclass
class VitalStepStats:
    """Arrival/departure counts from one timestep."""
    timestep: int
    arrivals: int = 0
    rejected_arrivals: int = 0
    departures: int = 0


def departure_step(
    registry: PopulationRegistry,
    layout: HousingLayout,
    network: ContactNetwork,
    capacity: CapacityController,
    departure_probs: np.ndarray,
    timestep: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """Remove departing individuals. Returns their ids."""
    ids = np.flatnonzero(registry.active)
    if len(ids) == 0 or not np.any(departure_probs > 0):
        return np.zeros(0, dtype=np.int64)
    p = departure_probs[registry.states[ids]]
    leaving = ids[rng.random(len(ids)) < p]
    if len(leaving) == 0:
        return leaving

    n_hosp = int(np.count_nonzero(registry.states[leaving] == State.H))
    if n_hosp:
        capacity.discharge(n_hosp)
    network.dissolve_incident(leaving, timestep)
    units = registry.housing_units
    for uid in leaving:
        layout.remove(int(uid), int(units[uid]))
    registry.deactivate(leaving, timestep)
    return leaving


def arrival_step(
    registry: PopulationRegistry,
    layout: HousingLayout,
    arrival_rate: float,
    age_proportions: Dict[int, float],
    timestep: int,
    rng: np.random.Generator,
) -> VitalStepStats:
    """Add newcomers as susceptibles."""
    stats = VitalStepStats(timestep=timestep)
    if arrival_rate <= 0:
        return stats
    n_new = int(rng.poisson(arrival_rate * registry.n_active))
    if n_new == 0:
        return stats
    ages = assign_age_groups(n_new, age_proportions, rng)
    for age in ages:
        unit = layout.place(registry.n_total)
        if unit is None:
            stats.rejected_arrivals += 1
            continue
        registry.add(int(age), unit, timestep)
        stats.arrivals += 1
    return stats


def vital_step(
    registry: PopulationRegistry,
    layout: HousingLayout,
    network: ContactNetwork,
    capacity: CapacityController,
    cfg: VitalSection,
    age_proportions: Dict[int, float],
    timestep: int,
    rng: np.random.Generator,
) -> VitalStepStats:
    """Departures, then arrivals, for one timestep.

    Args:
        registry: Population registry (mutated).
        layout: Housing layout (mutated: residents removed/added).
        network: Contact network (ties of departing individuals dissolved).
        capacity: Hospital occupancy controller.
        cfg: Vital dynamics section.
        age_proportions: Age distribution for newcomers.
        timestep: Current timestep.
        rng: Vital RNG stream.

    Returns:
        VitalStepStats for this timestep.
    """
    if not cfg.enabled:
        return VitalStepStats(timestep=timestep)
    leaving = departure_step(
        registry, layout, network, capacity,
        np.asarray(cfg.departure_probabilities(), dtype=np.float64),
        timestep, rng,
    )
    stats = arrival_step(
        registry, layout, cfg.arrival_rate, age_proportions, timestep, rng,
    )
    stats.departures = len(leaving)
    return stats
