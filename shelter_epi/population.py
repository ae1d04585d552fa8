"""Population registry and housing layout.

Handles: the per-individual structured array (static attributes, current
state, event timestamps), the partition of individuals into
capacity-bounded shelter units, and the placement/removal bookkeeping used
by arrivals and departures.

Rows are never deleted: a departed individual keeps its row with
active=False so its timestamps survive into the replicate's output.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from shelter_epi.errors import ConfigurationError
from shelter_epi.types import (
    ENTRY_FIELD,
    N_STATES,
    ShelterKind,
    State,
    allocate_individuals,
)


# ═══════════════════════════════════════════════════════════════════════
# HOUSING LAYOUT
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class HousingUnit:
    """A shelter unit and its ordered resident ids."""
    unit_id: int
    capacity: int
    kind: ShelterKind
    residents: List[int] = field(default_factory=list)

    @property
    def free_capacity(self) -> int:
        return self.capacity - len(self.residents)


class HousingLayout:
    """Partition of individuals into shelter units."""

    def __init__(self, units: Sequence[HousingUnit]):
        self.units: List[HousingUnit] = list(units)
        for i, unit in enumerate(self.units):
            if unit.unit_id != i:
                raise ConfigurationError(
                    f"housing unit ids must be 0..{len(self.units) - 1} in order, "
                    f"got {unit.unit_id} at position {i}"
                )

    def __len__(self) -> int:
        return len(self.units)

    @property
    def n_residents(self) -> int:
        return sum(len(u.residents) for u in self.units)

    @property
    def total_capacity(self) -> int:
        return sum(u.capacity for u in self.units)

    def unit_sizes(self) -> np.ndarray:
        return np.array([len(u.residents) for u in self.units], dtype=np.int64)

    def assignment(self, n: int) -> np.ndarray:
        """Housing unit id per individual id (length n, -1 = unhoused)."""
        out = np.full(n, -1, dtype=np.int32)
        for unit in self.units:
            out[unit.residents] = unit.unit_id
        return out

    def validate(self, n_individuals: int) -> None:
        """Check the layout houses exactly individuals 0..n-1 within capacity.

        Raises:
            ConfigurationError: On size mismatch, duplicates or overfull units.
        """
        if self.n_residents != n_individuals:
            raise ConfigurationError(
                f"housing layout holds {self.n_residents} residents but "
                f"population size is {n_individuals}"
            )
        seen = np.zeros(n_individuals, dtype=bool)
        for unit in self.units:
            if len(unit.residents) > unit.capacity:
                raise ConfigurationError(
                    f"housing unit {unit.unit_id} holds {len(unit.residents)} "
                    f"residents, capacity {unit.capacity}"
                )
            for uid in unit.residents:
                if uid < 0 or uid >= n_individuals or seen[uid]:
                    raise ConfigurationError(
                        f"housing unit {unit.unit_id} has invalid or duplicate "
                        f"resident id {uid}"
                    )
                seen[uid] = True

    def place(self, uid: int) -> Optional[int]:
        """Place a newcomer in the unit with the most free capacity.

        Ties go to the lowest unit id. Returns the unit id, or None when
        every unit is full.
        """
        best = None
        for unit in self.units:
            if unit.free_capacity > 0 and (
                best is None or unit.free_capacity > best.free_capacity
            ):
                best = unit
        if best is None:
            return None
        best.residents.append(int(uid))
        return best.unit_id

    def remove(self, uid: int, unit_id: int) -> None:
        """Remove a departing resident from its unit."""
        self.units[unit_id].residents.remove(int(uid))

    def copy(self) -> "HousingLayout":
        """Deep copy; replicates never share a layout."""
        return HousingLayout([
            HousingUnit(u.unit_id, u.capacity, u.kind, list(u.residents))
            for u in self.units
        ])


def build_housing_layout(
    n_individuals: int,
    high_capacity: int = 60,
    low_capacity: int = 6,
    high_fraction: float = 0.25,
) -> HousingLayout:
    """Fill high-capacity units first, then low-capacity units.

    Individuals 0..n_high-1 go to high-capacity units in order, the rest to
    low-capacity units. The last unit of each kind may be partially filled.

    Args:
        n_individuals: Population size.
        high_capacity: Residents per high-capacity unit.
        low_capacity: Residents per low-capacity unit.
        high_fraction: Share of the population housed in high-capacity units.

    Returns:
        HousingLayout covering individuals 0..n_individuals-1.
    """
    n_high = int(round(n_individuals * high_fraction))
    units: List[HousingUnit] = []
    uid = 0
    for kind, end, cap in (
        (ShelterKind.HIGH, n_high, high_capacity),
        (ShelterKind.LOW, n_individuals, low_capacity),
    ):
        while uid < end:
            take = min(cap, end - uid)
            units.append(HousingUnit(
                unit_id=len(units),
                capacity=cap,
                kind=kind,
                residents=list(range(uid, uid + take)),
            ))
            uid += take
    return HousingLayout(units)


def assign_age_groups(
    n: int,
    proportions: Dict[int, float],
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw an age group for each of n individuals.

    Args:
        n: Number of individuals.
        proportions: age_group → probability (sums to 1).
        rng: Random generator.

    Returns:
        int16 array of age groups.
    """
    keys = sorted(proportions)
    groups = np.array(keys, dtype=np.int16)
    p = np.array([proportions[k] for k in keys], dtype=np.float64)
    p = p / p.sum()
    return rng.choice(groups, size=n, p=p).astype(np.int16)


# ═══════════════════════════════════════════════════════════════════════
# POPULATION REGISTRY
# ═══════════════════════════════════════════════════════════════════════

class PopulationRegistry:
    """Per-replicate owner of every individual's attributes and state.

    Backed by a growable INDIVIDUAL_DTYPE array; `n_total` rows are in use
    (active or departed). Individual id == row index == uid.
    """

    def __init__(self, age_groups: np.ndarray, housing_units: np.ndarray,
                 timestep: int = 0):
        n = len(age_groups)
        if len(housing_units) != n:
            raise ConfigurationError(
                f"{n} age groups but {len(housing_units)} housing assignments"
            )
        self._data = allocate_individuals(max(n, 1))
        self.n_total = n
        rows = self._data[:n]
        rows['age_group'] = age_groups
        rows['housing_unit'] = housing_units
        rows['state'] = State.S
        rows['active'] = True
        rows['t_arrival'] = timestep

    @classmethod
    def from_layout(cls, layout: HousingLayout,
                    age_groups: np.ndarray) -> "PopulationRegistry":
        """Build a registry whose housing attribute matches `layout`."""
        n = len(age_groups)
        layout.validate(n)
        return cls(age_groups, layout.assignment(n))

    # ── Views ───────────────────────────────────────────────────────

    @property
    def individuals(self) -> np.ndarray:
        """View of the rows in use (active and departed)."""
        return self._data[:self.n_total]

    @property
    def states(self) -> np.ndarray:
        return self._data['state'][:self.n_total]

    @property
    def active(self) -> np.ndarray:
        return self._data['active'][:self.n_total]

    @property
    def age_groups(self) -> np.ndarray:
        return self._data['age_group'][:self.n_total]

    @property
    def housing_units(self) -> np.ndarray:
        return self._data['housing_unit'][:self.n_total]

    @property
    def n_active(self) -> int:
        return int(np.count_nonzero(self.active))

    def counts(self) -> np.ndarray:
        """Count of active individuals per state (length N_STATES)."""
        return np.bincount(
            self.states[self.active], minlength=N_STATES
        ).astype(np.int64)

    def age_groups_present(self) -> List[int]:
        return sorted(int(a) for a in np.unique(self.age_groups))

    # ── Mutation ─────────────────────────────────────────────────────

    def set_state(self, idx: np.ndarray, state: State, timestep: int) -> None:
        """Move individuals to `state` and stamp the entry timestep."""
        if len(idx) == 0:
            return
        self._data['state'][idx] = state
        entry = ENTRY_FIELD.get(state)
        if entry is not None:
            self._data[entry][idx] = timestep

    def stamp(self, idx: np.ndarray, field_name: str, timestep: int) -> None:
        if len(idx) > 0:
            self._data[field_name][idx] = timestep

    def add(self, age_group: int, housing_unit: int, timestep: int) -> int:
        """Append a newly arrived susceptible. Returns its id."""
        if self.n_total == len(self._data):
            grown = allocate_individuals(2 * len(self._data))
            grown[:self.n_total] = self._data[:self.n_total]
            self._data = grown
        uid = self.n_total
        self._data['age_group'][uid] = age_group
        self._data['housing_unit'][uid] = housing_unit
        self._data['state'][uid] = State.S
        self._data['active'][uid] = True
        self._data['t_arrival'][uid] = timestep
        self.n_total += 1
        return uid

    def deactivate(self, idx: np.ndarray, timestep: int) -> None:
        """Mark individuals as departed. Their state is frozen as-is."""
        if len(idx) == 0:
            return
        self._data['active'][idx] = False
        self._data['t_departure'][idx] = timestep

    # ── Output ───────────────────────────────────────────────────────

    def transition_table(self) -> np.ndarray:
        """Copy of the per-individual timestamp table.

        Fields: uid, age_group, housing_unit, state, active and every
        t_* timestamp (NULL_TIME where the event never happened).
        """
        return self.individuals.copy()


def seed_initial_states(
    registry: PopulationRegistry,
    partition: Dict[State, int],
    rng: np.random.Generator,
    timestep: int = 0,
) -> None:
    """Place the configured initial partition uniformly at random.

    Non-S individuals get their entry timestamp set to `timestep`; earlier
    milestones on their path (e.g. t_exposure for a seeded I) are left null
    because they happened before the simulated window.

    Raises:
        ConfigurationError: If the partition does not sum to the population.
    """
    n = registry.n_total
    total = sum(int(v) for v in partition.values())
    if total != n:
        raise ConfigurationError(
            f"initial partition sums to {total}, population size is {n}"
        )
    order = rng.permutation(n)
    start = 0
    for state in State:
        if state == State.S:
            continue
        count = int(partition.get(state, 0))
        registry.set_state(order[start:start + count], state, timestep)
        start += count
