"""Age-stratified rate table and hospital capacity controller.

The RateTable is read-only during a replicate. The CapacityController is
the one piece of shared bookkeeping the state machine writes: its
occupancy counter moves on every H entry and exit, and the H→F rule reads
is_overcap() after the timestep's admissions are committed.
"""

from __future__ import annotations

import math
from typing import Dict, Iterable, Mapping, Sequence, Tuple

import numpy as np

from shelter_epi.errors import CapacityInvariantViolation, ConfigurationError
from shelter_epi.types import State


# ═══════════════════════════════════════════════════════════════════════
# RATE TABLE
# ═══════════════════════════════════════════════════════════════════════

class RateTable:
    """age_group → (hospitalization propensity, fatality propensity).

    Propensities are relative multipliers on the base I→H / Q→H and H→F
    probabilities. A lookup miss is a configuration error.
    """

    def __init__(self, entries: Mapping[int, Sequence[float]]):
        self._entries: Dict[int, Tuple[float, float]] = {}
        for age, pair in entries.items():
            if len(pair) != 2:
                raise ConfigurationError(
                    f"rate table entry for age group {age} must be "
                    f"(hosp_propensity, fatality_propensity), got {pair!r}"
                )
            hosp, fat = float(pair[0]), float(pair[1])
            for label, value in (('hospitalization', hosp), ('fatality', fat)):
                if not math.isfinite(value) or value < 0:
                    raise ConfigurationError(
                        f"{label} propensity for age group {age} must be "
                        f"finite and >= 0, got {value}"
                    )
            self._entries[int(age)] = (hosp, fat)

        # Dense lookup arrays indexed by age group
        size = max(self._entries, default=-1) + 1
        self._hosp = np.full(size, np.nan)
        self._fat = np.full(size, np.nan)
        for age, (hosp, fat) in self._entries.items():
            if age < 0:
                raise ConfigurationError(f"age group must be >= 0, got {age}")
            self._hosp[age] = hosp
            self._fat[age] = fat

    def __contains__(self, age_group: int) -> bool:
        return int(age_group) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def age_groups(self) -> Tuple[int, ...]:
        return tuple(sorted(self._entries))

    def lookup(self, age_group: int) -> Tuple[float, float]:
        """Return (hosp_propensity, fatality_propensity) for one age group.

        Raises:
            ConfigurationError: If the age group is not in the table.
        """
        try:
            return self._entries[int(age_group)]
        except KeyError:
            raise ConfigurationError(
                f"rate table has no entry for age group {age_group}"
            ) from None

    def validate_coverage(self, age_groups: Iterable[int]) -> None:
        """Raise ConfigurationError unless every age group has an entry."""
        missing = sorted({int(a) for a in age_groups} - set(self._entries))
        if missing:
            raise ConfigurationError(
                f"rate table missing age groups {missing}"
            )

    def hosp_propensity(self, age_groups: np.ndarray) -> np.ndarray:
        """Vectorised hospitalization propensity lookup."""
        return self._vector_lookup(self._hosp, age_groups)

    def fatality_propensity(self, age_groups: np.ndarray) -> np.ndarray:
        """Vectorised fatality propensity lookup."""
        return self._vector_lookup(self._fat, age_groups)

    def _vector_lookup(self, table: np.ndarray, age_groups: np.ndarray) -> np.ndarray:
        ages = np.asarray(age_groups, dtype=np.int64)
        if len(ages) == 0:
            return np.zeros(0, dtype=np.float64)
        if ages.min() < 0 or ages.max() >= len(table):
            self.validate_coverage(ages)
        values = table[ages]
        if np.isnan(values).any():
            self.validate_coverage(ages)
        return values

    @classmethod
    def from_config(cls, rate_table: Mapping[int, Sequence[float]]) -> "RateTable":
        return cls(rate_table)


# ═══════════════════════════════════════════════════════════════════════
# CAPACITY CONTROLLER
# ═══════════════════════════════════════════════════════════════════════

class CapacityController:
    """Live H-occupancy for one replicate, compared against a fixed cap."""

    def __init__(self, cap: int, occupancy: int = 0):
        if cap < 0:
            raise ConfigurationError(f"hospital cap must be >= 0, got {cap}")
        self.cap = int(cap)
        self.occupancy = int(occupancy)
        self.peak_occupancy = self.occupancy
        self.overcap_steps = 0

    def admit(self, n: int = 1) -> None:
        self.occupancy += int(n)
        self.peak_occupancy = max(self.peak_occupancy, self.occupancy)

    def discharge(self, n: int = 1) -> None:
        self.occupancy -= int(n)
        if self.occupancy < 0:
            raise CapacityInvariantViolation(
                f"H-occupancy went negative ({self.occupancy})"
            )

    def is_overcap(self) -> bool:
        """True when occupancy strictly exceeds the cap."""
        return self.occupancy > self.cap

    def verify(self, states: np.ndarray, active: np.ndarray) -> None:
        """Check occupancy against the individuals actually in H.

        Raises:
            CapacityInvariantViolation: On negative occupancy or a mismatch.
                Never corrected silently.
        """
        if self.occupancy < 0:
            raise CapacityInvariantViolation(
                f"H-occupancy is negative ({self.occupancy})"
            )
        n_h = int(np.count_nonzero((states == State.H) & active))
        if n_h != self.occupancy:
            raise CapacityInvariantViolation(
                f"H-occupancy counter is {self.occupancy} but {n_h} "
                f"individuals are in H"
            )
