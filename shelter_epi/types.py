"""Core data types for shelter_epi.

This module is the SINGLE SOURCE OF TRUTH for:
  - INDIVIDUAL_DTYPE: NumPy structured array dtype for individuals
  - State, ShelterKind enumerations
  - Per-state entry timestamp fields
  - Tie: the unordered contact edge shared by network and snapshots

All modules import these types from here. No other module defines
individual fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Optional, Tuple

import numpy as np


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class State(IntEnum):
    """SEIQHRF compartments.

    S → E       (exposure along an active tie to an I or Q neighbor)
    E → I       (end of latency)
    I → Q | H   (isolation, or hospital admission)
    Q → H | R
    H → R | F   (discharge, or death)

    F is absorbing. R is absorbing for this engine (no reinfection).
    """
    S = 0   # Susceptible
    E = 1   # Exposed (latent, not infectious)
    I = 2   # Infectious, circulating
    Q = 3   # Infectious, quarantined (reduced contact channel)
    H = 4   # Hospitalized
    R = 5   # Recovered
    F = 6   # Dead


N_STATES = len(State)

STATE_LABELS = tuple(s.name for s in State)

ABSORBING_STATES = (State.R, State.F)


class ShelterKind(IntEnum):
    """Housing unit types."""
    HIGH = 0   # High-capacity shelter (large tents, dormitories)
    LOW = 1    # Low-capacity shelter (family units, isoboxes)


# ═══════════════════════════════════════════════════════════════════════
# INDIVIDUAL_DTYPE: canonical structured array for individuals
# ═══════════════════════════════════════════════════════════════════════

NULL_TIME = -1

INDIVIDUAL_DTYPE = np.dtype([
    # --- Identity & static attributes ---
    ('uid',               np.int32),   # stable id (row index at creation)
    ('age_group',         np.int16),   # key into the RateTable
    ('housing_unit',      np.int32),   # HousingUnit.unit_id

    # --- Dynamic state (disease module writes) ---
    ('state',             np.int8),    # State enum (0=S..6=F)
    ('active',            np.bool_),   # False once departed

    # --- Event timestamps (NULL_TIME = never happened) ---
    ('t_arrival',         np.int32),
    ('t_exposure',        np.int32),
    ('t_infection',       np.int32),
    ('t_quarantine',      np.int32),
    ('t_hospitalization', np.int32),
    ('t_discharge',       np.int32),
    ('t_recovery',        np.int32),
    ('t_death',           np.int32),
    ('t_departure',       np.int32),
])

TIMESTAMP_FIELDS = tuple(
    name for name in INDIVIDUAL_DTYPE.names if name.startswith('t_')
)

# Timestamp written when an individual enters a state
ENTRY_FIELD: Dict[State, str] = {
    State.E: 't_exposure',
    State.I: 't_infection',
    State.Q: 't_quarantine',
    State.H: 't_hospitalization',
    State.R: 't_recovery',
    State.F: 't_death',
}


def allocate_individuals(max_n: int) -> np.ndarray:
    """Allocate an individual array with null timestamps.

    Args:
        max_n: Array capacity.

    Returns:
        Structured array of shape (max_n,) with INDIVIDUAL_DTYPE. Rows
        are inactive susceptibles until populated.
    """
    arr = np.zeros(max_n, dtype=INDIVIDUAL_DTYPE)
    arr['uid'] = np.arange(max_n, dtype=np.int32)
    arr['housing_unit'] = -1
    for name in TIMESTAMP_FIELDS:
        arr[name] = NULL_TIME
    return arr


# ═══════════════════════════════════════════════════════════════════════
# TIES
# ═══════════════════════════════════════════════════════════════════════

def tie_key(a: int, b: int) -> Tuple[int, int]:
    """Normalise an unordered pair so that (a, b) and (b, a) coincide.

    Raises:
        ValueError: If a == b (no self-ties).
    """
    a = int(a)
    b = int(b)
    if a == b:
        raise ValueError(f"self-tie rejected for individual {a}")
    return (a, b) if a < b else (b, a)


@dataclass
class Tie:
    """An unordered contact edge with its activation window."""
    a: int
    b: int
    activated_at: int
    dissolved_at: Optional[int] = None

    def __post_init__(self):
        self.a, self.b = tie_key(self.a, self.b)

    @property
    def key(self) -> Tuple[int, int]:
        return (self.a, self.b)

    @property
    def is_active(self) -> bool:
        return self.dissolved_at is None

    def dissolve(self, timestep: int) -> None:
        """Set the dissolution timestamp. It can only be set once."""
        if self.dissolved_at is not None:
            raise ValueError(
                f"tie {self.key} already dissolved at t={self.dissolved_at}"
            )
        self.dissolved_at = int(timestep)

    def active_at(self, timestep: int) -> bool:
        """True if the tie existed during `timestep`."""
        if self.activated_at > timestep:
            return False
        return self.dissolved_at is None or self.dissolved_at > timestep

    def duration(self, timestep: int) -> int:
        """Timesteps the tie has existed as of `timestep`."""
        end = timestep if self.dissolved_at is None else self.dissolved_at
        return end - self.activated_at

    def __eq__(self, other) -> bool:
        if not isinstance(other, Tie):
            return NotImplemented
        return self.key == other.key and self.activated_at == other.activated_at

    def __hash__(self) -> int:
        return hash((self.key, self.activated_at))


# ═══════════════════════════════════════════════════════════════════════
# TRANSITIONS
# ═══════════════════════════════════════════════════════════════════════

# name → (source, target)
TRANSITIONS: Dict[str, Tuple[State, State]] = {
    'S>E': (State.S, State.E),
    'E>I': (State.E, State.I),
    'I>Q': (State.I, State.Q),
    'I>H': (State.I, State.H),
    'Q>H': (State.Q, State.H),
    'Q>R': (State.Q, State.R),
    'H>R': (State.H, State.R),
    'H>F': (State.H, State.F),
}

# Earlier entries preempt later ones for the same source state
DEFAULT_TRANSITION_ORDER = (
    'S>E', 'E>I', 'I>Q', 'I>H', 'Q>H', 'Q>R', 'H>R', 'H>F',
)
