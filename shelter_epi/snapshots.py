"""Optional contact-network snapshot recording.

Records the active ties plus (uid, state, housing_unit, age_group) for
every active individual at requested timesteps. Feeds visualization
collaborators (network drawings, heat maps, animations); nothing here
writes files.

Usage:
    recorder = NetworkSnapshotRecorder(times=[0, 30, 60])

    # In simulation loop:
    recorder.capture(t, network, registry)

    # After simulation:
    g = recorder.to_networkx(30)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import networkx as nx
import numpy as np


@dataclass
class NetworkSnapshot:
    """Ties and node attributes at one timestep."""
    timestep: int
    edges: np.ndarray          # (m, 2) int64, a < b
    uids: np.ndarray           # int32, active individuals
    states: np.ndarray         # int8, aligned with uids
    housing_units: np.ndarray  # int32, aligned with uids
    age_groups: np.ndarray     # int16, aligned with uids

    @property
    def n_edges(self) -> int:
        return len(self.edges)

    @property
    def n_nodes(self) -> int:
        return len(self.uids)


class NetworkSnapshotRecorder:
    """Captures network snapshots at a fixed set of timesteps.

    When no times are requested, all methods are no-ops.
    """

    def __init__(self, times: Optional[Iterable[int]] = None):
        self.times = set(int(t) for t in times) if times is not None else set()
        self.snapshots: Dict[int, NetworkSnapshot] = {}

    @property
    def enabled(self) -> bool:
        return bool(self.times)

    def should_capture(self, timestep: int) -> bool:
        return timestep in self.times

    def capture(self, timestep: int, network, registry) -> None:
        """Capture the network and node attributes if `timestep` was requested.

        Args:
            timestep: Current timestep.
            network: ContactNetwork after this timestep's updates.
            registry: PopulationRegistry after this timestep's updates.
        """
        if not self.should_capture(timestep):
            return
        data = registry.individuals
        mask = data['active']
        self.snapshots[timestep] = NetworkSnapshot(
            timestep=timestep,
            edges=network.edge_array().copy(),
            uids=data['uid'][mask].copy(),
            states=data['state'][mask].copy(),
            housing_units=data['housing_unit'][mask].copy(),
            age_groups=data['age_group'][mask].copy(),
        )

    def get_times(self) -> List[int]:
        """Sorted list of captured timesteps."""
        return sorted(self.snapshots)

    def get_snapshot(self, timestep: int) -> Optional[NetworkSnapshot]:
        return self.snapshots.get(timestep)

    def to_networkx(self, timestep: int) -> nx.Graph:
        """Graph for one captured timestep, nodes carrying their attributes.

        Raises:
            KeyError: If `timestep` was not captured.
        """
        snap = self.snapshots[timestep]
        g = nx.Graph(timestep=timestep)
        for uid, state, unit, age in zip(
            snap.uids, snap.states, snap.housing_units, snap.age_groups,
        ):
            g.add_node(int(uid), state=int(state), housing_unit=int(unit),
                       age_group=int(age))
        g.add_edges_from((int(a), int(b)) for a, b in snap.edges)
        return g
