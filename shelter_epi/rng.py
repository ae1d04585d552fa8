"""Seeded RNG factory for reproducible replicates.

Uses NumPy's SeedSequence → PCG64 hierarchy to guarantee:
  - Statistical independence between replicates
  - Bit-exact replay of any replicate from (master seed, replicate index)
  - Independent named streams inside a replicate, so enabling arrivals
    does not shift the disease or network draws

References:
  - NumPy docs: numpy.random.SeedSequence
"""

from __future__ import annotations

from typing import Dict, List

import numpy as np

# Per-replicate stream names, in spawn order. Appending a name keeps the
# existing streams unchanged.
STREAM_NAMES = ('init', 'network', 'vital', 'disease')


def replicate_seed_sequences(
    master_seed: int,
    n_replicates: int,
) -> List[np.random.SeedSequence]:
    """Spawn one child SeedSequence per replicate.

    Args:
        master_seed: Master RNG seed (non-negative integer).
        n_replicates: Number of replicates.

    Returns:
        List of independent SeedSequences, index = replicate id.
    """
    return np.random.SeedSequence(master_seed).spawn(n_replicates)


def create_replicate_streams(
    seed: "int | np.random.SeedSequence",
) -> Dict[str, np.random.Generator]:
    """Create the named RNG streams for one replicate.

    Streams created:
      - 'init':    initial placement, housing and age assignment
      - 'network': tie dissolution and formation
      - 'vital':   arrivals and departures
      - 'disease': state-machine Bernoulli trials

    Args:
        seed: Integer seed or a SeedSequence from replicate_seed_sequences().

    Returns:
        Dictionary mapping stream names to numpy Generator instances.

    Example:
        >>> streams = create_replicate_streams(42)
        >>> streams['disease'].random()  # reproducible
    """
    if isinstance(seed, np.random.SeedSequence):
        # Fresh copy: spawn() advances the counter on the caller's object
        ss = np.random.SeedSequence(seed.entropy, spawn_key=seed.spawn_key,
                                    pool_size=seed.pool_size)
    else:
        ss = np.random.SeedSequence(seed)
    child_seeds = ss.spawn(len(STREAM_NAMES))
    return {
        name: np.random.Generator(np.random.PCG64(child))
        for name, child in zip(STREAM_NAMES, child_seeds)
    }


def rng_state_snapshot(
    rngs: Dict[str, np.random.Generator],
) -> Dict[str, dict]:
    """Capture full RNG state for checkpointing.

    Returns a dict of {name: state_dict} that can be serialized (e.g. via pickle)
    and restored to resume a replicate exactly.
    """
    return {name: rng.bit_generator.state for name, rng in rngs.items()}


def restore_rng_state(
    rngs: Dict[str, np.random.Generator],
    states: Dict[str, dict],
) -> None:
    """Restore RNG state from a checkpoint snapshot.

    Raises:
        KeyError: If a stream in states doesn't exist in rngs.
    """
    for name, state in states.items():
        if name not in rngs:
            raise KeyError(f"Cannot restore RNG state for unknown stream '{name}'")
        rngs[name].bit_generator.state = state
