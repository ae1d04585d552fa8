"""Multi-replicate executor.

Each replicate gets its own SeedSequence child of the master seed, so
results depend only on (master_seed, replicate index) and never on the
worker count or completion order. Replicates share nothing mutable.

A replicate that raises ConfigurationError, CapacityInvariantViolation or
ReplicateAborted is recorded as a ReplicateFailure; the others are
unaffected. Anything else propagates.

Usage:
    inputs = build_inputs(config)
    rs = run_replicates(inputs, config, n_replicates=20, workers=4)
    counts = rs.stacked_counts()     # (n_ok, horizon+1, 7)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from multiprocessing import Pool
from typing import List, Optional, Tuple, Union

import numpy as np

from shelter_epi.config import SimulationConfig, validate_config
from shelter_epi.errors import (
    CapacityInvariantViolation,
    ConfigurationError,
    ReplicateAborted,
)
from shelter_epi.model import ReplicateResult, SimulationInputs, run_replicate
from shelter_epi.rng import replicate_seed_sequences

logger = logging.getLogger(__name__)

_RECOVERABLE = (ConfigurationError, CapacityInvariantViolation, ReplicateAborted)


@dataclass
class ReplicateFailure:
    """A replicate that did not complete."""
    replicate_id: int
    error_type: str
    message: str
    timestep: Optional[int] = None


@dataclass
class ReplicateSet:
    """Completed results and failures, both in replicate order."""
    master_seed: int
    results: List[ReplicateResult] = field(default_factory=list)
    failures: List[ReplicateFailure] = field(default_factory=list)

    @property
    def n_completed(self) -> int:
        return len(self.results)

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    def stacked_counts(self) -> np.ndarray:
        """Per-state counts of completed replicates, (n, horizon+1, 7)."""
        if not self.results:
            return np.zeros((0, 0, 0), dtype=np.int64)
        return np.stack([r.counts for r in self.results])


def _run_one(task: Tuple) -> Tuple[int, Union[ReplicateResult, ReplicateFailure]]:
    """Worker entry point; module-level so Pool can pickle it."""
    replicate_id, inputs, config, seed_seq = task
    try:
        result = run_replicate(inputs, config, seed_seq, replicate_id=replicate_id)
    except _RECOVERABLE as exc:
        return replicate_id, ReplicateFailure(
            replicate_id=replicate_id,
            error_type=type(exc).__name__,
            message=str(exc),
            timestep=getattr(exc, 'timestep', None),
        )
    return replicate_id, result


def run_replicates(
    inputs: SimulationInputs,
    config: SimulationConfig,
    n_replicates: Optional[int] = None,
    master_seed: Optional[int] = None,
    workers: Optional[int] = None,
) -> ReplicateSet:
    """Run independent replicates, serially or on a process pool.

    Args:
        inputs: Shared simulation inputs (copied per replicate).
        config: Simulation configuration.
        n_replicates: Number of replicates (default: config.simulation.n_replicates).
        master_seed: Master seed (default: config.simulation.seed).
        workers: Process count; 1 runs in-process (default: config.simulation.workers).

    Returns:
        ReplicateSet with results and failures in replicate order.

    Raises:
        ConfigurationError: If the configuration itself is invalid.
    """
    validate_config(config)
    sim = config.simulation
    n_replicates = sim.n_replicates if n_replicates is None else n_replicates
    master_seed = sim.seed if master_seed is None else master_seed
    workers = sim.workers if workers is None else workers
    if n_replicates < 1:
        raise ConfigurationError(f"n_replicates must be >= 1, got {n_replicates}")
    if workers < 1:
        raise ConfigurationError(f"workers must be >= 1, got {workers}")

    seqs = replicate_seed_sequences(master_seed, n_replicates)
    tasks = [(i, inputs, config, seqs[i]) for i in range(n_replicates)]

    logger.info("running %d replicates (master seed %d, %d worker%s)",
                n_replicates, master_seed, workers, "" if workers == 1 else "s")
    t0 = time.time()
    if workers == 1:
        outcomes = [_run_one(task) for task in tasks]
    else:
        with Pool(processes=min(workers, n_replicates)) as pool:
            outcomes = pool.map(_run_one, tasks)

    out = ReplicateSet(master_seed=master_seed)
    for replicate_id, outcome in sorted(outcomes, key=lambda o: o[0]):
        if isinstance(outcome, ReplicateFailure):
            logger.warning("replicate %d failed (%s): %s",
                           replicate_id, outcome.error_type, outcome.message)
            out.failures.append(outcome)
        else:
            out.results.append(outcome)
    logger.info("%d/%d replicates completed in %.1fs",
                out.n_completed, n_replicates, time.time() - t0)
    return out
