#!/usr/bin/env python3
"""Run a shelter outbreak scenario from YAML configuration.

Loads base.yaml (plus an optional scenario override), builds the housing
layout, age structure and fitted network model, runs the replicates and
prints an ensemble summary. Optionally saves per-replicate counts as .npz.

Usage:
    python scripts/run_shelter_scenario.py
    python scripts/run_shelter_scenario.py --scenario configs/scenarios/open_shelter.yaml
    python scripts/run_shelter_scenario.py --replicates 20 --workers 4 --output results.npz
"""

import argparse
import logging
import sys
import time
from pathlib import Path

import numpy as np

# ── Project imports ──────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from shelter_epi.config import load_config
from shelter_epi.model import build_inputs
from shelter_epi.replicates import run_replicates
from shelter_epi.types import State


# ═══════════════════════════════════════════════════════════════════════
# SUMMARY
# ═══════════════════════════════════════════════════════════════════════

def _mean_sd(values):
    arr = np.asarray(values, dtype=np.float64)
    return arr.mean(), arr.std()


def print_summary(rs, horizon):
    print(f"\n  Completed: {rs.n_completed}, failed: {rs.n_failed}")
    for f in rs.failures:
        where = f" at t={f.timestep}" if f.timestep is not None else ""
        print(f"    replicate {f.replicate_id}: {f.error_type}{where}: {f.message}")
    if not rs.results:
        return

    final = rs.stacked_counts()[:, -1, :]
    print(f"\n  Final counts at t={horizon} (mean ± sd):")
    for s in State:
        m, sd = _mean_sd(final[:, s])
        print(f"    {s.name}: {m:8.1f} ± {sd:.1f}")

    rows = [
        ("Cumulative exposures", [r.cumulative_exposures for r in rs.results]),
        ("Deaths", [r.total_deaths for r in rs.results]),
        ("Peak hospitalized", [r.peak_hospitalized for r in rs.results]),
        ("Overcap timesteps", [r.overcap_steps for r in rs.results]),
        ("Network warnings", [r.n_network_warnings for r in rs.results]),
    ]
    print("\n  Outcomes (mean ± sd):")
    for label, values in rows:
        m, sd = _mean_sd(values)
        print(f"    {label:<22s} {m:8.1f} ± {sd:.1f}")


# ═══════════════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(
        description="Run a shelter outbreak scenario.",
        epilog="Example: python scripts/run_shelter_scenario.py --replicates 20",
    )
    parser.add_argument(
        "--base-config", type=str, default=str(PROJECT_ROOT / "configs" / "base.yaml"),
        help="Base config YAML (default: configs/base.yaml)",
    )
    parser.add_argument(
        "--scenario", type=str, default=None,
        help="Scenario override YAML",
    )
    parser.add_argument("--replicates", type=int, default=None,
                        help="Number of replicates (default: from config)")
    parser.add_argument("--workers", type=int, default=None,
                        help="Parallel workers (default: from config)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Master seed (default: from config)")
    parser.add_argument("--output", type=str, default=None,
                        help="Save stacked counts to this .npz file")
    parser.add_argument("--quiet", action="store_true",
                        help="Only log warnings")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.WARNING if args.quiet else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    config = load_config(args.base_config, args.scenario)
    print("=" * 60)
    print("Shelter outbreak scenario")
    print("=" * 60)
    print(f"  Base: {args.base_config}")
    if args.scenario:
        print(f"  Scenario: {args.scenario}")
    print(f"  Population: {config.population.n_individuals}, "
          f"horizon: {config.simulation.horizon}, "
          f"hospital cap: {config.disease.hospital_cap}")

    t0 = time.time()
    inputs = build_inputs(config)
    rs = run_replicates(
        inputs, config,
        n_replicates=args.replicates,
        master_seed=args.seed,
        workers=args.workers,
    )
    print(f"  Elapsed: {time.time() - t0:.1f}s")
    print_summary(rs, config.simulation.horizon)

    if args.output and rs.results:
        np.savez_compressed(
            args.output,
            counts=rs.stacked_counts(),
            population=np.stack([r.population for r in rs.results]),
            incidence=np.stack([r.incidence for r in rs.results]),
            overcap=np.stack([r.overcap for r in rs.results]),
        )
        print(f"  Saved: {args.output}")

    print("\nDone.")


if __name__ == "__main__":
    main()
