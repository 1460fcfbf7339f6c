#!/usr/bin/env python3
"""Void Lattice Simulation Entrypoint

Headless runner: homogeneous initial state, chain redistribution operator,
uniform spatial coupling, conservation and pattern summary at the end.

Usage:
    python run.py                        # Run with defaults
    python run.py --steps 1000           # Custom step count
    python run.py --grid 24 --dt 0.02    # Grid edge and time step
    python run.py --boundary reflecting  # periodic | reflecting | open
    python run.py --jsonl artifacts/conservation.jsonl
"""

from __future__ import annotations

import argparse
from pathlib import Path

from voidlattice.console import console
from voidlattice.core.types import BoundaryPolicy
from voidlattice.simulation.config import SimulationConfig
from voidlattice.simulation.simulator import run_simulation


def main():
    parser = argparse.ArgumentParser(
        description="Void Lattice Simulation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument("--steps", type=int, default=200, help="Number of simulation steps")
    parser.add_argument("--grid", type=int, default=16, help="Grid size (cubic)")
    parser.add_argument("--dt", type=float, default=0.05, help="Time step")
    parser.add_argument("--coupling", type=float, default=0.05, help="Uniform spatial coupling")
    parser.add_argument("--rate", type=float, default=0.5, help="Oscillation rate of the chain operator")
    parser.add_argument("--noise", type=float, default=0.1, help="Initial noise fraction")
    parser.add_argument("--seed", type=int, default=0, help="Random seed")
    parser.add_argument("--boundary", type=str, default="periodic",
                        choices=[b.value for b in BoundaryPolicy], help="Neighbour boundary policy")
    parser.add_argument("--connectivity", type=int, default=6, choices=[6, 26], help="Neighbour count")
    parser.add_argument("--adaptive", action="store_true", help="Use the adaptive sub-stepped propagator")
    parser.add_argument("--reproject-every", type=int, default=1,
                        help="Re-project after transport every N steps (0 = never)")
    parser.add_argument("--csv", type=str, default=None, help="Append conservation diagnostics to CSV")
    parser.add_argument("--jsonl", type=str, default=None, help="Append conservation diagnostics to JSONL")
    parser.add_argument("--device", type=str, default="cpu", help="Device (cpu, cuda)")
    parser.add_argument("--quiet", action="store_true", help="Suppress console output except errors")
    parser.add_argument("--record-history", action="store_true",
                        help="Keep a per-step energy ledger and history (bounded)")

    args = parser.parse_args()
    console.quiet = args.quiet

    config = SimulationConfig(
        grid_size=(args.grid, args.grid, args.grid),
        dt=args.dt,
        num_steps=args.steps,
        boundary=BoundaryPolicy(args.boundary),
        connectivity=args.connectivity,
        oscillation_rate=args.rate,
        use_adaptive=args.adaptive,
        coupling=args.coupling,
        reproject_every=args.reproject_every,
        noise_fraction=args.noise,
        seed=args.seed,
        device=args.device,
        record_history=args.record_history,
        diagnostics_csv_path=(None if args.csv is None else Path(args.csv)),
        diagnostics_jsonl_path=(None if args.jsonl is None else Path(args.jsonl)),
    )

    result = run_simulation(config)
    m = result["pattern_metrics"]
    console.header(
        "Final results",
        steps=result["steps"],
        time=result["time"],
        energy=result["final_energy"],
        conservation_error=result["conservation_error"],
        void_wall_filament=" / ".join(f"{v:.3f}" for v in m.void_wall_filament_ratio),
        clustering=m.local_clustering,
        fractal_dimension=m.fractal_dimension,
        elapsed_s=result["elapsed_s"],
    )


if __name__ == "__main__":
    main()
