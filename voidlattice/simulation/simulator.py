"""Evolution orchestrator.

One `Simulation` value owns the lattice, the operator, the constraints and
the clock. A step is:

1. redistribute every cell (one shared propagator, batched) and project;
2. transport across neighbour pairs;
3. re-project per `config.reproject_every`;
4. advance `time` and `step_index`.

Errors propagate as exceptions. There is no rollback: a failed step leaves
the lattice in whatever state it reached.
"""

from __future__ import annotations

import time as _time
from typing import Any, Callable, Dict, Optional

from ..console import console
from ..core.energy import project_energy
from ..core.lattice import Lattice
from ..core.types import ConstraintSet, RedistributionMatrix
from ..instrument.history import StateHistoryInstrument
from ..kernels import redistribution as redist
from ..kernels.transport import CouplingLike, coupling_tensor, distribute_to_neighbors
from ..observers import conservation
from ..observers.diagnostics import ConservationDiagnosticsLogger
from ..observers.patterns import PatternMetrics, compute_pattern_metrics
from ..observers.snapshot import LatticeSnapshot, take_snapshot
from .config import SimulationConfig
from .initializer import EnergyDistribution, initialize_homogeneous

# [CHOICE] float-accumulation guard for evolve_until
# [FORMULA] keep stepping while time + STEP_EPSILON·dt < t_end
STEP_EPSILON = 1e-9


class Simulation:
    def __init__(
        self,
        lattice: Lattice,
        redistribution: Optional[RedistributionMatrix] = None,
        coupling: CouplingLike = 0.0,
        constraints: Optional[ConstraintSet] = None,
        config: Optional[SimulationConfig] = None,
    ) -> None:
        self.lattice = lattice
        self.redistribution = redistribution if redistribution is not None else redist.new_zero()
        self.coupling = coupling_tensor(coupling, device=lattice.device)
        self.constraints = constraints if constraints is not None else ConstraintSet.free()
        self.config = config if config is not None else SimulationConfig(grid_size=lattice.size)

        self.time = 0.0
        self.step_index = 0
        self.last_drift: Optional[float] = None
        self._drift_warned = False

        self.reset_reference()
        self.ledger = conservation.ConservationLedger(
            reference=self.initial_energy,
            tolerance=self.config.conservation_tolerance,
            max_records=self.config.history_max_frames,
        )
        self.history = StateHistoryInstrument(max_frames=self.config.history_max_frames)
        self.diagnostics = ConservationDiagnosticsLogger(
            csv_path=None if self.config.diagnostics_csv_path is None else str(self.config.diagnostics_csv_path),
            jsonl_path=None if self.config.diagnostics_jsonl_path is None else str(self.config.diagnostics_jsonl_path),
        )

    def reset_reference(self) -> None:
        """Take the current lattice totals as the conservation reference."""
        e = self.lattice.energy
        self.initial_energy = float(e.sum())
        self.initial_per_variable = e.sum(dim=(0, 2)).tolist()
        self.initial_per_force = e.sum(dim=(0, 1)).tolist()

    # ---------------------------------------------------------------
    # Stepping
    # ---------------------------------------------------------------

    def _project(self) -> Optional[float]:
        cfg = self.config
        drift = project_energy(
            self.lattice.energy,
            self.constraints,
            reference_total=self.initial_energy if cfg.global_pass else None,
            drift_tolerance=cfg.drift_tolerance,
            validity_tolerance=cfg.validity_tolerance,
        )
        if drift is not None:
            self.last_drift = drift
        return drift

    def step_redistribution(self, dt: float, use_adaptive: bool = False) -> None:
        """Evolve every cell's amplitudes, then project onto the constraints."""
        if use_adaptive:
            redist.evolve_amplitudes_adaptive(self.lattice.energy, self.lattice.polarity, self.redistribution, dt)
        else:
            redist.evolve_amplitudes_exact(
                self.lattice.energy,
                self.lattice.polarity,
                self.redistribution,
                dt,
                terms=self.config.series_terms,
            )
        self._project()

    def step_transport(self, dt: float) -> None:
        distribute_to_neighbors(
            self.lattice,
            self.coupling,
            dt,
            boundary=self.config.boundary,
            connectivity=self.config.connectivity,
        )
        every = self.config.reproject_every
        if every > 0 and (self.step_index + 1) % every == 0:
            self._project()

    def step(self, dt: Optional[float] = None, use_adaptive: Optional[bool] = None) -> None:
        dt = self.config.dt if dt is None else float(dt)
        adaptive = self.config.use_adaptive if use_adaptive is None else bool(use_adaptive)

        self.step_redistribution(dt, adaptive)
        self.step_transport(dt)

        self.time += dt
        self.step_index += 1
        self._observe()

    def evolve_until(
        self,
        t_end: float,
        dt: Optional[float] = None,
        callback: Optional[Callable[["Simulation"], None]] = None,
        use_adaptive: Optional[bool] = None,
    ) -> int:
        """Step while `time < t_end`; calls `callback(self)` after each step. Returns steps taken."""
        dt = self.config.dt if dt is None else float(dt)
        if dt <= 0.0:
            raise ValueError(f"dt must be > 0, got {dt}")
        taken = 0
        while self.time + STEP_EPSILON * dt < t_end:
            self.step(dt, use_adaptive)
            taken += 1
            if callback is not None:
                callback(self)
        return taken

    def _observe(self) -> None:
        """Per-step recording; only runs what the config asks for."""
        if self.config.record_history:
            total = self.lattice.total_energy()
            self.ledger.log(total, self.step_index)
            rel = conservation.verify_global_conservation(self.lattice, self.initial_energy)
            self.history.update({"step": self.step_index, "time": self.time, "total_energy": total, "global_error": rel})

            if rel > self.config.conservation_tolerance and not self._drift_warned:
                self._drift_warned = True
                console.warn(
                    "Conservation drift",
                    detail=f"step={self.step_index} rel={rel:.3e} tol={self.config.conservation_tolerance:.1e}",
                )

        interval = self.config.diagnostics_interval
        if self.diagnostics.enabled and interval > 0 and self.step_index % interval == 0:
            total = self.lattice.total_energy()
            self.diagnostics.log_report(
                step=self.step_index,
                time=self.time,
                total_energy=total,
                report=self.conservation_report(),
            )

    # ---------------------------------------------------------------
    # Diagnostics
    # ---------------------------------------------------------------

    def verify_energy_conservation(self) -> float:
        return conservation.verify_global_conservation(self.lattice, self.initial_energy)

    def conservation_report(self, tolerance: Optional[float] = None) -> conservation.ConservationReport:
        return conservation.conservation_report(
            self.lattice,
            initial_energy=self.initial_energy,
            initial_per_variable=self.initial_per_variable,
            initial_per_force=self.initial_per_force,
            constraints=self.constraints,
            tolerance=conservation.DEFAULT_CONSTRAINT_TOLERANCE if tolerance is None else tolerance,
        )

    def compute_pattern_metrics(
        self,
        low_threshold: Optional[float] = None,
        high_threshold: Optional[float] = None,
    ) -> PatternMetrics:
        return compute_pattern_metrics(
            self.lattice,
            low_threshold,
            high_threshold,
            boundary=self.config.boundary,
            connectivity=self.config.connectivity,
        )

    def snapshot(self) -> LatticeSnapshot:
        return take_snapshot(self.lattice, time=self.time, step=self.step_index)


def build_simulation(
    config: SimulationConfig,
    *,
    redistribution: Optional[RedistributionMatrix] = None,
    constraints: Optional[ConstraintSet] = None,
    distribution: Optional[EnergyDistribution] = None,
) -> Simulation:
    """Lattice + homogeneous initial state + default chain operator from `config`."""
    constraints = constraints if constraints is not None else ConstraintSet.free()
    lattice = Lattice(config.grid_size, device=config.device)
    initialize_homogeneous(
        lattice,
        config.base_energy,
        config.noise_fraction,
        distribution if distribution is not None else EnergyDistribution.uniform(config.base_energy),
        constraints,
        seed=config.seed,
    )
    if redistribution is None:
        redistribution = redist.build_chain_matrix(config.oscillation_rate, constraints.transfer_mask)
    return Simulation(lattice, redistribution, config.coupling, constraints, config)


def run_simulation(
    config: SimulationConfig,
    *,
    redistribution: Optional[RedistributionMatrix] = None,
    constraints: Optional[ConstraintSet] = None,
    distribution: Optional[EnergyDistribution] = None,
) -> Dict[str, Any]:
    """Run `config.num_steps` steps and return summary results."""
    sim = build_simulation(config, redistribution=redistribution, constraints=constraints, distribution=distribution)

    console.info(
        f"Lattice {config.grid_size[0]}x{config.grid_size[1]}x{config.grid_size[2]}",
        detail=f"E0={sim.initial_energy:.6g} dt={config.dt} boundary={config.boundary.value}",
    )
    t0 = _time.perf_counter()
    with console.spinner(f"Evolving {config.num_steps} steps..."):
        for _ in range(int(config.num_steps)):
            sim.step()
    elapsed = _time.perf_counter() - t0

    report = sim.conservation_report()
    metrics = sim.compute_pattern_metrics()
    drifts = report.drifts(config.conservation_tolerance)
    if drifts:
        for d in drifts:
            console.warn(str(d))
    else:
        console.success("Energy conserved", detail=f"rel={report.global_energy_error:.3e}")

    return {
        "steps": sim.step_index,
        "time": sim.time,
        "elapsed_s": elapsed,
        "initial_energy": sim.initial_energy,
        "final_energy": sim.lattice.total_energy(),
        "conservation_error": report.global_energy_error,
        "constraint_violations": len(report.violations),
        "pattern_metrics": metrics,
        "ledger": sim.ledger.summary(),
        "simulation": sim,
    }
