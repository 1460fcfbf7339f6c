from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..core.types import BoundaryPolicy


class SimulationConfig(BaseModel):
    """Configuration for a lattice simulation run."""

    # Grid and time
    grid_size: tuple[int, int, int] = (16, 16, 16)
    dt: float = Field(default=0.05, gt=0.0)
    num_steps: int = Field(default=200, ge=0)

    # [CHOICE] neighbour topology for transport and clustering
    # [NOTES] PERIODIC wraps, REFLECTING mirrors, OPEN drops outside neighbours.
    boundary: BoundaryPolicy = BoundaryPolicy.PERIODIC
    connectivity: int = 6

    # Redistribution
    oscillation_rate: float = 0.5        # rate for the default chain operator
    use_adaptive: bool = False           # sub-stepped propagator with refinement
    series_terms: Optional[int] = None   # None → Padé matrix_exp; n → n-term Taylor series

    # Transport
    coupling: float = 0.05               # uniform spatial coupling k for every channel

    # [CHOICE] re-projection after transport
    # [FORMULA] reproject when reproject_every > 0 and (step_index + 1) % reproject_every == 0
    # [REASON] transport never breaks non-negativity but does move row totals of
    #          FixedTotal variables between cells; 1 re-projects every step, 0 never.
    reproject_every: int = Field(default=1, ge=0)

    # [CHOICE] global drift correction inside projection
    # [FORMULA] E *= ref / ΣE only when |ΣE − ref| / |ref| <= drift_tolerance
    # [REASON] float accumulation noise is patched; real drift is reported instead.
    global_pass: bool = False
    drift_tolerance: float = 1e-9

    # [CHOICE] negative entries within this bound are noise and clamped to zero
    validity_tolerance: float = 1e-12

    # Relative error above which the orchestrator warns about conservation drift
    conservation_tolerance: float = 1e-8

    # Initialization
    base_energy: float = Field(default=1.0, ge=0.0)
    noise_fraction: float = 0.1

    # Reproducibility
    seed: int = 0

    # Device
    device: str = "cpu"

    # [CHOICE] per-step ledger and history recording
    # [NOTES] off by default so the step loop carries no observers; when on, both
    #         keep at most history_max_frames entries (None = unbounded).
    record_history: bool = False
    history_max_frames: Optional[int] = Field(default=1000, ge=1)

    # Diagnostics (CSV / JSONL, every N steps; 0 disables)
    diagnostics_csv_path: Optional[Path] = None
    diagnostics_jsonl_path: Optional[Path] = None
    diagnostics_interval: int = Field(default=10, ge=0)

    @field_validator("connectivity")
    @classmethod
    def _check_connectivity(cls, v: int) -> int:
        if v not in (6, 26):
            raise ValueError(f"connectivity must be 6 or 26, got {v}")
        return v

