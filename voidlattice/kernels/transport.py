"""Inter-cell transport: conservative pairwise exchange and spatial modes.

Lattice-wide transport is two-phase:

1. From a snapshot of the lattice, compute one flux per unique neighbour pair
   and channel, `Δ = k·dt·(E_j − E_i)` (positive means j → i).
2. Limit every source cell's total outflow per channel to the energy it holds,
   accumulate the limited fluxes into a private delta tensor and apply it.

Each unordered pair appears once in `Lattice.neighbor_pairs`, so no exchange
is double-applied, and the limiter keeps every channel non-negative.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence, Union

import torch

from ..core.lattice import Lattice
from ..core.types import DTYPE, FORCES, VARS, BoundaryPolicy, CellState, SpatialMode
from ..errors import OutOfBounds
from .spectral import fft_3d, signed_wavenumbers

CouplingLike = Union[float, Sequence[Sequence[float]], torch.Tensor]


def exchange_exact(
    cell_a: CellState,
    cell_b: CellState,
    var_i: int,
    force_f: int,
    coupling: float,
    dt: float,
) -> float:
    """Move `Δ = coupling·dt·(E_b − E_a)` from b to a on one channel.

    Δ is clamped to the energy of the draining side, so neither side goes
    negative and `E_a + E_b` is unchanged. Returns the applied Δ.
    """
    if not (0 <= var_i < VARS and 0 <= force_f < FORCES):
        raise OutOfBounds(f"channel ({var_i}, {force_f}) outside {VARS}x{FORCES}")
    ea = float(cell_a.e[var_i, force_f])
    eb = float(cell_b.e[var_i, force_f])
    delta = float(coupling) * float(dt) * (eb - ea)
    if delta > 0.0:
        delta = min(delta, eb)
    elif delta < 0.0:
        delta = max(delta, -ea)
    cell_a.e[var_i, force_f] = ea + delta
    cell_b.e[var_i, force_f] = eb - delta
    return delta


def coupling_tensor(coupling: CouplingLike, *, device=None) -> torch.Tensor:
    """Scalar or VARS×FORCES coupling -> (VARS, FORCES) float64 tensor."""
    k = torch.as_tensor(coupling, dtype=DTYPE, device=device)
    if k.dim() == 0:
        return k.expand(VARS, FORCES).clone()
    if k.shape != (VARS, FORCES):
        raise ValueError(f"coupling matrix must be ({VARS}, {FORCES}), got {tuple(k.shape)}")
    return k


def distribute_to_neighbors(
    lattice: Lattice,
    coupling_matrix: CouplingLike,
    dt: float,
    *,
    boundary: BoundaryPolicy = BoundaryPolicy.PERIODIC,
    connectivity: int = 6,
) -> torch.Tensor:
    """Exchange energy across every neighbour pair once. Returns the applied delta tensor."""
    e = lattice.energy
    k = coupling_tensor(coupling_matrix, device=e.device)
    src, dst = lattice.neighbor_pairs(connectivity, boundary)
    delta = torch.zeros_like(e)
    if src.numel() == 0:
        return delta

    # Phase 1: fluxes from the snapshot (positive: dst -> src).
    flux = (k * float(dt)) * (e[dst] - e[src])

    outflow = torch.zeros_like(e)
    outflow.index_add_(0, dst, torch.clamp(flux, min=0.0))
    outflow.index_add_(0, src, torch.clamp(-flux, min=0.0))
    over = outflow > e
    scale = torch.where(over, e / torch.where(over, outflow, torch.ones_like(outflow)), torch.ones_like(e))
    limited = torch.where(flux > 0, flux * scale[dst], flux * scale[src])

    delta.index_add_(0, src, limited)
    delta.index_add_(0, dst, -limited)

    # Phase 2: apply.
    e.add_(delta)
    e.clamp_(min=0.0)
    return delta


# =============================================================================
# Spatial modes
# =============================================================================

def fourier_mode_frequency(k: Sequence[int], size: Sequence[int]) -> float:
    """Lattice dispersion for a periodic grid of unit spacing.

    ω(k) = 2·sqrt(Σ_d sin²(π k_d / n_d)), returned as ω / 2π.
    """
    s = sum(math.sin(math.pi * float(kd) / float(nd)) ** 2 for kd, nd in zip(k, size))
    return 2.0 * math.sqrt(s) / (2.0 * math.pi)


def compute_spatial_modes(
    lattice: Lattice,
    var_i: int,
    force_f: int,
    *,
    min_amplitude: float = 0.0,
    top_k: Optional[int] = None,
) -> list[SpatialMode]:
    """Spectral components of channel (var_i, force_f), strongest first.

    Amplitude is |F_k| / n_cells, so a field `c·cos(2π k·r/n)` shows up as
    two modes (±k) of amplitude c/2.
    """
    if not (0 <= var_i < VARS and 0 <= force_f < FORCES):
        raise OutOfBounds(f"channel ({var_i}, {force_f}) outside {VARS}x{FORCES}")
    field = lattice.field()[..., var_i, force_f]
    amp = torch.abs(fft_3d(field)) / float(lattice.cell_count)

    nx, ny, nz = lattice.size
    kx = signed_wavenumbers(nx)
    ky = signed_wavenumbers(ny)
    kz = signed_wavenumbers(nz)

    keep = torch.nonzero(amp >= float(min_amplitude), as_tuple=False)
    modes: list[SpatialMode] = []
    for a, b, c in keep.tolist():
        k = (int(kx[a]), int(ky[b]), int(kz[c]))
        modes.append(SpatialMode(k=k, amplitude=float(amp[a, b, c]), frequency=fourier_mode_frequency(k, lattice.size)))

    modes.sort(key=lambda m: (-m.amplitude, m.k))
    if top_k is not None:
        modes = modes[: int(top_k)]
    return modes
