"""Read-only numpy views of a lattice for plotting and export collaborators.

Spatial arrays are indexed `[x, y, z]`. Nothing here mutates the lattice.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import torch

from ..core.lattice import Lattice
from ..core.types import FORCES, VARS, LatticeCoord
from ..errors import OutOfBounds
from ..kernels.spectral import fft_3d


@dataclass
class LatticeSnapshot:
    time: float
    step: int
    density: np.ndarray            # (nx, ny, nz)
    per_variable: np.ndarray       # (VARS,) lattice-wide totals
    per_force: np.ndarray          # (FORCES,) lattice-wide totals

    @property
    def total_energy(self) -> float:
        return float(self.density.sum())


def _np(t: torch.Tensor) -> np.ndarray:
    return t.detach().cpu().numpy().copy()


def energy_density_field(lattice: Lattice) -> np.ndarray:
    return _np(lattice.field(lattice.density()))


def variable_field(lattice: Lattice, var_i: int) -> np.ndarray:
    if not 0 <= var_i < VARS:
        raise OutOfBounds(f"variable {var_i} outside [0, {VARS})")
    return _np(lattice.field(lattice.energy[:, var_i, :].sum(dim=-1)))


def channel_field(lattice: Lattice, var_i: int, force_f: int) -> np.ndarray:
    if not (0 <= var_i < VARS and 0 <= force_f < FORCES):
        raise OutOfBounds(f"channel ({var_i}, {force_f}) outside {VARS}x{FORCES}")
    return _np(lattice.field(lattice.energy[:, var_i, force_f]))


def slice_along_axis(lattice: Lattice, axis: int, index: int, var_i: Optional[int] = None) -> np.ndarray:
    """2D slice perpendicular to `axis` (0=x, 1=y, 2=z) of total or per-variable density."""
    if axis not in (0, 1, 2):
        raise ValueError(f"axis must be 0, 1 or 2, got {axis}")
    if not 0 <= index < lattice.size[axis]:
        raise OutOfBounds(f"slice {index} outside [0, {lattice.size[axis]}) on axis {axis}")
    field = energy_density_field(lattice) if var_i is None else variable_field(lattice, var_i)
    return np.take(field, index, axis=axis)


def slice_xy(lattice: Lattice, z_index: int, var_i: Optional[int] = None) -> np.ndarray:
    return slice_along_axis(lattice, 2, z_index, var_i)


def variable_dominance_map(lattice: Lattice) -> np.ndarray:
    """Index of the variable holding the most energy in each cell, `(nx, ny, nz)` int."""
    rows = lattice.energy.sum(dim=-1)
    return _np(lattice.field(torch.argmax(rows, dim=-1)))


def isosurface_data(lattice: Lattice, threshold: float) -> list[LatticeCoord]:
    """Coordinates of cells whose total energy is >= threshold, in index order."""
    hits = torch.nonzero(lattice.density() >= float(threshold)).flatten().tolist()
    return [lattice.coord(i) for i in hits]  # type: ignore[misc]


def volume_fft(lattice: Lattice, var_i: int, force_f: int) -> np.ndarray:
    """Normalised spectral amplitude |F_k| / n_cells of one channel, `(nx, ny, nz)`."""
    field = lattice.field()[..., var_i, force_f]
    return _np(torch.abs(fft_3d(field)) / float(lattice.cell_count))


def take_snapshot(lattice: Lattice, *, time: float = 0.0, step: int = 0) -> LatticeSnapshot:
    e = lattice.energy
    return LatticeSnapshot(
        time=float(time),
        step=int(step),
        density=energy_density_field(lattice),
        per_variable=_np(e.sum(dim=(0, 2))),
        per_force=_np(e.sum(dim=(0, 1))),
    )
