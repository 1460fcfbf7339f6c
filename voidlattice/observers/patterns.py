"""Pattern metrics over the per-cell energy-density field (numpy)."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np
import torch

from ..core.lattice import Lattice
from ..core.types import BoundaryPolicy, CellState, LatticeCoord, OscillationMode


@dataclass
class PatternMetrics:
    total_energy: float
    mean_density: float
    variance: float
    skewness: float
    kurtosis: float
    local_clustering: float
    fractal_dimension: float
    void_fraction: float
    wall_fraction: float
    filament_fraction: float
    low_threshold: float
    high_threshold: float

    @property
    def void_wall_filament_ratio(self) -> tuple[float, float, float]:
        return (self.void_fraction, self.wall_fraction, self.filament_fraction)


@dataclass
class Classification:
    voids: list[LatticeCoord]
    walls: list[LatticeCoord]
    filaments: list[LatticeCoord]


def density_array(lattice: Lattice) -> np.ndarray:
    """Per-cell total energy in index order, `(n_cells,)`."""
    return lattice.density().detach().cpu().numpy()


def default_thresholds(density: np.ndarray) -> tuple[float, float]:
    """(mean − σ, mean + σ) of the density field."""
    mu = float(density.mean())
    sigma = float(density.std())
    return mu - sigma, mu + sigma


def moments(density: np.ndarray) -> tuple[float, float, float, float]:
    """(mean, variance, skewness, kurtosis); kurtosis is m4/σ⁴ (3 for a gaussian).

    Skewness and kurtosis are 0 for a constant field.
    """
    mu = float(density.mean())
    d = density - mu
    var = float(np.mean(d * d))
    if var <= 0.0:
        return mu, 0.0, 0.0, 0.0
    sigma = math.sqrt(var)
    skew = float(np.mean(d ** 3)) / sigma ** 3
    kurt = float(np.mean(d ** 4)) / (var * var)
    return mu, var, skew, kurt


def _classify(density: np.ndarray, low: float, high: float) -> np.ndarray:
    # 0 = void, 1 = wall, 2 = filament
    labels = np.ones(density.shape, dtype=np.int8)
    labels[density < low] = 0
    labels[density > high] = 2
    return labels


def void_wall_filament_classification_detailed(
    lattice: Lattice,
    low_threshold: float,
    high_threshold: float,
) -> Classification:
    """Strictly below low → void, strictly above high → filament, otherwise wall."""
    labels = _classify(density_array(lattice), float(low_threshold), float(high_threshold))
    out = Classification(voids=[], walls=[], filaments=[])
    buckets = (out.voids, out.walls, out.filaments)
    for i, lab in enumerate(labels.tolist()):
        buckets[lab].append(lattice.coord(i))
    return out


def void_wall_filament_classification(
    lattice: Lattice,
    low_threshold: Optional[float] = None,
    high_threshold: Optional[float] = None,
) -> tuple[float, float, float]:
    """(void, wall, filament) fractions; thresholds default to mean ± σ."""
    density = density_array(lattice)
    lo_d, hi_d = default_thresholds(density)
    low = lo_d if low_threshold is None else float(low_threshold)
    high = hi_d if high_threshold is None else float(high_threshold)
    labels = _classify(density, low, high)
    n = float(labels.size)
    return (
        float(np.count_nonzero(labels == 0)) / n,
        float(np.count_nonzero(labels == 1)) / n,
        float(np.count_nonzero(labels == 2)) / n,
    )


def compute_clustering_coefficient(
    lattice: Lattice,
    boundary: BoundaryPolicy = BoundaryPolicy.PERIODIC,
    connectivity: int = 6,
) -> float:
    """Signed neighbour correlation of density about the global mean.

    C = Σ_c (d_c − μ)(n̄_c − μ) / Σ_c (d_c − μ)², where n̄_c is the mean
    density of c's neighbours. +1 for smooth fields, −1 for a checkerboard,
    0 for a constant field or a lattice without neighbour pairs.
    """
    density = density_array(lattice)
    src, dst = lattice.neighbor_pairs(connectivity, boundary)
    if src.numel() == 0:
        return 0.0
    i = src.cpu().numpy()
    j = dst.cpu().numpy()

    n = density.size
    sums = np.zeros(n, dtype=np.float64)
    counts = np.zeros(n, dtype=np.float64)
    np.add.at(sums, i, density[j])
    np.add.at(sums, j, density[i])
    np.add.at(counts, i, 1.0)
    np.add.at(counts, j, 1.0)

    has = counts > 0
    mu = float(density.mean())
    dev = density[has] - mu
    denom = float(np.sum(dev * dev))
    if denom <= 0.0:
        return 0.0
    nbar = sums[has] / counts[has]
    return float(np.sum(dev * (nbar - mu)) / denom)


def fractal_dimension(density: np.ndarray, threshold: float) -> float:
    """Box-counting dimension of {density > threshold} on a 3D grid.

    Box edges 1, 2, 4, ... up to half the smallest axis; the slope of
    log N(s) against log(1/s) is clipped to [0, 3]. Returns 0 for an empty
    set or when fewer than two box sizes fit.
    """
    grid = np.asarray(density)
    if grid.ndim != 3:
        raise ValueError(f"density must be a 3D array, got shape {grid.shape}")
    occupied = np.argwhere(grid > threshold)
    if occupied.size == 0:
        return 0.0

    limit = max(1, min(grid.shape) // 2)
    sizes = []
    counts = []
    s = 1
    while s <= limit:
        boxes = np.unique(occupied // s, axis=0).shape[0]
        sizes.append(s)
        counts.append(boxes)
        s *= 2
    if len(sizes) < 2:
        return 0.0

    coeffs = np.polyfit(np.log(1.0 / np.asarray(sizes, dtype=np.float64)), np.log(np.asarray(counts, dtype=np.float64)), 1)
    return float(np.clip(coeffs[0], 0.0, 3.0))


def entropy_check(lattice: Lattice) -> float:
    """Shannon entropy (nats) of the normalised density distribution."""
    density = density_array(lattice)
    total = float(density.sum())
    if total <= 0.0:
        return 0.0
    p = density[density > 0] / total
    return float(-np.sum(p * np.log(p)))


def eigenmode_health(
    cell: Union[CellState, torch.Tensor],
    expected_modes: Sequence[Union[OscillationMode, torch.Tensor]],
) -> float:
    """|1 − Σ_k |⟨v_k, ψ̂⟩|²| for unit-normalised ψ̂ and v_k.

    0 when the supplied vectors span the cell's state; grows towards 1 as the
    state leaves their span. An empty cell scores 0.
    """
    psi = cell.amplitudes() if isinstance(cell, CellState) else torch.as_tensor(cell, dtype=torch.float64).reshape(-1)
    norm = float(torch.linalg.vector_norm(psi))
    if norm == 0.0:
        return 0.0
    psi_hat = (psi / norm).to(torch.complex128)
    captured = 0.0
    for mode in expected_modes:
        v = mode.eigenvector if isinstance(mode, OscillationMode) else mode
        v = torch.as_tensor(v).to(torch.complex128).reshape(-1)
        vn = float(torch.linalg.vector_norm(v))
        if vn == 0.0:
            continue
        captured += float(torch.abs(torch.vdot(v / vn, psi_hat)) ** 2)
    return abs(1.0 - captured)


def compute_pattern_metrics(
    lattice: Lattice,
    low_threshold: Optional[float] = None,
    high_threshold: Optional[float] = None,
    *,
    boundary: BoundaryPolicy = BoundaryPolicy.PERIODIC,
    connectivity: int = 6,
    fractal_threshold: Optional[float] = None,
) -> PatternMetrics:
    """Moments, clustering, fractal dimension and void/wall/filament fractions.

    Thresholds default to mean ± σ; the fractal set defaults to cells above
    the mean density.
    """
    density = density_array(lattice)
    mu, var, skew, kurt = moments(density)
    lo_d, hi_d = default_thresholds(density)
    low = lo_d if low_threshold is None else float(low_threshold)
    high = hi_d if high_threshold is None else float(high_threshold)
    void, wall, filament = void_wall_filament_classification(lattice, low, high)

    grid = lattice.field(lattice.density()).detach().cpu().numpy()
    fd = fractal_dimension(grid, mu if fractal_threshold is None else float(fractal_threshold))

    return PatternMetrics(
        total_energy=float(density.sum()),
        mean_density=mu,
        variance=var,
        skewness=skew,
        kurtosis=kurt,
        local_clustering=compute_clustering_coefficient(lattice, boundary, connectivity),
        fractal_dimension=fd,
        void_fraction=void,
        wall_fraction=wall,
        filament_fraction=filament,
        low_threshold=low,
        high_threshold=high,
    )
