"""Oscillation analysis: local (intra-cell) and global (spatial) modes over time.

Local modes come from the redistribution operator's eigen-decomposition and
are given an amplitude and phase by projecting an actual cell state onto
them. Global modes are spectral components of a channel field. The two are
related by a frequency-space coupling matrix with gaussian tuning:

    coupling_ij = exp(-(f_i - g_j)² / σ²)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

import torch

from ..core.lattice import Lattice
from ..core.types import CellState, OscillationMode, SpatialMode
from ..kernels import redistribution, transport
from ..kernels.redistribution import MatrixLike

# [CHOICE] default gate width σ for mode_coupling_matrix (cycles per unit time)
DEFAULT_BANDWIDTH = 0.1

# Fewer samples than this cannot resolve a frequency.
MIN_TIMESERIES_SAMPLES = 4


def _mode_overlap(cell: CellState, mode: OscillationMode) -> complex:
    psi = cell.amplitudes().to(torch.complex128)
    v = mode.eigenvector.to(torch.complex128)
    return complex(torch.vdot(v, psi))


def detect_local_modes(
    cell: CellState,
    m: MatrixLike,
    tolerance: float = redistribution.DEFAULT_MODE_TOLERANCE,
) -> list[OscillationMode]:
    """Oscillation modes of `m` with amplitude/phase initialised from `cell`."""
    modes = redistribution.extract_oscillation_modes(m, tolerance)
    for mode in modes:
        c = _mode_overlap(cell, mode)
        mode.amplitude = abs(c)
        mode.phase = math.atan2(c.imag, c.real)
    return modes


def project_onto_mode(cell: CellState, mode: OscillationMode) -> float:
    """Re(Σ_i ψ_i v_i) for the cell's amplitude vector ψ."""
    psi = cell.amplitudes().to(torch.complex128)
    v = mode.eigenvector.to(torch.complex128)
    return float(torch.sum(psi * v).real)


@dataclass
class ModeTracker:
    mode: OscillationMode
    history: list[tuple[float, float]] = field(default_factory=list)

    def track(self, cell: CellState, t: float) -> float:
        return track_mode(self, cell, t)

    def frequency(self) -> Optional[float]:
        return extract_frequency_from_timeseries(self.history)


def track_mode(tracker: ModeTracker, cell: CellState, t: float) -> float:
    """Append (t, projection) to the tracker's history and return the projection."""
    amp = project_onto_mode(cell, tracker.mode)
    tracker.history.append((float(t), amp))
    return amp


def extract_frequency_from_timeseries(history: Sequence[tuple[float, float]]) -> Optional[float]:
    """Dominant frequency (cycles per unit time) of a uniformly sampled series.

    The mean is removed and the strongest non-DC rfft bin wins. Returns None
    with fewer than 4 samples, a non-increasing time axis or a flat series.
    """
    if len(history) < MIN_TIMESERIES_SAMPLES:
        return None
    times = [float(t) for t, _ in history]
    span = times[-1] - times[0]
    if span <= 0.0:
        return None
    n = len(history)
    dt = span / (n - 1)

    x = torch.tensor([float(a) for _, a in history], dtype=torch.float64)
    x = x - x.mean()
    power = torch.abs(torch.fft.rfft(x)) ** 2
    power[0] = 0.0
    if float(power.max()) <= 0.0:
        return None
    k = int(torch.argmax(power))
    return k / (n * dt)


def detect_global_modes(
    lattice: Lattice,
    var_i: int,
    force_f: int,
    *,
    min_amplitude: float = 0.0,
    top_k: Optional[int] = None,
) -> list[SpatialMode]:
    return transport.compute_spatial_modes(lattice, var_i, force_f, min_amplitude=min_amplitude, top_k=top_k)


def mode_coupling_matrix(
    local_freq: Sequence[float],
    spatial_freq: Sequence[float],
    bandwidth: float = DEFAULT_BANDWIDTH,
) -> torch.Tensor:
    """(len(local), len(spatial)) gaussian tuning between two frequency sets."""
    if bandwidth <= 0.0:
        raise ValueError(f"bandwidth must be > 0, got {bandwidth}")
    f = torch.as_tensor(list(local_freq), dtype=torch.float64)
    g = torch.as_tensor(list(spatial_freq), dtype=torch.float64)
    diff = f[:, None] - g[None, :]
    return torch.exp(-(diff * diff) / (bandwidth * bandwidth))


@dataclass
class OscillationAnalyzer:
    """Holds the most recent local and global mode sets."""

    local_modes: list[OscillationMode] = field(default_factory=list)
    global_modes: list[SpatialMode] = field(default_factory=list)

    def analyze_cell(self, cell: CellState, m: MatrixLike) -> list[OscillationMode]:
        self.local_modes = detect_local_modes(cell, m)
        return self.local_modes

    def analyze_lattice(
        self,
        lattice: Lattice,
        var_i: int,
        force_f: int,
        *,
        min_amplitude: float = 0.0,
        top_k: Optional[int] = None,
    ) -> list[SpatialMode]:
        self.global_modes = detect_global_modes(lattice, var_i, force_f, min_amplitude=min_amplitude, top_k=top_k)
        return self.global_modes

    def coupling(self, bandwidth: float = DEFAULT_BANDWIDTH) -> torch.Tensor:
        return mode_coupling_matrix(
            [m.frequency for m in self.local_modes],
            [m.frequency for m in self.global_modes],
            bandwidth,
        )
