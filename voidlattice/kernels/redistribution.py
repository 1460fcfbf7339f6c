"""Intra-cell redistribution operator.

The operator A (N×N, N = VARS·FORCES) drives the signed amplitude vector of a
cell, `dψ/dt = A ψ`, with `e = ψ²`. An antisymmetric A generates an
orthogonal propagator exp(A·dt), so Σe is conserved and no energy can go
negative. A symmetric part models relaxation and is never added implicitly.

Lattice-wide evolution shares one propagator across all cells and applies
it as a single batched matmul over the `(n_cells, N)` amplitude tensor.
"""

from __future__ import annotations

import math
from typing import Optional, Union

import torch

from ..core.types import (
    DTYPE,
    N_FLATTENED,
    CellState,
    OscillationMode,
    RedistributionMatrix,
    TransferMask,
    energies_to_amplitudes,
    amplitudes_to_energies,
)
from ..errors import OutOfBounds, StiffIntegrationFailed, TransferNotAllowed
from . import matrix_ops

MatrixLike = Union[RedistributionMatrix, torch.Tensor]

# [CHOICE] adaptive sub-step sizing
# [FORMULA] n0 = ceil(ρ(A)·|dt| / MAX_PHASE_STEP)   (ρ = spectral radius)
# [REASON] each sub-step exponential stays well conditioned when it advances the
#          fastest mode by well under one radian; refinement doubles n from there.
MAX_PHASE_STEP = 0.5
DEFAULT_MAX_SUBSTEPS = 4096
DEFAULT_ADAPTIVE_TOLERANCE = 1e-10

# [CHOICE] mode filter tolerance, relative to max(1, max|A_ij|)
DEFAULT_MODE_TOLERANCE = 1e-9


def _a(m: MatrixLike) -> torch.Tensor:
    return m.a if isinstance(m, RedistributionMatrix) else m


def _check_channel(k: int) -> None:
    if not 0 <= k < N_FLATTENED:
        raise OutOfBounds(f"flattened channel {k} outside [0, {N_FLATTENED})")


# =============================================================================
# Construction
# =============================================================================

def new_zero() -> RedistributionMatrix:
    return RedistributionMatrix()


def set_oscillation(m: RedistributionMatrix, from_: int, to: int, rate: float) -> RedistributionMatrix:
    """a[from][to] = rate, a[to][from] = -rate."""
    _check_channel(from_)
    _check_channel(to)
    if from_ == to:
        raise TransferNotAllowed(f"channel {from_} cannot oscillate with itself")
    m.a[from_, to] = float(rate)
    m.a[to, from_] = -float(rate)
    return m


def set_transfer(
    m: RedistributionMatrix,
    from_: int,
    to: int,
    rate: float,
    mask: TransferMask,
) -> RedistributionMatrix:
    """Masked `set_oscillation`; the matrix is untouched when the mask rejects the pair."""
    if not mask.allows(from_, to):
        raise TransferNotAllowed(f"transfer {from_} -> {to} is masked out")
    return set_oscillation(m, from_, to, rate)


def build_chain_matrix(rate: float, mask: Optional[TransferMask] = None) -> RedistributionMatrix:
    """Oscillation between each consecutive pair of channels the mask allows."""
    m = new_zero()
    for k in range(N_FLATTENED - 1):
        if mask is None or mask.allows(k, k + 1):
            set_oscillation(m, k, k + 1, rate)
    return m


# =============================================================================
# Decomposition
# =============================================================================

def symmetric_part(m: MatrixLike) -> RedistributionMatrix:
    a = _a(m)
    return RedistributionMatrix(0.5 * (a + a.T))


def antisymmetric_part(m: MatrixLike) -> RedistributionMatrix:
    a = _a(m)
    return RedistributionMatrix(0.5 * (a - a.T))


def eigenvalues(m: MatrixLike) -> torch.Tensor:
    return matrix_ops.eigenvalues(_a(m))


def eigenvectors(m: MatrixLike) -> tuple[torch.Tensor, torch.Tensor]:
    return matrix_ops.eigenvectors(_a(m))


def extract_oscillation_modes(m: MatrixLike, tolerance: float = DEFAULT_MODE_TOLERANCE) -> list[OscillationMode]:
    """Non-decaying oscillatory eigen-pairs (|Re λ| < tol, |Im λ| > tol).

    Both members of a complex-conjugate pair pass the filter and are returned
    as distinct modes (frequencies +f and -f). Use `unique_oscillations` for
    one mode per physical oscillation. Amplitude and phase are left at zero.
    """
    a = _a(m)
    scale = max(1.0, float(torch.abs(a).max())) if a.numel() else 1.0
    tol = float(tolerance) * scale
    vals, vecs = matrix_ops.eigenvectors(a)

    modes: list[OscillationMode] = []
    for k in range(vals.shape[0]):
        lam = complex(vals[k])
        if abs(lam.real) < tol and abs(lam.imag) > tol:
            modes.append(OscillationMode(
                frequency=lam.imag / (2.0 * math.pi),
                eigenvector=vecs[:, k].clone(),
                eigenvalue=lam,
            ))
    modes.sort(key=lambda md: (-abs(md.frequency), -md.frequency))
    return modes


def unique_oscillations(modes: list[OscillationMode]) -> list[OscillationMode]:
    """Keep the positive-frequency member of each conjugate pair."""
    return [md for md in modes if md.frequency > 0.0]


# =============================================================================
# Propagators
# =============================================================================

def exact_propagator(m: MatrixLike, dt: float, *, terms: Optional[int] = None) -> torch.Tensor:
    return matrix_ops.exponential(_a(m), dt, terms=terms)


def _substep_propagator(a: torch.Tensor, dt: float, n: int) -> torch.Tensor:
    # exp(hA) is orthogonal for antisymmetric A, so the product keeps the norm at any n.
    step = matrix_ops.exponential(a, dt / n)
    return torch.linalg.matrix_power(step, n)


def adaptive_propagator(
    m: MatrixLike,
    dt: float,
    *,
    tolerance: float = DEFAULT_ADAPTIVE_TOLERANCE,
    max_substeps: int = DEFAULT_MAX_SUBSTEPS,
    max_phase_step: float = MAX_PHASE_STEP,
) -> tuple[torch.Tensor, int]:
    """Product of `n` sub-step exponentials exp(A·dt/n), refined by doubling `n`.

    Converged when two successive refinements agree within `tolerance`
    (max-abs difference) and, for an antisymmetric generator, the result is
    orthogonal within `tolerance`. Returns (propagator, substeps).
    """
    a = _a(m)
    n = max(1, int(math.ceil(matrix_ops.spectral_radius(a) * abs(float(dt)) / float(max_phase_step))))
    if n > max_substeps:
        raise StiffIntegrationFailed(
            f"stiff operator needs {n} sub-steps (budget {max_substeps})",
            substeps=n,
        )
    orthogonal = matrix_ops.is_antisymmetric(a)
    eye = torch.eye(a.shape[-1], dtype=a.dtype, device=a.device)

    prev = _substep_propagator(a, dt, n)
    residual = float("inf")
    while 2 * n <= max_substeps:
        n *= 2
        cur = _substep_propagator(a, dt, n)
        residual = float(torch.abs(cur - prev).max())
        if orthogonal:
            residual = max(residual, float(torch.abs(cur.T @ cur - eye).max()))
        if residual <= tolerance:
            return cur, n
        prev = cur

    raise StiffIntegrationFailed(
        f"adaptive integration did not converge within {max_substeps} sub-steps (residual {residual:.3e})",
        substeps=n,
        residual=residual,
    )


# =============================================================================
# Evolution
# =============================================================================

def _apply_to_cell(cell: CellState, p: torch.Tensor) -> CellState:
    psi = cell.amplitudes()
    cell.set_amplitudes(p @ psi)
    return cell


def evolve_exact(cell: CellState, m: MatrixLike, dt: float, *, terms: Optional[int] = None) -> CellState:
    """ψ ← exp(A·dt) ψ for one cell (in place)."""
    return _apply_to_cell(cell, exact_propagator(m, dt, terms=terms))


def evolve_adaptive(
    cell: CellState,
    m: MatrixLike,
    dt: float,
    *,
    tolerance: float = DEFAULT_ADAPTIVE_TOLERANCE,
    max_substeps: int = DEFAULT_MAX_SUBSTEPS,
) -> CellState:
    """Sub-stepped evolution for stiff operators; raises StiffIntegrationFailed."""
    p, _ = adaptive_propagator(m, dt, tolerance=tolerance, max_substeps=max_substeps)
    return _apply_to_cell(cell, p)


def apply_propagator(energy: torch.Tensor, polarity: torch.Tensor, p: torch.Tensor) -> None:
    """Apply one N×N propagator to every cell of `(n_cells, VARS, FORCES)` buffers in place."""
    n_cells = energy.shape[0]
    psi = energies_to_amplitudes(energy, polarity).reshape(n_cells, N_FLATTENED)
    out = (psi @ p.to(DTYPE).T).reshape(energy.shape)
    e, pol = amplitudes_to_energies(out)
    energy.copy_(e)
    polarity.copy_(pol)


def evolve_amplitudes_exact(
    energy: torch.Tensor,
    polarity: torch.Tensor,
    m: MatrixLike,
    dt: float,
    *,
    terms: Optional[int] = None,
) -> None:
    apply_propagator(energy, polarity, exact_propagator(m, dt, terms=terms))


def evolve_amplitudes_adaptive(
    energy: torch.Tensor,
    polarity: torch.Tensor,
    m: MatrixLike,
    dt: float,
    *,
    tolerance: float = DEFAULT_ADAPTIVE_TOLERANCE,
    max_substeps: int = DEFAULT_MAX_SUBSTEPS,
) -> int:
    """Batched adaptive evolution. Returns the sub-step count used."""
    p, n = adaptive_propagator(m, dt, tolerance=tolerance, max_substeps=max_substeps)
    apply_propagator(energy, polarity, p)
    return n
