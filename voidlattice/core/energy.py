"""Cell energy algebra: aggregation and constraint projection.

Every function takes an energy tensor shaped `(..., VARS, FORCES)`, so the
same code handles a single cell and a whole `(n_cells, VARS, FORCES)` lattice
buffer. `CellState` instances are accepted wherever a tensor is.

Projection order is fixed: expression constraints (reshuffle inside a row,
row totals preserved) before variable constraints (change row totals).
"""

from __future__ import annotations

from typing import Optional, Sequence, Union

import torch

from ..errors import EnergyInvariantViolation, InvalidConstraintConfig, OutOfBounds
from .types import (
    FORCES,
    VARS,
    CellState,
    ConstraintSet,
    ExpressionConstraint,
    FixedRatio,
    FixedTotal,
    VariableConstraint,
)

EnergyLike = Union[torch.Tensor, CellState]

# [CHOICE] "~0" row total for the zero-total tie-break
# [FORMULA] row_sum <= ZERO_TOTAL_EPS  →  distribute instead of scale
ZERO_TOTAL_EPS = 1e-12

# [CHOICE] default bound for the uniform global drift correction
# [REASON] only float-accumulation noise is patched; real drift is reported.
DEFAULT_DRIFT_TOLERANCE = 1e-9

# [CHOICE] negative entries down to -tol count as noise and are clamped to 0
DEFAULT_VALIDITY_TOLERANCE = 1e-12


def _energy(x: EnergyLike) -> torch.Tensor:
    e = x.e if isinstance(x, CellState) else x
    if e.shape[-2:] != (VARS, FORCES):
        raise ValueError(f"energy tensor must end with ({VARS}, {FORCES}), got {tuple(e.shape)}")
    return e


# =============================================================================
# Aggregation
# =============================================================================

def total_energy(x: EnergyLike) -> torch.Tensor:
    """Sum over all VARS×FORCES entries (shape `...`)."""
    return _energy(x).sum(dim=(-2, -1))


def per_variable(x: EnergyLike) -> torch.Tensor:
    """Row sums, shape `(..., VARS)`."""
    return _energy(x).sum(dim=-1)


def per_force(x: EnergyLike) -> torch.Tensor:
    """Column sums, shape `(..., FORCES)`."""
    return _energy(x).sum(dim=-2)


def per_variable_percentage(x: EnergyLike, var_i: int) -> torch.Tensor:
    """Force mix of variable `var_i` as fractions of its row total (0 for an empty row)."""
    if not 0 <= var_i < VARS:
        raise OutOfBounds(f"variable {var_i} outside [0, {VARS})")
    row = _energy(x)[..., var_i, :]
    s = row.sum(dim=-1, keepdim=True)
    safe = torch.where(s > 0, s, torch.ones_like(s))
    return torch.where(s > 0, row / safe, torch.zeros_like(row))


def valid_mask(x: EnergyLike, tolerance: float = 0.0) -> torch.Tensor:
    """Per-cell validity: every entry finite and >= -tolerance."""
    e = _energy(x)
    ok = torch.isfinite(e) & (e >= -float(tolerance))
    return ok.all(dim=-1).all(dim=-1)


def is_valid(x: EnergyLike, tolerance: float = 0.0) -> bool:
    return bool(valid_mask(x, tolerance).all())


# =============================================================================
# Constraint passes (in place)
# =============================================================================

def _mix_tensor(pct: Sequence[float], like: torch.Tensor) -> torch.Tensor:
    return torch.tensor(pct, dtype=like.dtype, device=like.device)


def _fallback_mix(var_i: int, expr: Optional[Sequence[ExpressionConstraint]], like: torch.Tensor) -> torch.Tensor:
    if expr is not None and expr[var_i].locked:
        return _mix_tensor(expr[var_i].force_pct, like)
    return torch.full((FORCES,), 1.0 / FORCES, dtype=like.dtype, device=like.device)


def _scale_row_to(
    e: torch.Tensor,
    var_i: int,
    target: torch.Tensor,
    fallback: torch.Tensor,
) -> None:
    row = e[..., var_i, :]
    s = row.sum(dim=-1)
    target = torch.as_tensor(target, dtype=e.dtype, device=e.device).expand(s.shape)
    empty = s <= ZERO_TOTAL_EPS
    factor = torch.where(empty, torch.zeros_like(s), target / torch.where(empty, torch.ones_like(s), s))
    scaled = row * factor[..., None]
    seeded = target[..., None] * fallback
    e[..., var_i, :] = torch.where(empty[..., None], seeded, scaled)


def apply_expression_constraints(
    x: EnergyLike,
    expr_constraints: Sequence[ExpressionConstraint],
) -> torch.Tensor:
    """Pin the force mix of every locked variable; row totals are preserved."""
    e = _energy(x)
    for i, ec in enumerate(expr_constraints):
        if not ec.locked:
            continue
        row_total = e[..., i, :].sum(dim=-1, keepdim=True)
        e[..., i, :] = row_total * _mix_tensor(ec.force_pct, e)
    return e


def apply_variable_constraints(
    x: EnergyLike,
    var_constraints: Sequence[VariableConstraint],
    expr_constraints: Optional[Sequence[ExpressionConstraint]] = None,
) -> torch.Tensor:
    """Apply FixedTotal and FixedRatio row constraints in place.

    FixedTotal(t) scales row i to t. An empty row is seeded with t spread
    uniformly across FORCES, or with the locked expression mix when the
    variable is expression-locked (keeps `project_energy` idempotent).

    FixedRatio rows are handled jointly: their combined total P is split as
    `P * r_i[i] / Σ_j r_j[j]` over the ratio-constrained variables j.
    """
    e = _energy(x)

    for i, c in enumerate(var_constraints):
        if isinstance(c, FixedTotal):
            target = torch.tensor(float(c.total), dtype=e.dtype, device=e.device)
            _scale_row_to(e, i, target, _fallback_mix(i, expr_constraints, e))

    ratio_vars = [i for i, c in enumerate(var_constraints) if isinstance(c, FixedRatio)]
    if ratio_vars:
        weights = [float(var_constraints[i].ratios[i]) for i in ratio_vars]  # type: ignore[union-attr]
        norm = sum(weights)
        if norm <= 0.0:
            raise InvalidConstraintConfig(
                f"FixedRatio weights over variables {ratio_vars} sum to zero; cannot normalise"
            )
        pool = e[..., ratio_vars, :].sum(dim=(-2, -1))
        for i, w in zip(ratio_vars, weights):
            _scale_row_to(e, i, pool * (w / norm), _fallback_mix(i, expr_constraints, e))

    return e


# =============================================================================
# Projection
# =============================================================================

def _global_correction(
    e: torch.Tensor,
    constraints: ConstraintSet,
    reference_total: float,
    drift_tolerance: float,
) -> float:
    total = float(e.sum())
    ref = float(reference_total)
    drift = (total - ref) / max(abs(ref), 1e-300)
    if drift == 0.0 or abs(drift) > drift_tolerance:
        return drift

    # Rows pinned by FixedTotal keep their totals; the rest absorb the correction.
    adjustable = [i for i, c in enumerate(constraints.var_constraints) if not isinstance(c, FixedTotal)]
    if not adjustable:
        return drift
    fixed = total - float(e[..., adjustable, :].sum())
    free = total - fixed
    if free <= 0.0:
        return drift
    e[..., adjustable, :] *= (ref - fixed) / free
    return drift


def project_energy(
    x: EnergyLike,
    constraints: ConstraintSet,
    *,
    reference_total: Optional[float] = None,
    drift_tolerance: float = DEFAULT_DRIFT_TOLERANCE,
    validity_tolerance: float = DEFAULT_VALIDITY_TOLERANCE,
) -> Optional[float]:
    """Bring `x` back into constraint compliance (in place).

    1. expression constraints
    2. variable constraints
    3. if `reference_total` is given: uniform correction of the relative drift
       when it is within `drift_tolerance` (larger drift is left in place)
    4. validity check, then clamp tolerated negative noise to zero

    Returns the relative drift measured in step 3 (before correction), or
    None when no reference total was supplied. Raises
    `EnergyInvariantViolation` if an entry is non-finite or below
    `-validity_tolerance`.
    """
    e = _energy(x)
    apply_expression_constraints(e, constraints.expr_constraints)
    apply_variable_constraints(e, constraints.var_constraints, constraints.expr_constraints)

    drift: Optional[float] = None
    if reference_total is not None:
        drift = _global_correction(e, constraints, reference_total, drift_tolerance)

    ok = valid_mask(e, validity_tolerance)
    if not bool(ok.all()):
        if ok.dim() == 0:
            raise EnergyInvariantViolation("cell energy is negative or non-finite after projection")
        bad = int(torch.nonzero(~ok.reshape(-1))[0])
        raise EnergyInvariantViolation(
            f"cell {bad} energy is negative or non-finite after projection",
            cell_index=bad,
        )
    e.clamp_(min=0.0)
    return drift
