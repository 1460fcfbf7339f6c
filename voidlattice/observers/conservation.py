"""Conservation verification and reporting.

Nothing here raises on drift: measured errors are returned as data
(`ConservationReport`, `ConservationDrift`) for the caller to act on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

import numpy as np
import torch

from ..core import energy as energy_ops
from ..core.lattice import Lattice
from ..core.types import FORCES, VARS, ConstraintSet, FixedRatio, FixedTotal, LatticeCoord

# [CHOICE] denominator floor for relative errors
# [FORMULA] rel = |observed - initial| / max(|initial|, EPS)
EPS = 1e-12

DEFAULT_CONSTRAINT_TOLERANCE = 1e-9


def _relative(observed: float, initial: float) -> float:
    return abs(float(observed) - float(initial)) / max(abs(float(initial)), EPS)


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class ConservationDrift:
    """A measured relative error above a caller-supplied tolerance."""

    quantity: str
    relative_error: float
    tolerance: float

    def __str__(self) -> str:
        return f"{self.quantity}: relative error {self.relative_error:.3e} > {self.tolerance:.1e}"


@dataclass(frozen=True)
class ConstraintViolation:
    coord: LatticeCoord
    var_i: int
    force_f: Optional[int]
    kind: str
    expected: float
    observed: float

    def describe(self) -> str:
        channel = f"var {self.var_i}" if self.force_f is None else f"var {self.var_i} force {self.force_f}"
        return (
            f"cell {tuple(self.coord)} {channel} {self.kind}: "
            f"expected {self.expected:.9g}, observed {self.observed:.9g}"
        )


@dataclass
class ConservationReport:
    global_energy_error: float = 0.0
    per_variable_error: list[float] = field(default_factory=lambda: [0.0] * VARS)
    per_force_error: list[float] = field(default_factory=lambda: [0.0] * FORCES)
    violations: list[ConstraintViolation] = field(default_factory=list)

    @property
    def constraint_violations(self) -> list[str]:
        return [v.describe() for v in self.violations]

    @property
    def is_clean(self) -> bool:
        return not self.violations

    def drifts(self, tolerance: float) -> list[ConservationDrift]:
        out: list[ConservationDrift] = []
        if self.global_energy_error > tolerance:
            out.append(ConservationDrift("global", self.global_energy_error, tolerance))
        for i, err in enumerate(self.per_variable_error):
            if err > tolerance:
                out.append(ConservationDrift(f"variable {i}", err, tolerance))
        for f, err in enumerate(self.per_force_error):
            if err > tolerance:
                out.append(ConservationDrift(f"force {f}", err, tolerance))
        return out


# =============================================================================
# Verification
# =============================================================================

def verify_global_conservation(lattice: Lattice, initial_energy: float) -> float:
    """|Σ cell totals − initial| / max(|initial|, ε)."""
    return _relative(lattice.total_energy(), initial_energy)


def verify_variable_conservation(lattice: Lattice, initial_per_variable: Sequence[float]) -> list[float]:
    observed = lattice.energy.sum(dim=(0, 2)).tolist()
    return [_relative(o, i) for o, i in zip(observed, initial_per_variable)]


def verify_force_conservation(lattice: Lattice, initial_per_force: Sequence[float]) -> list[float]:
    observed = lattice.energy.sum(dim=(0, 1)).tolist()
    return [_relative(o, i) for o, i in zip(observed, initial_per_force)]


def _row_violations(
    lattice: Lattice,
    var_i: int,
    expected: torch.Tensor,
    kind: str,
    tolerance: float,
) -> list[ConstraintViolation]:
    observed = lattice.energy[:, var_i, :].sum(dim=-1)
    expected = expected.expand(observed.shape)
    bad = torch.abs(observed - expected) > tolerance * torch.clamp(torch.abs(expected), min=1.0)
    return [
        ConstraintViolation(lattice.coord(c), var_i, None, kind, float(expected[c]), float(observed[c]))  # type: ignore[arg-type]
        for c in torch.nonzero(bad).flatten().tolist()
    ]


def verify_constraints(
    lattice: Lattice,
    constraints: ConstraintSet,
    tolerance: float = DEFAULT_CONSTRAINT_TOLERANCE,
) -> ConservationReport:
    """Check every cell against the declared constraints in one pass.

    All violations are collected (cell coordinate, channel, expected and
    observed value); nothing fails fast.
    """
    report = ConservationReport()
    e = lattice.energy

    for i, c in enumerate(constraints.var_constraints):
        if isinstance(c, FixedTotal):
            target = torch.tensor(float(c.total), dtype=e.dtype, device=e.device)
            report.violations.extend(_row_violations(lattice, i, target, "fixed total", tolerance))

    ratio_vars = [i for i, c in enumerate(constraints.var_constraints) if isinstance(c, FixedRatio)]
    if ratio_vars:
        weights = [float(constraints.var_constraints[i].ratios[i]) for i in ratio_vars]  # type: ignore[union-attr]
        norm = sum(weights)
        pool = e[:, ratio_vars, :].sum(dim=(-2, -1))
        if norm > 0.0:
            for i, w in zip(ratio_vars, weights):
                report.violations.extend(_row_violations(lattice, i, pool * (w / norm), "fixed ratio", tolerance))

    for i, ec in enumerate(constraints.expr_constraints):
        if not ec.locked:
            continue
        row_total = e[:, i, :].sum(dim=-1)
        measured = energy_ops.per_variable_percentage(e, i)
        declared = torch.tensor(ec.force_pct, dtype=e.dtype, device=e.device)
        populated = (row_total > energy_ops.ZERO_TOTAL_EPS)[:, None]
        bad = populated & (torch.abs(measured - declared) > tolerance)
        for cell, f in torch.nonzero(bad).tolist():
            report.violations.append(ConstraintViolation(
                lattice.coord(cell),  # type: ignore[arg-type]
                i,
                f,
                "force mix",
                float(declared[f]),
                float(measured[cell, f]),
            ))

    return report


def conservation_report(
    lattice: Lattice,
    *,
    initial_energy: float,
    initial_per_variable: Sequence[float],
    initial_per_force: Sequence[float],
    constraints: Optional[ConstraintSet] = None,
    tolerance: float = DEFAULT_CONSTRAINT_TOLERANCE,
) -> ConservationReport:
    report = verify_constraints(lattice, constraints, tolerance) if constraints is not None else ConservationReport()
    report.global_energy_error = verify_global_conservation(lattice, initial_energy)
    report.per_variable_error = verify_variable_conservation(lattice, initial_per_variable)
    report.per_force_error = verify_force_conservation(lattice, initial_per_force)
    return report


# =============================================================================
# Ledger
# =============================================================================

@dataclass
class ConservationLedger:
    """Chronological record of lattice totals against a reference.

    With `max_records` set, only the most recent entries are kept.
    """

    reference: float
    tolerance: float = 1e-9
    max_records: Optional[int] = None
    record: list[float] = field(default_factory=list)
    steps: list[int] = field(default_factory=list)

    def log(self, source: Union[Lattice, float], step: int) -> None:
        total = source.total_energy() if isinstance(source, Lattice) else float(source)
        self.record.append(total)
        self.steps.append(int(step))
        if self.max_records is not None and len(self.record) > self.max_records:
            drop = len(self.record) - self.max_records
            del self.record[:drop]
            del self.steps[:drop]

    def energy_trace(self) -> list[float]:
        """Deviation from the reference per logged step."""
        return [v - self.reference for v in self.record]

    def summary(self) -> dict:
        if not self.record:
            return {"count": 0, "conserved": True}
        arr = np.asarray(self.record, dtype=np.float64)
        dev = arr - self.reference
        rel = np.abs(dev) / max(abs(self.reference), EPS)
        return {
            "count": int(arr.size),
            "mean_total": float(arr.mean()),
            "min_total": float(arr.min()),
            "max_total": float(arr.max()),
            "max_relative_error": float(rel.max()),
            "conserved": bool((rel <= self.tolerance).all()),
            "stability": float(np.ptp(dev) / max(abs(self.reference), EPS)),
        }

    def clear(self) -> None:
        self.record.clear()
        self.steps.clear()

    def describe(self) -> str:
        s = self.summary()
        return (
            f"ConservationLedger(count={s['count']}, "
            f"max_rel={s.get('max_relative_error', 0.0):.3e}, "
            f"conserved={s['conserved']})"
        )
