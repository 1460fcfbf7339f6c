"""Core data types and constants used everywhere.

Layout conventions:
- A cell's energy is a (VARS, FORCES) float64 tensor; rows are variables,
  columns are forces.
- The flattened channel index of (variable i, force f) is `i * FORCES + f`.
- The redistribution operator acts on the *signed amplitude* vector
  ψ = polarity · sqrt(e), so that e = ψ². Orthogonal flows on ψ therefore
  conserve Σe exactly and keep every energy non-negative.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import NamedTuple, Sequence, Union

import torch

from ..errors import InvalidConstraintConfig, OutOfBounds

VARS = 5
FORCES = 4
N_FLATTENED = VARS * FORCES

DTYPE = torch.float64

# [CHOICE] tolerance for "sums to one" checks on declared percentages/ratios
# [FORMULA] |Σp - 1| <= PCT_TOLERANCE
PCT_TOLERANCE = 1e-6


class VariableKind(IntEnum):
    EM_RADIATION = 0
    BARYONS = 1
    NEUTRINOS = 2
    UNKNOWN_1 = 3
    UNKNOWN_2 = 4


class ForceKind(IntEnum):
    GRAVITY = 0
    ELECTROMAGNETISM = 1
    WEAK = 2
    STRONG = 3


class BoundaryPolicy(str, Enum):
    """How neighbour queries treat coordinates that leave the lattice."""

    PERIODIC = "periodic"
    REFLECTING = "reflecting"
    OPEN = "open"


class LatticeCoord(NamedTuple):
    x: int
    y: int
    z: int

    def offset(self, dx: int, dy: int, dz: int) -> "LatticeCoord":
        return LatticeCoord(self.x + dx, self.y + dy, self.z + dz)


class Direction(Enum):
    POS_X = (1, 0, 0)
    NEG_X = (-1, 0, 0)
    POS_Y = (0, 1, 0)
    NEG_Y = (0, -1, 0)
    POS_Z = (0, 0, 1)
    NEG_Z = (0, 0, -1)

    @property
    def offset(self) -> tuple[int, int, int]:
        return self.value


FACE_OFFSETS: tuple[tuple[int, int, int], ...] = tuple(d.offset for d in Direction)

# 6 faces first, then the 12 edges and 8 corners.
ALL_OFFSETS_26: tuple[tuple[int, int, int], ...] = FACE_OFFSETS + tuple(
    (dx, dy, dz)
    for dz in (-1, 0, 1)
    for dy in (-1, 0, 1)
    for dx in (-1, 0, 1)
    if (dx, dy, dz) != (0, 0, 0) and abs(dx) + abs(dy) + abs(dz) > 1
)


def flat_index(var_i: int, force_f: int) -> int:
    """(variable, force) -> flattened channel index."""
    if not (0 <= var_i < VARS and 0 <= force_f < FORCES):
        raise OutOfBounds(f"channel ({var_i}, {force_f}) outside {VARS}x{FORCES}")
    return var_i * FORCES + force_f


def unflatten_index(k: int) -> tuple[int, int]:
    """Flattened channel index -> (variable, force)."""
    if not 0 <= k < N_FLATTENED:
        raise OutOfBounds(f"flattened channel {k} outside [0, {N_FLATTENED})")
    return divmod(k, FORCES)


# =============================================================================
# Cell state
# =============================================================================

@dataclass
class CellState:
    """Energy per variable per force in one cell.

    `e` and `polarity` may be views into a lattice's storage, in which case
    in-place edits write through to the lattice.
    """

    e: torch.Tensor
    polarity: torch.Tensor

    @classmethod
    def zeros(cls, *, device: str | torch.device = "cpu") -> "CellState":
        return cls(
            e=torch.zeros(VARS, FORCES, dtype=DTYPE, device=device),
            polarity=torch.ones(VARS, FORCES, dtype=DTYPE, device=device),
        )

    @classmethod
    def from_values(cls, values: Sequence[Sequence[float]] | torch.Tensor) -> "CellState":
        e = torch.as_tensor(values, dtype=DTYPE).clone()
        if e.shape != (VARS, FORCES):
            raise ValueError(f"cell values must have shape ({VARS}, {FORCES}), got {tuple(e.shape)}")
        return cls(e=e, polarity=torch.ones_like(e))

    def clone(self) -> "CellState":
        return CellState(e=self.e.clone(), polarity=self.polarity.clone())

    def flatten(self) -> torch.Tensor:
        """Flattened energies (length N_FLATTENED)."""
        return self.e.reshape(N_FLATTENED)

    def amplitudes(self) -> torch.Tensor:
        """Signed amplitude vector ψ (length N_FLATTENED)."""
        return energies_to_amplitudes(self.e, self.polarity).reshape(N_FLATTENED)

    def set_amplitudes(self, psi: torch.Tensor) -> None:
        e, pol = amplitudes_to_energies(psi.reshape(VARS, FORCES))
        self.e.copy_(e)
        self.polarity.copy_(pol)

    def total_energy(self) -> float:
        return float(self.e.sum())


def energies_to_amplitudes(e: torch.Tensor, polarity: torch.Tensor) -> torch.Tensor:
    """ψ = polarity · sqrt(max(e, 0))."""
    return polarity * torch.sqrt(torch.clamp(e, min=0.0))


def amplitudes_to_energies(psi: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    """Inverse of `energies_to_amplitudes`. Zero amplitudes get polarity +1."""
    polarity = torch.where(psi < 0, -torch.ones_like(psi), torch.ones_like(psi))
    return psi * psi, polarity


# =============================================================================
# Redistribution
# =============================================================================

@dataclass
class RedistributionMatrix:
    """Dense N×N coupling-rate matrix between flattened channels."""

    a: torch.Tensor = field(default_factory=lambda: torch.zeros(N_FLATTENED, N_FLATTENED, dtype=DTYPE))

    def __post_init__(self) -> None:
        self.a = torch.as_tensor(self.a, dtype=DTYPE)
        if self.a.shape != (N_FLATTENED, N_FLATTENED):
            raise ValueError(
                f"redistribution matrix must be {N_FLATTENED}x{N_FLATTENED}, got {tuple(self.a.shape)}"
            )

    def clone(self) -> "RedistributionMatrix":
        return RedistributionMatrix(self.a.clone())


# =============================================================================
# Constraints
# =============================================================================

@dataclass(frozen=True)
class Free:
    pass


@dataclass(frozen=True)
class FixedTotal:
    total: float

    def __post_init__(self) -> None:
        if not math.isfinite(self.total) or self.total < 0.0:
            raise InvalidConstraintConfig(f"FixedTotal requires a finite total >= 0, got {self.total}")


@dataclass(frozen=True)
class FixedRatio:
    ratios: tuple[float, ...]

    def __post_init__(self) -> None:
        ratios = tuple(float(r) for r in self.ratios)
        object.__setattr__(self, "ratios", normalize_fractions(ratios, VARS, "FixedRatio ratios"))


VariableConstraint = Union[Free, FixedTotal, FixedRatio]


def normalize_fractions(values: Sequence[float], length: int, what: str) -> tuple[float, ...]:
    if len(values) != length:
        raise InvalidConstraintConfig(f"{what} must have length {length}, got {len(values)}")
    if any((not math.isfinite(v)) or v < 0.0 for v in values):
        raise InvalidConstraintConfig(f"{what} must be finite and non-negative: {values}")
    total = sum(values)
    if total <= 0.0:
        raise InvalidConstraintConfig(f"{what} cannot be normalised (all zero)")
    if abs(total - 1.0) > PCT_TOLERANCE:
        raise InvalidConstraintConfig(f"{what} must sum to 1, got {total:.9g}")
    return tuple(v / total for v in values)


@dataclass(frozen=True)
class ExpressionConstraint:
    """Pins a variable's force mix to `force_pct` when `locked`."""

    locked: bool = False
    force_pct: tuple[float, ...] = (1.0 / FORCES,) * FORCES

    def __post_init__(self) -> None:
        pct = tuple(float(p) for p in self.force_pct)
        object.__setattr__(self, "force_pct", normalize_fractions(pct, FORCES, "force_pct"))


@dataclass(frozen=True)
class TransferMask:
    """Allowed (variable -> variable) and (force -> force) transfers."""

    allow_var_to_var: tuple[tuple[bool, ...], ...] = ((True,) * VARS,) * VARS
    allow_force_to_force: tuple[tuple[bool, ...], ...] = ((True,) * FORCES,) * FORCES

    def __post_init__(self) -> None:
        vv = tuple(tuple(bool(b) for b in row) for row in self.allow_var_to_var)
        ff = tuple(tuple(bool(b) for b in row) for row in self.allow_force_to_force)
        if len(vv) != VARS or any(len(r) != VARS for r in vv):
            raise InvalidConstraintConfig(f"allow_var_to_var must be {VARS}x{VARS}")
        if len(ff) != FORCES or any(len(r) != FORCES for r in ff):
            raise InvalidConstraintConfig(f"allow_force_to_force must be {FORCES}x{FORCES}")
        object.__setattr__(self, "allow_var_to_var", vv)
        object.__setattr__(self, "allow_force_to_force", ff)

    @classmethod
    def deny_all(cls) -> "TransferMask":
        return cls(((False,) * VARS,) * VARS, ((False,) * FORCES,) * FORCES)

    def allows(self, from_: int, to: int) -> bool:
        vi, fi = unflatten_index(from_)
        vj, fj = unflatten_index(to)
        return self.allow_var_to_var[vi][vj] and self.allow_force_to_force[fi][fj]


@dataclass(frozen=True)
class ConstraintSet:
    var_constraints: tuple[VariableConstraint, ...] = (Free(),) * VARS
    expr_constraints: tuple[ExpressionConstraint, ...] = (ExpressionConstraint(),) * VARS
    transfer_mask: TransferMask = field(default_factory=TransferMask)

    def __post_init__(self) -> None:
        vc = tuple(self.var_constraints)
        ec = tuple(self.expr_constraints)
        if len(vc) != VARS:
            raise InvalidConstraintConfig(f"var_constraints must have length {VARS}, got {len(vc)}")
        if len(ec) != VARS:
            raise InvalidConstraintConfig(f"expr_constraints must have length {VARS}, got {len(ec)}")
        for c in vc:
            if not isinstance(c, (Free, FixedTotal, FixedRatio)):
                raise InvalidConstraintConfig(f"unknown variable constraint: {c!r}")
        object.__setattr__(self, "var_constraints", vc)
        object.__setattr__(self, "expr_constraints", ec)

    @classmethod
    def free(cls) -> "ConstraintSet":
        return cls()

    def with_variable(self, var_i: int, constraint: VariableConstraint) -> "ConstraintSet":
        vc = list(self.var_constraints)
        vc[var_i] = constraint
        return ConstraintSet(tuple(vc), self.expr_constraints, self.transfer_mask)

    def with_expression(self, var_i: int, constraint: ExpressionConstraint) -> "ConstraintSet":
        ec = list(self.expr_constraints)
        ec[var_i] = constraint
        return ConstraintSet(self.var_constraints, tuple(ec), self.transfer_mask)

    @property
    def has_fixed_totals(self) -> bool:
        return any(isinstance(c, FixedTotal) for c in self.var_constraints)


# =============================================================================
# Modes
# =============================================================================

@dataclass
class OscillationMode:
    """A non-decaying oscillatory eigen-pair of a redistribution matrix.

    `amplitude` and `phase` are left at zero by mode extraction; they are
    initialised from an actual state by `observers.oscillation.detect_local_modes`.
    """

    frequency: float
    eigenvector: torch.Tensor  # complex, length N_FLATTENED
    eigenvalue: complex = 0j
    amplitude: float = 0.0
    phase: float = 0.0


@dataclass
class SpatialMode:
    k: tuple[int, int, int]
    amplitude: float
    frequency: float
