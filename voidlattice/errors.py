"""Error taxonomy.

Structural and configuration problems raise immediately. Physical-plausibility
issues (conservation drift, pattern anomalies) are *reported* as data through
`voidlattice.observers.conservation.ConservationDrift`, never raised.
"""

from __future__ import annotations


class VoidLatticeError(Exception):
    """Base class for every error raised by the package."""


class InvalidSize(VoidLatticeError, ValueError):
    """Lattice dimensions are non-positive or overflow the index domain."""


class OutOfBounds(VoidLatticeError, IndexError):
    """A coordinate, cell index or channel index lies outside its range."""


class TransferNotAllowed(VoidLatticeError, ValueError):
    """A masked redistribution write was rejected."""


class InvalidConstraintConfig(VoidLatticeError, ValueError):
    """Constraint percentages or ratios cannot be normalised."""


class EnergyInvariantViolation(VoidLatticeError, ArithmeticError):
    """Negative or non-finite energy survived projection."""

    def __init__(self, message: str, *, cell_index: int | None = None):
        super().__init__(message)
        self.cell_index = cell_index


class StiffIntegrationFailed(VoidLatticeError, ArithmeticError):
    """The adaptive integrator did not converge within its sub-step budget."""

    def __init__(self, message: str, *, substeps: int = 0, residual: float = float("nan")):
        super().__init__(message)
        self.substeps = substeps
        self.residual = residual
