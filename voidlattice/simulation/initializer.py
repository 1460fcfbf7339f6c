"""Initial lattice states: homogeneous-plus-noise or a seeded spatial mode."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import torch

from ..core.energy import project_energy
from ..core.lattice import Lattice
from ..core.types import (
    DTYPE,
    FORCES,
    VARS,
    CellState,
    ConstraintSet,
    SpatialMode,
    normalize_fractions,
)
from ..errors import InvalidConstraintConfig
from ..kernels.sampling import make_generator, sample_simplex, uniform_symmetric


@dataclass(frozen=True)
class EnergyDistribution:
    """Total energy plus its split across variables and, per variable, across forces."""

    total: float
    var_pct: tuple[float, ...] = (1.0 / VARS,) * VARS
    force_pct: tuple[tuple[float, ...], ...] = ((1.0 / FORCES,) * FORCES,) * VARS

    def __post_init__(self) -> None:
        if not math.isfinite(self.total) or self.total < 0.0:
            raise InvalidConstraintConfig(f"distribution total must be finite and >= 0, got {self.total}")
        object.__setattr__(self, "var_pct", normalize_fractions([float(p) for p in self.var_pct], VARS, "var_pct"))
        rows = tuple(self.force_pct)
        if len(rows) != VARS:
            raise InvalidConstraintConfig(f"force_pct must have {VARS} rows, got {len(rows)}")
        object.__setattr__(
            self,
            "force_pct",
            tuple(normalize_fractions([float(p) for p in r], FORCES, f"force_pct[{i}]") for i, r in enumerate(rows)),
        )

    @classmethod
    def uniform(cls, total: float) -> "EnergyDistribution":
        return cls(total=total)

    def fractions(self) -> torch.Tensor:
        """(VARS, FORCES) channel fractions summing to 1."""
        v = torch.tensor(self.var_pct, dtype=DTYPE)
        f = torch.tensor(self.force_pct, dtype=DTYPE)
        return v[:, None] * f

    def to_tensor(self) -> torch.Tensor:
        return self.fractions() * float(self.total)

    def to_cell(self) -> CellState:
        return CellState.from_values(self.to_tensor())


def random_energy_distribution(total: float, generator: torch.Generator) -> EnergyDistribution:
    var_pct = sample_simplex(VARS, generator).tolist()
    force_pct = tuple(tuple(sample_simplex(FORCES, generator).tolist()) for _ in range(VARS))
    return EnergyDistribution(total=total, var_pct=tuple(var_pct), force_pct=force_pct)


def initialize_homogeneous(
    lattice: Lattice,
    base_energy: float,
    noise_fraction: float,
    distribution: EnergyDistribution,
    constraints: ConstraintSet,
    *,
    seed: int = 0,
    generator: Optional[torch.Generator] = None,
) -> Lattice:
    """Fill every cell with `base_energy · (1 + noise_fraction · u)` split by `distribution`.

    u ~ U[-1, 1) is drawn once per cell in ascending index order from a
    generator seeded with `seed` (or the supplied `generator`), so each
    cell's value depends only on the seed and its index. Cells are then
    projected onto `constraints`.
    """
    if base_energy < 0.0:
        raise ValueError(f"base_energy must be >= 0, got {base_energy}")
    g = generator if generator is not None else make_generator(seed)
    u = uniform_symmetric(lattice.cell_count, g).to(lattice.device)
    per_cell = torch.clamp(float(base_energy) * (1.0 + float(noise_fraction) * u), min=0.0)

    frac = distribution.fractions().to(lattice.device)
    lattice.energy.copy_(per_cell[:, None, None] * frac)
    lattice.polarity.fill_(1.0)
    project_energy(lattice.energy, constraints)
    return lattice


def initialize_structured(
    lattice: Lattice,
    mode: SpatialMode,
    base_energy: float,
    distribution: Optional[EnergyDistribution] = None,
    *,
    phase: float = 0.0,
) -> Lattice:
    """Modulate `base_energy` by `1 + amplitude · cos(2π k·r/n + φ)` (clamped at 0)."""
    coords = lattice.coordinates().to(DTYPE)
    dims = torch.tensor(lattice.size, dtype=DTYPE, device=lattice.device)
    k = torch.tensor(mode.k, dtype=DTYPE, device=lattice.device)
    arg = 2.0 * math.pi * (coords * (k / dims)).sum(dim=1) + float(phase)
    factor = torch.clamp(1.0 + float(mode.amplitude) * torch.cos(arg), min=0.0)

    frac = (distribution or EnergyDistribution.uniform(1.0)).fractions().to(lattice.device)
    lattice.energy.copy_((float(base_energy) * factor)[:, None, None] * frac)
    lattice.polarity.fill_(1.0)
    return lattice


def seed_point_source(lattice: Lattice, coord: Sequence[int], distribution: EnergyDistribution) -> Lattice:
    """Zero the lattice and place `distribution` in a single cell."""
    lattice.energy.zero_()
    lattice.polarity.fill_(1.0)
    lattice[tuple(coord)] = distribution.to_cell()
    return lattice
