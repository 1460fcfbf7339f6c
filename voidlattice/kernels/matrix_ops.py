"""Small dense matrix helpers (torch, float64).

Thin wrappers over torch.linalg plus a truncated Taylor exponential used when
callers want explicit control over the series length.
"""

from __future__ import annotations

import math
from typing import Optional

import torch


def multiply(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    return a @ b


def transpose(a: torch.Tensor) -> torch.Tensor:
    return a.transpose(-2, -1)


def identity(n: int, *, dtype: torch.dtype = torch.float64, device=None) -> torch.Tensor:
    return torch.eye(n, dtype=dtype, device=device)


def exponential(a: torch.Tensor, t: float = 1.0, *, terms: Optional[int] = None) -> torch.Tensor:
    """exp(a·t).

    With `terms=None` this is torch's Padé implementation. With an explicit
    term count the series `Σ_{k<terms} (a·t)^k / k!` is evaluated after
    scaling by 2^-s (so ‖a·t‖/2^s <= 0.5) and squared back s times.
    """
    m = a * float(t)
    if terms is None:
        return torch.linalg.matrix_exp(m)
    if terms < 1:
        raise ValueError(f"terms must be >= 1, got {terms}")

    norm = float(torch.linalg.matrix_norm(m, ord=1)) if m.numel() else 0.0
    s = max(0, int(math.ceil(math.log2(norm / 0.5)))) if norm > 0.5 else 0
    m = m / (2.0 ** s)

    n = m.shape[-1]
    result = torch.eye(n, dtype=m.dtype, device=m.device)
    term = torch.eye(n, dtype=m.dtype, device=m.device)
    for k in range(1, terms):
        term = term @ m / k
        result = result + term
    for _ in range(s):
        result = result @ result
    return result


def eigenvalues(a: torch.Tensor) -> torch.Tensor:
    """Complex eigenvalues (general, non-symmetric solver)."""
    return torch.linalg.eigvals(a)


def eigenvectors(a: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    """(eigenvalues, eigenvectors); column k of the second is the vector for value k."""
    return torch.linalg.eig(a)


def is_antisymmetric(a: torch.Tensor, tolerance: float = 1e-12) -> bool:
    return bool(torch.all(torch.abs(a + transpose(a)) <= tolerance))


def is_symmetric(a: torch.Tensor, tolerance: float = 1e-12) -> bool:
    return bool(torch.all(torch.abs(a - transpose(a)) <= tolerance))


def row_sum(a: torch.Tensor, row: Optional[int] = None) -> torch.Tensor:
    """All row sums, or the sum of one row."""
    sums = a.sum(dim=-1)
    return sums if row is None else sums[..., row]


def column_sum(a: torch.Tensor, col: Optional[int] = None) -> torch.Tensor:
    sums = a.sum(dim=-2)
    return sums if col is None else sums[..., col]


def spectral_radius(a: torch.Tensor) -> float:
    if a.numel() == 0:
        return 0.0
    return float(torch.abs(eigenvalues(a)).max())

