"""Random draws used by initialization.

Every function takes an explicit `torch.Generator`; nothing touches the
global RNG.
"""

from __future__ import annotations

from typing import Optional, Sequence

import torch


def make_generator(seed: int, *, device: str | torch.device = "cpu") -> torch.Generator:
    g = torch.Generator(device=device)
    g.manual_seed(int(seed))
    return g


def uniform_symmetric(n: int, generator: torch.Generator, *, dtype: torch.dtype = torch.float64) -> torch.Tensor:
    """n draws from U[-1, 1)."""
    return 2.0 * torch.rand(n, generator=generator, dtype=dtype) - 1.0


def sample_simplex(n: int, generator: torch.Generator) -> torch.Tensor:
    """Uniform point on the (n-1)-simplex (Dirichlet(1, ..., 1) via normalised exponentials)."""
    if n < 1:
        raise ValueError(f"simplex dimension must be >= 1, got {n}")
    u = torch.rand(n, generator=generator, dtype=torch.float64)
    # rand is in [0, 1); 1 - u is in (0, 1] so the log stays finite.
    w = -torch.log1p(-u)
    total = w.sum()
    if float(total) <= 0.0:
        return torch.full((n,), 1.0 / n, dtype=torch.float64)
    return w / total


def sample_normal(
    shape: Sequence[int],
    generator: torch.Generator,
    *,
    mean: float = 0.0,
    std: float = 1.0,
) -> torch.Tensor:
    return mean + std * torch.randn(tuple(shape), generator=generator, dtype=torch.float64)


def add_noise(
    values: torch.Tensor,
    fraction: float,
    generator: torch.Generator,
    *,
    out: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """values · (1 + fraction · u), u ~ U[-1, 1), clamped at zero."""
    u = uniform_symmetric(values.numel(), generator, dtype=values.dtype).reshape(values.shape)
    noisy = torch.clamp(values * (1.0 + float(fraction) * u), min=0.0)
    if out is not None:
        out.copy_(noisy)
        return out
    return noisy
