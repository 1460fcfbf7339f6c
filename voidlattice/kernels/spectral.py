"""FFT helpers (torch.fft) shared by transport and the observers."""

from __future__ import annotations

import torch


def fft_1d(x: torch.Tensor) -> torch.Tensor:
    return torch.fft.fft(torch.as_tensor(x))


def fft_3d(field: torch.Tensor) -> torch.Tensor:
    """Complex 3D FFT over the three leading axes of `field`."""
    return torch.fft.fftn(torch.as_tensor(field), dim=(0, 1, 2))


def power_spectrum(x: torch.Tensor) -> torch.Tensor:
    f = fft_1d(x)
    return (f.real * f.real) + (f.imag * f.imag)


def signed_wavenumbers(n: int, *, device=None) -> torch.Tensor:
    """FFT bin -> signed integer wavenumber: 0, 1, ..., -2, -1."""
    idx = torch.arange(n, dtype=torch.int64, device=device)
    return torch.where(idx <= n // 2, idx, idx - n)


def instantaneous_phase(x: torch.Tensor) -> torch.Tensor:
    """Phase of the analytic signal (FFT-based Hilbert transform)."""
    x = torch.as_tensor(x, dtype=torch.float64)
    n = x.shape[-1]
    if n == 0:
        return x.clone()
    h = torch.zeros(n, dtype=torch.float64, device=x.device)
    h[0] = 1.0
    if n % 2 == 0:
        h[1 : n // 2] = 2.0
        h[n // 2] = 1.0
    else:
        h[1 : (n + 1) // 2] = 2.0
    analytic = torch.fft.ifft(torch.fft.fft(x) * h)
    return torch.angle(analytic)
