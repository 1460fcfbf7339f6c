"""Numerical kernels (torch).

- `matrix_ops`: small dense matrix helpers and the matrix exponential
- `redistribution`: intra-cell operator construction, modes and evolution
- `transport`: conservative inter-cell exchange and spatial modes
- `spectral`: FFT helpers
- `sampling`: seeded random draws for initialization
"""
