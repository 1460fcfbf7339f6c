"""Test suite for voidlattice.

This package contains:
- Unit tests for the lattice, energy algebra and numerical kernels
- Observer tests (conservation, patterns, oscillations)
- End-to-end simulation tests
"""
