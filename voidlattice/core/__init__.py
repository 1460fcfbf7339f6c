"""Lattice storage, cell types and the per-cell energy algebra."""
