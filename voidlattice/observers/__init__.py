"""Read-only analysis of lattice state: conservation, patterns, oscillations, snapshots."""
