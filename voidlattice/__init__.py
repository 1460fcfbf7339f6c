"""Void Lattice.

Energy redistribution on a 3D lattice of cells, each holding a VARS×FORCES
energy matrix:

- `voidlattice.core`: lattice storage, cell types, energy algebra and projection
- `voidlattice.kernels`: redistribution operator, transport, spectral and sampling numerics
- `voidlattice.observers`: conservation, pattern and oscillation analysis
- `voidlattice.simulation`: configuration, initialization and the stepping loop

Keep this module light; the heavy names below resolve lazily.
"""

from __future__ import annotations

__all__ = [
    "Lattice",
    "Simulation",
    "SimulationConfig",
    "run_simulation",
]


def __getattr__(name: str):  # pragma: no cover
    if name == "Lattice":
        from .core.lattice import Lattice as _Lattice

        return _Lattice
    if name == "Simulation":
        from .simulation.simulator import Simulation as _Simulation

        return _Simulation
    if name == "SimulationConfig":
        from .simulation.config import SimulationConfig as _SimulationConfig

        return _SimulationConfig
    if name == "run_simulation":
        from .simulation.simulator import run_simulation as _run_simulation

        return _run_simulation
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
