"""Configuration, initialization and the evolution loop."""

from __future__ import annotations

__all__ = ["SimulationConfig", "Simulation", "run_simulation"]


def __getattr__(name: str):  # pragma: no cover
    if name == "SimulationConfig":
        from .config import SimulationConfig as _SimulationConfig

        return _SimulationConfig
    if name == "Simulation":
        from .simulator import Simulation as _Simulation

        return _Simulation
    if name == "run_simulation":
        from .simulator import run_simulation as _run_simulation

        return _run_simulation
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
