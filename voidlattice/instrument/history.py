"""Simple state-history instrument for simulation runs."""

from __future__ import annotations

from typing import Any, Optional


class StateHistoryInstrument:
    """Capture per-step scalar records for observer-side analysis.

    - append records to an in-memory list (`history`)
    - optional downsampling via `sample_every`
    - optional cap via `max_frames` (oldest frames dropped)
    """

    def __init__(self, *, sample_every: int = 1, max_frames: Optional[int] = None) -> None:
        if sample_every < 1:
            raise ValueError(f"sample_every must be >= 1, got {sample_every}")
        self.sample_every = int(sample_every)
        self.max_frames = max_frames
        self.history: list[dict[str, Any]] = []
        self._seen = 0

    def update(self, state: dict[str, Any]) -> None:
        seen = self._seen
        self._seen += 1
        if seen % self.sample_every:
            return
        self.history.append(dict(state))
        if self.max_frames is not None and len(self.history) > self.max_frames:
            del self.history[: len(self.history) - self.max_frames]

    def series(self, key: str) -> list[Any]:
        return [frame[key] for frame in self.history if key in frame]

    def clear(self) -> None:
        self.history.clear()
        self._seen = 0
