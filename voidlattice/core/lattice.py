"""3D grid management: coordinate/index helpers, neighbour queries, iteration.

Storage is a single `(n_cells, VARS, FORCES)` float64 tensor (plus the matching
polarity tensor). Cell `i` lives at `x + y*nx + z*nx*ny` (x fastest), so the
same buffer viewed as `(nz, ny, nx, VARS, FORCES)` is the spatial field.
"""

from __future__ import annotations

import operator
from typing import Iterator, Optional, Union

import torch

from ..errors import InvalidSize, OutOfBounds
from .types import (
    ALL_OFFSETS_26,
    DTYPE,
    FACE_OFFSETS,
    FORCES,
    VARS,
    BoundaryPolicy,
    CellState,
    LatticeCoord,
)

# Cell indices are int64 tensors.
MAX_CELLS = torch.iinfo(torch.int64).max


def cell_count_size(size: tuple[int, int, int]) -> Optional[int]:
    """nx*ny*nz computed in unbounded integers; None if it overflows the index domain."""
    nx, ny, nz = (int(s) for s in size)
    n = nx * ny * nz
    if n > MAX_CELLS:
        return None
    return n


def coord_to_index(coord, size: tuple[int, int, int]) -> Optional[int]:
    """`x + y*nx + z*nx*ny`, or None outside `[0, size)`."""
    x, y, z = _as_coord(coord)
    nx, ny, nz = size
    if not (0 <= x < nx and 0 <= y < ny and 0 <= z < nz):
        return None
    return x + y * nx + z * nx * ny


def index_to_coord(index: int, size: tuple[int, int, int]) -> Optional[LatticeCoord]:
    """Inverse of `coord_to_index`, or None outside `[0, nx*ny*nz)`."""
    nx, ny, nz = size
    index = int(index)
    if not 0 <= index < nx * ny * nz:
        return None
    z, r = divmod(index, nx * ny)
    y, x = divmod(r, nx)
    return LatticeCoord(x, y, z)


def _as_coord(coord) -> LatticeCoord:
    if isinstance(coord, LatticeCoord):
        return coord
    x, y, z = coord
    return LatticeCoord(int(x), int(y), int(z))


class Lattice:
    """Fixed-size 3D lattice of cells."""

    def __init__(
        self,
        size: tuple[int, int, int],
        *,
        device: Union[str, torch.device] = "cpu",
    ) -> None:
        if len(size) != 3:
            raise InvalidSize(f"lattice size must have 3 dimensions, got {size!r}")
        dims = tuple(int(s) for s in size)
        if any(d < 1 for d in dims):
            raise InvalidSize(f"lattice dimensions must be >= 1, got {dims}")
        n = cell_count_size(dims)
        if n is None:
            raise InvalidSize(f"lattice {dims} overflows the cell index domain")

        self._size: tuple[int, int, int] = dims  # type: ignore[assignment]
        self._n = n
        self.device = torch.device(device)
        self.energy = torch.zeros(n, VARS, FORCES, dtype=DTYPE, device=self.device)
        self.polarity = torch.ones(n, VARS, FORCES, dtype=DTYPE, device=self.device)
        self._pair_cache: dict[tuple[int, BoundaryPolicy], tuple[torch.Tensor, torch.Tensor]] = {}

    # ---------------------------------------------------------------
    # Shape
    # ---------------------------------------------------------------

    @property
    def size(self) -> tuple[int, int, int]:
        return self._size

    @property
    def cell_count(self) -> int:
        return self._n

    def __len__(self) -> int:
        return self._n

    def __repr__(self) -> str:
        return f"Lattice(size={self._size}, total_energy={self.total_energy():.6g})"

    # ---------------------------------------------------------------
    # Coordinates
    # ---------------------------------------------------------------

    def in_bounds(self, coord) -> bool:
        x, y, z = _as_coord(coord)
        nx, ny, nz = self._size
        return 0 <= x < nx and 0 <= y < ny and 0 <= z < nz

    def index(self, coord) -> Optional[int]:
        """Coordinate -> flat index, or None outside the lattice."""
        return coord_to_index(coord, self._size)

    def coord(self, index: int) -> Optional[LatticeCoord]:
        """Flat index -> coordinate, or None outside the lattice."""
        return index_to_coord(index, self._size)

    def periodic_coord(self, coord) -> LatticeCoord:
        """Wrap any integer coordinate into the lattice (always non-negative)."""
        x, y, z = _as_coord(coord)
        nx, ny, nz = self._size
        return LatticeCoord(x % nx, y % ny, z % nz)

    def reflected_coord(self, coord) -> LatticeCoord:
        """Mirror a coordinate back into range (-1 -> 0, n -> n-1)."""
        x, y, z = _as_coord(coord)
        return LatticeCoord(*(_reflect(v, n) for v, n in zip((x, y, z), self._size)))

    def neighbor(self, coord, offset: tuple[int, int, int], boundary: BoundaryPolicy) -> Optional[LatticeCoord]:
        """Apply `offset` under an explicit boundary policy (None when it leaves an open lattice)."""
        c = _as_coord(coord).offset(*offset)
        boundary = BoundaryPolicy(boundary)
        if boundary is BoundaryPolicy.PERIODIC:
            return self.periodic_coord(c)
        if boundary is BoundaryPolicy.REFLECTING:
            return self.reflected_coord(c)
        return c if self.in_bounds(c) else None

    def _neighbors(self, coord, offsets, boundary: BoundaryPolicy) -> list[LatticeCoord]:
        c = _as_coord(coord)
        if not self.in_bounds(c):
            raise OutOfBounds(f"{tuple(c)} outside lattice {self._size}")
        out: list[LatticeCoord] = []
        for off in offsets:
            n = self.neighbor(c, off, boundary)
            if n is not None:
                out.append(n)
        return out

    def neighbors_6(self, coord, boundary: BoundaryPolicy = BoundaryPolicy.PERIODIC) -> list[LatticeCoord]:
        """Up to 6 face neighbours (duplicates possible on axes of length <= 2 when periodic)."""
        return self._neighbors(coord, FACE_OFFSETS, boundary)

    def neighbors_26(self, coord, boundary: BoundaryPolicy = BoundaryPolicy.PERIODIC) -> list[LatticeCoord]:
        """Faces, edges and corners."""
        return self._neighbors(coord, ALL_OFFSETS_26, boundary)

    # ---------------------------------------------------------------
    # Cell access
    # ---------------------------------------------------------------

    def _resolve(self, key) -> int:
        """Flat index (anything `operator.index` accepts) or coordinate -> flat index."""
        try:
            flat = operator.index(key)
        except TypeError:
            flat = None
        if flat is not None:
            if not 0 <= flat < self._n:
                raise OutOfBounds(f"cell index {flat} outside [0, {self._n})")
            return flat
        idx = self.index(key)
        if idx is None:
            raise OutOfBounds(f"{tuple(_as_coord(key))} outside lattice {self._size}")
        return idx

    def at(self, coord) -> CellState:
        """Cell view at `coord`; edits write through to the lattice."""
        i = self._resolve(coord)
        return CellState(e=self.energy[i], polarity=self.polarity[i])

    def __getitem__(self, key) -> CellState:
        i = self._resolve(key)
        return CellState(e=self.energy[i], polarity=self.polarity[i])

    def __setitem__(self, key, cell: CellState) -> None:
        i = self._resolve(key)
        self.energy[i].copy_(cell.e)
        self.polarity[i].copy_(cell.polarity)

    def iter_cells(self) -> Iterator[tuple[LatticeCoord, CellState]]:
        """Yield (coordinate, cell view) in ascending index order."""
        for i in range(self._n):
            yield self.coord(i), CellState(e=self.energy[i], polarity=self.polarity[i])  # type: ignore[misc]

    def __iter__(self) -> Iterator[tuple[LatticeCoord, CellState]]:
        return self.iter_cells()

    # ---------------------------------------------------------------
    # Bulk views
    # ---------------------------------------------------------------

    def coordinates(self) -> torch.Tensor:
        """(n_cells, 3) int64 tensor of (x, y, z) in index order."""
        nx, ny, _ = self._size
        idx = torch.arange(self._n, dtype=torch.int64, device=self.device)
        x = idx % nx
        y = (idx // nx) % ny
        z = idx // (nx * ny)
        return torch.stack([x, y, z], dim=1)

    def field(self, values: Optional[torch.Tensor] = None) -> torch.Tensor:
        """Reshape per-cell values `(n_cells, ...)` into `(nx, ny, nz, ...)`."""
        v = self.energy if values is None else values
        nx, ny, nz = self._size
        tail = tuple(v.shape[1:])
        spatial = v.reshape((nz, ny, nx) + tail)
        return spatial.permute((2, 1, 0) + tuple(range(3, 3 + len(tail))))

    def density(self) -> torch.Tensor:
        """Per-cell total energy, `(n_cells,)`."""
        return self.energy.sum(dim=(1, 2))

    def total_energy(self) -> float:
        return float(self.energy.sum())

    def clone(self) -> "Lattice":
        out = Lattice(self._size, device=self.device)
        out.energy.copy_(self.energy)
        out.polarity.copy_(self.polarity)
        return out

    # ---------------------------------------------------------------
    # Neighbour pairs
    # ---------------------------------------------------------------

    def neighbor_pairs(
        self,
        connectivity: int = 6,
        boundary: BoundaryPolicy = BoundaryPolicy.PERIODIC,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Unique unordered neighbour pairs `(i, j)` with `i < j`.

        Self-pairs (reflecting boundaries, axes of length 1) are dropped and
        a pair reachable through several offsets (periodic axes of length 2)
        appears once.
        """
        if connectivity not in (6, 26):
            raise ValueError(f"connectivity must be 6 or 26, got {connectivity}")
        boundary = BoundaryPolicy(boundary)
        key = (connectivity, boundary)
        cached = self._pair_cache.get(key)
        if cached is not None:
            return cached

        offsets = FACE_OFFSETS if connectivity == 6 else ALL_OFFSETS_26
        coords = self.coordinates()
        dims = torch.tensor(self._size, dtype=torch.int64, device=self.device)
        nx, ny, _ = self._size
        src_parts: list[torch.Tensor] = []
        dst_parts: list[torch.Tensor] = []
        own = torch.arange(self._n, dtype=torch.int64, device=self.device)
        for off in offsets:
            moved = coords + torch.tensor(off, dtype=torch.int64, device=self.device)
            if boundary is BoundaryPolicy.PERIODIC:
                moved = torch.remainder(moved, dims)
                keep = torch.ones(self._n, dtype=torch.bool, device=self.device)
            elif boundary is BoundaryPolicy.REFLECTING:
                moved = torch.where(moved < 0, -moved - 1, moved)
                moved = torch.where(moved >= dims, 2 * dims - moved - 1, moved)
                keep = torch.ones(self._n, dtype=torch.bool, device=self.device)
            else:
                keep = ((moved >= 0) & (moved < dims)).all(dim=1)
            nbr = moved[:, 0] + moved[:, 1] * nx + moved[:, 2] * nx * ny
            src_parts.append(own[keep])
            dst_parts.append(nbr[keep])

        src = torch.cat(src_parts)
        dst = torch.cat(dst_parts)
        lo = torch.minimum(src, dst)
        hi = torch.maximum(src, dst)
        distinct = lo != hi
        # Sorting the combined key keeps pair order deterministic.
        combined = torch.unique(lo[distinct] * self._n + hi[distinct], sorted=True)
        pairs = (combined // self._n, combined % self._n)
        self._pair_cache[key] = pairs
        return pairs


def _reflect(v: int, n: int) -> int:
    # Repeated mirroring handles offsets larger than one period.
    period = 2 * n
    v = v % period
    return v if v < n else period - v - 1
