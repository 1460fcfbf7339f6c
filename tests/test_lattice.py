"""Lattice storage, coordinate mapping and neighbour queries."""

from __future__ import annotations

import numpy as np
import pytest
import torch

from voidlattice.core.lattice import Lattice, coord_to_index, index_to_coord
from voidlattice.core.types import BoundaryPolicy, CellState, LatticeCoord
from voidlattice.errors import InvalidSize, OutOfBounds


class TestConstruction:
    def test_allocates_zero_cells(self):
        lat = Lattice((3, 4, 5))
        assert lat.cell_count == 60
        assert lat.energy.shape == (60, 5, 4)
        assert lat.energy.dtype == torch.float64
        assert lat.total_energy() == 0.0

    @pytest.mark.parametrize("size", [(0, 4, 4), (4, -1, 4), (1, 1, 0)])
    def test_rejects_non_positive_dimensions(self, size):
        with pytest.raises(InvalidSize):
            Lattice(size)

    def test_rejects_index_overflow(self):
        with pytest.raises(InvalidSize):
            Lattice((2**40, 2**40, 2**40))

    def test_rejects_wrong_rank(self):
        with pytest.raises(InvalidSize):
            Lattice((4, 4))  # type: ignore[arg-type]


class TestCoordinates:
    def test_index_layout_is_x_fastest(self):
        lat = Lattice((3, 4, 5))
        assert lat.index((1, 0, 0)) == 1
        assert lat.index((0, 1, 0)) == 3
        assert lat.index((0, 0, 1)) == 12
        assert lat.index((2, 3, 4)) == 59

    def test_round_trip_small_lattice(self):
        lat = Lattice((10, 7, 3))
        for i in range(lat.cell_count):
            assert lat.index(lat.coord(i)) == i

    def test_round_trip_100_cubed(self):
        size = (100, 100, 100)
        for z in range(0, 100, 7):
            for y in (0, 1, 50, 98, 99):
                for x in range(100):
                    i = coord_to_index((x, y, z), size)
                    assert index_to_coord(i, size) == (x, y, z)
        assert coord_to_index((99, 99, 99), size) == 100**3 - 1
        assert index_to_coord(100**3 - 1, size) == (99, 99, 99)

    def test_out_of_bounds_returns_none(self):
        lat = Lattice((2, 2, 2))
        assert lat.index((2, 0, 0)) is None
        assert lat.index((0, -1, 0)) is None
        assert lat.coord(8) is None
        assert lat.coord(-1) is None
        assert not lat.in_bounds((0, 0, 2))

    def test_periodic_coord_wraps_negative(self):
        lat = Lattice((4, 4, 4))
        assert lat.periodic_coord((-1, -5, 7)) == LatticeCoord(3, 3, 3)
        assert lat.periodic_coord((4, 8, 0)) == LatticeCoord(0, 0, 0)


class TestNeighbors:
    def test_open_boundary_drops_outside(self):
        lat = Lattice((3, 3, 3))
        assert lat.neighbor((0, 0, 0), (-1, 0, 0), BoundaryPolicy.OPEN) is None
        assert len(lat.neighbors_6((0, 0, 0), BoundaryPolicy.OPEN)) == 3
        assert len(lat.neighbors_6((1, 1, 1), BoundaryPolicy.OPEN)) == 6

    def test_reflecting_boundary_mirrors(self):
        lat = Lattice((3, 3, 3))
        assert lat.neighbor((0, 1, 1), (-1, 0, 0), BoundaryPolicy.REFLECTING) == (0, 1, 1)
        assert lat.neighbor((2, 1, 1), (1, 0, 0), BoundaryPolicy.REFLECTING) == (2, 1, 1)

    def test_periodic_boundary_wraps(self):
        lat = Lattice((3, 3, 3))
        assert lat.neighbor((0, 0, 0), (-1, 0, 0), BoundaryPolicy.PERIODIC) == (2, 0, 0)

    def test_neighbors_26_interior(self):
        lat = Lattice((5, 5, 5))
        nbrs = lat.neighbors_26((2, 2, 2))
        assert len(nbrs) == 26
        assert len(set(nbrs)) == 26
        assert (2, 2, 2) not in nbrs

    def test_neighbors_reject_out_of_bounds_coord(self):
        lat = Lattice((3, 3, 3))
        with pytest.raises(OutOfBounds):
            lat.neighbors_6((3, 0, 0))
        with pytest.raises(OutOfBounds):
            lat.neighbors_26((0, -1, 0))

    @pytest.mark.parametrize(
        "size,boundary,connectivity,expected",
        [
            ((2, 2, 2), BoundaryPolicy.PERIODIC, 6, 12),
            ((4, 4, 4), BoundaryPolicy.PERIODIC, 6, 192),
            ((3, 3, 3), BoundaryPolicy.OPEN, 6, 54),
            ((3, 3, 3), BoundaryPolicy.REFLECTING, 6, 54),
            ((4, 4, 4), BoundaryPolicy.PERIODIC, 26, 64 * 26 // 2),
            ((2, 1, 1), BoundaryPolicy.PERIODIC, 6, 1),
            ((1, 1, 1), BoundaryPolicy.PERIODIC, 26, 0),
        ],
    )
    def test_neighbor_pairs_are_unique(self, size, boundary, connectivity, expected):
        lat = Lattice(size)
        src, dst = lat.neighbor_pairs(connectivity, boundary)
        assert src.numel() == expected
        assert bool((src < dst).all())
        keys = set(zip(src.tolist(), dst.tolist()))
        assert len(keys) == expected

    def test_neighbor_pairs_cached(self):
        lat = Lattice((3, 3, 3))
        a = lat.neighbor_pairs(6, BoundaryPolicy.OPEN)
        b = lat.neighbor_pairs(6, BoundaryPolicy.OPEN)
        assert a is b

    def test_neighbor_pairs_rejects_connectivity(self):
        with pytest.raises(ValueError):
            Lattice((2, 2, 2)).neighbor_pairs(8)


class TestCellAccess:
    def test_at_is_a_view(self):
        lat = Lattice((2, 2, 2))
        cell = lat.at((1, 1, 0))
        cell.e[0, 0] = 3.0
        assert float(lat.energy[lat.index((1, 1, 0)), 0, 0]) == 3.0
        assert lat.total_energy() == pytest.approx(3.0)

    def test_getitem_by_index_and_coord(self):
        lat = Lattice((2, 2, 2))
        lat[5].e[1, 2] = 1.5
        assert float(lat[lat.coord(5)].e[1, 2]) == 1.5

    @pytest.mark.parametrize("key", [np.int64(5), torch.tensor(5)])
    def test_getitem_by_integer_like_index(self, key):
        lat = Lattice((2, 2, 2))
        lat[5].e[0, 0] = 2.0
        assert float(lat[key].e[0, 0]) == 2.0
        assert float(lat.at(key).e[0, 0]) == 2.0

    @pytest.mark.parametrize("key", [np.int64(8), torch.tensor(-1)])
    def test_integer_like_index_out_of_bounds(self, key):
        lat = Lattice((2, 2, 2))
        with pytest.raises(OutOfBounds):
            lat[key]

    def test_setitem_copies_cell(self):
        lat = Lattice((2, 2, 2))
        cell = CellState.zeros()
        cell.e.fill_(0.5)
        lat[(0, 1, 1)] = cell
        assert lat.total_energy() == pytest.approx(10.0)

    def test_access_out_of_bounds_raises(self):
        lat = Lattice((2, 2, 2))
        with pytest.raises(OutOfBounds):
            lat.at((2, 0, 0))
        with pytest.raises(OutOfBounds):
            lat[8]

    def test_iteration_is_ascending(self):
        lat = Lattice((3, 2, 2))
        coords = [c for c, _ in lat.iter_cells()]
        assert coords == [lat.coord(i) for i in range(lat.cell_count)]

    def test_field_layout(self):
        lat = Lattice((3, 4, 5))
        lat.at((2, 1, 3)).e[0, 0] = 7.0
        field = lat.field(lat.density())
        assert field.shape == (3, 4, 5)
        assert float(field[2, 1, 3]) == 7.0

    def test_clone_is_independent(self):
        lat = Lattice((2, 2, 2))
        lat.energy.fill_(1.0)
        other = lat.clone()
        other.energy.zero_()
        assert lat.total_energy() == pytest.approx(160.0)
