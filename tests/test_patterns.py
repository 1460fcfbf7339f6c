"""Pattern metrics over the energy-density field."""

from __future__ import annotations

import math

import numpy as np
import pytest
import torch

from voidlattice.core.lattice import Lattice
from voidlattice.core.types import N_FLATTENED, BoundaryPolicy, CellState, ConstraintSet, SpatialMode
from voidlattice.observers import patterns
from voidlattice.simulation.initializer import EnergyDistribution, initialize_homogeneous, initialize_structured


def _set_density(lat: Lattice, values) -> None:
    lat.energy.zero_()
    lat.energy[:, 0, 0] = torch.as_tensor(values, dtype=torch.float64)


class TestMoments:
    def test_constant_field(self):
        mu, var, skew, kurt = patterns.moments(np.full(27, 2.0))
        assert (mu, var, skew, kurt) == (2.0, 0.0, 0.0, 0.0)

    def test_symmetric_two_point(self):
        mu, var, skew, kurt = patterns.moments(np.array([0.0, 2.0, 0.0, 2.0]))
        assert mu == 1.0
        assert var == 1.0
        assert skew == 0.0
        assert kurt == pytest.approx(1.0)


class TestClassification:
    def test_detailed(self):
        lat = Lattice((3, 1, 1))
        _set_density(lat, [0.1, 1.0, 5.0])
        c = patterns.void_wall_filament_classification_detailed(lat, 0.5, 2.0)
        assert c.voids == [(0, 0, 0)]
        assert c.walls == [(1, 0, 0)]
        assert c.filaments == [(2, 0, 0)]

    def test_boundaries_count_as_wall(self):
        lat = Lattice((2, 1, 1))
        _set_density(lat, [0.5, 2.0])
        c = patterns.void_wall_filament_classification_detailed(lat, 0.5, 2.0)
        assert c.voids == [] and c.filaments == []
        assert len(c.walls) == 2

    def test_default_thresholds_mean_sigma(self):
        lat = Lattice((4, 1, 1))
        _set_density(lat, [0.0, 1.0, 1.0, 2.0])
        void, wall, filament = patterns.void_wall_filament_classification(lat)
        assert (void, wall, filament) == (0.25, 0.5, 0.25)


class TestClustering:
    def test_checkerboard_is_anticorrelated(self):
        lat = Lattice((4, 4, 4))
        parity = lat.coordinates().sum(dim=1) % 2
        _set_density(lat, 1.0 + parity.to(torch.float64))
        assert patterns.compute_clustering_coefficient(lat) == pytest.approx(-1.0)

    def test_smooth_field_is_positive(self):
        lat = Lattice((8, 8, 8))
        initialize_structured(lat, SpatialMode(k=(1, 0, 0), amplitude=0.8, frequency=0.0), base_energy=1.0)
        assert patterns.compute_clustering_coefficient(lat) > 0.5

    def test_constant_field_is_zero(self):
        lat = Lattice((3, 3, 3))
        lat.energy.fill_(1.0)
        assert patterns.compute_clustering_coefficient(lat, BoundaryPolicy.OPEN) == 0.0

    def test_single_cell_is_zero(self):
        lat = Lattice((1, 1, 1))
        lat.energy.fill_(1.0)
        assert patterns.compute_clustering_coefficient(lat) == 0.0


class TestFractalDimension:
    def test_full_cube(self):
        assert patterns.fractal_dimension(np.ones((8, 8, 8)), 0.5) == pytest.approx(3.0)

    def test_plane(self):
        grid = np.zeros((8, 8, 8))
        grid[:, :, 0] = 1.0
        assert patterns.fractal_dimension(grid, 0.5) == pytest.approx(2.0)

    def test_line(self):
        grid = np.zeros((8, 8, 8))
        grid[:, 3, 3] = 1.0
        assert patterns.fractal_dimension(grid, 0.5) == pytest.approx(1.0)

    def test_empty(self):
        assert patterns.fractal_dimension(np.zeros((8, 8, 8)), 0.5) == 0.0

    def test_too_small_for_two_box_sizes(self):
        assert patterns.fractal_dimension(np.ones((3, 3, 3)), 0.5) == 0.0

    def test_requires_3d(self):
        with pytest.raises(ValueError):
            patterns.fractal_dimension(np.ones((4, 4)), 0.5)


class TestEntropy:
    def test_uniform_is_log_n(self):
        lat = Lattice((2, 3, 4))
        lat.energy.fill_(0.5)
        assert patterns.entropy_check(lat) == pytest.approx(math.log(24))

    def test_point_mass_is_zero(self):
        lat = Lattice((2, 2, 2))
        lat.at((1, 1, 1)).e[0, 0] = 3.0
        assert patterns.entropy_check(lat) == 0.0

    def test_empty_lattice(self):
        assert patterns.entropy_check(Lattice((2, 2, 2))) == 0.0


class TestEigenmodeHealth:
    def test_complete_basis(self):
        cell = CellState.from_values(torch.rand(5, 4, generator=torch.Generator().manual_seed(0), dtype=torch.float64))
        basis = [torch.eye(N_FLATTENED, dtype=torch.float64)[k] for k in range(N_FLATTENED)]
        assert patterns.eigenmode_health(cell, basis) == pytest.approx(0.0, abs=1e-12)

    def test_no_modes(self):
        cell = CellState.zeros()
        cell.e[0, 0] = 1.0
        assert patterns.eigenmode_health(cell, []) == pytest.approx(1.0)

    def test_partial_overlap(self):
        cell = CellState.zeros()
        cell.e[0, 0] = 1.0
        cell.e[0, 1] = 1.0
        v = torch.zeros(N_FLATTENED, dtype=torch.float64)
        v[0] = 1.0
        assert patterns.eigenmode_health(cell, [v]) == pytest.approx(0.5)

    def test_empty_cell(self):
        assert patterns.eigenmode_health(CellState.zeros(), []) == 0.0


class TestPatternMetrics:
    def test_homogeneous_noisy_lattice(self):
        lat = Lattice((6, 6, 6))
        initialize_homogeneous(lat, 2.0, 0.3, EnergyDistribution.uniform(1.0), ConstraintSet.free(), seed=11)
        m = patterns.compute_pattern_metrics(lat)
        assert m.total_energy == pytest.approx(lat.total_energy())
        assert m.mean_density == pytest.approx(lat.total_energy() / 216)
        assert sum(m.void_wall_filament_ratio) == pytest.approx(1.0)
        assert m.low_threshold < m.mean_density < m.high_threshold
        assert 0.0 <= m.fractal_dimension <= 3.0
        assert -1.0 <= m.local_clustering <= 1.0
        assert m.variance > 0.0

    def test_explicit_thresholds(self):
        lat = Lattice((3, 1, 1))
        _set_density(lat, [0.1, 1.0, 5.0])
        m = patterns.compute_pattern_metrics(lat, 0.5, 2.0)
        assert m.void_wall_filament_ratio == pytest.approx((1 / 3, 1 / 3, 1 / 3))
