"""Conservation verification, reports, ledger and diagnostics logging."""

from __future__ import annotations

import csv
import json

import pytest
import torch

from voidlattice.core.energy import project_energy
from voidlattice.core.lattice import Lattice
from voidlattice.core.types import (
    VARS,
    ConstraintSet,
    ExpressionConstraint,
    FixedRatio,
    FixedTotal,
    Free,
)
from voidlattice.observers import conservation
from voidlattice.observers.diagnostics import ConservationDiagnosticsLogger
from voidlattice.simulation.initializer import EnergyDistribution, initialize_homogeneous


@pytest.fixture
def lattice() -> Lattice:
    lat = Lattice((2, 2, 2))
    initialize_homogeneous(lat, 1.0, 0.2, EnergyDistribution.uniform(1.0), ConstraintSet.free(), seed=3)
    return lat


class TestGlobalConservation:
    def test_unchanged_lattice_has_zero_error(self, lattice):
        assert conservation.verify_global_conservation(lattice, lattice.total_energy()) == 0.0

    def test_relative_error(self, lattice):
        total = lattice.total_energy()
        assert conservation.verify_global_conservation(lattice, total / 1.1) == pytest.approx(0.1)

    def test_zero_reference_uses_floor(self):
        lat = Lattice((1, 1, 1))
        assert conservation.verify_global_conservation(lat, 0.0) == 0.0

    def test_per_variable_and_force(self, lattice):
        per_var = lattice.energy.sum(dim=(0, 2)).tolist()
        per_force = lattice.energy.sum(dim=(0, 1)).tolist()
        assert conservation.verify_variable_conservation(lattice, per_var) == [0.0] * VARS
        lattice.at((0, 0, 0)).e[2, 1] += 1.0
        errs = conservation.verify_variable_conservation(lattice, per_var)
        assert errs[2] > 0.0
        assert [e for i, e in enumerate(errs) if i != 2] == [0.0] * (VARS - 1)
        ferrs = conservation.verify_force_conservation(lattice, per_force)
        assert ferrs[1] > 0.0 and ferrs[0] == 0.0


class TestConstraintVerification:
    def test_locked_mix_mismatch_names_the_cell(self, lattice):
        cs = ConstraintSet.free().with_expression(1, ExpressionConstraint(locked=True, force_pct=(0.7, 0.1, 0.1, 0.1)))
        project_energy(lattice.energy, cs)
        assert conservation.verify_constraints(lattice, cs).is_clean

        row = lattice.at((1, 0, 0)).e[1]
        row.fill_(float(row.sum()) / 4.0)

        report = conservation.verify_constraints(lattice, cs)
        assert report.constraint_violations
        assert all(v.coord == (1, 0, 0) for v in report.violations)
        assert all("(1, 0, 0)" in s for s in report.constraint_violations)
        first = report.violations[0]
        assert first.var_i == 1 and first.force_f == 0
        assert first.expected == pytest.approx(0.7)
        assert first.observed == pytest.approx(0.25)

    def test_fixed_total_violation(self, lattice):
        cs = ConstraintSet.free().with_variable(0, FixedTotal(2.0))
        project_energy(lattice.energy, cs)
        lattice.at((0, 1, 1)).e[0] *= 2.0
        report = conservation.verify_constraints(lattice, cs)
        assert len(report.violations) == 1
        v = report.violations[0]
        assert v.coord == (0, 1, 1)
        assert v.kind == "fixed total"
        assert v.expected == pytest.approx(2.0)
        assert v.observed == pytest.approx(4.0)

    def test_fixed_ratio_clean_after_projection(self, lattice):
        ratios = (0.5, 0.5, 0.0, 0.0, 0.0)
        cs = ConstraintSet(var_constraints=(FixedRatio(ratios), FixedRatio(ratios), Free(), Free(), Free()))
        lattice.at((1, 1, 1)).e[0] *= 3.0
        assert not conservation.verify_constraints(lattice, cs).is_clean
        project_energy(lattice.energy, cs)
        assert conservation.verify_constraints(lattice, cs).is_clean

    def test_empty_locked_rows_are_skipped(self):
        lat = Lattice((2, 1, 1))
        cs = ConstraintSet.free().with_expression(0, ExpressionConstraint(locked=True, force_pct=(1.0, 0.0, 0.0, 0.0)))
        assert conservation.verify_constraints(lat, cs).is_clean


class TestReport:
    def test_full_report_and_drifts(self, lattice):
        per_var = lattice.energy.sum(dim=(0, 2)).tolist()
        per_force = lattice.energy.sum(dim=(0, 1)).tolist()
        total = lattice.total_energy()
        lattice.at((0, 0, 0)).e[3, 3] += 0.5

        report = conservation.conservation_report(
            lattice,
            initial_energy=total,
            initial_per_variable=per_var,
            initial_per_force=per_force,
        )
        assert report.global_energy_error == pytest.approx(0.5 / total)
        drifts = report.drifts(1e-6)
        assert {d.quantity for d in drifts} == {"global", "variable 3", "force 3"}
        assert all(isinstance(d, conservation.ConservationDrift) for d in drifts)
        assert report.drifts(1.0) == []


class TestLedger:
    def test_summary_and_trace(self, lattice):
        ledger = conservation.ConservationLedger(reference=10.0, tolerance=1e-9)
        assert ledger.summary() == {"count": 0, "conserved": True}
        ledger.log(10.0, 1)
        ledger.log(10.0000001, 2)
        s = ledger.summary()
        assert s["count"] == 2
        assert s["max_relative_error"] == pytest.approx(1e-8, rel=1e-3)
        assert s["conserved"] is False
        assert ledger.energy_trace()[0] == 0.0
        assert ledger.steps == [1, 2]
        assert "count=2" in ledger.describe()

        ledger.log(lattice, 3)
        assert ledger.record[-1] == pytest.approx(lattice.total_energy())
        ledger.clear()
        assert ledger.record == [] and ledger.steps == []


class TestDiagnosticsLogger:
    def test_writes_jsonl_and_csv(self, tmp_path, lattice):
        jsonl = tmp_path / "out" / "cons.jsonl"
        csv_path = tmp_path / "out" / "cons.csv"
        logger = ConservationDiagnosticsLogger(csv_path=str(csv_path), jsonl_path=str(jsonl))
        report = conservation.ConservationReport(global_energy_error=1e-12)
        logger.log_report(step=1, time=0.1, total_energy=lattice.total_energy(), report=report)
        logger.log_report(step=2, time=0.2, total_energy=lattice.total_energy(), report=report)

        lines = jsonl.read_text(encoding="utf-8").splitlines()
        assert [json.loads(l)["step"] for l in lines] == [1, 2]
        with open(csv_path, encoding="utf-8", newline="") as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == 2
        assert float(rows[0]["global_error"]) == pytest.approx(1e-12)

    def test_disabled_without_paths(self):
        assert not ConservationDiagnosticsLogger().enabled
