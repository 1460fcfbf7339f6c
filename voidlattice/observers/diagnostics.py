from __future__ import annotations

import csv
import json
import os
from typing import Any, Optional

from .conservation import ConservationReport


def _ensure_parent(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


class ConservationDiagnosticsLogger:
    """Write per-step conservation metrics to CSV and/or JSONL."""

    def __init__(self, *, csv_path: Optional[str] = None, jsonl_path: Optional[str] = None):
        self.csv_path = csv_path
        self.jsonl_path = jsonl_path

    @property
    def enabled(self) -> bool:
        return bool(self.csv_path or self.jsonl_path)

    def log_report(self, *, step: int, time: float, total_energy: float, report: ConservationReport) -> None:
        record: dict[str, Any] = {
            "step": int(step),
            "time": float(time),
            "total_energy": float(total_energy),
            "global_error": float(report.global_energy_error),
            "max_variable_error": float(max(report.per_variable_error, default=0.0)),
            "max_force_error": float(max(report.per_force_error, default=0.0)),
            "violations": len(report.violations),
        }
        self.log(record)

    def log(self, record: dict[str, Any]) -> None:
        if self.jsonl_path:
            _ensure_parent(self.jsonl_path)
            with open(self.jsonl_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")

        if self.csv_path:
            _ensure_parent(self.csv_path)
            file_exists = os.path.exists(self.csv_path)
            with open(self.csv_path, "a", encoding="utf-8", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=list(record.keys()))
                if not file_exists:
                    writer.writeheader()
                writer.writerow(record)
