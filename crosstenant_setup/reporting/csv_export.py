"""
CSV exporter — Resource inventory and summary counters of a run.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any

INVENTORY_FIELDS = ["resource_type", "name", "site_url", "detail"]


def export_csv(outcome: Any, output_dir: Path) -> list[Path]:
    """
    Write the inventory CSV and the summary CSV.

    Returns:
        List of created CSV file paths.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    execution_id = outcome.context.execution_id
    created = []

    inventory_path = output_dir / f"inventory_{execution_id}.csv"
    with open(inventory_path, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.DictWriter(fh, fieldnames=INVENTORY_FIELDS)
        writer.writeheader()
        for row in outcome.inventory.rows():
            writer.writerow(row)
    created.append(inventory_path)

    summary_path = output_dir / f"run_summary_{execution_id}.csv"
    with open(summary_path, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.writer(fh)
        writer.writerow(["metric", "value"])
        writer.writerow(["execution_id", execution_id])
        writer.writerow(["mode", outcome.context.mode.value])
        writer.writerow(["final_state", outcome.state.value])
        for key, value in outcome.statistics.to_dict().items():
            writer.writerow([key, value])
        if outcome.rollback_report is not None:
            writer.writerow(["rollback_succeeded", outcome.rollback_report.succeeded])
            writer.writerow(["rollback_failed", outcome.rollback_report.failed])
    created.append(summary_path)

    return created
