"""
JSON exporter — Produces the full machine-readable summary of a run.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .. import __version__


def export_json(
    outcome: Any,
    output_dir: Path,
    guard_record: Optional[dict] = None,
) -> Path:
    """
    Write the run outcome to a JSON file.

    Returns:
        Path to the created JSON file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    execution_id = outcome.context.execution_id

    payload = {
        "metadata": {
            "tool": "Cross-Tenant Setup",
            "version": __version__,
            "execution_id": execution_id,
            "generated_utc": datetime.now(timezone.utc).isoformat(),
            "mode": outcome.context.mode.value,
        },
        **outcome.to_dict(),
    }
    if guard_record:
        payload.update(guard_record)

    filepath = output_dir / f"crosstenant_run_{execution_id}.json"
    with open(filepath, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str, ensure_ascii=False)

    return filepath
