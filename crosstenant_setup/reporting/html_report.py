"""
HTML Run Report — single-file report with inline CSS.

Rendered with Jinja2 from templates/run_report.html.j2. Used both as a file
on disk and as the body of the notification mail.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

TEMPLATE_DIR = Path(__file__).parent / "templates"

_STATE_COLOURS = {
    "Completed": "#16a34a",
    "Aborted": "#d97706",
    "RolledBack": "#ea580c",
    "Failed": "#dc2626",
}

_STAT_LABELS = {
    "sites_created": "Sites created",
    "folders_created": "Folders created",
    "guests_invited": "Guests invited",
    "host_users_processed": "Host users processed",
    "errors": "Errors",
    "warnings": "Warnings",
}


def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html", "j2"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render_html(outcome: Any) -> str:
    template = _environment().get_template("run_report.html.j2")
    return template.render(
        outcome=outcome,
        context=outcome.context,
        state=outcome.state.value,
        state_colour=_STATE_COLOURS.get(outcome.state.value, "#6b7280"),
        statistics=[(_STAT_LABELS[k], v) for k, v in outcome.statistics.to_dict().items()],
        rows=outcome.inventory.rows(),
        rollback=outcome.rollback_report,
        what_if=outcome.context.is_simulation,
        generated_utc=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
    )


def export_html(outcome: Any, output_dir: Path) -> Path:
    """Write the HTML run report and return its path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    filepath = output_dir / f"crosstenant_report_{outcome.context.execution_id}.html"
    with open(filepath, "w", encoding="utf-8") as fh:
        fh.write(render_html(outcome))
    return filepath
