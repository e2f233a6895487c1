"""Reporting package — run reports and notification."""

from .json_export import export_json
from .csv_export import export_csv
from .html_report import export_html, render_html
from .notification import send_run_report

__all__ = [
    "export_json",
    "export_csv",
    "export_html",
    "render_html",
    "send_run_report",
]
