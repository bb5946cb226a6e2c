"""Reporting package — multi-format output of flat report rows."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from .rows import flatten_record, pick, collect_columns
from .json_export import export_json
from .csv_export import export_csv
from .html_report import export_html, render_html


def export_rows(
    rows: list[dict],
    formats: list[str],
    output_dir: Path,
    name: str,
    title: str = "",
    metadata: Optional[dict[str, Any]] = None,
) -> list[Path]:
    """Write rows in every requested format and return the created paths."""
    created = []
    if "csv" in formats:
        created.append(export_csv(rows, output_dir, name))
    if "json" in formats:
        created.append(export_json(rows, output_dir, name, metadata))
    if "html" in formats:
        created.append(export_html(rows, output_dir, name, title, summary=metadata))
    return created


__all__ = [
    "flatten_record",
    "pick",
    "collect_columns",
    "export_json",
    "export_csv",
    "export_html",
    "render_html",
    "export_rows",
]
