"""
CSV exporter — writes flat report rows to a CSV file.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Optional

from .rows import collect_columns


def export_csv(
    rows: list[dict],
    output_dir: Path,
    name: str,
    columns: Optional[list[str]] = None,
) -> Path:
    """
    Write rows to ``<output_dir>/<name>.csv``.

    The header is the union of all row keys in first-seen order. Files are
    written UTF-8 with BOM so Excel opens them with the right encoding.

    Returns:
        Path to the created CSV file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    filepath = output_dir / f"{name}.csv"

    fieldnames = collect_columns(rows, columns)
    with open(filepath, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.DictWriter(fh, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: ("" if v is None else v) for k, v in row.items()})

    return filepath
