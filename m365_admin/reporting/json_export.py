"""
JSON exporter — writes report rows plus run metadata.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .. import __version__


def export_json(
    rows: list[dict],
    output_dir: Path,
    name: str,
    metadata: Optional[dict[str, Any]] = None,
) -> Path:
    """
    Write rows to ``<output_dir>/<name>.json``.

    Returns:
        Path to the created JSON file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    payload = {
        "metadata": {
            "tool": "M365 Admin Toolkit",
            "version": __version__,
            "report": name,
            "generated_utc": datetime.now(timezone.utc).isoformat(),
            "row_count": len(rows),
            **(metadata or {}),
        },
        "rows": rows,
    }

    filepath = output_dir / f"{name}.json"
    with open(filepath, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str, ensure_ascii=False)

    return filepath
