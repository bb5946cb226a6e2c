"""
HTML report — single-file table report rendered from a Jinja2 template.

Status-like columns (status, accountEnabled, severity) get a coloured badge so
failures and disabled accounts stand out when skimming.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .rows import collect_columns


TEMPLATE_DIR = Path(__file__).parent / "templates"

# ---------------------------------------------------------------------------
# Colour palette
# ---------------------------------------------------------------------------
_BADGE_COLOURS = {
    "critical": "#dc2626",
    "high":     "#ea580c",
    "medium":   "#d97706",
    "low":      "#2563eb",
    "failed":   "#dc2626",
    "error":    "#dc2626",
    "false":    "#6b7280",
    "skipped":  "#6b7280",
    "planned":  "#7c3aed",
    "updated":  "#16a34a",
    "created":  "#16a34a",
    "ok":       "#16a34a",
    "true":     "#16a34a",
}

_BADGE_COLUMNS = {"status", "severity", "accountEnabled", "outcome"}


def _badge_colour(value: Any) -> Optional[str]:
    if value is None:
        return None
    return _BADGE_COLOURS.get(str(value).lower())


def _environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html", "j2"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["badge_colour"] = _badge_colour
    return env


def render_html(
    rows: list[dict],
    title: str,
    columns: Optional[list[str]] = None,
    summary: Optional[dict[str, Any]] = None,
) -> str:
    """Render rows into a self-contained HTML document."""
    template = _environment().get_template("report.html.j2")
    return template.render(
        title=title,
        generated_utc=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
        columns=collect_columns(rows, columns),
        rows=rows,
        badge_columns=_BADGE_COLUMNS,
        summary=summary or {},
    )


def export_html(
    rows: list[dict],
    output_dir: Path,
    name: str,
    title: str = "",
    columns: Optional[list[str]] = None,
    summary: Optional[dict[str, Any]] = None,
) -> Path:
    """
    Write rows to ``<output_dir>/<name>.html``.

    Returns the Path to the written file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    content = render_html(rows, title or name.replace("_", " ").title(), columns, summary)
    filepath = output_dir / f"{name}.html"
    filepath.write_text(content, encoding="utf-8")
    return filepath
