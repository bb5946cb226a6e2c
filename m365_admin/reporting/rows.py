"""
Flat-row helpers — reshape nested Graph objects into report rows.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

LIST_SEPARATOR = "; "


def _scalar(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def flatten_record(obj: dict, prefix: str = "", skip_odata: bool = True) -> dict[str, Any]:
    """
    Flatten a Graph object into a single-level dict.

    Nested dicts become dotted keys (``passwordProfile.forceChangePasswordNextSignIn``),
    lists of scalars are joined with ``"; "``, lists of dicts are flattened
    element-wise and joined per key. ``@odata.*`` annotations are dropped.
    """
    row: dict[str, Any] = {}
    for key, value in obj.items():
        if skip_odata and key.startswith("@odata"):
            continue
        full_key = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            row.update(flatten_record(value, full_key, skip_odata))
        elif isinstance(value, list):
            if value and all(isinstance(v, dict) for v in value):
                merged: dict[str, list[str]] = {}
                for element in value:
                    for k, v in flatten_record(element, full_key, skip_odata).items():
                        merged.setdefault(k, []).append("" if v is None else str(v))
                for k, parts in merged.items():
                    row[k] = LIST_SEPARATOR.join(parts)
            else:
                row[full_key] = LIST_SEPARATOR.join(
                    "" if v is None else str(_scalar(v)) for v in value
                )
        else:
            row[full_key] = _scalar(value)
    return row


def pick(obj: dict, fields: dict[str, str]) -> dict[str, Any]:
    """
    Project a Graph object onto report columns.

    `fields` maps column name → dotted source path.
    """
    row = {}
    for column, path in fields.items():
        value: Any = obj
        for part in path.split("."):
            value = value.get(part) if isinstance(value, dict) else None
        if isinstance(value, list):
            value = LIST_SEPARATOR.join(str(v) for v in value)
        row[column] = value
    return row


def collect_columns(rows: Iterable[dict], preferred: Optional[list[str]] = None) -> list[str]:
    """Union of row keys in first-seen order, with `preferred` columns first."""
    columns: list[str] = list(preferred or [])
    seen = set(columns)
    for row in rows:
        for key in row:
            if key not in seen:
                seen.add(key)
                columns.append(key)
    return columns
