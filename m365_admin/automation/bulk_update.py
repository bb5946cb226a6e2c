"""
Bulk user updates from a CSV file, pushed through the batch processor.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Any, Optional

from ..batch import BatchProcessor
from ..config import BatchConfig
from ..operations.base import Operation, OperationError, OperationResult, arg, user_path
from ..operations.users import parse_property_value

logger = logging.getLogger("m365_admin.automation.bulk_update")

KEY_COLUMN = "userprincipalname"

# Lower-cased CSV header -> Graph user property
COLUMN_MAP = {
    "displayname": "displayName",
    "givenname": "givenName",
    "firstname": "givenName",
    "surname": "surname",
    "lastname": "surname",
    "department": "department",
    "jobtitle": "jobTitle",
    "title": "jobTitle",
    "office": "officeLocation",
    "officelocation": "officeLocation",
    "mobilephone": "mobilePhone",
    "businessphone": "businessPhones",
    "city": "city",
    "state": "state",
    "country": "country",
    "streetaddress": "streetAddress",
    "postalcode": "postalCode",
    "companyname": "companyName",
    "employeeid": "employeeId",
    "usagelocation": "usageLocation",
    "accountenabled": "accountEnabled",
    "manager": "manager",
}


def read_update_rows(path: Path) -> tuple[list[dict[str, str]], list[str]]:
    """
    Read the CSV. Returns (rows keyed by lower-cased header, unknown headers).
    Raises OperationError if the file or the UserPrincipalName column is missing.
    """
    if not path.is_file():
        raise OperationError(f"CSV file not found: {path}")
    with open(path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        headers = [h.strip().lower() for h in (reader.fieldnames or []) if h]
        if KEY_COLUMN not in headers:
            raise OperationError(f"CSV must have a UserPrincipalName column: {path}")
        rows = [
            {(k or "").strip().lower(): (v or "").strip() for k, v in row.items() if k}
            for row in reader
        ]
    unknown = [h for h in headers if h != KEY_COLUMN and h not in COLUMN_MAP]
    return rows, unknown


def row_to_patch(row: dict[str, str]) -> tuple[dict[str, Any], Optional[str]]:
    """Map one CSV row to (PATCH body, manager reference). Blank cells are skipped."""
    body: dict[str, Any] = {}
    manager = None
    for column, value in row.items():
        prop = COLUMN_MAP.get(column)
        if not prop or value == "":
            continue
        if prop == "manager":
            manager = value
        elif prop == "businessPhones":
            body[prop] = [value]
        elif prop == "accountEnabled":
            parsed = parse_property_value(value)
            if not isinstance(parsed, bool):
                raise OperationError(f"AccountEnabled must be true or false, got {value!r}")
            body[prop] = parsed
        else:
            body[prop] = value
    return body, manager


class BulkUserUpdate(Operation):
    name = "bulk-update"
    description = "Update user properties from a CSV (UserPrincipalName + property columns)"
    report_name = "bulk_update"
    arguments = [
        arg("--csv", dest="csv_path", required=True, help="Path to the CSV file"),
        arg("--chunk-size", type=int, default=None, help="Override the batch chunk size"),
        arg("--max-concurrency", type=int, default=None, help="Override parallel requests per chunk"),
        arg("--delay-ms", type=int, default=None, help="Override the pause between chunks"),
    ]

    async def run(
        self,
        result: OperationResult,
        csv_path: str = "",
        chunk_size: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        delay_ms: Optional[int] = None,
    ):
        rows, unknown = read_update_rows(Path(csv_path))
        if unknown:
            result.add_warning(f"Ignoring unknown columns: {', '.join(unknown)}")

        batch_config = self.config.batch
        if chunk_size is not None or max_concurrency is not None or delay_ms is not None:
            batch_config = BatchConfig(
                chunk_size=chunk_size if chunk_size is not None else batch_config.chunk_size,
                max_concurrency=max_concurrency if max_concurrency is not None else batch_config.max_concurrency,
                delay_ms=delay_ms if delay_ms is not None else batch_config.delay_ms,
            )

        outcomes: dict[int, dict] = {}

        async def update(row: dict[str, str]) -> str:
            upn = row.get(KEY_COLUMN, "")
            if not upn:
                raise OperationError("empty UserPrincipalName")
            body, manager = row_to_patch(row)
            if not body and not manager:
                return "skipped"
            planned = False
            if body:
                response = await self.graph.patch(user_path(upn), body)
                planned = bool(response.get("_dry_run"))
            if manager:
                manager_user = await self.get_user(manager, select="id")
                response = await self.graph.put(
                    user_path(upn, "manager/$ref"),
                    {"@odata.id": f"https://graph.microsoft.com/v1.0/users/{manager_user['id']}"},
                )
                planned = planned or bool(response.get("_dry_run"))
            return "planned" if planned else "updated"

        def record(index: int, row: dict, outcome) -> None:
            outcomes[index] = {
                "userPrincipalName": row.get(KEY_COLUMN, ""),
                "status": outcome.value if outcome.ok else "failed",
                "detail": "" if outcome.ok else outcome.error,
            }

        batch = await BatchProcessor(batch_config).run(rows, update, on_item=record)

        result.add_rows([outcomes[i] for i in sorted(outcomes)])
        result.add_data("batch", batch.to_dict())
        if batch.failed:
            result.add_error(f"{batch.failed} of {batch.total} row(s) failed")
