"""
Base operation class — abstract interface for every admin command.
Each operation is one flat sequence: Graph calls, reshape to rows, report.
"""

from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Optional
from urllib.parse import quote

from ..config import ToolkitConfig
from ..graph.client import GraphClient, GraphAPIError
from ..safety.guardian import WriteBlocked

logger = logging.getLogger("m365_admin.operations")

GUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
DIRECTORY_OBJECT_URL = "https://graph.microsoft.com/v1.0/directoryObjects/{id}"


class OperationError(Exception):
    """Raised for invalid parameters or missing target objects."""
    pass


def arg(*flags: str, **kwargs: Any) -> tuple[tuple[str, ...], dict[str, Any]]:
    """Declare a CLI argument for an operation (argparse add_argument signature)."""
    return flags, kwargs


def odata_quote(value: str) -> str:
    """Escape a string literal for an OData $filter."""
    return value.replace("'", "''")


def user_path(ref: str, *segments: str) -> str:
    """
    `users/{ref}/...` with the id or UPN percent-encoded. Guest UPNs carry
    `#EXT#`, which would otherwise end the path as a URL fragment.
    """
    return "/".join(["users", quote(ref, safe="@"), *segments])


class OperationResult:
    """Standardized result from an operation."""

    def __init__(self, operation_name: str):
        self.operation_name = operation_name
        self.rows: list[dict[str, Any]] = []
        self.data: dict[str, Any] = {}
        self.metadata: dict[str, Any] = {
            "operation": operation_name,
            "started_at": None,
            "completed_at": None,
            "duration_seconds": 0,
            "errors": [],
            "warnings": [],
            "requests": 0,
        }

    def add_row(self, row: dict[str, Any]):
        self.rows.append(row)

    def add_rows(self, rows: list[dict[str, Any]]):
        self.rows.extend(rows)

    def add_data(self, key: str, value: Any):
        self.data[key] = value

    def add_error(self, error: str):
        self.metadata["errors"].append(error)
        logger.error(f"[{self.operation_name}] {error}")

    def add_warning(self, warning: str):
        self.metadata["warnings"].append(warning)
        logger.warning(f"[{self.operation_name}] {warning}")

    @property
    def ok(self) -> bool:
        return not self.metadata["errors"]

    def to_dict(self) -> dict:
        return {
            "rows": self.rows,
            "data": self.data,
            "metadata": self.metadata,
        }


class Operation(ABC):
    """
    Abstract base class for all operations.

    Subclasses implement run() to call Graph and add rows to the result.
    The base class provides:
      - Timing and metadata
      - A single error boundary around run()
      - Safe read helpers and user/group reference resolution
    """

    name: str = "base"
    description: str = "Base operation"
    report_name: str = ""
    arguments: list[tuple[tuple[str, ...], dict[str, Any]]] = []

    def __init__(self, graph: GraphClient, config: Optional[ToolkitConfig] = None):
        self.graph = graph
        self.config = config or ToolkitConfig()

    async def execute(self, **params: Any) -> OperationResult:
        """Run the operation with timing and error handling."""
        result = OperationResult(self.name)
        result.metadata["started_at"] = time.time()
        requests_before = self.graph.get_stats()["total_requests"]
        logger.info(f"[{self.name}] Starting...")

        try:
            await self.run(result, **params)
        except (OperationError, WriteBlocked) as e:
            result.add_error(str(e))
        except GraphAPIError as e:
            result.add_error(f"Graph request failed: {e}")
        except Exception as e:
            result.add_error(f"{type(e).__name__}: {e}")
            logger.exception(f"[{self.name}] Operation failed")

        result.metadata["completed_at"] = time.time()
        result.metadata["duration_seconds"] = round(
            result.metadata["completed_at"] - result.metadata["started_at"], 2
        )
        result.metadata["requests"] = self.graph.get_stats()["total_requests"] - requests_before
        if self.graph.guard.dry_run:
            result.metadata["planned_changes"] = list(self.graph.guard.planned_changes)
        logger.info(
            f"[{self.name}] Completed in {result.metadata['duration_seconds']}s — "
            f"{len(result.rows)} rows"
        )
        return result

    @abstractmethod
    async def run(self, result: OperationResult, **params: Any):
        """
        Implement the operation.
        Add report rows via result.add_row(); raise OperationError on bad input.
        """
        raise NotImplementedError

    # ── Read helpers ────────────────────────────────────────────────────────

    async def safe_get_all(self, endpoint: str, result: OperationResult, **kwargs) -> list:
        """Get all pages; a permission gap becomes a warning instead of a failure."""
        try:
            return await self.graph.get_all_pages(endpoint, **kwargs)
        except GraphAPIError as e:
            if e.status_code == 403:
                result.add_warning(f"Permission denied: {endpoint} — {e.message}")
                result.metadata.setdefault("permission_gaps", []).append(endpoint)
                return []
            raise

    async def get_user(self, ref: str, select: str = "id,displayName,userPrincipalName") -> dict:
        """Resolve a user id or UPN to a user object."""
        if not ref:
            raise OperationError("A user id or userPrincipalName is required.")
        data = await self.graph.get(user_path(ref), params={"$select": select})
        if data.get("_not_found") or not data.get("id"):
            raise OperationError(f"User not found: {ref}")
        return data

    async def get_group(self, ref: str, select: str = "id,displayName,groupTypes,mail") -> dict:
        """Resolve a group id or exact display name to a group object."""
        if not ref:
            raise OperationError("A group id or display name is required.")
        if GUID_RE.match(ref):
            data = await self.graph.get(f"groups/{ref}", params={"$select": select})
            if data.get("_not_found") or not data.get("id"):
                raise OperationError(f"Group not found: {ref}")
            return data

        matches = await self.graph.get_all_pages(
            "groups",
            params={"$filter": f"displayName eq '{odata_quote(ref)}'", "$select": select},
        )
        if not matches:
            raise OperationError(f"Group not found: {ref}")
        if len(matches) > 1:
            raise OperationError(
                f"Group name '{ref}' is ambiguous ({len(matches)} matches); use the group id."
            )
        return matches[0]
