"""
Compliance operations — eDiscovery (Premium) cases and retention labels.
"""

from __future__ import annotations

from typing import Optional

from ..reporting.rows import pick
from .base import GUID_RE, Operation, OperationError, OperationResult, arg, odata_quote

CASES_ENDPOINT = "security/cases/ediscoveryCases"

CASE_COLUMNS = {
    "id": "id",
    "displayName": "displayName",
    "status": "status",
    "externalId": "externalId",
    "createdDateTime": "createdDateTime",
    "closedDateTime": "closedDateTime",
    "createdBy": "createdBy.user.displayName",
}


class ListEDiscoveryCases(Operation):
    name = "list-ediscovery-cases"
    description = "List eDiscovery cases"
    report_name = "ediscovery_cases"
    arguments = [
        arg("--status", choices=["active", "closed", "all"], default="all"),
    ]

    async def run(self, result: OperationResult, status: str = "all"):
        cases = await self.safe_get_all(CASES_ENDPOINT, result, skip_top=True)
        for c in cases:
            if status != "all" and str(c.get("status", "")).lower() != status:
                continue
            result.add_row(pick(c, CASE_COLUMNS))


class CreateEDiscoveryCase(Operation):
    name = "create-ediscovery-case"
    description = "Create an eDiscovery case"
    report_name = "ediscovery_cases"
    arguments = [
        arg("--display-name", required=True),
        arg("--description", default=""),
        arg("--external-id", default="", help="Matter or ticket number"),
    ]

    async def run(
        self,
        result: OperationResult,
        display_name: str = "",
        description: str = "",
        external_id: str = "",
    ):
        if not display_name:
            raise OperationError("A case display name is required.")
        body = {"displayName": display_name}
        if description:
            body["description"] = description
        if external_id:
            body["externalId"] = external_id

        created = await self.graph.post(CASES_ENDPOINT, body)
        result.add_row({
            "id": created.get("id"),
            "displayName": display_name,
            "externalId": external_id,
            "status": "planned" if created.get("_dry_run") else created.get("status", "active"),
        })


class CloseEDiscoveryCase(Operation):
    name = "close-ediscovery-case"
    description = "Close an eDiscovery case by id or exact name"
    report_name = "ediscovery_cases"
    arguments = [arg("--case", required=True, help="Case id or exact display name")]

    async def run(self, result: OperationResult, case: str = ""):
        target = await self._find_case(case)
        if str(target.get("status", "")).lower() == "closed":
            result.add_warning(f"Case '{target.get('displayName')}' is already closed.")
            result.add_row({"id": target["id"], "displayName": target.get("displayName"),
                            "status": "closed"})
            return
        response = await self.graph.post(f"{CASES_ENDPOINT}/{target['id']}/close")
        result.add_row({
            "id": target["id"],
            "displayName": target.get("displayName"),
            "status": "planned" if response.get("_dry_run") else "closing",
        })

    async def _find_case(self, ref: Optional[str]) -> dict:
        if not ref:
            raise OperationError("A case id or name is required.")
        if GUID_RE.match(ref):
            data = await self.graph.get(f"{CASES_ENDPOINT}/{ref}")
            if not data.get("id"):
                raise OperationError(f"eDiscovery case not found: {ref}")
            return data
        matches = await self.graph.get_all_pages(
            CASES_ENDPOINT,
            params={"$filter": f"displayName eq '{odata_quote(ref)}'"},
            skip_top=True,
        )
        if len(matches) != 1:
            raise OperationError(f"eDiscovery case not found or ambiguous: {ref}")
        return matches[0]


class ListRetentionLabels(Operation):
    name = "list-retention-labels"
    description = "List retention labels"
    report_name = "retention_labels"

    async def run(self, result: OperationResult):
        labels = await self.safe_get_all("security/labels/retentionLabels", result, skip_top=True)
        for label in labels:
            result.add_row(pick(label, {
                "id": "id",
                "displayName": "displayName",
                "isInUse": "isInUse",
                "retentionDays": "retentionDuration.days",
                "retentionTrigger": "retentionTrigger",
                "behaviorDuringRetentionPeriod": "behaviorDuringRetentionPeriod",
                "actionAfterRetentionPeriod": "actionAfterRetentionPeriod",
                "createdDateTime": "createdDateTime",
            }))
