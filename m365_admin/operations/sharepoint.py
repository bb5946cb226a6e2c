"""
SharePoint operations — site search, site details, lists and storage.
"""

from __future__ import annotations

from typing import Optional

from ..reporting.rows import pick
from .base import Operation, OperationError, OperationResult, arg

GB = 1024 ** 3

SITE_COLUMNS = {
    "id": "id",
    "displayName": "displayName",
    "name": "name",
    "webUrl": "webUrl",
    "createdDateTime": "createdDateTime",
    "lastModifiedDateTime": "lastModifiedDateTime",
}


def to_gb(value: Optional[int]) -> Optional[float]:
    if value is None:
        return None
    return round(value / GB, 2)


def quota_row(quota: dict) -> dict:
    """Used/total/remaining GB and percent used from a drive quota object."""
    used = quota.get("used")
    total = quota.get("total")
    return {
        "usedGB": to_gb(used),
        "totalGB": to_gb(total),
        "remainingGB": to_gb(quota.get("remaining")),
        "percentUsed": round(used / total * 100, 1) if used is not None and total else None,
        "state": quota.get("state"),
    }


class ListSites(Operation):
    name = "list-sites"
    description = "Search SharePoint sites"
    report_name = "sites"
    arguments = [arg("--search", default="*", help="Search text (default: all sites)")]

    async def run(self, result: OperationResult, search: str = "*"):
        sites = await self.safe_get_all(
            "sites", result, params={"search": search or "*"}, skip_top=True,
        )
        result.add_rows([pick(s, SITE_COLUMNS) for s in sites])


class GetSite(Operation):
    name = "get-site"
    description = "Show a site by id or 'hostname:/sites/path'"
    report_name = "site"
    arguments = [arg("--site", required=True, help="Site id or hostname:/sites/path")]

    async def run(self, result: OperationResult, site: str = ""):
        data = await self._site(site)
        result.add_data("site", data)
        result.add_row(pick(data, SITE_COLUMNS))

    async def _site(self, ref: str) -> dict:
        if not ref:
            raise OperationError("A site id or hostname:/sites/path is required.")
        data = await self.graph.get(f"sites/{ref}")
        if data.get("_not_found") or not data.get("id"):
            raise OperationError(f"Site not found: {ref}")
        return data


class ListSiteLists(GetSite):
    name = "list-site-lists"
    description = "Lists and libraries of a site"
    report_name = "site_lists"

    async def run(self, result: OperationResult, site: str = ""):
        target = await self._site(site)
        lists = await self.safe_get_all(
            f"sites/{target['id']}/lists",
            result,
            params={"$select": "id,displayName,webUrl,createdDateTime,lastModifiedDateTime,list"},
        )
        for li in lists:
            row = pick(li, {
                "id": "id",
                "displayName": "displayName",
                "template": "list.template",
                "hidden": "list.hidden",
                "webUrl": "webUrl",
                "lastModifiedDateTime": "lastModifiedDateTime",
            })
            row["site"] = target.get("displayName")
            result.add_row(row)


class SiteStorage(GetSite):
    name = "site-storage"
    description = "Storage used by each document library of a site"
    report_name = "site_storage"

    async def run(self, result: OperationResult, site: str = ""):
        target = await self._site(site)
        drives = await self.safe_get_all(
            f"sites/{target['id']}/drives",
            result,
            params={"$select": "id,name,driveType,webUrl,quota"},
            skip_top=True,
        )
        for d in drives:
            row = {"site": target.get("displayName"), "library": d.get("name"),
                   "driveType": d.get("driveType")}
            row.update(quota_row(d.get("quota") or {}))
            row["webUrl"] = d.get("webUrl")
            result.add_row(row)
