"""
OneDrive operations — per-user quota, folder listing and large-file search.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Optional
from urllib.parse import quote

from .base import Operation, OperationError, OperationResult, arg
from .sharepoint import quota_row

logger = logging.getLogger("m365_admin.operations.onedrive")

MB = 1024 ** 2
ITEM_SELECT = "id,name,size,folder,file,webUrl,lastModifiedDateTime,parentReference"


def children_endpoint(user_id: str, path: str = "", item_id: str = "") -> str:
    """Endpoint for the children of the drive root, a folder path or an item id."""
    if item_id:
        return f"users/{user_id}/drive/items/{item_id}/children"
    path = path.strip("/")
    if not path:
        return f"users/{user_id}/drive/root/children"
    return f"users/{user_id}/drive/root:/{quote(path)}:/children"


class OneDriveQuota(Operation):
    name = "onedrive-quota"
    description = "OneDrive storage quota for one user or every licensed member"
    report_name = "onedrive_quota"
    arguments = [arg("--user", default=None, help="User id or UPN (default: all members)")]

    async def run(self, result: OperationResult, user: Optional[str] = None):
        if user:
            target = await self.get_user(user)
            users = [target]
        else:
            users = await self.safe_get_all(
                "users",
                result,
                params={"$filter": "userType eq 'Member' and assignedLicenses/$count ne 0",
                        "$count": "true",
                        "$select": "id,displayName,userPrincipalName"},
            )

        responses = await self.graph.batch_get(
            [f"/users/{u['id']}/drive?$select=id,quota,webUrl" for u in users]
        )
        no_drive = 0
        for u, drive in zip(users, responses):
            if drive.get("_error"):
                no_drive += 1
                continue
            row = {"userPrincipalName": u.get("userPrincipalName"), "displayName": u.get("displayName")}
            row.update(quota_row(drive.get("quota") or {}))
            row["webUrl"] = drive.get("webUrl")
            result.add_row(row)
        if no_drive:
            result.add_warning(f"{no_drive} user(s) have no provisioned OneDrive or are not readable")


class ListDriveItems(Operation):
    name = "list-drive-items"
    description = "List files and folders in a user's OneDrive folder"
    report_name = "drive_items"
    arguments = [
        arg("--user", required=True, help="User id or UPN"),
        arg("--path", default="", help="Folder path relative to the drive root"),
    ]

    async def run(self, result: OperationResult, user: str = "", path: str = ""):
        target = await self.get_user(user)
        data = await self.graph.get(children_endpoint(target["id"], path), params={"$select": ITEM_SELECT})
        if data.get("_not_found"):
            raise OperationError(f"Folder not found in OneDrive of {user}: /{path.strip('/')}")
        if data.get("_forbidden"):
            raise OperationError(f"Permission denied listing OneDrive of {user}: {data.get('_error_message')}")
        if data.get("_max_retries_exceeded"):
            raise OperationError(f"OneDrive of {user} is still throttled; try again later")
        items = data.get("value", [])
        next_link = data.get("@odata.nextLink")
        while next_link:
            page = await self.graph.get(next_link)
            items.extend(page.get("value", []))
            next_link = page.get("@odata.nextLink")

        for it in items:
            result.add_row({
                "name": it.get("name"),
                "type": "folder" if "folder" in it else "file",
                "sizeMB": round((it.get("size") or 0) / MB, 2),
                "childCount": (it.get("folder") or {}).get("childCount"),
                "lastModifiedDateTime": it.get("lastModifiedDateTime"),
                "webUrl": it.get("webUrl"),
            })


class LargeFiles(Operation):
    name = "large-files"
    description = "Files above a size threshold in a user's OneDrive"
    report_name = "large_files"
    arguments = [
        arg("--user", required=True, help="User id or UPN"),
        arg("--min-size-mb", type=float, default=100.0, help="Size threshold in MB"),
        arg("--max-depth", type=int, default=5, help="Folder depth limit"),
    ]

    async def run(
        self,
        result: OperationResult,
        user: str = "",
        min_size_mb: float = 100.0,
        max_depth: int = 5,
    ):
        if min_size_mb < 0 or max_depth < 0:
            raise OperationError("--min-size-mb and --max-depth must not be negative")
        target = await self.get_user(user)
        threshold = min_size_mb * MB

        # Breadth-first so shallow folders are reported even when the depth cap stops the walk
        queue: deque[tuple[str, str, int]] = deque([("", "", 0)])
        folders_scanned = 0
        while queue:
            item_id, folder_path, depth = queue.popleft()
            items = await self.safe_get_all(
                children_endpoint(target["id"], item_id=item_id), result,
                params={"$select": ITEM_SELECT},
            )
            folders_scanned += 1
            for it in items:
                path = f"{folder_path}/{it.get('name')}"
                if "folder" in it:
                    if depth < max_depth:
                        queue.append((it["id"], path, depth + 1))
                    continue
                size = it.get("size") or 0
                if size >= threshold:
                    result.add_row({
                        "path": path,
                        "name": it.get("name"),
                        "sizeMB": round(size / MB, 2),
                        "lastModifiedDateTime": it.get("lastModifiedDateTime"),
                        "webUrl": it.get("webUrl"),
                    })

        result.rows.sort(key=lambda r: r["sizeMB"], reverse=True)
        result.add_data("folders_scanned", folders_scanned)
