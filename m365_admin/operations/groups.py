"""
Group operations — list, get, create, update, delete and membership changes.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

from ..reporting.rows import pick
from .base import DIRECTORY_OBJECT_URL, Operation, OperationError, OperationResult, arg
from .users import parse_properties

logger = logging.getLogger("m365_admin.operations.groups")

GROUP_SELECT = (
    "id,displayName,description,mail,mailEnabled,securityEnabled,groupTypes,"
    "visibility,membershipRule,createdDateTime"
)

GROUP_COLUMNS = {
    "id": "id",
    "displayName": "displayName",
    "mail": "mail",
    "groupTypes": "groupTypes",
    "securityEnabled": "securityEnabled",
    "mailEnabled": "mailEnabled",
    "visibility": "visibility",
    "createdDateTime": "createdDateTime",
}

GROUP_FILTERS = {
    "all": None,
    "security": "securityEnabled eq true and mailEnabled eq false",
    "m365": "groupTypes/any(c:c eq 'Unified')",
    "distribution": "mailEnabled eq true and securityEnabled eq false",
    "dynamic": "groupTypes/any(c:c eq 'DynamicMembership')",
}

MEMBER_COLUMNS = {
    "id": "id",
    "displayName": "displayName",
    "userPrincipalName": "userPrincipalName",
    "mail": "mail",
}


def mail_nickname_from(display_name: str) -> str:
    """Derive a mail alias: ASCII letters, digits, '-' and '_' only, max 64 chars."""
    nickname = re.sub(r"[^A-Za-z0-9_-]", "", display_name.replace(" ", "-"))
    nickname = re.sub(r"-{2,}", "-", nickname).strip("-")
    if not nickname:
        raise OperationError(f"Cannot derive a mail nickname from {display_name!r}")
    return nickname[:64]


def group_kind(group: dict) -> str:
    types = group.get("groupTypes") or []
    if "Unified" in types:
        return "m365"
    if group.get("mailEnabled") and not group.get("securityEnabled"):
        return "distribution"
    if group.get("mailEnabled") and group.get("securityEnabled"):
        return "mail-security"
    return "security"


class ListGroups(Operation):
    name = "list-groups"
    description = "List groups filtered by type"
    report_name = "groups"
    arguments = [
        arg("--type", dest="kind", choices=sorted(GROUP_FILTERS), default="all",
            help="Group type to list"),
    ]

    async def run(self, result: OperationResult, kind: str = "all"):
        if kind not in GROUP_FILTERS:
            raise OperationError(f"Unknown group type '{kind}'")
        params = {"$select": GROUP_SELECT}
        if GROUP_FILTERS[kind]:
            params["$filter"] = GROUP_FILTERS[kind]
            params["$count"] = "true"

        groups = await self.safe_get_all("groups", result, params=params)
        for g in groups:
            row = pick(g, GROUP_COLUMNS)
            row["kind"] = group_kind(g)
            result.add_row(row)
        result.add_data("count", len(groups))


class GetGroup(Operation):
    name = "get-group"
    description = "Show a single group"
    report_name = "group"
    arguments = [arg("--group", required=True, help="Group id or exact display name")]

    async def run(self, result: OperationResult, group: str = ""):
        data = await self.get_group(group, select=GROUP_SELECT)
        result.add_data("group", data)
        row = pick(data, GROUP_COLUMNS)
        row["kind"] = group_kind(data)
        result.add_row(row)


class CreateGroup(Operation):
    name = "create-group"
    description = "Create a security or Microsoft 365 group"
    report_name = "created_groups"
    arguments = [
        arg("--display-name", required=True),
        arg("--description", default=""),
        arg("--type", dest="kind", choices=["security", "m365"], default="security"),
        arg("--mail-nickname", help="Mail alias (default: derived from display name)"),
        arg("--visibility", choices=["Private", "Public"], default="Private",
            help="Microsoft 365 group visibility"),
        arg("--owner", dest="owners", action="append", default=[], help="Owner UPN; repeatable"),
        arg("--member", dest="members", action="append", default=[], help="Member UPN; repeatable"),
    ]

    async def run(
        self,
        result: OperationResult,
        display_name: str = "",
        description: str = "",
        kind: str = "security",
        mail_nickname: Optional[str] = None,
        visibility: str = "Private",
        owners: Optional[list[str]] = None,
        members: Optional[list[str]] = None,
    ):
        if not display_name:
            raise OperationError("A group display name is required.")
        if kind not in ("security", "m365"):
            raise OperationError(f"Unknown group type '{kind}'")

        body: dict[str, Any] = {
            "displayName": display_name,
            "mailNickname": mail_nickname or mail_nickname_from(display_name),
            "mailEnabled": kind == "m365",
            "securityEnabled": kind == "security",
            "groupTypes": ["Unified"] if kind == "m365" else [],
        }
        if description:
            body["description"] = description
        if kind == "m365":
            body["visibility"] = visibility

        owner_ids = [(await self.get_user(u))["id"] for u in owners or []]
        member_ids = [(await self.get_user(u))["id"] for u in members or []]
        if owner_ids:
            body["owners@odata.bind"] = [DIRECTORY_OBJECT_URL.format(id=i) for i in owner_ids]
        if member_ids:
            body["members@odata.bind"] = [DIRECTORY_OBJECT_URL.format(id=i) for i in member_ids]

        created = await self.graph.post("groups", body)
        result.add_data("group", created)
        result.add_row({
            "id": created.get("id"),
            "displayName": display_name,
            "mailNickname": body["mailNickname"],
            "kind": kind,
            "owners": len(owner_ids),
            "members": len(member_ids),
            "status": "planned" if created.get("_dry_run") else "created",
        })


class UpdateGroup(Operation):
    name = "update-group"
    description = "Update group properties"
    report_name = "updated_groups"
    arguments = [
        arg("--group", required=True, help="Group id or exact display name"),
        arg("--set", dest="properties", action="append", default=[], metavar="PROPERTY=VALUE",
            help="Graph property to set; repeatable"),
    ]

    async def run(self, result: OperationResult, group: str = "", properties: Any = None):
        props = parse_properties(properties)
        if not props:
            raise OperationError("No properties to update. Use --set PROPERTY=VALUE.")
        target = await self.get_group(group)
        response = await self.graph.patch(f"groups/{target['id']}", props)
        result.add_row({
            "id": target["id"],
            "displayName": target.get("displayName"),
            "properties": ", ".join(f"{k}={v}" for k, v in props.items()),
            "status": "planned" if response.get("_dry_run") else "updated",
        })


class DeleteGroup(Operation):
    name = "delete-group"
    description = "Delete a group"
    report_name = "deleted_groups"
    arguments = [arg("--group", required=True, help="Group id or exact display name")]

    async def run(self, result: OperationResult, group: str = ""):
        target = await self.get_group(group)
        response = await self.graph.delete(f"groups/{target['id']}")
        result.add_row({
            "id": target["id"],
            "displayName": target.get("displayName"),
            "status": "planned" if response.get("_dry_run") else "deleted",
        })


class ListGroupMembers(Operation):
    name = "list-group-members"
    description = "List direct (or transitive) members of a group"
    report_name = "group_members"
    arguments = [
        arg("--group", required=True, help="Group id or exact display name"),
        arg("--transitive", action="store_true", help="Include members of nested groups"),
        arg("--owners", action="store_true", help="List owners instead of members"),
    ]

    async def run(
        self,
        result: OperationResult,
        group: str = "",
        transitive: bool = False,
        owners: bool = False,
    ):
        target = await self.get_group(group)
        relation = "owners" if owners else ("transitiveMembers" if transitive else "members")
        members = await self.safe_get_all(
            f"groups/{target['id']}/{relation}",
            result,
            params={"$select": "id,displayName,userPrincipalName,mail"},
        )
        for m in members:
            row = pick(m, MEMBER_COLUMNS)
            row["objectType"] = m.get("@odata.type", "").split(".")[-1]
            row["group"] = target.get("displayName")
            result.add_row(row)
        result.add_data("count", len(members))


class AddGroupMember(Operation):
    name = "add-group-member"
    description = "Add a user to a group as member or owner"
    report_name = "membership_changes"
    arguments = [
        arg("--group", required=True, help="Group id or exact display name"),
        arg("--user", required=True, help="User id or userPrincipalName"),
        arg("--as-owner", action="store_true", help="Add as owner instead of member"),
    ]

    async def run(self, result: OperationResult, group: str = "", user: str = "", as_owner: bool = False):
        target = await self.get_group(group)
        member = await self.get_user(user)
        relation = "owners" if as_owner else "members"
        response = await add_member(self.graph, target["id"], member["id"], relation)
        result.add_row({
            "group": target.get("displayName"),
            "userPrincipalName": member.get("userPrincipalName"),
            "role": relation[:-1],
            "status": "planned" if response.get("_dry_run") else "added",
        })


async def add_member(graph, group_id: str, object_id: str, relation: str = "members") -> dict:
    return await graph.post(
        f"groups/{group_id}/{relation}/$ref",
        {"@odata.id": DIRECTORY_OBJECT_URL.format(id=object_id)},
    )


class RemoveGroupMember(Operation):
    name = "remove-group-member"
    description = "Remove a user from a group"
    report_name = "membership_changes"
    arguments = [
        arg("--group", required=True, help="Group id or exact display name"),
        arg("--user", required=True, help="User id or userPrincipalName"),
        arg("--as-owner", action="store_true", help="Remove the owner role instead"),
    ]

    async def run(self, result: OperationResult, group: str = "", user: str = "", as_owner: bool = False):
        target = await self.get_group(group)
        member = await self.get_user(user)
        relation = "owners" if as_owner else "members"
        response = await self.graph.delete(f"groups/{target['id']}/{relation}/{member['id']}/$ref")
        result.add_row({
            "group": target.get("displayName"),
            "userPrincipalName": member.get("userPrincipalName"),
            "role": relation[:-1],
            "status": "planned" if response.get("_dry_run") else "removed",
        })
