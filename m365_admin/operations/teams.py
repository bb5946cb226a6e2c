"""
Teams operations — list teams and channels, create teams and channels,
add members, archive.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..reporting.rows import pick
from .base import Operation, OperationError, OperationResult, arg

logger = logging.getLogger("m365_admin.operations.teams")

TEAM_TEMPLATE = "https://graph.microsoft.com/v1.0/teamsTemplates('standard')"
USER_BIND = "https://graph.microsoft.com/v1.0/users('{id}')"
MEMBER_TYPE = "#microsoft.graph.aadUserConversationMember"


def conversation_member(user_id: str, owner: bool = False) -> dict:
    return {
        "@odata.type": MEMBER_TYPE,
        "roles": ["owner"] if owner else [],
        "user@odata.bind": USER_BIND.format(id=user_id),
    }


class ListTeams(Operation):
    name = "list-teams"
    description = "List every team in the tenant"
    report_name = "teams"

    async def run(self, result: OperationResult):
        teams = await self.safe_get_all(
            "groups",
            result,
            params={
                "$filter": "resourceProvisioningOptions/Any(x:x eq 'Team')",
                "$select": "id,displayName,description,visibility,mail,createdDateTime",
            },
        )
        result.add_rows([
            pick(t, {
                "id": "id",
                "displayName": "displayName",
                "description": "description",
                "visibility": "visibility",
                "mail": "mail",
                "createdDateTime": "createdDateTime",
            })
            for t in teams
        ])


class ListChannels(Operation):
    name = "list-channels"
    description = "List channels of a team"
    report_name = "channels"
    arguments = [arg("--team", required=True, help="Team (group) id or exact display name")]

    async def run(self, result: OperationResult, team: str = ""):
        target = await self.get_group(team)
        channels = await self.safe_get_all(f"teams/{target['id']}/channels", result, skip_top=True)
        for c in channels:
            row = pick(c, {
                "id": "id",
                "displayName": "displayName",
                "membershipType": "membershipType",
                "description": "description",
                "webUrl": "webUrl",
            })
            row["team"] = target.get("displayName")
            result.add_row(row)


class CreateTeam(Operation):
    name = "create-team"
    description = "Create a team from the standard template"
    report_name = "created_teams"
    arguments = [
        arg("--display-name", required=True),
        arg("--description", default=""),
        arg("--visibility", choices=["private", "public"], default="private"),
        arg("--owner", required=True, help="Owner UPN (app-only creation needs one)"),
    ]

    async def run(
        self,
        result: OperationResult,
        display_name: str = "",
        description: str = "",
        visibility: str = "private",
        owner: str = "",
    ):
        if not display_name:
            raise OperationError("A team display name is required.")
        owner_user = await self.get_user(owner)
        body = {
            "template@odata.bind": TEAM_TEMPLATE,
            "displayName": display_name,
            "description": description or display_name,
            "visibility": visibility,
            "members": [conversation_member(owner_user["id"], owner=True)],
        }
        # Team creation is asynchronous: Graph answers 202 and provisions in the background
        response = await self.graph.post("teams", body)
        result.add_row({
            "displayName": display_name,
            "owner": owner_user.get("userPrincipalName"),
            "visibility": visibility,
            "status": "planned" if response.get("_dry_run") else "provisioning",
        })


class CreateChannel(Operation):
    name = "create-channel"
    description = "Add a channel to a team"
    report_name = "created_channels"
    arguments = [
        arg("--team", required=True, help="Team (group) id or exact display name"),
        arg("--display-name", required=True),
        arg("--description", default=""),
        arg("--membership", dest="membership_type", choices=["standard", "private", "shared"],
            default="standard"),
        arg("--owner", default=None, help="Owner UPN, required for private/shared channels"),
    ]

    async def run(
        self,
        result: OperationResult,
        team: str = "",
        display_name: str = "",
        description: str = "",
        membership_type: str = "standard",
        owner: Optional[str] = None,
    ):
        if membership_type != "standard" and not owner:
            raise OperationError(f"A {membership_type} channel needs an --owner.")
        target = await self.get_group(team)
        body = {
            "displayName": display_name,
            "description": description,
            "membershipType": membership_type,
        }
        if owner:
            owner_user = await self.get_user(owner)
            body["members"] = [conversation_member(owner_user["id"], owner=True)]

        created = await self.graph.post(f"teams/{target['id']}/channels", body)
        result.add_row({
            "team": target.get("displayName"),
            "channel": display_name,
            "id": created.get("id"),
            "membershipType": membership_type,
            "status": "planned" if created.get("_dry_run") else "created",
        })


class AddTeamMember(Operation):
    name = "add-team-member"
    description = "Add a user to a team as member or owner"
    report_name = "team_membership"
    arguments = [
        arg("--team", required=True, help="Team (group) id or exact display name"),
        arg("--user", required=True, help="User id or userPrincipalName"),
        arg("--as-owner", action="store_true"),
    ]

    async def run(self, result: OperationResult, team: str = "", user: str = "", as_owner: bool = False):
        target = await self.get_group(team)
        member = await self.get_user(user)
        response = await self.graph.post(
            f"teams/{target['id']}/members", conversation_member(member["id"], owner=as_owner),
        )
        result.add_row({
            "team": target.get("displayName"),
            "userPrincipalName": member.get("userPrincipalName"),
            "role": "owner" if as_owner else "member",
            "status": "planned" if response.get("_dry_run") else "added",
        })


class ArchiveTeam(Operation):
    name = "archive-team"
    description = "Archive a team (read-only for members)"
    report_name = "archived_teams"
    arguments = [
        arg("--team", required=True, help="Team (group) id or exact display name"),
        arg("--site-read-only", action="store_true",
            help="Also make the team's SharePoint site read-only for members"),
    ]

    async def run(self, result: OperationResult, team: str = "", site_read_only: bool = False):
        target = await self.get_group(team)
        response = await self.graph.post(
            f"teams/{target['id']}/archive",
            {"shouldSetSpoSiteReadOnlyForMembers": site_read_only},
        )
        result.add_row({
            "team": target.get("displayName"),
            "id": target["id"],
            "status": "planned" if response.get("_dry_run") else "archived",
        })
