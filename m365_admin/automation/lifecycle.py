"""
Joiner / leaver processing.

Each step is attempted and reported as its own row; a failing step is
recorded and the remaining steps still run.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Optional

import httpx

from ..graph.client import GraphAPIError
from ..operations.base import Operation, OperationError, OperationResult, arg, user_path
from ..operations.groups import add_member
from ..operations.users import create_user, derive_upn, resolve_sku_id
from .approval import build_message, render_template, send_mail

logger = logging.getLogger("m365_admin.automation.lifecycle")


async def run_step(
    result: OperationResult,
    step: str,
    target: str,
    action: Awaitable[Any],
    done: str = "done",
) -> Optional[Any]:
    """Await one step and add its row. Returns the response, or None on failure."""
    try:
        response = await action
    except (OperationError, GraphAPIError, httpx.HTTPError) as e:
        result.add_row({"step": step, "target": target, "status": "failed", "detail": str(e)})
        result.add_error(f"{step} ({target}): {e}")
        return None
    status = "planned" if isinstance(response, dict) and response.get("_dry_run") else done
    result.add_row({"step": step, "target": target, "status": status, "detail": ""})
    return response


class Joiner(Operation):
    name = "joiner"
    description = "Onboard a new user: account, groups, licenses, manager, welcome mail"
    report_name = "joiner"
    arguments = [
        arg("--first-name", required=True),
        arg("--last-name", required=True),
        arg("--display-name", help="Display name (default: 'First Last')"),
        arg("--upn", help="userPrincipalName (default: first.last@domain)"),
        arg("--domain", help="UPN domain when deriving the UPN"),
        arg("--department"),
        arg("--job-title"),
        arg("--usage-location", help="Two-letter country code, needed for licensing"),
        arg("--group", dest="groups", action="append", default=[],
            help="Group id or display name; repeatable"),
        arg("--license", dest="licenses", action="append", default=[],
            help="SKU part number or skuId; repeatable"),
        arg("--manager", help="Manager id or userPrincipalName"),
        arg("--notify-manager", action="store_true",
            help="Email the manager the account details"),
        arg("--sender", help="Mailbox that sends the welcome mail"),
    ]

    async def run(
        self,
        result: OperationResult,
        first_name: str = "",
        last_name: str = "",
        display_name: Optional[str] = None,
        upn: Optional[str] = None,
        domain: Optional[str] = None,
        department: Optional[str] = None,
        job_title: Optional[str] = None,
        usage_location: Optional[str] = None,
        groups: Optional[list[str]] = None,
        licenses: Optional[list[str]] = None,
        manager: Optional[str] = None,
        notify_manager: bool = False,
        sender: Optional[str] = None,
    ):
        groups = groups or []
        licenses = licenses or []
        if licenses and not usage_location:
            raise OperationError("--usage-location is required when assigning licenses.")
        if notify_manager and not (manager and sender):
            raise OperationError("--notify-manager needs both --manager and --sender.")

        upn = upn or derive_upn(first_name, last_name, domain or self.config.default_domain)
        display_name = display_name or f"{first_name} {last_name}".strip()

        # Account creation failing leaves nothing to attach the other steps to
        created = await run_step(
            result, "create-user", upn,
            create_user(
                self.graph,
                display_name=display_name,
                upn=upn,
                given_name=first_name,
                surname=last_name,
                department=department,
                job_title=job_title,
                usage_location=usage_location,
            ),
            done="created",
        )
        if created is None:
            return
        # Graph addresses users by UPN as well as id, which covers dry-run
        user_id = created.get("id") or upn
        result.add_data("user", {k: v for k, v in created.items() if k != "_password"})
        result.add_data("temporary_password", created.get("_password"))

        added_groups = []
        for ref in groups:
            response = await run_step(result, "add-group", ref,
                                      self._add_to_group(ref, user_id), done="added")
            if response is not None:
                added_groups.append(ref)

        assigned = []
        for sku in licenses:
            response = await run_step(result, "assign-license", sku,
                                      self._assign_license(user_id, sku), done="assigned")
            if response is not None:
                assigned.append(sku)

        manager_obj = None
        if manager:
            manager_obj = await run_step(result, "lookup-manager", manager,
                                         self.get_user(manager, select="id,displayName,mail,userPrincipalName"),
                                         done="found")
            if manager_obj is not None:
                await run_step(
                    result, "set-manager", manager,
                    self.graph.put(user_path(user_id, "manager/$ref"),
                                   {"@odata.id": f"https://graph.microsoft.com/v1.0/users/{manager_obj['id']}"}),
                    done="set",
                )

        if notify_manager and manager_obj is not None:
            html_body = render_template(
                "welcome_email.html.j2",
                manager_name=manager_obj.get("displayName"),
                display_name=display_name,
                upn=upn,
                temporary_password=created.get("_password"),
                groups=added_groups,
                licenses=assigned,
            )
            payload = build_message(
                f"New account: {display_name}",
                html_body,
                [manager_obj.get("mail") or manager_obj["userPrincipalName"]],
            )
            await run_step(result, "welcome-mail", manager, send_mail(self.graph, sender, payload),
                           done="sent")

    async def _add_to_group(self, ref: str, user_id: str) -> dict:
        group = await self.get_group(ref)
        return await add_member(self.graph, group["id"], user_id)

    async def _assign_license(self, user_id: str, sku: str) -> dict:
        sku_id = await resolve_sku_id(self.graph, sku)
        return await self.graph.post(
            user_path(user_id, "assignLicense"),
            {"addLicenses": [{"skuId": sku_id, "disabledPlans": []}], "removeLicenses": []},
        )


class Leaver(Operation):
    name = "leaver"
    description = "Offboard a user: block, revoke, strip groups and licenses, optionally delete"
    report_name = "leaver"
    arguments = [
        arg("--user", required=True, help="User id or userPrincipalName"),
        arg("--keep-groups", action="store_true", help="Leave group memberships in place"),
        arg("--keep-licenses", action="store_true", help="Leave licenses assigned"),
        arg("--hide", action="store_true",
            help="Remove the manager link and clear phone numbers"),
        arg("--delete", action="store_true", help="Delete the account after the other steps"),
    ]

    async def run(
        self,
        result: OperationResult,
        user: str = "",
        keep_groups: bool = False,
        keep_licenses: bool = False,
        hide: bool = False,
        delete: bool = False,
    ):
        target = await self.get_user(user, select="id,displayName,userPrincipalName,assignedLicenses")
        uid = target["id"]
        upn = target.get("userPrincipalName", user)

        await run_step(result, "block-sign-in", upn,
                       self.graph.patch(user_path(uid), {"accountEnabled": False}), done="blocked")
        await run_step(result, "revoke-sessions", upn,
                       self.graph.post(user_path(uid, "revokeSignInSessions")), done="revoked")

        if not keep_groups:
            memberships = await run_step(
                result, "list-memberships", upn,
                self.graph.get_all_pages(
                    user_path(uid, "memberOf/microsoft.graph.group"),
                    params={"$select": "id,displayName,groupTypes,membershipRule"},
                ),
                done="listed",
            )
            for group in memberships or []:
                label = group.get("displayName") or group["id"]
                if group.get("membershipRule"):
                    result.add_row({"step": "remove-group", "target": label,
                                    "status": "skipped", "detail": "dynamic membership"})
                    continue
                await run_step(result, "remove-group", label,
                               self.graph.delete(f"groups/{group['id']}/members/{uid}/$ref"),
                               done="removed")

        if not keep_licenses:
            sku_ids = [lic["skuId"] for lic in target.get("assignedLicenses") or [] if lic.get("skuId")]
            if sku_ids:
                await run_step(
                    result, "remove-licenses", ", ".join(sku_ids),
                    self.graph.post(user_path(uid, "assignLicense"),
                                    {"addLicenses": [], "removeLicenses": sku_ids}),
                    done="removed",
                )

        if hide:
            await run_step(result, "remove-manager", upn,
                           self._remove_manager(uid), done="removed")
            await run_step(result, "clear-phones", upn,
                           self.graph.patch(user_path(uid), {"mobilePhone": None, "businessPhones": []}),
                           done="cleared")

        if delete:
            await run_step(result, "delete-user", upn,
                           self.graph.delete(user_path(uid)), done="deleted")

    async def _remove_manager(self, uid: str) -> dict:
        try:
            return await self.graph.delete(user_path(uid, "manager/$ref"))
        except GraphAPIError as e:
            if e.status_code == 404:
                return {}
            raise
