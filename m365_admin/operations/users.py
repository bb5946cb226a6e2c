"""
User operations — list, get, create, update, delete, block/unblock sign-in,
revoke sessions, and license assignment.
"""

from __future__ import annotations

import logging
import secrets
import string
import unicodedata
from typing import Any, Optional

from ..graph.client import GraphClient
from ..reporting.rows import pick
from .base import Operation, OperationError, OperationResult, arg, user_path

logger = logging.getLogger("m365_admin.operations.users")

USER_SELECT = (
    "id,displayName,givenName,surname,userPrincipalName,mail,accountEnabled,"
    "userType,department,jobTitle,officeLocation,usageLocation,createdDateTime"
)

USER_COLUMNS = {
    "id": "id",
    "displayName": "displayName",
    "userPrincipalName": "userPrincipalName",
    "mail": "mail",
    "accountEnabled": "accountEnabled",
    "userType": "userType",
    "department": "department",
    "jobTitle": "jobTitle",
    "createdDateTime": "createdDateTime",
}

USER_FILTERS = {
    "all": None,
    "enabled": "accountEnabled eq true",
    "disabled": "accountEnabled eq false",
    "guests": "userType eq 'Guest'",
    "members": "userType eq 'Member'",
}

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*-_=+?"


# ── Helpers ─────────────────────────────────────────────────────────────────

def strip_accents(text: str) -> str:
    """Remove accents from characters (é -> e, ü -> u)."""
    nfkd = unicodedata.normalize("NFKD", text)
    return "".join(c for c in nfkd if not unicodedata.combining(c))


def derive_upn(first_name: str, last_name: str, domain: str) -> str:
    """Build ``first.last@domain`` (lowercase, accents and punctuation removed)."""
    fn = "".join(c for c in strip_accents(first_name).lower() if c.isalnum())
    ln = "".join(c for c in strip_accents(last_name).lower() if c.isalnum())
    if not fn or not ln:
        raise OperationError("First and last name are needed to derive a UPN.")
    if not domain:
        raise OperationError("A domain is needed to derive a UPN (--domain or default_domain).")
    return f"{fn}.{ln}@{domain.lstrip('@')}"


def generate_password(length: int = 16) -> str:
    """Random password containing upper, lower, digit and symbol characters."""
    if length < 8:
        raise ValueError("Password length must be at least 8")
    while True:
        password = "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))
        if (
            any(c.islower() for c in password)
            and any(c.isupper() for c in password)
            and any(c.isdigit() for c in password)
            and any(not c.isalnum() for c in password)
        ):
            return password


def parse_property_value(value: str) -> Any:
    """Convert CLI/CSV text to a Graph property value."""
    lowered = value.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered in ("null", "none"):
        return None
    return value.strip()


def build_user_body(
    display_name: str,
    upn: str,
    password: str,
    force_change: bool = True,
    account_enabled: bool = True,
    mail_nickname: str = "",
    **extra: Any,
) -> dict:
    """Request body for POST /users. Extra snake_case keys are camel-cased."""
    if not display_name:
        raise OperationError("displayName is required.")
    if not upn or "@" not in upn:
        raise OperationError(f"Invalid userPrincipalName: {upn!r}")

    body = {
        "accountEnabled": account_enabled,
        "displayName": display_name,
        "mailNickname": mail_nickname or upn.split("@", 1)[0],
        "userPrincipalName": upn,
        "passwordProfile": {
            "forceChangePasswordNextSignIn": force_change,
            "password": password,
        },
    }
    for key, value in extra.items():
        if value in (None, ""):
            continue
        head, *rest = key.split("_")
        body[head + "".join(part.title() for part in rest)] = value
    return body


async def resolve_sku_id(graph: GraphClient, sku: str) -> str:
    """Resolve a SKU part number (e.g. ENTERPRISEPACK) or skuId to a skuId."""
    skus = await graph.get_all_pages("subscribedSkus", skip_top=True)
    for s in skus:
        if sku.lower() in (str(s.get("skuPartNumber", "")).lower(), str(s.get("skuId", "")).lower()):
            return s["skuId"]
    raise OperationError(f"License SKU not found in tenant: {sku}")


# ── Operations ──────────────────────────────────────────────────────────────

class ListUsers(Operation):
    name = "list-users"
    description = "List users with an optional state filter and name search"
    report_name = "users"
    arguments = [
        arg("--filter", dest="state", choices=sorted(USER_FILTERS), default="all",
            help="Restrict by account state or type"),
        arg("--search", default=None, help="Match displayName/mail/UPN (prefix search)"),
    ]

    async def run(self, result: OperationResult, state: str = "all", search: Optional[str] = None):
        if state not in USER_FILTERS:
            raise OperationError(f"Unknown filter '{state}'. Use one of: {', '.join(USER_FILTERS)}")

        params = {"$select": USER_SELECT}
        if USER_FILTERS[state]:
            params["$filter"] = USER_FILTERS[state]
        if search:
            term = search.replace('"', "")
            params["$search"] = (
                f'"displayName:{term}" OR "mail:{term}" OR "userPrincipalName:{term}"'
            )
            params["$count"] = "true"

        users = await self.safe_get_all("users", result, params=params)
        result.add_rows([pick(u, USER_COLUMNS) for u in users])
        result.add_data("count", len(users))


class GetUser(Operation):
    name = "get-user"
    description = "Show a single user"
    report_name = "user"
    arguments = [arg("--user", required=True, help="User id or userPrincipalName")]

    async def run(self, result: OperationResult, user: str = ""):
        data = await self.get_user(user, select=USER_SELECT)
        result.add_data("user", data)
        result.add_row(pick(data, USER_COLUMNS))


class CreateUser(Operation):
    name = "create-user"
    description = "Create a user with a temporary password"
    report_name = "created_users"
    arguments = [
        arg("--display-name", help="Display name (default: 'First Last')"),
        arg("--upn", help="userPrincipalName (default: first.last@domain)"),
        arg("--first-name", help="Given name"),
        arg("--last-name", help="Surname"),
        arg("--domain", help="UPN domain when deriving the UPN"),
        arg("--mail-nickname", help="Mail alias (default: UPN prefix)"),
        arg("--usage-location", help="Two-letter country code, needed for licensing"),
        arg("--department"),
        arg("--job-title"),
        arg("--password", help="Initial password (default: generated)"),
        arg("--no-force-change", dest="force_change", action="store_false",
            help="Do not require a password change at first sign-in"),
        arg("--disabled", dest="account_enabled", action="store_false",
            help="Create the account with sign-in blocked"),
    ]

    async def run(
        self,
        result: OperationResult,
        display_name: Optional[str] = None,
        upn: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        domain: Optional[str] = None,
        mail_nickname: Optional[str] = None,
        usage_location: Optional[str] = None,
        department: Optional[str] = None,
        job_title: Optional[str] = None,
        password: Optional[str] = None,
        force_change: bool = True,
        account_enabled: bool = True,
    ):
        created = await create_user(
            self.graph,
            display_name=display_name or " ".join(p for p in (first_name, last_name) if p),
            upn=upn or derive_upn(first_name or "", last_name or "", domain or self.config.default_domain),
            password=password,
            force_change=force_change,
            account_enabled=account_enabled,
            mail_nickname=mail_nickname or "",
            given_name=first_name,
            surname=last_name,
            usage_location=usage_location,
            department=department,
            job_title=job_title,
        )
        result.add_data("user", created)
        result.add_row({
            "id": created.get("id"),
            "userPrincipalName": created.get("userPrincipalName"),
            "displayName": created.get("displayName"),
            "temporaryPassword": created.get("_password"),
            "status": "planned" if created.get("_dry_run") else "created",
        })


async def create_user(graph: GraphClient, password: Optional[str] = None, **kwargs: Any) -> dict:
    """POST a new user. Returns the Graph user plus the ``_password`` used."""
    password = password or generate_password()
    body = build_user_body(password=password, **kwargs)
    existing = await graph.get(user_path(body["userPrincipalName"]), params={"$select": "id"})
    if existing.get("id"):
        raise OperationError(f"User already exists: {body['userPrincipalName']}")

    created = await graph.post("users", body)
    logger.info(f"Created user {body['userPrincipalName']}")
    if created.get("_dry_run"):
        created = {**created, "userPrincipalName": body["userPrincipalName"],
                   "displayName": body["displayName"]}
    return {**created, "_password": password}


class UpdateUser(Operation):
    name = "update-user"
    description = "Update user properties"
    report_name = "updated_users"
    arguments = [
        arg("--user", required=True, help="User id or userPrincipalName"),
        arg("--set", dest="properties", action="append", default=[], metavar="PROPERTY=VALUE",
            help="Graph property to set; repeatable (e.g. --set department=Sales)"),
    ]

    async def run(self, result: OperationResult, user: str = "", properties: Any = None):
        props = parse_properties(properties)
        if not props:
            raise OperationError("No properties to update. Use --set PROPERTY=VALUE.")
        target = await self.get_user(user)
        response = await self.graph.patch(f"users/{target['id']}", props)
        result.add_row({
            "userPrincipalName": target.get("userPrincipalName"),
            "properties": ", ".join(f"{k}={v}" for k, v in props.items()),
            "status": "planned" if response.get("_dry_run") else "updated",
        })


def parse_properties(properties: Any) -> dict[str, Any]:
    if not properties:
        return {}
    if isinstance(properties, dict):
        return dict(properties)
    props = {}
    for item in properties:
        if "=" not in item:
            raise OperationError(f"Expected PROPERTY=VALUE, got {item!r}")
        key, value = item.split("=", 1)
        if not key.strip():
            raise OperationError(f"Empty property name in {item!r}")
        props[key.strip()] = parse_property_value(value)
    return props


class DeleteUser(Operation):
    name = "delete-user"
    description = "Delete a user (soft delete, restorable for 30 days)"
    report_name = "deleted_users"
    arguments = [arg("--user", required=True, help="User id or userPrincipalName")]

    async def run(self, result: OperationResult, user: str = ""):
        target = await self.get_user(user)
        response = await self.graph.delete(f"users/{target['id']}")
        result.add_row({
            "userPrincipalName": target.get("userPrincipalName"),
            "status": "planned" if response.get("_dry_run") else "deleted",
        })


class SetUserEnabled(Operation):
    name = "set-user-enabled"
    description = "Block or unblock sign-in for a user"
    report_name = "sign_in_state"
    arguments = [
        arg("--user", required=True, help="User id or userPrincipalName"),
        arg("--disable", dest="enabled", action="store_false", default=True, help="Block sign-in"),
        arg("--enable", dest="enabled", action="store_true", default=True, help="Allow sign-in (default)"),
    ]

    async def run(self, result: OperationResult, user: str = "", enabled: bool = True):
        target = await self.get_user(user)
        response = await self.graph.patch(f"users/{target['id']}", {"accountEnabled": enabled})
        result.add_row({
            "userPrincipalName": target.get("userPrincipalName"),
            "accountEnabled": enabled,
            "status": "planned" if response.get("_dry_run") else "updated",
        })


class RevokeSessions(Operation):
    name = "revoke-sessions"
    description = "Invalidate all refresh tokens and session cookies for a user"
    report_name = "revoked_sessions"
    arguments = [arg("--user", required=True, help="User id or userPrincipalName")]

    async def run(self, result: OperationResult, user: str = ""):
        target = await self.get_user(user)
        response = await self.graph.post(f"users/{target['id']}/revokeSignInSessions")
        result.add_row({
            "userPrincipalName": target.get("userPrincipalName"),
            "status": "planned" if response.get("_dry_run") else "revoked",
        })


class AssignLicense(Operation):
    name = "assign-license"
    description = "Assign a license SKU to a user"
    report_name = "license_changes"
    remove = False
    arguments = [
        arg("--user", required=True, help="User id or userPrincipalName"),
        arg("--sku", required=True, help="SKU part number (e.g. ENTERPRISEPACK) or skuId"),
    ]

    async def run(self, result: OperationResult, user: str = "", sku: str = ""):
        target = await self.get_user(user)
        sku_id = await resolve_sku_id(self.graph, sku)
        if self.remove:
            body = {"addLicenses": [], "removeLicenses": [sku_id]}
        else:
            body = {"addLicenses": [{"skuId": sku_id, "disabledPlans": []}], "removeLicenses": []}
        response = await self.graph.post(f"users/{target['id']}/assignLicense", body)
        result.add_row({
            "userPrincipalName": target.get("userPrincipalName"),
            "sku": sku,
            "skuId": sku_id,
            "action": "remove" if self.remove else "assign",
            "status": "planned" if response.get("_dry_run") else "updated",
        })


class RemoveLicense(AssignLicense):
    name = "remove-license"
    description = "Remove a license SKU from a user"
    remove = True
