"""
Report operations — licensing, inactivity, guests, MFA registration,
usage report CSVs, secure score, security alerts and directory audit.
"""

from __future__ import annotations

import csv
import io
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..config import USAGE_PERIODS
from ..reporting.rows import pick
from .base import Operation, OperationError, OperationResult, arg, odata_quote

logger = logging.getLogger("m365_admin.operations.reports")

USAGE_REPORTS = {
    "office365-active-users": "getOffice365ActiveUserDetail",
    "email-activity": "getEmailActivityUserDetail",
    "mailbox-usage": "getMailboxUsageDetail",
    "teams-activity": "getTeamsUserActivityUserDetail",
    "sharepoint-usage": "getSharePointSiteUsageDetail",
    "onedrive-usage": "getOneDriveUsageAccountDetail",
}

ALERT_SEVERITIES = ("high", "medium", "low", "informational")


def parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a Graph ISO timestamp ("...Z") into an aware datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_since(value: Optional[str], now: Optional[datetime] = None) -> Optional[int]:
    parsed = parse_graph_datetime(value)
    if not parsed:
        return None
    return ((now or datetime.now(timezone.utc)) - parsed).days


class LicenseReport(Operation):
    name = "license-report"
    description = "Purchased, consumed and available units per license SKU"
    report_name = "license_report"

    async def run(self, result: OperationResult):
        skus = await self.safe_get_all("subscribedSkus", result, skip_top=True)
        for s in skus:
            enabled = (s.get("prepaidUnits") or {}).get("enabled", 0) or 0
            consumed = s.get("consumedUnits", 0) or 0
            result.add_row({
                "skuPartNumber": s.get("skuPartNumber"),
                "skuId": s.get("skuId"),
                "capabilityStatus": s.get("capabilityStatus"),
                "enabled": enabled,
                "consumed": consumed,
                "available": enabled - consumed,
                "suspended": (s.get("prepaidUnits") or {}).get("suspended", 0),
                "warning": (s.get("prepaidUnits") or {}).get("warning", 0),
            })
        result.add_data("total_consumed", sum(r["consumed"] for r in result.rows))


class InactiveUsers(Operation):
    name = "inactive-users"
    description = "Users with no sign-in in the last N days (or never)"
    report_name = "inactive_users"
    arguments = [
        arg("--days", type=int, default=None, help="Inactivity threshold in days (default: config, 90)"),
        arg("--include-disabled", action="store_true", help="Include blocked accounts"),
    ]

    async def run(self, result: OperationResult, days: Optional[int] = None, include_disabled: bool = False):
        threshold = days if days is not None else self.config.inactive_days
        if threshold < 1:
            raise OperationError("--days must be a positive number")
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(days=threshold)

        users = await self.safe_get_all(
            "users",
            result,
            params={"$select": "id,displayName,userPrincipalName,accountEnabled,userType,"
                               "createdDateTime,signInActivity"},
        )
        for u in users:
            if not include_disabled and u.get("accountEnabled") is False:
                continue
            sign_in = u.get("signInActivity") or {}
            last = sign_in.get("lastSignInDateTime")
            last_dt = parse_graph_datetime(last)
            if last_dt and last_dt >= cutoff:
                continue
            result.add_row({
                "userPrincipalName": u.get("userPrincipalName"),
                "displayName": u.get("displayName"),
                "userType": u.get("userType"),
                "accountEnabled": u.get("accountEnabled"),
                "lastSignInDateTime": last or "never",
                "lastNonInteractiveSignInDateTime": sign_in.get("lastNonInteractiveSignInDateTime"),
                "daysInactive": days_since(last, now) if last_dt else "never",
                "createdDateTime": u.get("createdDateTime"),
            })
        result.add_data("threshold_days", threshold)
        result.add_data("users_scanned", len(users))


class GuestUsers(Operation):
    name = "guest-users"
    description = "Guest accounts with invitation state and age"
    report_name = "guest_users"

    async def run(self, result: OperationResult):
        guests = await self.safe_get_all(
            "users",
            result,
            params={
                "$filter": "userType eq 'Guest'",
                "$select": "id,displayName,mail,userPrincipalName,accountEnabled,"
                           "createdDateTime,externalUserState,externalUserStateChangeDateTime",
            },
        )
        for g in guests:
            row = pick(g, {
                "displayName": "displayName",
                "mail": "mail",
                "userPrincipalName": "userPrincipalName",
                "accountEnabled": "accountEnabled",
                "externalUserState": "externalUserState",
                "createdDateTime": "createdDateTime",
            })
            row["ageDays"] = days_since(g.get("createdDateTime"))
            result.add_row(row)


class MfaStatus(Operation):
    name = "mfa-status"
    description = "MFA registration status per user"
    report_name = "mfa_status"
    arguments = [
        arg("--unregistered-only", action="store_true", help="Only users without MFA registered"),
    ]

    async def run(self, result: OperationResult, unregistered_only: bool = False):
        details = await self.safe_get_all(
            "reports/authenticationMethods/userRegistrationDetails", result,
        )
        registered = 0
        for d in details:
            if d.get("isMfaRegistered"):
                registered += 1
                if unregistered_only:
                    continue
            result.add_row({
                "userPrincipalName": d.get("userPrincipalName"),
                "userDisplayName": d.get("userDisplayName"),
                "isAdmin": d.get("isAdmin"),
                "isMfaRegistered": d.get("isMfaRegistered"),
                "isMfaCapable": d.get("isMfaCapable"),
                "isPasswordlessCapable": d.get("isPasswordlessCapable"),
                "defaultMfaMethod": d.get("defaultMfaMethod"),
                "methodsRegistered": "; ".join(d.get("methodsRegistered") or []),
            })
        result.add_data("summary", {
            "users": len(details),
            "mfa_registered": registered,
            "mfa_unregistered": len(details) - registered,
        })


class UsageReport(Operation):
    name = "usage-report"
    description = "Download a Microsoft 365 usage report (CSV) for a period"
    report_name = "usage_report"
    arguments = [
        arg("--report", required=True, choices=sorted(USAGE_REPORTS), help="Usage report to fetch"),
        arg("--period", choices=USAGE_PERIODS, default=None, help="Reporting period (default: D30)"),
    ]

    async def run(self, result: OperationResult, report: str = "", period: Optional[str] = None):
        if report not in USAGE_REPORTS:
            raise OperationError(f"Unknown usage report '{report}'. Use one of: {', '.join(USAGE_REPORTS)}")
        period = period or self.config.usage_period
        if period not in USAGE_PERIODS:
            raise OperationError(f"Invalid period '{period}'. Use one of: {', '.join(USAGE_PERIODS)}")

        text = await self.graph.get_text(f"reports/{USAGE_REPORTS[report]}(period='{period}')")
        rows = parse_report_csv(text)
        result.add_rows(rows)
        result.add_data("report", report)
        result.add_data("period", period)


def parse_report_csv(text: str) -> list[dict]:
    """Parse a Graph usage-report CSV body into rows (BOM and blank lines tolerated)."""
    text = text.lstrip("\ufeff")
    if not text.strip():
        return []
    reader = csv.DictReader(io.StringIO(text))
    return [dict(row) for row in reader if any((v or "").strip() for v in row.values())]


class SecureScore(Operation):
    name = "secure-score"
    description = "Latest Microsoft Secure Score with per-control scores"
    report_name = "secure_score"

    async def run(self, result: OperationResult):
        data = await self.graph.get("security/secureScores", params={"$top": "1"})
        if data.get("_forbidden"):
            raise OperationError(f"Permission denied reading secure score: {data.get('_error_message')}")
        scores = data.get("value", [])
        if not scores:
            result.add_warning("No secure score snapshots returned.")
            return

        latest = scores[0]
        current = latest.get("currentScore") or 0
        maximum = latest.get("maxScore") or 0
        result.add_data("summary", {
            "createdDateTime": latest.get("createdDateTime"),
            "currentScore": current,
            "maxScore": maximum,
            "percentage": round(current / maximum * 100, 1) if maximum else 0,
            "licensedUserCount": latest.get("licensedUserCount"),
        })
        for control in latest.get("controlScores", []):
            result.add_row({
                "controlName": control.get("controlName"),
                "controlCategory": control.get("controlCategory"),
                "score": control.get("score"),
                "scoreInPercentage": control.get("scoreInPercentage"),
                "implementationStatus": control.get("implementationStatus"),
            })


class SecurityAlerts(Operation):
    name = "security-alerts"
    description = "Security alerts from Microsoft 365 Defender (alerts_v2)"
    report_name = "security_alerts"
    arguments = [
        arg("--severity", choices=ALERT_SEVERITIES, default=None, help="Only this severity"),
        arg("--days", type=int, default=30, help="Alerts created in the last N days"),
    ]

    async def run(self, result: OperationResult, severity: Optional[str] = None, days: int = 30):
        if severity and severity not in ALERT_SEVERITIES:
            raise OperationError(f"Invalid severity '{severity}'")
        since = (datetime.now(timezone.utc) - timedelta(days=days)).strftime("%Y-%m-%dT%H:%M:%SZ")
        filters = [f"createdDateTime ge {since}"]
        if severity:
            filters.append(f"severity eq '{severity}'")

        alerts = await self.safe_get_all(
            "security/alerts_v2", result, params={"$filter": " and ".join(filters)},
        )
        for a in alerts:
            result.add_row(pick(a, {
                "id": "id",
                "title": "title",
                "severity": "severity",
                "status": "status",
                "category": "category",
                "serviceSource": "serviceSource",
                "createdDateTime": "createdDateTime",
                "assignedTo": "assignedTo",
            }))


class DirectoryAudit(Operation):
    name = "directory-audit"
    description = "Directory audit log entries for the last N days"
    report_name = "directory_audit"
    arguments = [
        arg("--days", type=int, default=7, help="Look-back window in days"),
        arg("--activity", default=None, help="Only this activityDisplayName (e.g. 'Add user')"),
    ]

    async def run(self, result: OperationResult, days: int = 7, activity: Optional[str] = None):
        since = (datetime.now(timezone.utc) - timedelta(days=days)).strftime("%Y-%m-%dT%H:%M:%SZ")
        filters = [f"activityDateTime ge {since}"]
        if activity:
            filters.append(f"activityDisplayName eq '{odata_quote(activity)}'")

        entries = await self.safe_get_all(
            "auditLogs/directoryAudits", result, params={"$filter": " and ".join(filters)},
        )
        for e in entries:
            initiated = e.get("initiatedBy") or {}
            actor = (initiated.get("user") or {}).get("userPrincipalName") or \
                (initiated.get("app") or {}).get("displayName")
            result.add_row({
                "activityDateTime": e.get("activityDateTime"),
                "activityDisplayName": e.get("activityDisplayName"),
                "category": e.get("category"),
                "result": e.get("result"),
                "initiatedBy": actor,
                "targets": "; ".join(
                    t.get("userPrincipalName") or t.get("displayName") or t.get("id") or ""
                    for t in e.get("targetResources", [])
                ),
            })
