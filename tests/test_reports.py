from datetime import datetime, timedelta, timezone

from m365_admin.operations.reports import (
    DirectoryAudit,
    GuestUsers,
    InactiveUsers,
    LicenseReport,
    MfaStatus,
    SecureScore,
    SecurityAlerts,
    UsageReport,
    parse_graph_datetime,
    parse_report_csv,
)


def iso(days_ago):
    return (datetime.now(timezone.utc) - timedelta(days=days_ago)).strftime("%Y-%m-%dT%H:%M:%SZ")


def test_parse_graph_datetime_is_aware():
    assert parse_graph_datetime("2024-01-01T00:00:00Z").tzinfo is not None
    assert parse_graph_datetime("2024-01-01T00:00:00").tzinfo is not None
    assert parse_graph_datetime("garbage") is None


def test_parse_report_csv_handles_bom_and_blank_rows():
    rows = parse_report_csv("\ufeffReport Refresh Date,User Principal Name\n2024-01-01,a@x.com\n,\n")
    assert rows == [{"Report Refresh Date": "2024-01-01", "User Principal Name": "a@x.com"}]
    assert parse_report_csv("") == []


def test_license_report_computes_available(graph, run_op):
    graph.add("GET", "/subscribedSkus", {"value": [
        {"skuPartNumber": "ENTERPRISEPACK", "skuId": "s", "consumedUnits": 8,
         "prepaidUnits": {"enabled": 10, "suspended": 0, "warning": 0}},
    ]})
    result = run_op(LicenseReport)
    assert result.rows[0]["available"] == 2
    assert result.data["total_consumed"] == 8


def test_inactive_users_threshold(graph, run_op):
    graph.add("GET", "/users", {"value": [
        {"userPrincipalName": "active@x.com", "accountEnabled": True,
         "signInActivity": {"lastSignInDateTime": iso(5)}},
        {"userPrincipalName": "stale@x.com", "accountEnabled": True,
         "signInActivity": {"lastSignInDateTime": iso(120)}},
        {"userPrincipalName": "never@x.com", "accountEnabled": True},
        {"userPrincipalName": "blocked@x.com", "accountEnabled": False},
    ]})
    result = run_op(InactiveUsers, days=90)
    upns = [r["userPrincipalName"] for r in result.rows]
    assert upns == ["stale@x.com", "never@x.com"]
    assert result.rows[0]["daysInactive"] in (119, 120)
    assert result.rows[1]["daysInactive"] == "never"


def test_mfa_status_unregistered_only(graph, run_op):
    graph.add("GET", "/reports/authenticationMethods/userRegistrationDetails", {"value": [
        {"userPrincipalName": "a@x.com", "isMfaRegistered": True, "methodsRegistered": ["microsoftAuthenticatorPush"]},
        {"userPrincipalName": "b@x.com", "isMfaRegistered": False, "methodsRegistered": []},
    ]})
    result = run_op(MfaStatus, unregistered_only=True)
    assert [r["userPrincipalName"] for r in result.rows] == ["b@x.com"]
    assert result.data["summary"] == {"users": 2, "mfa_registered": 1, "mfa_unregistered": 1}


def test_usage_report_parses_csv(graph, run_op):
    graph.add("GET", "/reports/getTeamsUserActivityUserDetail(period='D7')",
              content=b"User Principal Name,Team Chat Message Count\r\na@x.com,4\r\n")
    result = run_op(UsageReport, report="teams-activity", period="D7")
    assert result.ok, result.metadata["errors"]
    assert result.rows == [{"User Principal Name": "a@x.com", "Team Chat Message Count": "4"}]


def test_usage_report_rejects_bad_period(graph, run_op):
    result = run_op(UsageReport, report="teams-activity", period="D1")
    assert "Invalid period" in result.metadata["errors"][0]


def test_secure_score_summary(graph, run_op):
    graph.add("GET", "/security/secureScores", {"value": [{
        "currentScore": 45, "maxScore": 90, "createdDateTime": "2024-01-01T00:00:00Z",
        "controlScores": [{"controlName": "MFARegistrationV2", "score": 9}],
    }]})
    result = run_op(SecureScore)
    assert result.data["summary"]["percentage"] == 50.0
    assert result.rows[0]["controlName"] == "MFARegistrationV2"


def test_directory_audit_filter_and_actor(graph, run_op):
    graph.add("GET", "/auditLogs/directoryAudits", {"value": [{
        "activityDisplayName": "Add user", "result": "success",
        "initiatedBy": {"user": {"userPrincipalName": "admin@x.com"}},
        "targetResources": [{"userPrincipalName": "new@x.com"}],
    }]})
    result = run_op(DirectoryAudit, days=1, activity="Add user")
    assert result.rows[0]["initiatedBy"] == "admin@x.com"
    assert result.rows[0]["targets"] == "new@x.com"
    assert "activityDisplayName eq 'Add user'" in graph.calls("GET")[0].url.params["$filter"]


def test_guest_users_age(graph, run_op):
    graph.add("GET", "/users", {"value": [
        {"userPrincipalName": "ext_a#EXT#@x.com", "externalUserState": "PendingAcceptance",
         "createdDateTime": iso(10)},
        {"userPrincipalName": "ext_b#EXT#@x.com"},
    ]})
    result = run_op(GuestUsers)
    assert result.rows[0]["externalUserState"] == "PendingAcceptance"
    assert result.rows[0]["ageDays"] in (9, 10)
    assert result.rows[1]["ageDays"] is None
    assert graph.calls("GET", "/users")[0].url.params["$filter"] == "userType eq 'Guest'"


def test_security_alerts_severity_filter(graph, run_op):
    graph.add("GET", "/security/alerts_v2", {"value": [
        {"id": "a1", "title": "Suspicious sign-in", "severity": "high", "status": "new"},
    ]})
    result = run_op(SecurityAlerts, severity="high", days=7)
    assert result.rows[0]["title"] == "Suspicious sign-in"
    query = graph.calls("GET", "/security/alerts_v2")[0].url.params["$filter"]
    assert query.startswith("createdDateTime ge ")
    assert query.endswith(" and severity eq 'high'")


def test_security_alerts_rejects_unknown_severity(graph, run_op):
    result = run_op(SecurityAlerts, severity="critical")
    assert "Invalid severity" in result.metadata["errors"][0]
