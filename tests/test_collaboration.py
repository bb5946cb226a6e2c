import pytest

from m365_admin.operations.onedrive import LargeFiles, ListDriveItems, OneDriveQuota, children_endpoint
from m365_admin.operations.sharepoint import ListSites, SiteStorage, quota_row
from m365_admin.operations.teams import ArchiveTeam, CreateChannel, CreateTeam, ListTeams

TEAM_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
TEAM = {"id": TEAM_ID, "displayName": "Project X"}
USER = {"id": "u1", "displayName": "Jane Doe", "userPrincipalName": "jane@contoso.com"}
GB = 1024 ** 3
MB = 1024 ** 2


# ── Teams ───────────────────────────────────────────────────────────────────

def test_list_teams_uses_provisioning_filter(graph, run_op):
    graph.add("GET", "/groups", {"value": [TEAM]})
    result = run_op(ListTeams)
    assert result.rows[0]["displayName"] == "Project X"
    assert "resourceProvisioningOptions" in graph.calls("GET", "/groups")[0].url.params["$filter"]


def test_create_team_binds_owner(graph, run_op):
    graph.add("GET", "/users/jane@contoso.com", USER)
    graph.add("POST", "/teams", status=202)
    result = run_op(CreateTeam, display_name="Project X", owner="jane@contoso.com")
    assert result.ok, result.metadata["errors"]
    body = graph.bodies("POST", "/teams")[0]
    assert body["template@odata.bind"].endswith("teamsTemplates('standard')")
    assert body["members"][0]["roles"] == ["owner"]
    assert body["members"][0]["user@odata.bind"].endswith("users('u1')")
    assert result.rows[0]["status"] == "provisioning"


def test_private_channel_needs_owner(graph, run_op):
    result = run_op(CreateChannel, team=TEAM_ID, display_name="Secret", membership_type="private")
    assert "needs an --owner" in result.metadata["errors"][0]


def test_archive_team_dry_run(graph, run_op):
    graph.add("GET", f"/groups/{TEAM_ID}", TEAM)
    result = run_op(ArchiveTeam, dry_run=True, team=TEAM_ID, site_read_only=True)
    assert result.rows[0]["status"] == "planned"
    planned = result.metadata["planned_changes"][0]
    assert planned["url"].endswith(f"/teams/{TEAM_ID}/archive")
    assert planned["body"] == {"shouldSetSpoSiteReadOnlyForMembers": True}


# ── SharePoint ──────────────────────────────────────────────────────────────

def test_quota_row():
    row = quota_row({"used": GB, "total": 4 * GB, "remaining": 3 * GB, "state": "normal"})
    assert row == {"usedGB": 1.0, "totalGB": 4.0, "remainingGB": 3.0, "percentUsed": 25.0, "state": "normal"}
    assert quota_row({})["percentUsed"] is None


def test_list_sites_search(graph, run_op):
    graph.add("GET", "/sites", {"value": [{"id": "s1", "displayName": "HR", "webUrl": "https://x/sites/hr"}]})
    result = run_op(ListSites, search="HR")
    assert result.rows[0]["webUrl"] == "https://x/sites/hr"
    params = graph.calls("GET", "/sites")[0].url.params
    assert params["search"] == "HR"
    assert "$top" not in params


def test_site_storage_per_library(graph, run_op):
    graph.add("GET", "/sites/s1", {"id": "s1", "displayName": "HR"})
    graph.add("GET", "/sites/s1/drives", {"value": [
        {"name": "Documents", "driveType": "documentLibrary", "quota": {"used": 2 * GB, "total": 8 * GB}},
    ]})
    result = run_op(SiteStorage, site="s1")
    assert result.rows[0]["library"] == "Documents"
    assert result.rows[0]["percentUsed"] == 25.0


def test_missing_site(graph, run_op):
    result = run_op(SiteStorage, site="nope")
    assert result.metadata["errors"] == ["Site not found: nope"]


# ── OneDrive ────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("kwargs,expected", [
    ({}, "users/u1/drive/root/children"),
    ({"path": "/Reports/2024/"}, "users/u1/drive/root:/Reports/2024:/children"),
    ({"item_id": "abc"}, "users/u1/drive/items/abc/children"),
])
def test_children_endpoint(kwargs, expected):
    assert children_endpoint("u1", **kwargs) == expected


def test_onedrive_quota_single_user(graph, run_op):
    import httpx

    graph.add("GET", "/users/jane@contoso.com", USER)
    graph.add("POST", "/$batch", handler=lambda request: httpx.Response(200, json={"responses": [
        {"id": "0", "status": 200, "body": {"quota": {"used": GB, "total": 2 * GB}, "webUrl": "https://od"}},
    ]}))
    result = run_op(OneDriveQuota, user="jane@contoso.com")
    assert result.rows[0]["userPrincipalName"] == "jane@contoso.com"
    assert result.rows[0]["percentUsed"] == 50.0


def test_list_drive_items_missing_folder(graph, run_op):
    graph.add("GET", "/users/jane@contoso.com", USER)
    result = run_op(ListDriveItems, user="jane@contoso.com", path="Nope")
    assert "Folder not found" in result.metadata["errors"][0]


def test_large_files_walks_folders_and_sorts(graph, run_op):
    graph.add("GET", "/users/jane@contoso.com", USER)
    graph.add("GET", "/users/u1/drive/root/children", {"value": [
        {"id": "f1", "name": "Videos", "folder": {"childCount": 2}},
        {"id": "a", "name": "small.txt", "size": 10},
        {"id": "b", "name": "big.iso", "size": 200 * MB},
    ]})
    graph.add("GET", "/users/u1/drive/items/f1/children", {"value": [
        {"id": "c", "name": "huge.mp4", "size": 500 * MB},
        {"id": "f2", "name": "Deeper", "folder": {"childCount": 1}},
    ]})
    result = run_op(LargeFiles, user="jane@contoso.com", min_size_mb=100, max_depth=1)
    assert [r["path"] for r in result.rows] == ["/Videos/huge.mp4", "/big.iso"]
    # Deeper sits beyond max_depth and is never listed
    assert result.data["folders_scanned"] == 2
    assert not graph.calls("GET", "/users/u1/drive/items/f2/children")


def test_list_drive_items_permission_denied(graph, run_op):
    graph.add("GET", "/users/jane@contoso.com", USER)
    graph.add("GET", "/users/u1/drive/root/children", status=403,
              json_body={"error": {"message": "Access denied"}})
    result = run_op(ListDriveItems, user="jane@contoso.com")
    assert not result.ok
    assert result.rows == []
    assert "Permission denied" in result.metadata["errors"][0]
