import pytest

from m365_admin.operations.base import OperationError
from m365_admin.operations.groups import (
    AddGroupMember,
    CreateGroup,
    DeleteGroup,
    ListGroupMembers,
    ListGroups,
    RemoveGroupMember,
    group_kind,
    mail_nickname_from,
)

GROUP_ID = "11111111-2222-3333-4444-555555555555"
GROUP = {"id": GROUP_ID, "displayName": "Sales Team", "groupTypes": ["Unified"]}
USER = {"id": "u1", "displayName": "Jane Doe", "userPrincipalName": "jane@contoso.com"}


def test_mail_nickname_from_display_name():
    assert mail_nickname_from("Sales & Marketing (EU)") == "Sales-Marketing-EU"
    with pytest.raises(OperationError):
        mail_nickname_from("***")


@pytest.mark.parametrize("group,kind", [
    ({"groupTypes": ["Unified"]}, "m365"),
    ({"groupTypes": [], "mailEnabled": True, "securityEnabled": False}, "distribution"),
    ({"groupTypes": [], "mailEnabled": False, "securityEnabled": True}, "security"),
])
def test_group_kind(group, kind):
    assert group_kind(group) == kind


def test_list_groups_by_type(graph, run_op):
    graph.add("GET", "/groups", {"value": [GROUP]})
    result = run_op(ListGroups, kind="m365")
    assert result.rows[0]["kind"] == "m365"
    params = graph.calls("GET", "/groups")[0].url.params
    assert params["$filter"] == "groupTypes/any(c:c eq 'Unified')"
    assert params["$count"] == "true"


def test_create_m365_group_with_owner(graph, run_op):
    graph.add("GET", "/users/jane@contoso.com", USER)
    graph.add("POST", "/groups", {"id": "new-group"}, status=201)
    result = run_op(CreateGroup, display_name="Project X", kind="m365", owners=["jane@contoso.com"])
    assert result.ok, result.metadata["errors"]
    body = graph.bodies("POST", "/groups")[0]
    assert body["mailNickname"] == "Project-X"
    assert body["groupTypes"] == ["Unified"]
    assert body["mailEnabled"] is True and body["securityEnabled"] is False
    assert body["owners@odata.bind"] == ["https://graph.microsoft.com/v1.0/directoryObjects/u1"]
    assert result.rows[0]["status"] == "created"


def test_group_lookup_by_name(graph, run_op):
    graph.add("GET", "/groups", {"value": [GROUP]})
    graph.add("DELETE", f"/groups/{GROUP_ID}", status=204)
    result = run_op(DeleteGroup, group="Sales Team")
    assert result.ok
    assert graph.calls("GET", "/groups")[0].url.params["$filter"] == "displayName eq 'Sales Team'"
    assert result.rows[0]["status"] == "deleted"


def test_ambiguous_group_name(graph, run_op):
    graph.add("GET", "/groups", {"value": [GROUP, {**GROUP, "id": "other"}]})
    result = run_op(DeleteGroup, group="Sales Team")
    assert "ambiguous" in result.metadata["errors"][0]
    assert graph.calls("DELETE") == []


def test_list_transitive_members(graph, run_op):
    graph.add("GET", f"/groups/{GROUP_ID}", GROUP)
    graph.add("GET", f"/groups/{GROUP_ID}/transitiveMembers", {"value": [
        {"@odata.type": "#microsoft.graph.user", **USER},
    ]})
    result = run_op(ListGroupMembers, group=GROUP_ID, transitive=True)
    assert result.rows[0]["objectType"] == "user"
    assert result.rows[0]["group"] == "Sales Team"


def test_add_and_remove_member(graph, run_op):
    graph.add("GET", f"/groups/{GROUP_ID}", GROUP)
    graph.add("GET", "/users/jane@contoso.com", USER)
    graph.add("POST", f"/groups/{GROUP_ID}/members/$ref", status=204)
    graph.add("DELETE", f"/groups/{GROUP_ID}/owners/u1/$ref", status=204)

    added = run_op(AddGroupMember, group=GROUP_ID, user="jane@contoso.com")
    removed = run_op(RemoveGroupMember, group=GROUP_ID, user="jane@contoso.com", as_owner=True)
    assert graph.bodies("POST")[0] == {"@odata.id": "https://graph.microsoft.com/v1.0/directoryObjects/u1"}
    assert added.rows[0]["status"] == "added"
    assert removed.rows[0]["role"] == "owner"
    assert removed.rows[0]["status"] == "removed"
