import pytest

from m365_admin.safety import ChangeGuard, WriteBlocked

BASE = "https://graph.microsoft.com/v1.0"


@pytest.mark.parametrize("method,url,expected", [
    ("GET", f"{BASE}/users", False),
    ("PATCH", f"{BASE}/users/u1", True),
    ("DELETE", f"{BASE}/groups/g1", True),
    ("PUT", f"{BASE}/users/u1/manager/$ref", True),
    ("POST", f"{BASE}/users", True),
    ("POST", f"{BASE}/$batch", False),
    ("POST", f"{BASE}/directoryObjects/microsoft.graph.getByIds", False),
    ("POST", f"{BASE}/users/u1/getMemberGroups?x=1", False),
])
def test_is_write(method, url, expected):
    assert ChangeGuard.is_write(method, url) is expected


def test_live_mode_sends_and_records_applied():
    guard = ChangeGuard()
    assert guard.validate_request("PATCH", f"{BASE}/users/u1", {"a": 1}) is True
    assert guard.planned_changes == []
    assert guard.applied_changes[0]["method"] == "PATCH"


def test_dry_run_captures_writes():
    guard = ChangeGuard(dry_run=True)
    assert guard.validate_request("GET", f"{BASE}/users") is True
    assert guard.validate_request("delete", f"{BASE}/users/u1") is False
    assert guard.planned_changes[0]["method"] == "DELETE"


def test_require_live():
    ChangeGuard().require_live("install")
    with pytest.raises(WriteBlocked):
        ChangeGuard(dry_run=True).require_live("install")


def test_banner_only_in_dry_run(capsys):
    ChangeGuard().print_banner()
    assert capsys.readouterr().out == ""
    ChangeGuard(dry_run=True).print_banner()
    assert "DRY RUN" in capsys.readouterr().out
