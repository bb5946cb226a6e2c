import asyncio
import json

import httpx
import pytest

from m365_admin.graph.client import GraphAPIError


def run(coro):
    return asyncio.run(coro)


def test_get_all_pages_follows_next_link(graph, client_factory):
    next_link = "https://graph.microsoft.com/v1.0/users?$skiptoken=abc"
    graph.add("GET", "/users", {"value": [{"id": "1"}], "@odata.nextLink": next_link})
    graph.add("GET", "/users", {"value": [{"id": "2"}, {"id": "3"}]})

    async def go():
        async with client_factory() as client:
            return await client.get_all_pages("users", params={"$select": "id"})

    items = run(go())
    assert [i["id"] for i in items] == ["1", "2", "3"]
    first, second = graph.calls("GET", "/users")
    assert first.url.params["$top"] == "999"
    assert first.url.params["$select"] == "id"
    assert second.url.params["$skiptoken"] == "abc"


def test_skip_top_leaves_params_alone(graph, client_factory):
    graph.add("GET", "/subscribedSkus", {"value": []})

    async def go():
        async with client_factory() as client:
            return await client.get_all_pages("subscribedSkus", skip_top=True)

    run(go())
    assert "$top" not in graph.calls("GET")[0].url.params


def test_retries_throttled_requests(graph, client_factory):
    graph.add("GET", "/me", status=429, json_body={}, headers={"Retry-After": "0"})
    graph.add("GET", "/me", {"id": "me"})

    async def go():
        async with client_factory() as client:
            data = await client.get("me")
            return data, client.get_stats()

    data, stats = run(go())
    assert data == {"id": "me"}
    assert stats["total_requests"] == 2
    assert stats["throttle_events"] == 1


def test_get_404_returns_not_found_marker(graph, client_factory):
    async def go():
        async with client_factory() as client:
            return await client.get("users/missing@contoso.com")

    assert run(go())["_not_found"] is True


def test_forbidden_page_raises_403(graph, client_factory):
    graph.add("GET", "/auditLogs/directoryAudits", status=403,
              json_body={"error": {"message": "Insufficient privileges"}})

    async def go():
        async with client_factory() as client:
            return await client.get_all_pages("auditLogs/directoryAudits")

    with pytest.raises(GraphAPIError) as exc:
        run(go())
    assert exc.value.status_code == 403
    assert "Insufficient privileges" in exc.value.message


def test_write_errors_raise(graph, client_factory):
    graph.add("PATCH", "/users/u1", status=400, json_body={"error": {"message": "Invalid property"}})

    async def go():
        async with client_factory() as client:
            return await client.patch("users/u1", {"foo": "bar"})

    with pytest.raises(GraphAPIError) as exc:
        run(go())
    assert exc.value.status_code == 400


def test_dry_run_records_writes_without_sending(graph, client_factory):
    graph.add("GET", "/users/u1", {"id": "u1"})

    async def go():
        async with client_factory(dry_run=True) as client:
            read = await client.get("users/u1")
            write = await client.patch("users/u1", {"department": "Sales"})
            return read, write, client.guard.planned_changes

    read, write, planned = run(go())
    assert read == {"id": "u1"}
    assert write["_dry_run"] is True
    assert write["method"] == "PATCH"
    assert len(planned) == 1
    assert planned[0]["body"] == {"department": "Sales"}
    assert graph.calls("PATCH") == []


def test_batch_get_keeps_input_order(graph, client_factory):
    def batch_handler(request):
        reqs = json.loads(request.content)["requests"]
        # Answer in reverse order; the second request fails
        responses = []
        for r in reversed(reqs):
            if r["id"] == "1":
                responses.append({"id": r["id"], "status": 404, "body": {"error": {"message": "gone"}}})
            else:
                responses.append({"id": r["id"], "status": 200, "body": {"url": r["url"]}})
        return httpx.Response(200, json={"responses": responses})

    graph.add("POST", "/$batch", handler=batch_handler)

    async def go():
        async with client_factory(dry_run=True) as client:
            return await client.batch_get(["users/a", "/users/b", "users/c"])

    results = run(go())
    assert results[0] == {"url": "/users/a"}
    assert results[1]["_error"] is True
    assert results[1]["status"] == 404
    assert results[2] == {"url": "/users/c"}


def test_get_text_decodes_bom(graph, client_factory):
    graph.add("GET", "/reports/getMailboxUsageDetail(period='D7')",
              content="\ufeffUser Principal Name,Storage Used (Byte)\r\na@x.com,10\r\n".encode("utf-8"))

    async def go():
        async with client_factory() as client:
            return await client.get_text("reports/getMailboxUsageDetail(period='D7')")

    text = run(go())
    assert text.startswith("User Principal Name")


def test_get_text_error_raises(graph, client_factory):
    graph.add("GET", "/reports/getMailboxUsageDetail(period='D7')", status=400,
              json_body={"error": {"message": "bad period"}})

    async def go():
        async with client_factory() as client:
            return await client.get_text("reports/getMailboxUsageDetail(period='D7')")

    with pytest.raises(GraphAPIError):
        run(go())


def test_write_still_throttled_after_retries_raises(graph, client_factory):
    graph.add("PATCH", "/users/u1", status=429, json_body={"error": {"message": "Too many requests"}})

    async def go():
        async with client_factory() as client:
            return await client.patch("users/u1", {"department": "Sales"})

    with pytest.raises(GraphAPIError) as exc:
        run(go())
    assert exc.value.status_code == 429
    assert len(graph.calls("PATCH", "/users/u1")) == 6


def test_get_still_throttled_returns_marker(graph, client_factory):
    graph.add("GET", "/me", status=503, json_body={})

    async def go():
        async with client_factory() as client:
            return await client.get("me")

    data = run(go())
    assert data["_max_retries_exceeded"] is True
    assert data["_status"] == 503


def test_throttled_page_raises_instead_of_truncating(graph, client_factory):
    next_link = "https://graph.microsoft.com/v1.0/users?$skiptoken=abc"
    graph.add("GET", "/users", {"value": [{"id": "1"}], "@odata.nextLink": next_link})
    graph.add("GET", "/users", status=429, json_body={})

    async def go():
        async with client_factory() as client:
            return await client.get_all_pages("users")

    with pytest.raises(GraphAPIError) as exc:
        run(go())
    assert exc.value.status_code == 429
