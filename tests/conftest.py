import asyncio
import json
from urllib.parse import unquote

import httpx
import pytest

from m365_admin.graph.client import GraphClient
from m365_admin.safety.guardian import ChangeGuard


class GraphMock:
    """
    Route table for httpx.MockTransport.

    Routes are keyed by (METHOD, path) with the /v1.0 or /beta prefix removed.
    A route holds a queue of responses; the last one repeats. Unrouted GETs
    answer 404 so lookups behave like a missing object.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, path, json_body=None, status=200, headers=None, content=None, handler=None):
        if handler is None:
            def handler(request, _status=status, _json=json_body, _headers=headers, _content=content):
                if _content is not None:
                    return httpx.Response(_status, content=_content, headers=_headers)
                if _json is None and _status in (202, 204):
                    return httpx.Response(_status, headers=_headers)
                return httpx.Response(_status, json=_json if _json is not None else {}, headers=_headers)
        self.routes.setdefault((method.upper(), path), []).append(handler)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = unquote(request.url.path)
        for prefix in ("/v1.0", "/beta"):
            if path.startswith(prefix + "/"):
                path = path[len(prefix):]
                break
        self.requests.append(request)
        queue = self.routes.get((request.method, path))
        if not queue:
            return httpx.Response(404, json={"error": {"code": "NotFound", "message": f"no route {path}"}})
        route = queue.pop(0) if len(queue) > 1 else queue[0]
        return route(request)

    def calls(self, method, path=None):
        found = []
        for r in self.requests:
            p = unquote(r.url.path).replace("/v1.0", "", 1)
            if r.method == method and (path is None or p == path):
                found.append(r)
        return found

    def bodies(self, method, path=None):
        return [json.loads(r.content) if r.content else None for r in self.calls(method, path)]


@pytest.fixture
def graph():
    return GraphMock()


@pytest.fixture
def client_factory(graph):
    def make(dry_run=False):
        return GraphClient(
            "test-token",
            guard=ChangeGuard(dry_run=dry_run),
            transport=httpx.MockTransport(graph.handler),
            initial_backoff=0,
        )
    return make


@pytest.fixture
def run_op(client_factory):
    """Execute an operation class against the mock and return its OperationResult."""
    def run(op_cls, config=None, dry_run=False, **params):
        async def go():
            async with client_factory(dry_run=dry_run) as client:
                return await op_cls(graph=client, config=config).execute(**params)
        return asyncio.run(go())
    return run
