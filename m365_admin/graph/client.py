"""
Async client for Microsoft Graph.

Every call goes through the ChangeGuard first, so a dry run never sends a
write. Reads that fail softly come back as marker dicts instead of raising:

    {"value": [], "_not_found": True}                     GET 404
    {"value": [], "_forbidden": True, "_error_message": m}  GET 403
    {"value": [], "_max_retries_exceeded": True, "_status": s}  GET still throttled
    {"_dry_run": True, "method": ..., "url": ...}         write under dry run

Anything else outside 2xx raises GraphAPIError.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, AsyncGenerator, Optional

import httpx

from ..config import (
    BACKOFF_MULTIPLIER,
    DEFAULT_PAGE_SIZE,
    GRAPH_API_VERSION,
    GRAPH_BASE_URL,
    GRAPH_BATCH_LIMIT,
    GRAPH_BETA_VERSION,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    MAX_CONCURRENT_REQUESTS,
    MAX_PAGES_PER_ENDPOINT,
    MAX_RETRIES,
)
from ..safety.guardian import ChangeGuard

logger = logging.getLogger("m365_admin.graph")

RETRYABLE_STATUS = (429, 503, 504)
TRANSIENT_ERRORS = (httpx.TimeoutException, httpx.ConnectError)


class GraphAPIError(Exception):
    """A Graph call failed in a way the caller has to handle."""

    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.message = message
        self.url = url
        super().__init__(f"Graph {status_code} on {url}: {message}")


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json() if response.content else {}
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"].get("message") or response.text[:200]
    return response.text[:200]


def _batch_payload(endpoints: list[str]) -> dict:
    """JSON body for one $batch call; request ids are list positions."""
    return {
        "requests": [
            {"id": str(i), "method": "GET", "url": "/" + ep.lstrip("/")}
            for i, ep in enumerate(endpoints)
        ]
    }


def _retry_delay(response: httpx.Response, backoff: float) -> float:
    """Seconds to wait: Retry-After when Graph sends one, never less than backoff."""
    try:
        retry_after = float(response.headers.get("Retry-After", 0))
    except ValueError:
        retry_after = 0.0
    return max(retry_after, backoff)


@dataclass
class ClientStats:
    total_requests: int = 0
    throttle_events: int = 0


class GraphClient:
    """
    Use as an async context manager:

        async with GraphClient(token, guard=guard) as graph:
            users = await graph.get_all_pages("users")

    Requests share one semaphore of MAX_CONCURRENT_REQUESTS. 429/503/504 and
    connection timeouts are retried with exponential backoff.
    """

    def __init__(
        self,
        access_token: str,
        guard: Optional[ChangeGuard] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
    ):
        self.access_token = access_token
        self.guard = guard or ChangeGuard()
        self.stats = ClientStats()
        self._transport = transport
        self._initial_backoff = initial_backoff
        self._semaphore = asyncio.Semaphore(MAX_CONCURRENT_REQUESTS)
        self._http: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "GraphClient":
        self._http = httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Accept": "application/json",
                # $count and $search on directory objects need this
                "ConsistencyLevel": "eventual",
            },
            timeout=httpx.Timeout(60.0, connect=30.0),
            limits=httpx.Limits(
                max_connections=MAX_CONCURRENT_REQUESTS * 2,
                max_keepalive_connections=MAX_CONCURRENT_REQUESTS,
            ),
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    @staticmethod
    def url_for(endpoint: str, beta: bool = False) -> str:
        """Absolute Graph URL; absolute inputs (nextLinks) pass through."""
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        version = GRAPH_BETA_VERSION if beta else GRAPH_API_VERSION
        return f"{GRAPH_BASE_URL}/{version}/{endpoint.lstrip('/')}"

    def get_stats(self) -> dict:
        stats = asdict(self.stats)
        stats["planned_changes"] = len(self.guard.planned_changes)
        return stats

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(self, endpoint: str, params: Optional[dict] = None, beta: bool = False) -> dict:
        url = self.url_for(endpoint, beta)
        self.guard.validate_request("GET", url)
        return await self._call("GET", url, params=params)

    async def get_text(self, endpoint: str, params: Optional[dict] = None, beta: bool = False) -> str:
        """Body of a non-JSON GET (usage report CSVs), BOM stripped."""
        url = self.url_for(endpoint, beta)
        self.guard.validate_request("GET", url)
        async with self._semaphore:
            response = await self._send("GET", url, params=params)
        if response.status_code != 200:
            raise GraphAPIError(response.status_code, _error_message(response), url)
        return response.content.decode("utf-8-sig")

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        top: Optional[int] = None,
        skip_top: bool = False,
    ) -> list[dict]:
        """Every item of a collection. Pass skip_top for endpoints that reject $top."""
        return [
            item async for item in self.get_all_pages_stream(endpoint, params, beta, top, skip_top)
        ]

    async def get_all_pages_stream(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        top: Optional[int] = None,
        skip_top: bool = False,
    ) -> AsyncGenerator[dict, None]:
        """
        Yield items page by page, following @odata.nextLink.
        A 403, or a page still throttled after every retry, raises
        GraphAPIError so a short result is never mistaken for a complete one.
        """
        query = dict(params or {})
        if not skip_top:
            query.setdefault("$top", str(min(top or DEFAULT_PAGE_SIZE, DEFAULT_PAGE_SIZE)))

        url: Optional[str] = self.url_for(endpoint, beta)
        page_params: Optional[dict] = query
        for _ in range(MAX_PAGES_PER_ENDPOINT):
            self.guard.validate_request("GET", url)
            page = await self._call("GET", url, params=page_params)
            if page.get("_forbidden"):
                raise GraphAPIError(403, page.get("_error_message") or "Forbidden", url)
            if page.get("_max_retries_exceeded"):
                raise GraphAPIError(page["_status"], f"still throttled after {MAX_RETRIES} retries", url)
            for item in page.get("value", []):
                yield item

            url = page.get("@odata.nextLink")
            if not url:
                return
            # The nextLink already carries the query
            page_params = None

        logger.warning(f"Stopped paging {endpoint} after {MAX_PAGES_PER_ENDPOINT} pages")

    async def batch_get(self, endpoints: list[str], beta: bool = False) -> list[dict]:
        """
        GET many endpoints through $batch, GRAPH_BATCH_LIMIT per call.
        The result list lines up with `endpoints`. Failed sub-requests are
        {"_error": True, "status": ..., "_error_message": ...}.
        """
        batch_url = self.url_for("$batch", beta)
        results: list[dict] = []
        for start in range(0, len(endpoints), GRAPH_BATCH_LIMIT):
            chunk = endpoints[start:start + GRAPH_BATCH_LIMIT]
            payload = _batch_payload(chunk)
            self.guard.validate_request("POST", batch_url, payload)
            reply = await self._call("POST", batch_url, json_body=payload)

            answers = {str(r.get("id")): r for r in reply.get("responses", [])}
            for i, endpoint in enumerate(chunk):
                answer = answers.get(str(i)) or {"status": 0}
                status = answer.get("status")
                body = answer.get("body") or {}
                if status == 200:
                    results.append(body)
                    continue
                message = (body.get("error") or {}).get("message", "no response")
                log = logger.debug if status == 403 else logger.warning
                log(f"$batch GET {endpoint} -> {status}: {message}")
                results.append({"_error": True, "status": status, "_error_message": message})
        return results

    # ── Writes ──────────────────────────────────────────────────────────────

    async def post(self, endpoint: str, body: Optional[dict] = None, beta: bool = False) -> dict:
        return await self._write("POST", endpoint, body, beta)

    async def patch(self, endpoint: str, body: dict, beta: bool = False) -> dict:
        return await self._write("PATCH", endpoint, body, beta)

    async def put(self, endpoint: str, body: dict, beta: bool = False) -> dict:
        return await self._write("PUT", endpoint, body, beta)

    async def delete(self, endpoint: str, beta: bool = False) -> dict:
        return await self._write("DELETE", endpoint, None, beta)

    async def _write(self, method: str, endpoint: str, body: Optional[dict], beta: bool) -> dict:
        url = self.url_for(endpoint, beta)
        if not self.guard.validate_request(method, url, body):
            return {"_dry_run": True, "method": method, "url": url}
        return await self._call(method, url, json_body=body)

    # ── Transport ───────────────────────────────────────────────────────────

    async def _call(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict:
        async with self._semaphore:
            response = await self._send(method, url, params=params, json_body=json_body)
        return self._decode(method, url, response)

    def _decode(self, method: str, url: str, response: httpx.Response) -> dict[str, Any]:
        status = response.status_code
        if status == 204:
            return {}
        if 200 <= status < 300:
            if not response.content.strip():
                return {"value": []} if method == "GET" else {}
            try:
                return response.json()
            except ValueError:
                logger.debug(f"{status} from {url} was not JSON")
                return {"value": []}

        if method == "GET" and status == 404:
            logger.debug(f"Not found: {url}")
            return {"value": [], "_not_found": True}
        if method == "GET" and status == 403:
            message = _error_message(response)
            logger.warning(f"Permission denied on {url}: {message}")
            return {"value": [], "_forbidden": True, "_error_message": message}
        if method == "GET" and status in RETRYABLE_STATUS:
            logger.warning(f"Giving up on {url} after {MAX_RETRIES} retries ({status})")
            return {"value": [], "_max_retries_exceeded": True, "_status": status}
        raise GraphAPIError(status, _error_message(response), url)

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> httpx.Response:
        """One HTTP exchange, retried on throttling and dropped connections."""
        if self._http is None:
            raise RuntimeError("GraphClient must be used inside 'async with'.")

        backoff = self._initial_backoff
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self._http.request(method, url, params=params, json=json_body)
            except TRANSIENT_ERRORS as e:
                if attempt > MAX_RETRIES:
                    raise
                logger.warning(f"{type(e).__name__} on {method} {url} (attempt {attempt})")
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                continue

            self.stats.total_requests += 1
            if response.status_code not in RETRYABLE_STATUS or attempt > MAX_RETRIES:
                return response

            self.stats.throttle_events += 1
            delay = _retry_delay(response, backoff)
            logger.warning(
                f"Graph answered {response.status_code} for {method} {url}; "
                f"retry {attempt}/{MAX_RETRIES} in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
