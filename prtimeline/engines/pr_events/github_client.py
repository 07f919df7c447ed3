"""Async GitHub client: REST pagination, GraphQL, retries and rate limits."""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import AsyncIterator, Mapping
from typing import Any

import httpx
import structlog

from prtimeline.exceptions import GraphQLError

log = structlog.get_logger("prtimeline.engine")

DEFAULT_API_URL = "https://api.github.com"
API_VERSION = "2022-11-28"

MAX_ATTEMPTS = 3
BACKOFF_BASE = 1.0  # seconds, doubled per attempt
MAX_RATE_LIMIT_WAIT = 300  # seconds
DEFAULT_RATE_LIMIT_WAIT = 60  # seconds, when no header says otherwise

_LINK_NEXT = re.compile(r'<([^>]+)>;\s*rel="next"')


class RateLimitError(Exception):
    """The rate limit was still exhausted after the last attempt."""

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__(f"GitHub rate limit exhausted, retry in {retry_after}s")


# ── header helpers ────────────────────────────────────────────────────────


def _header_int(headers: Mapping[str, str], name: str) -> int | None:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def next_page_url(link_header: str) -> str | None:
    """URL of the ``rel="next"`` entry of a ``Link`` header, if any."""
    found = _LINK_NEXT.search(link_header)
    return found.group(1) if found else None


def rate_limit_wait(headers: Mapping[str, str]) -> int:
    """Seconds until requests may resume, clamped to ``[1, MAX_RATE_LIMIT_WAIT]``.

    ``Retry-After`` (sent for secondary limits) takes precedence over
    ``X-RateLimit-Reset``.
    """
    wait = _header_int(headers, "Retry-After")
    if wait is None:
        reset = _header_int(headers, "X-RateLimit-Reset")
        if reset is None:
            return DEFAULT_RATE_LIMIT_WAIT
        wait = reset - int(time.time())
    return min(max(wait, 1), MAX_RATE_LIMIT_WAIT)


def is_rate_limited(response: httpx.Response) -> bool:
    """True for a 429, or a 403 whose headers show an exhausted budget."""
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    remaining = _header_int(response.headers, "X-RateLimit-Remaining")
    if remaining is not None:
        return remaining == 0
    return "Retry-After" in response.headers


# ── client ────────────────────────────────────────────────────────────────


class GitHubClient:
    """Async wrapper over GitHub's REST and GraphQL APIs.

    Every request goes through :meth:`_send`, which retries server errors and
    timeouts with exponential backoff and sleeps through rate limits.  A
    successful response that spends the last of the budget also sleeps until
    the budget resets, so the next caller does not hit a 403.
    """

    def __init__(
        self,
        token: str | None = None,
        *,
        base_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
    ) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── REST ─────────────────────────────────────────────────────────────

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET one resource and return its decoded JSON body."""
        response = await self._send("GET", path, params=params)
        return response.json()

    async def get_paginated(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        max_pages: int = 10,
        items_key: str | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield items across pages, following ``Link: rel="next"``.

        At most *max_pages* pages are read.  Endpoints that wrap their list
        in an object (``{"check_runs": [...]}``) name it with *items_key*.
        """
        query: dict[str, Any] | None = {"per_page": 100, **(params or {})}
        url: str | None = path
        for _ in range(max_pages):
            if url is None:
                break
            response = await self._send("GET", url, params=query)
            # next links already carry the query string
            query = None

            body = response.json()
            if items_key is not None and isinstance(body, dict):
                body = body.get(items_key) or []
            for item in body if isinstance(body, list) else [body]:
                yield item

            url = next_page_url(response.headers.get("Link", ""))

    # ── GraphQL ──────────────────────────────────────────────────────────

    async def graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """POST a GraphQL query; returns ``{"data": ..., "errors": [messages]}``.

        Raises :class:`GraphQLError` only when the response carries no data
        at all.  Partial errors are returned for the caller to judge.
        """
        response = await self._send(
            "POST", "/graphql", json={"query": query, "variables": variables}
        )
        payload = response.json()
        messages = [str(err.get("message", err)) for err in payload.get("errors") or [] if err]
        if payload.get("data") is None:
            raise GraphQLError(messages)
        return {"data": payload["data"], "errors": messages}

    # ── transport ────────────────────────────────────────────────────────

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        failure: Exception | None = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.TimeoutException as exc:
                log.warning("github.timeout", url=url, attempt=attempt)
                failure = exc
            else:
                if is_rate_limited(response):
                    wait = rate_limit_wait(response.headers)
                    log.warning(
                        "github.rate_limit", url=url, wait_seconds=wait, attempt=attempt
                    )
                    await asyncio.sleep(wait)
                    failure = RateLimitError(wait)
                    continue
                if response.status_code < 500:
                    response.raise_for_status()
                    await self._wait_for_budget(response)
                    return response
                log.warning(
                    "github.server_error",
                    url=url,
                    status=response.status_code,
                    attempt=attempt,
                )
                failure = httpx.HTTPStatusError(
                    f"server error {response.status_code}",
                    request=response.request,
                    response=response,
                )
            if attempt < MAX_ATTEMPTS:
                await asyncio.sleep(BACKOFF_BASE * 2 ** (attempt - 1))
        raise failure  # type: ignore[misc]

    async def _wait_for_budget(self, response: httpx.Response) -> None:
        if _header_int(response.headers, "X-RateLimit-Remaining") == 0:
            wait = rate_limit_wait(response.headers)
            log.warning("github.budget_exhausted", wait_seconds=wait)
            await asyncio.sleep(wait)
