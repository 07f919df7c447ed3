"""PullRequestClient — fetch, normalize and cache one pull request's timeline."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from datetime import datetime, timezone

import structlog
from pydantic import TypeAdapter

from prtimeline.core.config import ClientConfig
from prtimeline.engines.pr_events.access import AccessResolver, upgrade_write_access
from prtimeline.engines.pr_events.cache import (
    COLLABORATORS_TTL,
    PERMISSION_TTL,
    PR_TTL,
    DiskStore,
    FreshnessCache,
)
from prtimeline.engines.pr_events.fetchers import Fetcher, GraphQLFetcher, RestFetcher
from prtimeline.engines.pr_events.github_client import GitHubClient
from prtimeline.engines.pr_events.models import PullRequestData
from prtimeline.engines.pr_events.normalizer import (
    filter_events,
    normalize,
    pull_request_from_raw,
    sort_events,
)
from prtimeline.engines.pr_events.summary import finalize

log = structlog.get_logger("prtimeline.client")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stamp(data: PullRequestData, cached_at: datetime) -> PullRequestData:
    return dataclasses.replace(data, cached_at=cached_at)


class PullRequestClient:
    """Entry point: ``fetch(owner, repo, number)`` → :class:`PullRequestData`.

    Owns the GitHub client, the fetch strategy and three caches (pull
    request aggregates, collaborator listings, single-user permissions).
    Create one per process and ``close()`` it when done.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        client: GitHubClient | None = None,
        fetcher: Fetcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or ClientConfig.from_env()
        self._clock = clock or _utcnow
        self._owns_client = client is None
        self._client = client or GitHubClient(self.config.token, base_url=self.config.api_url)

        if fetcher is None:
            fetcher_cls = GraphQLFetcher if self.config.strategy == "graphql" else RestFetcher
            fetcher = fetcher_cls(
                self._client,
                timeout=self.config.fetch_timeout,
                max_concurrency=self.config.max_concurrency,
            )
        self._fetcher = fetcher

        store = DiskStore(self.config.cache_dir / "pr") if self.config.cache_dir else None
        self._pr_cache: FreshnessCache[PullRequestData] = FreshnessCache(
            "pull_requests",
            PR_TTL,
            TypeAdapter(PullRequestData),
            store=store,
            clock=self._clock,
            stamp=_stamp,
        )
        self._collaborators: FreshnessCache[dict[str, str]] = FreshnessCache(
            "collaborators", COLLABORATORS_TTL, TypeAdapter(dict[str, str]), clock=self._clock
        )
        self._permissions: FreshnessCache[str] = FreshnessCache(
            "permissions", PERMISSION_TTL, TypeAdapter(str), clock=self._clock
        )
        self._access = AccessResolver(
            self._client,
            self._collaborators,
            self._permissions,
            permission_lookups=self.config.permission_lookups,
        )

    async def __aenter__(self) -> PullRequestClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Purge expired cache files and close the HTTP client if we own it."""
        for cache in (self._pr_cache, self._collaborators, self._permissions):
            await asyncio.to_thread(cache.close)
        if self._owns_client:
            await self._client.close()

    # ── public API ───────────────────────────────────────────────────────

    async def fetch(
        self,
        owner: str,
        repo: str,
        number: int,
        reference_time: datetime | None = None,
    ) -> PullRequestData:
        """Return the pull request and its finalized timeline.

        A cached result is returned only if it was stored at or after
        *reference_time* (default: now) and is within the cache TTL.
        Concurrent calls for the same pull request share one upstream fetch.
        """
        if reference_time is None:
            reference_time = self._clock()

        return await self._pr_cache.get_or_fetch(
            f"pr/{owner}/{repo}/{number}",
            reference_time,
            lambda: self._build(owner, repo, number),
        )

    # ── pipeline ─────────────────────────────────────────────────────────

    async def _build(self, owner: str, repo: str, number: int) -> PullRequestData:
        pr_ref = f"{owner}/{repo}#{number}"
        raw = await self._fetcher.fetch(owner, repo, number)
        if raw.errors:
            log.warning("pr.partial_data", pr=pr_ref, errors=raw.errors)

        access = await self._access.resolve_items(owner, repo, raw)
        pr = pull_request_from_raw(raw, access)

        events = normalize(raw.items, access, raw.required_checks)
        events = sort_events(filter_events(events))
        upgrade_write_access(events)
        finalize(pr, events, raw.required_checks, raw.test_state)

        log.info(
            "pr.built",
            pr=pr_ref,
            events=len(events),
            test_state=pr.test_state.value,
            mergeable_state=pr.mergeable_state,
        )
        return PullRequestData(pull_request=pr, events=events)
