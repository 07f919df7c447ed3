"""Write-access inference for pull request participants."""

from __future__ import annotations

import asyncio
import dataclasses
from typing import Any

import httpx
import structlog

from prtimeline.engines.pr_events.cache import FreshnessCache
from prtimeline.engines.pr_events.github_client import GitHubClient, RateLimitError
from prtimeline.engines.pr_events.models import Event, EventKind, WriteAccess
from prtimeline.engines.pr_events.normalizer import association_access
from prtimeline.engines.pr_events.raw import RawActor, RawPullRequestData

log = structlog.get_logger("prtimeline.engine")

_WRITE_PERMISSIONS = frozenset({"admin", "maintain", "write"})
_READ_PERMISSIONS = frozenset({"read", "triage", "none"})

# Performing one of these requires push access to the repository.
CONFIRMING_KINDS = frozenset(
    {
        EventKind.PR_MERGED,
        EventKind.MERGED,
        EventKind.LABELED,
        EventKind.UNLABELED,
        EventKind.ASSIGNED,
        EventKind.UNASSIGNED,
        EventKind.MILESTONED,
        EventKind.DEMILESTONED,
    }
)


def permission_from_flags(permissions: dict[str, Any]) -> str:
    """Collapse the collaborator ``permissions`` booleans into one level."""
    if permissions.get("admin"):
        return "admin"
    if permissions.get("maintain"):
        return "maintain"
    if permissions.get("push"):
        return "write"
    if permissions.get("triage"):
        return "triage"
    if permissions.get("pull"):
        return "read"
    return "none"


def access_from_permission(permission: str) -> WriteAccess | None:
    """Map a permission string to an access level; ``None`` when unknown."""
    if permission in _WRITE_PERMISSIONS:
        return WriteAccess.DEFINITELY
    if permission in _READ_PERMISSIONS:
        return WriteAccess.NO
    return None


class AccessResolver:
    """Resolves ``(actor, association)`` pairs to :class:`WriteAccess`.

    Only MEMBER needs I/O: the repository collaborator listing is consulted
    first, then (if enabled) the single-user permission endpoint.  Any
    lookup error falls back to LIKELY.
    """

    def __init__(
        self,
        client: GitHubClient,
        collaborators: FreshnessCache[dict[str, str]],
        permissions: FreshnessCache[str],
        *,
        permission_lookups: bool = True,
    ) -> None:
        self._client = client
        self._collaborators = collaborators
        self._permissions = permissions
        self._permission_lookups = permission_lookups

    async def resolve_write_access(
        self, owner: str, repo: str, actor: str, association: str
    ) -> WriteAccess:
        if not actor:
            return WriteAccess.NA
        if association.upper() != "MEMBER":
            return association_access(actor, association)

        try:
            collaborators = await self.collaborators(owner, repo)
        except (httpx.HTTPError, RateLimitError, ValueError) as exc:
            log.warning(
                "access.collaborators_failed",
                repo=f"{owner}/{repo}",
                user=actor,
                error=str(exc),
            )
            return WriteAccess.LIKELY

        level = access_from_permission(collaborators.get(actor, ""))
        if level is not None:
            return level

        if self._permission_lookups:
            try:
                permission = await self.permission(owner, repo, actor)
            except (httpx.HTTPError, RateLimitError, ValueError) as exc:
                log.warning(
                    "access.permission_failed",
                    repo=f"{owner}/{repo}",
                    user=actor,
                    error=str(exc),
                )
                return WriteAccess.LIKELY
            level = access_from_permission(permission)
            if level is not None:
                return level

        return WriteAccess.LIKELY

    async def resolve_items(
        self, owner: str, repo: str, raw: RawPullRequestData
    ) -> dict[tuple[str, str], WriteAccess]:
        """Resolve every distinct ``(login, association)`` pair of a fetch."""
        pairs = sorted(_actor_pairs(raw))
        levels = await asyncio.gather(
            *(self.resolve_write_access(owner, repo, login, assoc) for login, assoc in pairs)
        )
        return dict(zip(pairs, levels, strict=True))

    # ── lookups ──────────────────────────────────────────────────────────

    async def collaborators(self, owner: str, repo: str) -> dict[str, str]:
        """Login → permission for the repository, cached for the listing TTL.

        A 403 caches an empty mapping so the call is not repeated until the
        entry expires.  Concurrent callers share one listing request.
        """

        async def _fetch() -> dict[str, str]:
            result: dict[str, str] = {}
            try:
                async for item in self._client.get_paginated(
                    f"/repos/{owner}/{repo}/collaborators",
                    {"affiliation": "all"},
                ):
                    login = item.get("login")
                    if login:
                        result[login] = permission_from_flags(item.get("permissions") or {})
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code != 403:
                    raise
                log.warning("access.collaborators_forbidden", repo=f"{owner}/{repo}")
                return {}
            log.debug("access.collaborators_loaded", repo=f"{owner}/{repo}", count=len(result))
            return result

        return await self._collaborators.get_or_fetch(
            f"collaborators/{owner}/{repo}", None, _fetch
        )

    async def permission(self, owner: str, repo: str, user: str) -> str:
        """Single-user permission level; 403/404 cache an empty permission."""

        async def _fetch() -> str:
            try:
                data = await self._client.get(
                    f"/repos/{owner}/{repo}/collaborators/{user}/permission"
                )
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code not in (403, 404):
                    raise
                return ""
            # role_name distinguishes maintain/triage, which permission folds away
            return str(data.get("role_name") or data.get("permission") or "")

        return await self._permissions.get_or_fetch(
            f"permission/{owner}/{repo}/{user}", None, _fetch
        )


def _actor_pairs(raw: RawPullRequestData) -> set[tuple[str, str]]:
    pairs: set[tuple[str, str]] = set()
    meta = raw.pull_request
    if meta.author.login:
        pairs.add((meta.author.login, meta.author_association))
    for item in raw.items:
        association = getattr(item, "association", "")
        actor: RawActor | None = getattr(item, "author", None) or getattr(item, "actor", None)
        if actor is not None and actor.login and association:
            pairs.add((actor.login, association))
    return pairs


# ── upgrade pass ─────────────────────────────────────────────────────────


def upgrade_write_access(events: list[Event]) -> None:
    """Promote LIKELY to DEFINITELY for actors who proved write access.

    An actor who merged, labeled, assigned or milestoned anywhere in the
    pull request has push access, so every LIKELY event of theirs is
    replaced in place with a DEFINITELY copy.
    """
    confirmed = {ev.actor for ev in events if ev.kind in CONFIRMING_KINDS and ev.actor}
    if not confirmed:
        return
    for i, ev in enumerate(events):
        if ev.write_access == WriteAccess.LIKELY and ev.actor in confirmed:
            events[i] = dataclasses.replace(ev, write_access=WriteAccess.DEFINITELY)
