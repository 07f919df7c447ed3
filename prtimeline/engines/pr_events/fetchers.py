"""Fetch strategies: pull request data from GitHub → raw items.

Exactly one strategy is used per client.  :class:`GraphQLFetcher` issues one
complete GraphQL query and fills the gaps (rulesets, historical check runs)
over REST; :class:`RestFetcher` fans out over the per-resource REST
endpoints.  Both return a :class:`RawPullRequestData` and never normalize.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, Protocol

import httpx
import structlog
from pydantic import ValidationError

from prtimeline.engines.pr_events.github_client import GitHubClient, RateLimitError
from prtimeline.engines.pr_events.graphql_query import (
    CONNECTIONS,
    PULL_REQUEST_QUERY,
    GQLPullRequest,
    page_query,
    to_raw_data,
)
from prtimeline.engines.pr_events.normalizer import TIMELINE_KINDS
from prtimeline.engines.pr_events.raw import (
    RawItem,
    RawPullRequest,
    RawPullRequestData,
    decode_items,
    dedupe,
)
from prtimeline.exceptions import GraphQLError, NoEventsError, PullRequestFetchError

log = structlog.get_logger("prtimeline.engine")

_DEFAULT_TIMEOUT = 300.0  # seconds
_DEFAULT_CONCURRENCY = 5
_DEFAULT_MAX_PAGES = 10


class Fetcher(Protocol):
    async def fetch(self, owner: str, repo: str, number: int) -> RawPullRequestData: ...


class _BaseFetcher:
    def __init__(
        self,
        client: GitHubClient,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        max_concurrency: int = _DEFAULT_CONCURRENCY,
        max_pages: int = _DEFAULT_MAX_PAGES,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._max_concurrency = max_concurrency
        self._max_pages = max_pages

    # ── task group ─────────────────────────────────────────────────────────

    async def _run_group(
        self, tasks: dict[str, asyncio.Future[Any]], pr_ref: str
    ) -> tuple[dict[str, Any], list[str]]:
        """Wait for every task under one shared timeout.

        Returns ``(results, errors)``: *results* maps each successful task
        name to its value, *errors* holds one message per failed or timed-out
        task.  A failing task never cancels its siblings.
        """
        done, pending = await asyncio.wait(tasks.values(), timeout=self._timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results: dict[str, Any] = {}
        errors: list[str] = []
        for name, task in tasks.items():
            if task in pending or task.cancelled():
                err_msg = f"timed out after {self._timeout}s"
            elif task.exception() is not None:
                exc = task.exception()
                err_msg = f"{type(exc).__name__}: {exc}"
            else:
                results[name] = task.result()
                continue
            log.error("fetch.task_failed", task=name, pr=pr_ref, error=err_msg)
            errors.append(f"{name} failed for {pr_ref}: {err_msg}")
        return results, errors

    # ── shared REST calls ──────────────────────────────────────────────────

    async def _check_runs(
        self, owner: str, repo: str, shas: list[str], semaphore: asyncio.Semaphore
    ) -> list[dict[str, Any]]:
        """Check runs for every SHA, head first, as raw item payloads.

        A SHA whose listing fails is logged and skipped; the others still
        contribute.
        """

        async def _one(sha: str) -> list[dict[str, Any]]:
            async with semaphore:
                return [
                    _check_run_payload(item, sha)
                    async for item in self._client.get_paginated(
                        f"/repos/{owner}/{repo}/commits/{sha}/check-runs",
                        max_pages=self._max_pages,
                        items_key="check_runs",
                    )
                ]

        results = await asyncio.gather(*(_one(sha) for sha in shas), return_exceptions=True)
        payloads: list[dict[str, Any]] = []
        for sha, result in zip(shas, results, strict=False):
            if isinstance(result, BaseException):
                log.warning("fetch.check_runs_failed", sha=sha, error=str(result))
                continue
            payloads.extend(result)
        return payloads

    async def _ruleset_checks(self, owner: str, repo: str, branch: str) -> list[str]:
        """Required status checks from the rulesets active on *branch*."""
        if not branch:
            return []
        rules = await self._client.get(f"/repos/{owner}/{repo}/rules/branches/{branch}")
        contexts: list[str] = []
        for rule in rules or []:
            if rule.get("type") != "required_status_checks":
                continue
            parameters = rule.get("parameters") or {}
            for check in parameters.get("required_status_checks") or []:
                contexts.append(check.get("context", ""))
        return dedupe(contexts)


# ── GraphQL (hybrid) ──────────────────────────────────────────────────────


class GraphQLFetcher(_BaseFetcher):
    """One complete GraphQL query, plus REST for rulesets and check-run history."""

    async def fetch(self, owner: str, repo: str, number: int) -> RawPullRequestData:
        pr_ref = f"{owner}/{repo}#{number}"
        log.info("fetch.graphql_start", pr=pr_ref)
        variables = {"owner": owner, "repo": repo, "number": number}

        try:
            response = await self._client.graphql(PULL_REQUEST_QUERY, variables)
        except httpx.HTTPError as exc:
            raise PullRequestFetchError(
                owner, repo, number, f"GraphQL request failed: {exc}"
            ) from exc

        messages: list[str] = response["errors"]
        node = ((response["data"] or {}).get("repository") or {}).get("pullRequest")
        if not node or not node.get("number"):
            if messages:
                raise GraphQLError(messages)
            raise PullRequestFetchError(owner, repo, number, "no pull request returned")
        errors: list[str] = []
        if messages:
            log.warning("fetch.graphql_partial_errors", pr=pr_ref, errors=messages)
            errors.extend(f"graphql: {m}" for m in messages)

        errors.extend(await self._follow_pages(node, variables, pr_ref))

        try:
            pull = GQLPullRequest.model_validate(node)
        except ValidationError as exc:
            raise PullRequestFetchError(
                owner, repo, number, f"malformed pull request payload: {exc}"
            ) from exc
        raw = to_raw_data(pull)

        semaphore = asyncio.Semaphore(self._max_concurrency)
        shas = dedupe([raw.pull_request.head_sha, *reversed(_commit_shas(raw.items))])
        tasks: dict[str, asyncio.Future[Any]] = {
            "rulesets": asyncio.ensure_future(
                self._ruleset_checks(owner, repo, raw.pull_request.base_ref)
            ),
            "check_runs": asyncio.ensure_future(self._check_runs(owner, repo, shas, semaphore)),
        }
        results, task_errors = await self._run_group(tasks, pr_ref)
        errors.extend(task_errors)

        raw.items.extend(decode_items(results.get("check_runs", [])))
        raw.required_checks = dedupe([*raw.required_checks, *results.get("rulesets", [])])
        raw.errors = errors
        log.info(
            "fetch.graphql_done",
            pr=pr_ref,
            items=len(raw.items),
            check_run_shas=len(shas),
            errors=len(errors),
        )
        return raw

    async def _follow_pages(
        self, node: dict[str, Any], variables: dict[str, Any], pr_ref: str
    ) -> list[str]:
        """Append the remaining pages of every overflowing connection to *node*."""
        errors: list[str] = []
        for connection in CONNECTIONS:
            conn = node.get(connection) or {}
            page_info = conn.get("pageInfo") or {}
            pages = 1
            while page_info.get("hasNextPage") and pages < self._max_pages:
                try:
                    response = await self._client.graphql(
                        page_query(connection),
                        {**variables, "cursor": page_info.get("endCursor")},
                    )
                except (httpx.HTTPError, GraphQLError, RateLimitError) as exc:
                    log.warning(
                        "fetch.graphql_page_failed",
                        pr=pr_ref,
                        connection=connection,
                        error=str(exc),
                    )
                    errors.append(f"{connection} page {pages + 1}: {exc}")
                    break
                page = (
                    ((response["data"] or {}).get("repository") or {}).get("pullRequest") or {}
                ).get(connection) or {}
                conn.setdefault("nodes", []).extend(page.get("nodes") or [])
                page_info = page.get("pageInfo") or {}
                pages += 1
        return errors


# ── REST fan-out ──────────────────────────────────────────────────────────


class RestFetcher(_BaseFetcher):
    """Per-resource REST fan-out: metadata first, then seven concurrent tasks."""

    async def fetch(self, owner: str, repo: str, number: int) -> RawPullRequestData:
        pr_ref = f"{owner}/{repo}#{number}"
        log.info("fetch.rest_start", pr=pr_ref)
        try:
            data = await self._client.get(f"/repos/{owner}/{repo}/pulls/{number}")
            meta = _pull_request_from_rest(data)
        except httpx.HTTPError as exc:
            raise PullRequestFetchError(owner, repo, number, str(exc)) from exc
        except ValidationError as exc:
            raise PullRequestFetchError(
                owner, repo, number, f"malformed pull request payload: {exc}"
            ) from exc

        base = f"/repos/{owner}/{repo}"
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(coro: Awaitable[list[dict[str, Any]]]) -> list[dict[str, Any]]:
            async with semaphore:
                return await coro

        commits = asyncio.ensure_future(
            _bounded(self._collect(f"{base}/pulls/{number}/commits", _commit_payload))
        )

        async def _check_runs() -> list[dict[str, Any]]:
            try:
                shas = [p["sha"] for p in await asyncio.shield(commits) if p.get("sha")]
            except (httpx.HTTPError, RateLimitError, ValueError, KeyError):
                shas = []
            shas = dedupe([meta.head_sha, *reversed(shas)])
            return await self._check_runs(owner, repo, shas, semaphore)

        tasks: dict[str, asyncio.Future[Any]] = {
            "commits": commits,
            "comments": asyncio.ensure_future(
                _bounded(self._collect(f"{base}/issues/{number}/comments", _comment_payload))
            ),
            "reviews": asyncio.ensure_future(
                _bounded(self._collect(f"{base}/pulls/{number}/reviews", _review_payload))
            ),
            "review_comments": asyncio.ensure_future(
                _bounded(
                    self._collect(f"{base}/pulls/{number}/comments", _review_comment_payload)
                )
            ),
            "timeline": asyncio.ensure_future(
                _bounded(self._collect(f"{base}/issues/{number}/timeline", _timeline_payload))
            ),
            "status_checks": asyncio.ensure_future(
                _bounded(
                    self._collect(f"{base}/commits/{meta.head_sha}/statuses", _status_payload)
                )
                if meta.head_sha
                else _empty()
            ),
            "check_runs": asyncio.ensure_future(_check_runs()),
            "required_checks": asyncio.ensure_future(
                _bounded(self._required_checks(owner, repo, meta.base_ref))
            ),
        }
        results, errors = await self._run_group(tasks, pr_ref)

        required = results.pop("required_checks", [])
        payloads: list[dict[str, Any]] = []
        for name in tasks:
            payloads.extend(results.get(name, []))
        items = decode_items(payloads)
        if not items:
            raise NoEventsError(owner, repo, number, errors)

        log.info("fetch.rest_done", pr=pr_ref, items=len(items), errors=len(errors))
        return RawPullRequestData(
            pull_request=meta,
            items=[*meta.lifecycle_items(), *items],
            required_checks=required,
            errors=errors,
        )

    async def _collect(self, path: str, convert: Any) -> list[dict[str, Any]]:
        payloads: list[dict[str, Any]] = []
        async for item in self._client.get_paginated(path, max_pages=self._max_pages):
            payload = convert(item)
            if payload is not None:
                payloads.append(payload)
        return payloads

    async def _required_checks(self, owner: str, repo: str, branch: str) -> list[str]:
        """Branch protection contexts (or its sub-endpoint) plus rulesets."""
        if not branch:
            return []
        protection = f"/repos/{owner}/{repo}/branches/{branch}/protection"
        contexts: list[str] = []
        try:
            data = await self._client.get(protection)
            checks = data.get("required_status_checks") or {}
        except httpx.HTTPStatusError as exc:
            log.debug(
                "fetch.protection_unavailable", branch=branch, status=exc.response.status_code
            )
            try:
                checks = await self._client.get(f"{protection}/required_status_checks")
            except httpx.HTTPStatusError:
                checks = {}
        contexts.extend(checks.get("contexts") or [])
        contexts.extend(c.get("context", "") for c in checks.get("checks") or [])

        try:
            contexts.extend(await self._ruleset_checks(owner, repo, branch))
        except httpx.HTTPError as exc:
            log.warning("fetch.rulesets_failed", branch=branch, error=str(exc))
        return dedupe(contexts)


async def _empty() -> list[dict[str, Any]]:
    return []


def _commit_shas(items: list[RawItem]) -> list[str]:
    return [item.sha for item in items if item.item == "commit"]


# ── REST payload converters ───────────────────────────────────────────────


def _actor(user: dict[str, Any] | None) -> dict[str, Any] | None:
    if not user:
        return None
    return {
        "login": user.get("login") or "",
        "id": user.get("node_id") or "",
        "type": user.get("type") or "",
    }


def _pull_request_from_rest(data: dict[str, Any]) -> RawPullRequest:
    reviewers = [u.get("login", "") for u in data.get("requested_reviewers") or []]
    reviewers += [t.get("name", "") for t in data.get("requested_teams") or []]
    return RawPullRequest.model_validate(
        {
            "number": data.get("number"),
            "title": data.get("title") or "",
            "body": data.get("body") or "",
            "state": data.get("state") or "",
            "draft": bool(data.get("draft")),
            "merged": bool(data.get("merged")),
            "merged_by": _actor(data.get("merged_by")),
            "mergeable": data.get("mergeable"),
            "mergeable_state": data.get("mergeable_state") or "",
            "author": _actor(data.get("user")) or {},
            "author_association": data.get("author_association") or "",
            "created_at": data.get("created_at"),
            "updated_at": data.get("updated_at"),
            "closed_at": data.get("closed_at"),
            "merged_at": data.get("merged_at"),
            "additions": data.get("additions") or 0,
            "deletions": data.get("deletions") or 0,
            "changed_files": data.get("changed_files") or 0,
            "head_sha": (data.get("head") or {}).get("sha") or "",
            "base_ref": (data.get("base") or {}).get("ref") or "",
            "assignees": dedupe(a.get("login", "") for a in data.get("assignees") or []),
            "labels": dedupe(lb.get("name", "") for lb in data.get("labels") or []),
            "requested_reviewers": dedupe(reviewers),
        }
    )


def _commit_payload(item: dict[str, Any]) -> dict[str, Any]:
    commit = item.get("commit") or {}
    git_author = commit.get("author") or {}
    return {
        "item": "commit",
        "sha": item.get("sha"),
        "message": commit.get("message") or "",
        "committed_at": (commit.get("committer") or {}).get("date") or git_author.get("date"),
        "author": _actor(item.get("author")),
        "author_name": git_author.get("name") or "",
    }


def _comment_payload(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "item": "comment",
        "created_at": item.get("created_at"),
        "author": _actor(item.get("user")) or {},
        "association": item.get("author_association") or "",
        "body": item.get("body") or "",
    }


def _review_comment_payload(item: dict[str, Any]) -> dict[str, Any]:
    payload = _comment_payload(item)
    payload["item"] = "review_comment"
    # a comment whose diff position no longer exists is outdated
    payload["outdated"] = item.get("position") is None and item.get("line") is None
    return payload


def _review_payload(item: dict[str, Any]) -> dict[str, Any] | None:
    if not item.get("state") or not item.get("submitted_at"):
        return None
    return {
        "item": "review",
        "submitted_at": item.get("submitted_at"),
        "author": _actor(item.get("user")) or {},
        "association": item.get("author_association") or "",
        "state": item.get("state"),
        "body": item.get("body") or "",
    }


def _status_payload(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "item": "status_context",
        "context": item.get("context"),
        "state": item.get("state") or "",
        "description": item.get("description") or "",
        "created_at": item.get("created_at"),
        "creator": _actor(item.get("creator")),
    }


def _check_run_payload(item: dict[str, Any], sha: str) -> dict[str, Any]:
    output = item.get("output") or {}
    app = item.get("app") or {}
    return {
        "item": "check_run",
        "name": item.get("name"),
        "status": item.get("status") or "",
        "conclusion": item.get("conclusion") or "",
        "started_at": item.get("started_at"),
        "completed_at": item.get("completed_at"),
        "title": output.get("title") or "",
        "summary": output.get("summary") or "",
        "commit_sha": item.get("head_sha") or sha,
        "app": {"login": app.get("slug") or "", "type": "Bot"} if app else None,
    }


def _timeline_payload(item: dict[str, Any]) -> dict[str, Any] | None:
    """REST timeline entry → raw payload; ``None`` for kinds fetched elsewhere."""
    event = item.get("event") or ""
    if event not in TIMELINE_KINDS:
        return None
    payload: dict[str, Any] = {
        "item": "timeline",
        "event": event,
        "created_at": item.get("created_at"),
        "actor": _actor(item.get("actor")),
        "association": item.get("author_association") or "",
    }
    if event in ("assigned", "unassigned"):
        assignee = item.get("assignee")
        if not assignee:
            return None
        payload["target"] = assignee.get("login") or ""
        payload["target_actor"] = _actor(assignee)
    elif event in ("labeled", "unlabeled"):
        name = (item.get("label") or {}).get("name")
        if not name:
            return None
        payload["target"] = name
    elif event in ("milestoned", "demilestoned"):
        title = (item.get("milestone") or {}).get("title")
        if not title:
            return None
        payload["target"] = title
    elif event in ("review_requested", "review_request_removed"):
        reviewer = item.get("requested_reviewer")
        team = item.get("requested_team") or {}
        if reviewer:
            payload["target"] = reviewer.get("login") or ""
            payload["target_actor"] = _actor(reviewer)
        elif team.get("name"):
            payload["target"] = team["name"]
        else:
            return None
    elif event == "mentioned":
        payload["body"] = "User was mentioned"
    elif event == "renamed":
        rename = item.get("rename") or {}
        payload["body"] = f'Renamed from "{rename.get("from", "")}" to "{rename.get("to", "")}"'
    elif event == "review_dismissed":
        payload["body"] = (item.get("dismissed_review") or {}).get("dismissal_message") or ""
    return payload
