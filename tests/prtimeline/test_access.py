"""Tests for write-access resolution and the upgrade pass."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import httpx
import pytest
from pydantic import TypeAdapter

from prtimeline.engines.pr_events.access import (
    AccessResolver,
    access_from_permission,
    permission_from_flags,
    upgrade_write_access,
)
from prtimeline.engines.pr_events.cache import COLLABORATORS_TTL, PERMISSION_TTL, FreshnessCache
from prtimeline.engines.pr_events.models import Event, EventKind, WriteAccess
from prtimeline.engines.pr_events.raw import (
    RawActor,
    RawComment,
    RawPullRequest,
    RawPullRequestData,
    RawTimelineEvent,
)

T0 = datetime(2025, 3, 16, 10, 0, tzinfo=timezone.utc)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.github.com/x")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(str(status), request=request, response=response)


class FakeClock:
    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> datetime:
        return self.now


def _resolver(gh, *, permission_lookups=True, clock=None) -> AccessResolver:
    clock = clock or FakeClock()
    return AccessResolver(
        gh,
        FreshnessCache(
            "collaborators", COLLABORATORS_TTL, TypeAdapter(dict[str, str]), clock=clock
        ),
        FreshnessCache("permissions", PERMISSION_TTL, TypeAdapter(str), clock=clock),
        permission_lookups=permission_lookups,
    )


# ── TestPermissionMapping ─────────────────────────────────────────────────


class TestPermissionMapping:
    def test_flags(self):
        assert permission_from_flags({"admin": True, "push": True}) == "admin"
        assert permission_from_flags({"maintain": True}) == "maintain"
        assert permission_from_flags({"push": True, "pull": True}) == "write"
        assert permission_from_flags({"triage": True}) == "triage"
        assert permission_from_flags({"pull": True}) == "read"
        assert permission_from_flags({}) == "none"

    def test_levels(self):
        for perm in ("admin", "maintain", "write"):
            assert access_from_permission(perm) == WriteAccess.DEFINITELY
        for perm in ("read", "triage", "none"):
            assert access_from_permission(perm) == WriteAccess.NO
        assert access_from_permission("") is None
        assert access_from_permission("custom-role") is None


# ── TestAccessResolver ────────────────────────────────────────────────────


class TestAccessResolver:
    @pytest.mark.anyio
    async def test_non_member_uses_table_without_io(self, gh):
        resolver = _resolver(gh)
        assert await resolver.resolve_write_access("o", "r", "a", "OWNER") == WriteAccess.DEFINITELY
        assert await resolver.resolve_write_access("o", "r", "a", "NONE") == WriteAccess.UNLIKELY
        assert await resolver.resolve_write_access("o", "r", "", "MEMBER") == WriteAccess.NA
        gh.get.assert_not_called()

    @pytest.mark.anyio
    async def test_member_found_in_listing(self, gh, paginated):
        gh.get_paginated = MagicMock(
            side_effect=paginated(
                {
                    "/repos/o/r/collaborators": [
                        {"login": "writer", "permissions": {"push": True}},
                        {"login": "reader", "permissions": {"pull": True}},
                    ]
                }
            )
        )
        resolver = _resolver(gh)
        assert await resolver.resolve_write_access("o", "r", "writer", "MEMBER") == (
            WriteAccess.DEFINITELY
        )
        assert await resolver.resolve_write_access("o", "r", "reader", "MEMBER") == WriteAccess.NO
        # one listing serves both lookups
        assert gh.get_paginated.call_count == 1
        gh.get.assert_not_called()

    @pytest.mark.anyio
    async def test_member_absent_falls_back_to_permission(self, gh, paginated):
        gh.get_paginated = MagicMock(side_effect=paginated({"/repos/o/r/collaborators": []}))
        gh.get.return_value = {"permission": "write", "role_name": "maintain"}
        resolver = _resolver(gh)
        level = await resolver.resolve_write_access("o", "r", "m", "MEMBER")
        assert level == WriteAccess.DEFINITELY
        gh.get.assert_awaited_once_with("/repos/o/r/collaborators/m/permission")

    @pytest.mark.anyio
    async def test_member_absent_without_lookups_is_likely(self, gh, paginated):
        gh.get_paginated = MagicMock(side_effect=paginated({"/repos/o/r/collaborators": []}))
        resolver = _resolver(gh, permission_lookups=False)
        assert await resolver.resolve_write_access("o", "r", "m", "MEMBER") == WriteAccess.LIKELY
        gh.get.assert_not_called()

    @pytest.mark.anyio
    async def test_listing_forbidden_caches_empty_map(self, gh, paginated):
        gh.get_paginated = MagicMock(
            side_effect=paginated({"/repos/o/r/collaborators": _status_error(403)})
        )
        gh.get.side_effect = _status_error(404)
        resolver = _resolver(gh)

        assert await resolver.collaborators("o", "r") == {}
        assert await resolver.collaborators("o", "r") == {}
        assert gh.get_paginated.call_count == 1
        assert await resolver.resolve_write_access("o", "r", "m", "MEMBER") == WriteAccess.LIKELY

    @pytest.mark.anyio
    async def test_forbidden_listing_expires_after_four_hours(self, gh, paginated):
        gh.get_paginated = MagicMock(
            side_effect=paginated({"/repos/o/r/collaborators": _status_error(403)})
        )
        clock = FakeClock()
        resolver = _resolver(gh, clock=clock)

        assert await resolver.collaborators("o", "r") == {}
        clock.now = T0 + timedelta(hours=3, minutes=59)
        assert await resolver.collaborators("o", "r") == {}
        assert gh.get_paginated.call_count == 1

        clock.now = T0 + timedelta(hours=4, minutes=1)
        assert await resolver.collaborators("o", "r") == {}
        assert gh.get_paginated.call_count == 2

    @pytest.mark.anyio
    async def test_permission_reused_for_a_day(self, gh):
        gh.get.return_value = {"permission": "write"}
        clock = FakeClock()
        resolver = _resolver(gh, clock=clock)

        assert await resolver.permission("o", "r", "m") == "write"
        clock.now = T0 + timedelta(hours=23, minutes=59)
        assert await resolver.permission("o", "r", "m") == "write"
        assert gh.get.await_count == 1

        clock.now = T0 + timedelta(hours=24, minutes=1)
        assert await resolver.permission("o", "r", "m") == "write"
        assert gh.get.await_count == 2

    @pytest.mark.anyio
    async def test_listing_server_error_is_likely(self, gh, paginated):
        gh.get_paginated = MagicMock(
            side_effect=paginated({"/repos/o/r/collaborators": _status_error(502)})
        )
        resolver = _resolver(gh)
        assert await resolver.resolve_write_access("o", "r", "m", "MEMBER") == WriteAccess.LIKELY
        gh.get.assert_not_called()

    @pytest.mark.anyio
    async def test_permission_error_is_likely(self, gh, paginated):
        gh.get_paginated = MagicMock(side_effect=paginated({"/repos/o/r/collaborators": []}))
        gh.get.side_effect = httpx.ConnectError("boom")
        resolver = _resolver(gh)
        assert await resolver.resolve_write_access("o", "r", "m", "MEMBER") == WriteAccess.LIKELY

    @pytest.mark.anyio
    async def test_concurrent_members_share_one_listing(self, gh):
        calls = 0

        def _get_paginated(path, params=None, **kw):
            async def _gen():
                nonlocal calls
                calls += 1
                await asyncio.sleep(0.01)
                for login in ("a", "b", "c"):
                    yield {"login": login, "permissions": {"push": True}}

            return _gen()

        gh.get_paginated = MagicMock(side_effect=_get_paginated)
        resolver = _resolver(gh)
        levels = await asyncio.gather(
            *(resolver.resolve_write_access("o", "r", name, "MEMBER") for name in "abc")
        )
        assert levels == [WriteAccess.DEFINITELY] * 3
        assert calls == 1

    @pytest.mark.anyio
    async def test_resolve_items_collects_pairs(self, gh, paginated):
        gh.get_paginated = MagicMock(
            side_effect=paginated(
                {"/repos/o/r/collaborators": [{"login": "m", "permissions": {"push": True}}]}
            )
        )
        raw = RawPullRequestData(
            pull_request=RawPullRequest(
                number=1,
                created_at=T0,
                author=RawActor(login="alice"),
                author_association="CONTRIBUTOR",
            ),
            items=[
                RawComment(created_at=T0, author=RawActor(login="m"), association="MEMBER"),
                RawTimelineEvent(event="labeled", created_at=T0, actor=RawActor(login="x")),
            ],
        )
        access = await _resolver(gh).resolve_items("o", "r", raw)
        assert access == {
            ("alice", "CONTRIBUTOR"): WriteAccess.UNLIKELY,
            ("m", "MEMBER"): WriteAccess.DEFINITELY,
        }


# ── TestUpgradeWriteAccess ────────────────────────────────────────────────


class TestUpgradeWriteAccess:
    def test_labeling_confirms_earlier_comment(self):
        events = [
            Event(
                kind=EventKind.COMMENT,
                timestamp=T0,
                actor="m",
                write_access=WriteAccess.LIKELY,
            ),
            Event(
                kind=EventKind.LABELED,
                timestamp=T0 + timedelta(minutes=5),
                actor="m",
                target="bug",
                write_access=WriteAccess.LIKELY,
            ),
        ]
        upgrade_write_access(events)
        assert [ev.write_access for ev in events] == [WriteAccess.DEFINITELY] * 2

    def test_other_actors_untouched(self):
        events = [
            Event(kind=EventKind.COMMENT, timestamp=T0, actor="x", write_access=WriteAccess.LIKELY),
            Event(kind=EventKind.PR_MERGED, timestamp=T0, actor="m"),
        ]
        upgrade_write_access(events)
        assert events[0].write_access == WriteAccess.LIKELY

    def test_only_likely_is_upgraded(self):
        events = [
            Event(
                kind=EventKind.COMMENT,
                timestamp=T0,
                actor="m",
                write_access=WriteAccess.UNLIKELY,
            ),
            Event(kind=EventKind.ASSIGNED, timestamp=T0, actor="m"),
        ]
        upgrade_write_access(events)
        assert events[0].write_access == WriteAccess.UNLIKELY
        assert events[1].write_access == WriteAccess.NA

    def test_non_confirming_kinds(self):
        events = [
            Event(kind=EventKind.COMMENT, timestamp=T0, actor="m", write_access=WriteAccess.LIKELY),
            Event(kind=EventKind.REVIEW_REQUESTED, timestamp=T0, actor="m"),
        ]
        upgrade_write_access(events)
        assert events[0].write_access == WriteAccess.LIKELY
