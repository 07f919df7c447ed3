"""Derived pull request state computed from the finalized event list."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import structlog

from prtimeline.engines.pr_events.models import (
    ApprovalSummary,
    CheckSummary,
    Event,
    EventKind,
    PullRequest,
    TestState,
    WriteAccess,
)

log = structlog.get_logger("prtimeline.engine")

EXPECTED_CHECK_DESCRIPTION = "Expected — Waiting for status to be reported"

_CHECK_KINDS = frozenset({EventKind.CHECK_RUN, EventKind.STATUS_CHECK})

# outcome → CheckSummary attribute; outcomes not listed are ignored
_OUTCOME_CATEGORY: dict[str, str] = {
    "success": "success",
    "failure": "failing",
    "error": "failing",
    "timed_out": "failing",
    "action_required": "failing",
    "cancelled": "cancelled",
    "pending": "pending",
    "queued": "pending",
    "in_progress": "pending",
    "waiting": "pending",
    "skipped": "skipped",
    "stale": "stale",
    "neutral": "neutral",
}

_FIXED_DESCRIPTIONS: dict[str, str] = {
    "dirty": "PR has merge conflicts that need to be resolved",
    "unstable": "PR is mergeable but status checks are failing",
    "clean": "PR is ready to merge",
    "unknown": "Merge status is being calculated",
    "draft": "PR is in draft state",
}

_NOT_MERGEABLE_STATES = frozenset({"blocked", "dirty", "unstable"})


def finalize(
    pr: PullRequest,
    events: Sequence[Event],
    required_checks: Iterable[str] = (),
    api_test_state: str = "",
) -> PullRequest:
    """Recompute every derived field of *pr* from *events*.

    *events* must already be complete and sorted by timestamp.  The test
    state computed from the check summary always replaces *api_test_state*.
    """
    pr.check_summary = check_summary(events, required_checks)
    pr.approval_summary = approval_summary(events)
    pr.participant_access = participant_access(pr, events)
    pr.test_state = derive_test_state(pr.check_summary)
    if api_test_state and api_test_state.lower() != pr.test_state.value:
        log.debug(
            "summary.test_state_overridden",
            pr=pr.number,
            reported=api_test_state,
            computed=pr.test_state.value,
        )

    if pr.mergeable_state in _NOT_MERGEABLE_STATES:
        pr.mergeable = False
    pr.mergeable_state_description = mergeable_state_description(
        pr.mergeable_state, pr.check_summary, pr.approval_summary
    )
    return pr


def check_summary(events: Iterable[Event], required_checks: Iterable[str] = ()) -> CheckSummary:
    """Categorize each check by the outcome of its most recent event."""
    latest: dict[str, Event] = {}
    for ev in events:
        if ev.kind not in _CHECK_KINDS or not ev.body:
            continue
        current = latest.get(ev.body)
        if current is None or ev.timestamp >= current.timestamp:
            latest[ev.body] = ev

    summary = CheckSummary()
    buckets = summary.categories()
    for name, ev in latest.items():
        category = _OUTCOME_CATEGORY.get(ev.outcome)
        if category is not None:
            buckets[category][name] = ev.description

    for name in required_checks:
        if name and name not in latest:
            summary.pending[name] = EXPECTED_CHECK_DESCRIPTION
    return summary


def approval_summary(events: Iterable[Event]) -> ApprovalSummary:
    """Count each reviewer's most recent review only."""
    latest: dict[str, Event] = {}
    for ev in events:
        if ev.kind != EventKind.REVIEW or not ev.outcome:
            continue
        current = latest.get(ev.actor)
        if current is None or ev.timestamp >= current.timestamp:
            latest[ev.actor] = ev

    summary = ApprovalSummary()
    for ev in latest.values():
        outcome = ev.outcome.lower()
        if outcome == "approved":
            if ev.write_access == WriteAccess.DEFINITELY:
                summary.approvals_with_write_access += 1
            elif ev.write_access == WriteAccess.NO:
                summary.approvals_without_write_access += 1
            else:
                summary.approvals_with_unknown_access += 1
        elif outcome == "changes_requested":
            summary.changes_requested += 1
    return summary


def participant_access(pr: PullRequest, events: Iterable[Event]) -> dict[str, WriteAccess]:
    """Highest access level seen for every participant."""
    participants: dict[str, WriteAccess] = {}
    if pr.author:
        participants[pr.author] = WriteAccess(pr.author_write_access)
    for name in [*pr.assignees, *pr.reviewers]:
        if name:
            participants.setdefault(name, WriteAccess.NA)
    for ev in events:
        if not ev.actor:
            continue
        existing = participants.get(ev.actor)
        if existing is None or ev.write_access > existing:
            participants[ev.actor] = WriteAccess(ev.write_access)
    return participants


def derive_test_state(summary: CheckSummary) -> TestState:
    """Cancelled checks count as failing here even though they are bucketed apart."""
    if summary.failing or summary.cancelled:
        return TestState.FAILING
    if summary.pending:
        return TestState.PENDING
    if summary.success:
        return TestState.PASSING
    return TestState.NONE


def mergeable_state_description(
    state: str,
    checks: CheckSummary | None,
    approvals: ApprovalSummary | None,
) -> str:
    if state != "blocked":
        return _FIXED_DESCRIPTIONS.get(state, "")

    checks = checks or CheckSummary()
    approvals = approvals or ApprovalSummary()
    has_approval = approvals.approvals_with_write_access > 0
    has_failing = bool(checks.failing)
    has_pending = bool(checks.pending)

    if not has_approval and not has_failing:
        if has_pending:
            return "PR requires approval and has pending status checks"
        return "PR requires approval"
    if has_failing:
        if not has_approval:
            return "PR has failing status checks and requires approval"
        return "PR is blocked by failing status checks"
    if has_pending:
        return "PR is blocked by pending status checks"
    return "PR is blocked by required status checks or other branch protection rules"

