"""Raw items → canonical :class:`Event` records.

Everything in this module is pure: write access for MEMBER accounts is
resolved ahead of time by :class:`~prtimeline.engines.pr_events.access.AccessResolver`
and handed in as a mapping, so normalizing the same input twice yields the
same events.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime

from prtimeline.engines.pr_events.models import (
    Event,
    EventKind,
    PullRequest,
    ReviewState,
    WriteAccess,
)
from prtimeline.engines.pr_events.raw import (
    RawActor,
    RawCheckRun,
    RawClosed,
    RawComment,
    RawCommit,
    RawItem,
    RawOpened,
    RawPullRequestData,
    RawReview,
    RawReviewComment,
    RawStatusContext,
    RawTimelineEvent,
    dedupe,
)
from prtimeline.engines.pr_events.text import (
    contains_question,
    extract_mentions,
    is_bot,
    truncate,
)

AccessMap = Mapping[tuple[str, str], WriteAccess]

_ASSOCIATION_ACCESS: dict[str, WriteAccess] = {
    "OWNER": WriteAccess.DEFINITELY,
    "COLLABORATOR": WriteAccess.DEFINITELY,
    "MEMBER": WriteAccess.LIKELY,
    "CONTRIBUTOR": WriteAccess.UNLIKELY,
    "NONE": WriteAccess.UNLIKELY,
    "FIRST_TIMER": WriteAccess.UNLIKELY,
    "FIRST_TIME_CONTRIBUTOR": WriteAccess.UNLIKELY,
}

# REST timeline event names and GraphQL timeline typenames.  Items whose
# type is missing here are dropped.
TIMELINE_KINDS: dict[str, EventKind] = {
    "assigned": EventKind.ASSIGNED,
    "unassigned": EventKind.UNASSIGNED,
    "labeled": EventKind.LABELED,
    "unlabeled": EventKind.UNLABELED,
    "milestoned": EventKind.MILESTONED,
    "demilestoned": EventKind.DEMILESTONED,
    "review_requested": EventKind.REVIEW_REQUESTED,
    "review_request_removed": EventKind.REVIEW_REQUEST_REMOVED,
    "review_dismissed": EventKind.REVIEW_DISMISSED,
    "merged": EventKind.MERGED,
    "closed": EventKind.CLOSED,
    "reopened": EventKind.REOPENED,
    "ready_for_review": EventKind.READY_FOR_REVIEW,
    "convert_to_draft": EventKind.CONVERT_TO_DRAFT,
    "renamed": EventKind.RENAMED_TITLE,
    "mentioned": EventKind.MENTIONED,
    "referenced": EventKind.REFERENCED,
    "cross-referenced": EventKind.CROSS_REFERENCED,
    "connected": EventKind.CONNECTED,
    "disconnected": EventKind.DISCONNECTED,
    "pinned": EventKind.PINNED,
    "unpinned": EventKind.UNPINNED,
    "transferred": EventKind.TRANSFERRED,
    "subscribed": EventKind.SUBSCRIBED,
    "unsubscribed": EventKind.UNSUBSCRIBED,
    "locked": EventKind.LOCKED,
    "unlocked": EventKind.UNLOCKED,
    "user_blocked": EventKind.USER_BLOCKED,
    "head_ref_deleted": EventKind.HEAD_REF_DELETED,
    "head_ref_restored": EventKind.HEAD_REF_RESTORED,
    "head_ref_force_pushed": EventKind.HEAD_REF_FORCE_PUSHED,
    "base_ref_changed": EventKind.BASE_REF_CHANGED,
    "base_ref_force_pushed": EventKind.BASE_REF_FORCE_PUSHED,
    "auto_merge_enabled": EventKind.AUTO_MERGE_ENABLED,
    "auto_merge_disabled": EventKind.AUTO_MERGE_DISABLED,
    "added_to_merge_queue": EventKind.ADDED_TO_MERGE_QUEUE,
    "removed_from_merge_queue": EventKind.REMOVED_FROM_MERGE_QUEUE,
    "automatic_base_change_succeeded": EventKind.AUTOMATIC_BASE_CHANGE_SUCCEEDED,
    "automatic_base_change_failed": EventKind.AUTOMATIC_BASE_CHANGE_FAILED,
    "deployed": EventKind.DEPLOYED,
    "deployment_environment_changed": EventKind.DEPLOYMENT_ENVIRONMENT_CHANGED,
    "AssignedEvent": EventKind.ASSIGNED,
    "UnassignedEvent": EventKind.UNASSIGNED,
    "LabeledEvent": EventKind.LABELED,
    "UnlabeledEvent": EventKind.UNLABELED,
    "MilestonedEvent": EventKind.MILESTONED,
    "DemilestonedEvent": EventKind.DEMILESTONED,
    "ReviewRequestedEvent": EventKind.REVIEW_REQUESTED,
    "ReviewRequestRemovedEvent": EventKind.REVIEW_REQUEST_REMOVED,
    "ReviewDismissedEvent": EventKind.REVIEW_DISMISSED,
    "MergedEvent": EventKind.MERGED,
    "ClosedEvent": EventKind.CLOSED,
    "ReopenedEvent": EventKind.REOPENED,
    "ReadyForReviewEvent": EventKind.READY_FOR_REVIEW,
    "ConvertToDraftEvent": EventKind.CONVERT_TO_DRAFT,
    "RenamedTitleEvent": EventKind.RENAMED_TITLE,
    "MentionedEvent": EventKind.MENTIONED,
    "ReferencedEvent": EventKind.REFERENCED,
    "CrossReferencedEvent": EventKind.CROSS_REFERENCED,
    "ConnectedEvent": EventKind.CONNECTED,
    "DisconnectedEvent": EventKind.DISCONNECTED,
    "PinnedEvent": EventKind.PINNED,
    "UnpinnedEvent": EventKind.UNPINNED,
    "TransferredEvent": EventKind.TRANSFERRED,
    "SubscribedEvent": EventKind.SUBSCRIBED,
    "UnsubscribedEvent": EventKind.UNSUBSCRIBED,
    "LockedEvent": EventKind.LOCKED,
    "UnlockedEvent": EventKind.UNLOCKED,
    "UserBlockedEvent": EventKind.USER_BLOCKED,
    "HeadRefDeletedEvent": EventKind.HEAD_REF_DELETED,
    "HeadRefRestoredEvent": EventKind.HEAD_REF_RESTORED,
    "HeadRefForcePushedEvent": EventKind.HEAD_REF_FORCE_PUSHED,
    "BaseRefChangedEvent": EventKind.BASE_REF_CHANGED,
    "BaseRefForcePushedEvent": EventKind.BASE_REF_FORCE_PUSHED,
    "AutoMergeEnabledEvent": EventKind.AUTO_MERGE_ENABLED,
    "AutoMergeDisabledEvent": EventKind.AUTO_MERGE_DISABLED,
    "AddedToMergeQueueEvent": EventKind.ADDED_TO_MERGE_QUEUE,
    "RemovedFromMergeQueueEvent": EventKind.REMOVED_FROM_MERGE_QUEUE,
    "AutomaticBaseChangeSucceededEvent": EventKind.AUTOMATIC_BASE_CHANGE_SUCCEEDED,
    "AutomaticBaseChangeFailedEvent": EventKind.AUTOMATIC_BASE_CHANGE_FAILED,
    "DeployedEvent": EventKind.DEPLOYED,
    "DeploymentEnvironmentChangedEvent": EventKind.DEPLOYMENT_ENVIRONMENT_CHANGED,
}

_REVIEW_STATES: dict[str, ReviewState] = {
    "approved": ReviewState.APPROVED,
    "changes_requested": ReviewState.CHANGES_REQUESTED,
    "commented": ReviewState.COMMENTED,
}


def association_access(login: str, association: str) -> WriteAccess:
    """Static association table, used when no resolved level is known."""
    if not login:
        return WriteAccess.NA
    return _ASSOCIATION_ACCESS.get(association.upper(), WriteAccess.NA)


def _access(access: AccessMap | None, login: str, association: str) -> WriteAccess:
    if not login:
        return WriteAccess.NA
    if access is not None:
        resolved = access.get((login, association))
        if resolved is not None:
            return resolved
    return association_access(login, association)


def _actor_is_bot(actor: RawActor | None) -> bool:
    if actor is None:
        return False
    return is_bot(actor.login, actor_type=actor.type, node_id=actor.id)


# ── normalize ─────────────────────────────────────────────────────────────


def normalize(
    items: Iterable[RawItem],
    write_access: AccessMap | None = None,
    required_checks: Iterable[str] = (),
) -> list[Event]:
    """Convert raw items into events, in input order.

    Check runs reported for several commits (or by both the status rollup
    and the per-commit listing) collapse to the first item seen per
    ``(name, timestamp)``.  Unknown timeline types are dropped.
    """
    required = set(required_checks)
    seen_runs: set[tuple[str, datetime]] = set()
    events: list[Event] = []

    for item in items:
        if isinstance(item, RawCheckRun):
            event = _check_run_event(item, required)
            if event is None:
                continue
            key = (event.body, event.timestamp)
            if key in seen_runs:
                continue
            seen_runs.add(key)
            events.append(event)
            continue

        event = _convert(item, write_access, required)
        if event is not None:
            events.append(event)

    return events


def _convert(item: RawItem, access: AccessMap | None, required: set[str]) -> Event | None:
    if isinstance(item, RawOpened):
        return Event(
            kind=EventKind.PR_OPENED,
            timestamp=item.created_at,
            actor=item.author.login,
            bot=_actor_is_bot(item.author),
            body=truncate(item.body),
            write_access=_access(access, item.author.login, item.association),
        )
    if isinstance(item, RawClosed):
        if item.merged_by is not None and item.merged_by.login:
            return Event(
                kind=EventKind.PR_MERGED,
                timestamp=item.closed_at,
                actor=item.merged_by.login,
                bot=_actor_is_bot(item.merged_by),
            )
        return Event(kind=EventKind.PR_CLOSED, timestamp=item.closed_at)
    if isinstance(item, RawCommit):
        actor = item.author.login if item.author and item.author.login else item.author_name
        return Event(
            kind=EventKind.COMMIT,
            timestamp=item.committed_at,
            actor=actor,
            bot=_actor_is_bot(item.author),
            body=item.sha,
            description=truncate(item.message),
        )
    if isinstance(item, (RawComment, RawReviewComment)):
        return Event(
            kind=(
                EventKind.REVIEW_COMMENT
                if isinstance(item, RawReviewComment)
                else EventKind.COMMENT
            ),
            timestamp=item.created_at,
            actor=item.author.login,
            bot=_actor_is_bot(item.author),
            body=truncate(item.body),
            question=contains_question(item.body),
            mentions=tuple(extract_mentions(item.body)),
            write_access=_access(access, item.author.login, item.association),
            outdated=getattr(item, "outdated", False),
        )
    if isinstance(item, RawReview):
        if not item.state:
            return None
        return Event(
            kind=EventKind.REVIEW,
            timestamp=item.submitted_at,
            actor=item.author.login,
            bot=_actor_is_bot(item.author),
            outcome=item.state.lower(),
            body=truncate(item.body),
            question=contains_question(item.body),
            mentions=tuple(extract_mentions(item.body)),
            write_access=_access(access, item.author.login, item.association),
        )
    if isinstance(item, RawStatusContext):
        creator = item.creator
        return Event(
            kind=EventKind.STATUS_CHECK,
            timestamp=item.created_at,
            actor=creator.login if creator else "",
            bot=_actor_is_bot(creator),
            outcome=item.state.lower(),
            body=item.context,
            description=truncate(item.description),
            required=item.context in required,
        )
    if isinstance(item, RawTimelineEvent):
        return _timeline_event(item, access)
    return None


def _check_run_event(item: RawCheckRun, required: set[str]) -> Event | None:
    """A check run becomes one event at its completion (or start) time."""
    if item.completed_at is not None:
        timestamp, outcome = item.completed_at, item.conclusion
    elif item.started_at is not None:
        timestamp, outcome = item.started_at, item.status
    else:
        return None

    if item.title and item.summary:
        description = f"{item.title}: {item.summary}"
    else:
        description = item.title or item.summary

    return Event(
        kind=EventKind.CHECK_RUN,
        timestamp=timestamp,
        actor=item.app.login if item.app else "",
        bot=True,
        target=item.commit_sha,
        outcome=outcome.lower(),
        body=item.name,
        description=truncate(description),
        required=item.name in required,
    )


def _timeline_event(item: RawTimelineEvent, access: AccessMap | None) -> Event | None:
    kind = TIMELINE_KINDS.get(item.event)
    if kind is None:
        return None
    actor = item.actor.login if item.actor and item.actor.login else "unknown"
    return Event(
        kind=kind,
        timestamp=item.created_at,
        actor=actor,
        bot=_actor_is_bot(item.actor),
        target=item.target,
        target_is_bot=_actor_is_bot(item.target_actor),
        body=truncate(item.body),
        write_access=(
            _access(access, actor, item.association) if item.association else WriteAccess.NA
        ),
    )


# ── filtering ─────────────────────────────────────────────────────────────


def filter_events(events: Iterable[Event]) -> list[Event]:
    """Drop status checks that did not fail; every other kind is kept."""
    return [
        ev
        for ev in events
        if ev.kind != EventKind.STATUS_CHECK or ev.outcome == "failure"
    ]


def sort_events(events: list[Event]) -> list[Event]:
    """Stable ascending sort by timestamp."""
    return sorted(events, key=lambda ev: ev.timestamp)


# ── pull request metadata ─────────────────────────────────────────────────


def pull_request_from_raw(
    raw: RawPullRequestData,
    write_access: AccessMap | None = None,
) -> PullRequest:
    """Build the identity fields of a :class:`PullRequest`.

    Derived fields are left at their defaults for
    :func:`~prtimeline.engines.pr_events.summary.finalize` to fill in.
    """
    meta = raw.pull_request
    commits = sorted(
        (item for item in raw.items if isinstance(item, RawCommit)),
        key=lambda c: c.committed_at,
    )
    return PullRequest(
        number=meta.number,
        title=meta.title,
        body=truncate(meta.body),
        author=meta.author.login,
        author_bot=_actor_is_bot(meta.author) if meta.author.login else False,
        author_write_access=_access(write_access, meta.author.login, meta.author_association),
        state=meta.state.lower(),
        draft=meta.draft,
        merged=meta.merged or meta.merged_at is not None,
        merged_by=meta.merged_by.login if meta.merged_by else "",
        mergeable=meta.mergeable,
        mergeable_state=meta.mergeable_state.lower(),
        created_at=meta.created_at,
        updated_at=meta.updated_at,
        closed_at=meta.closed_at,
        merged_at=meta.merged_at,
        additions=meta.additions,
        deletions=meta.deletions,
        changed_files=meta.changed_files,
        head_sha=meta.head_sha,
        assignees=list(meta.assignees),
        labels=list(meta.labels),
        commits=dedupe([c.sha for c in commits]),
        reviewers=_reviewers(raw),
    )


def _reviewers(raw: RawPullRequestData) -> dict[str, ReviewState]:
    """Requested reviewers start out pending; the latest submitted review wins."""
    reviewers: dict[str, ReviewState] = {
        name: ReviewState.PENDING for name in raw.pull_request.requested_reviewers if name
    }
    reviews = sorted(
        (item for item in raw.items if isinstance(item, RawReview)),
        key=lambda r: r.submitted_at,
    )
    for review in reviews:
        state = _REVIEW_STATES.get(review.state.lower())
        if state is None or not review.author.login:
            continue
        reviewers[review.author.login] = state
    return reviewers

