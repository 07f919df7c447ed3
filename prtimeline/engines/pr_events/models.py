"""Data models for the pull-request event engine."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime


class EventKind(str, enum.Enum):
    """Closed set of event kinds an :class:`Event` can carry."""

    PR_OPENED = "pr_opened"
    PR_CLOSED = "pr_closed"
    PR_MERGED = "pr_merged"

    COMMIT = "commit"
    COMMENT = "comment"
    REVIEW = "review"
    REVIEW_COMMENT = "review_comment"
    CHECK_RUN = "check_run"
    STATUS_CHECK = "status_check"

    LABELED = "labeled"
    UNLABELED = "unlabeled"
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    MILESTONED = "milestoned"
    DEMILESTONED = "demilestoned"
    REVIEW_REQUESTED = "review_requested"
    REVIEW_REQUEST_REMOVED = "review_request_removed"
    REVIEW_DISMISSED = "review_dismissed"

    MERGED = "merged"
    CLOSED = "closed"
    REOPENED = "reopened"
    READY_FOR_REVIEW = "ready_for_review"
    CONVERT_TO_DRAFT = "convert_to_draft"
    RENAMED_TITLE = "renamed_title"

    MENTIONED = "mentioned"
    REFERENCED = "referenced"
    CROSS_REFERENCED = "cross_referenced"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"

    PINNED = "pinned"
    UNPINNED = "unpinned"
    TRANSFERRED = "transferred"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    USER_BLOCKED = "user_blocked"

    HEAD_REF_DELETED = "head_ref_deleted"
    HEAD_REF_RESTORED = "head_ref_restored"
    HEAD_REF_FORCE_PUSHED = "head_ref_force_pushed"
    BASE_REF_CHANGED = "base_ref_changed"
    BASE_REF_FORCE_PUSHED = "base_ref_force_pushed"

    AUTO_MERGE_ENABLED = "auto_merge_enabled"
    AUTO_MERGE_DISABLED = "auto_merge_disabled"
    ADDED_TO_MERGE_QUEUE = "added_to_merge_queue"
    REMOVED_FROM_MERGE_QUEUE = "removed_from_merge_queue"
    AUTOMATIC_BASE_CHANGE_SUCCEEDED = "automatic_base_change_succeeded"
    AUTOMATIC_BASE_CHANGE_FAILED = "automatic_base_change_failed"

    DEPLOYED = "deployed"
    DEPLOYMENT_ENVIRONMENT_CHANGED = "deployment_environment_changed"


class WriteAccess(enum.IntEnum):
    """Confidence that an actor can push to / merge into the repository."""

    NO = -2  # confirmed no write access
    UNLIKELY = -1  # CONTRIBUTOR, NONE, first-time contributors
    NA = 0  # not applicable / unknown
    LIKELY = 1  # MEMBER whose permission could not be confirmed
    DEFINITELY = 2  # OWNER, COLLABORATOR, or confirmed via API


class ReviewState(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    COMMENTED = "commented"


class TestState(str, enum.Enum):
    __test__ = False  # not a pytest class

    NONE = "none"
    PENDING = "pending"
    PASSING = "passing"
    FAILING = "failing"


@dataclass(frozen=True)
class Event:
    """A single thing that happened on a pull request.

    ``body`` holds the check name for check/status events and the commit SHA
    for commit events. ``target`` holds the label, assignee, milestone or
    requested reviewer, and the commit SHA a check run ran against.
    """

    kind: EventKind
    timestamp: datetime
    actor: str = ""
    bot: bool = False
    target: str = ""
    target_is_bot: bool = False
    outcome: str = ""
    body: str = ""
    description: str = ""
    question: bool = False
    write_access: WriteAccess = WriteAccess.NA
    required: bool = False
    outdated: bool = False
    mentions: tuple[str, ...] = ()


@dataclass
class CheckSummary:
    """Latest state of every check, one category per check name."""

    success: dict[str, str] = field(default_factory=dict)
    failing: dict[str, str] = field(default_factory=dict)
    pending: dict[str, str] = field(default_factory=dict)
    cancelled: dict[str, str] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)
    stale: dict[str, str] = field(default_factory=dict)
    neutral: dict[str, str] = field(default_factory=dict)

    def categories(self) -> dict[str, dict[str, str]]:
        return {
            "success": self.success,
            "failing": self.failing,
            "pending": self.pending,
            "cancelled": self.cancelled,
            "skipped": self.skipped,
            "stale": self.stale,
            "neutral": self.neutral,
        }


@dataclass
class ApprovalSummary:
    approvals_with_write_access: int = 0
    approvals_with_unknown_access: int = 0
    approvals_without_write_access: int = 0
    changes_requested: int = 0


@dataclass
class PullRequest:
    """Pull request metadata plus the aggregates derived from its events.

    The derived fields (``check_summary``, ``approval_summary``,
    ``participant_access``, ``test_state``, ``mergeable_state_description``)
    are only written by :func:`~prtimeline.engines.pr_events.summary.finalize`.
    """

    number: int
    title: str = ""
    body: str = ""
    author: str = ""
    author_bot: bool = False
    author_write_access: WriteAccess = WriteAccess.NA
    state: str = ""
    draft: bool = False
    merged: bool = False
    merged_by: str = ""
    mergeable: bool | None = None
    mergeable_state: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    closed_at: datetime | None = None
    merged_at: datetime | None = None
    additions: int = 0
    deletions: int = 0
    changed_files: int = 0
    head_sha: str = ""
    assignees: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    commits: list[str] = field(default_factory=list)
    reviewers: dict[str, ReviewState] = field(default_factory=dict)

    check_summary: CheckSummary | None = None
    approval_summary: ApprovalSummary | None = None
    participant_access: dict[str, WriteAccess] = field(default_factory=dict)
    test_state: TestState = TestState.NONE
    mergeable_state_description: str = ""


@dataclass
class PullRequestData:
    """A pull request and its finalized, timestamp-ordered events."""

    pull_request: PullRequest
    events: list[Event] = field(default_factory=list)
    cached_at: datetime | None = None
