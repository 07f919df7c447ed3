"""The complete pull request GraphQL query and its response models.

One query returns metadata, commits, reviews, review threads, comments,
timeline items and the head commit's status rollup.  Connections that
overflow their first page are followed with :func:`page_query`, which reuses
the same node selections.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Union

import structlog
from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
)
from pydantic.alias_generators import to_camel

from prtimeline.engines.pr_events.normalizer import TIMELINE_KINDS
from prtimeline.engines.pr_events.raw import (
    RawActor,
    RawCheckRun,
    RawComment,
    RawCommit,
    RawItem,
    RawPullRequest,
    RawPullRequestData,
    RawReview,
    RawReviewComment,
    RawStatusContext,
    RawTimelineEvent,
    dedupe,
)

log = structlog.get_logger("prtimeline.engine")

# ── query text ────────────────────────────────────────────────────────────

_ACTOR_FRAGMENT = """
fragment ActorFields on Actor {
  __typename
  login
  ... on User { id }
  ... on Bot { id }
  ... on Organization { id }
  ... on Mannequin { id }
}
"""

_PAGE_INFO = "pageInfo { hasNextPage endCursor }"

COMMIT_NODES = """
nodes {
  commit {
    oid
    message
    committedDate
    author { name user { ...ActorFields } }
  }
}
"""

REVIEW_NODES = """
nodes {
  state
  body
  createdAt
  submittedAt
  authorAssociation
  author { ...ActorFields }
}
"""

COMMENT_NODES = """
nodes {
  body
  createdAt
  authorAssociation
  author { ...ActorFields }
}
"""

REVIEW_THREAD_NODES = """
nodes {
  isOutdated
  comments(first: 100) {
    nodes {
      body
      createdAt
      outdated
      authorAssociation
      author { ...ActorFields }
    }
  }
}
"""

_PLAIN_TIMELINE_TYPES = (
    "MergedEvent",
    "ClosedEvent",
    "ReopenedEvent",
    "ReadyForReviewEvent",
    "ConvertToDraftEvent",
    "HeadRefDeletedEvent",
    "HeadRefRestoredEvent",
    "HeadRefForcePushedEvent",
    "BaseRefChangedEvent",
    "BaseRefForcePushedEvent",
    "LockedEvent",
    "UnlockedEvent",
    "AutoMergeEnabledEvent",
    "AutoMergeDisabledEvent",
    "AddedToMergeQueueEvent",
    "RemovedFromMergeQueueEvent",
    "AutomaticBaseChangeSucceededEvent",
    "AutomaticBaseChangeFailedEvent",
    "ConnectedEvent",
    "DisconnectedEvent",
    "CrossReferencedEvent",
    "ReferencedEvent",
    "SubscribedEvent",
    "UnsubscribedEvent",
    "DeployedEvent",
    "DeploymentEnvironmentChangedEvent",
    "PinnedEvent",
    "UnpinnedEvent",
    "TransferredEvent",
    "UserBlockedEvent",
    "MentionedEvent",
)

TIMELINE_NODES = (
    """
nodes {
  __typename
  ... on AssignedEvent { createdAt actor { ...ActorFields } assignee { ...ActorFields } }
  ... on UnassignedEvent { createdAt actor { ...ActorFields } assignee { ...ActorFields } }
  ... on LabeledEvent { createdAt actor { ...ActorFields } label { name } }
  ... on UnlabeledEvent { createdAt actor { ...ActorFields } label { name } }
  ... on MilestonedEvent { createdAt actor { ...ActorFields } milestoneTitle }
  ... on DemilestonedEvent { createdAt actor { ...ActorFields } milestoneTitle }
  ... on ReviewRequestedEvent {
    createdAt
    actor { ...ActorFields }
    requestedReviewer { ... on User { login id } ... on Team { name id } ... on Bot { login id } }
  }
  ... on ReviewRequestRemovedEvent {
    createdAt
    actor { ...ActorFields }
    requestedReviewer { ... on User { login id } ... on Team { name id } ... on Bot { login id } }
  }
  ... on ReviewDismissedEvent { createdAt actor { ...ActorFields } dismissalMessage }
  ... on RenamedTitleEvent { createdAt actor { ...ActorFields } previousTitle currentTitle }
"""
    + "".join(
        f"  ... on {name} {{ createdAt actor {{ ...ActorFields }} }}\n"
        for name in _PLAIN_TIMELINE_TYPES
    )
    + "}\n"
)

_ROLLUP_NODES = """
nodes {
  __typename
  ... on CheckRun {
    name
    status
    conclusion
    startedAt
    completedAt
    title
    summary
  }
  ... on StatusContext {
    context
    state
    description
    createdAt
    creator { ...ActorFields }
  }
}
"""

# connection name → node selection, for the first page and follow-up pages
CONNECTIONS: dict[str, str] = {
    "commits": COMMIT_NODES,
    "reviews": REVIEW_NODES,
    "comments": COMMENT_NODES,
    "reviewThreads": REVIEW_THREAD_NODES,
    "timelineItems": TIMELINE_NODES,
}

PULL_REQUEST_QUERY = (
    """
query($owner: String!, $repo: String!, $number: Int!) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $number) {
      number
      title
      body
      state
      createdAt
      updatedAt
      closedAt
      mergedAt
      isDraft
      additions
      deletions
      changedFiles
      mergeable
      mergeStateStatus
      authorAssociation
      headRefOid
      author { ...ActorFields }
      mergedBy { ...ActorFields }
      assignees(first: 100) { nodes { login } }
      labels(first: 100) { nodes { name } }
      reviewRequests(first: 100) {
        nodes {
          requestedReviewer { ... on User { login } ... on Team { name } ... on Bot { login } }
        }
      }
      baseRef {
        name
        refUpdateRule { requiredStatusCheckContexts }
        branchProtectionRule { requiredStatusCheckContexts }
      }
      headRef {
        target {
          ... on Commit {
            oid
            statusCheckRollup {
              state
              contexts(first: 100) {
"""
    + _ROLLUP_NODES
    + """
              }
            }
          }
        }
      }
"""
    + "".join(
        f"      {name}(first: 100) {{ {_PAGE_INFO}\n{nodes}      }}\n"
        for name, nodes in CONNECTIONS.items()
    )
    + """
    }
  }
  rateLimit { cost remaining resetAt }
}
"""
    + _ACTOR_FRAGMENT
)


def page_query(connection: str) -> str:
    """Query for one follow-up page of *connection*, selected by cursor."""
    nodes = CONNECTIONS[connection]
    return (
        """
query($owner: String!, $repo: String!, $number: Int!, $cursor: String) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $number) {
"""
        + f"      {connection}(first: 100, after: $cursor) {{ {_PAGE_INFO}\n{nodes}      }}\n"
        + """
    }
  }
}
"""
        + _ACTOR_FRAGMENT
    )


# ── response models ───────────────────────────────────────────────────────


class _GQLModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class GQLActor(_GQLModel):
    typename: str = Field("", alias="__typename")
    login: str = ""
    id: str = ""
    name: str = ""  # teams have a name instead of a login

    def raw(self) -> RawActor:
        return RawActor(login=self.login, id=self.id, type=self.typename)


class PageInfo(_GQLModel):
    has_next_page: bool = False
    end_cursor: str | None = None


class _Named(_GQLModel):
    name: str = ""


class _Connection(_GQLModel):
    page_info: PageInfo = Field(default_factory=PageInfo)
    nodes: list[Any] = Field(default_factory=list)


class GQLCommitAuthor(_GQLModel):
    name: str = ""
    user: GQLActor | None = None


class GQLCommit(_GQLModel):
    oid: str
    message: str = ""
    committed_date: datetime
    author: GQLCommitAuthor = Field(default_factory=GQLCommitAuthor)


class GQLCommitNode(_GQLModel):
    commit: GQLCommit


class GQLReview(_GQLModel):
    state: str = ""
    body: str = ""
    created_at: datetime
    submitted_at: datetime | None = None
    author_association: str = ""
    author: GQLActor | None = None


class GQLComment(_GQLModel):
    body: str = ""
    created_at: datetime
    outdated: bool = False
    author_association: str = ""
    author: GQLActor | None = None


class GQLReviewThread(_GQLModel):
    is_outdated: bool = False
    comments: _Connection = Field(default_factory=_Connection)


# status rollup contexts


class GQLCheckRun(_GQLModel):
    typename: str = Field("CheckRun", alias="__typename")
    name: str
    status: str = ""
    conclusion: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    title: str | None = None
    summary: str | None = None

    def to_raw(self, sha: str) -> RawCheckRun:
        return RawCheckRun(
            name=self.name,
            status=self.status,
            conclusion=self.conclusion or "",
            started_at=self.started_at,
            completed_at=self.completed_at,
            title=self.title or "",
            summary=self.summary or "",
            commit_sha=sha,
        )


class GQLStatusContext(_GQLModel):
    typename: str = Field("StatusContext", alias="__typename")
    context: str
    state: str = ""
    description: str | None = None
    created_at: datetime
    creator: GQLActor | None = None

    def to_raw(self, sha: str) -> RawStatusContext:
        return RawStatusContext(
            context=self.context,
            state=self.state,
            description=self.description or "",
            created_at=self.created_at,
            creator=self.creator.raw() if self.creator else None,
        )


RollupContext = Annotated[
    Union[
        Annotated[GQLCheckRun, Tag("CheckRun")],
        Annotated[GQLStatusContext, Tag("StatusContext")],
    ],
    Discriminator(lambda v: v.get("__typename") if isinstance(v, dict) else v.typename),
]


# timeline items


class GQLTimelineEvent(_GQLModel):
    typename: str = Field(alias="__typename")
    created_at: datetime
    actor: GQLActor | None = None

    def to_raw(self) -> RawTimelineEvent:
        return self._raw()

    def _raw(
        self, target: str = "", target_actor: GQLActor | None = None, body: str = ""
    ) -> RawTimelineEvent:
        return RawTimelineEvent(
            event=self.typename,
            created_at=self.created_at,
            actor=self.actor.raw() if self.actor else None,
            target=target,
            target_actor=target_actor.raw() if target_actor else None,
            body=body,
        )


class GQLAssigneeEvent(GQLTimelineEvent):
    assignee: GQLActor | None = None

    def to_raw(self) -> RawTimelineEvent:
        login = self.assignee.login if self.assignee else ""
        return self._raw(target=login, target_actor=self.assignee)


class GQLLabelEvent(GQLTimelineEvent):
    label: _Named | None = None

    def to_raw(self) -> RawTimelineEvent:
        return self._raw(target=self.label.name if self.label else "")


class GQLMilestoneEvent(GQLTimelineEvent):
    milestone_title: str = ""

    def to_raw(self) -> RawTimelineEvent:
        return self._raw(target=self.milestone_title)


class GQLReviewRequestEvent(GQLTimelineEvent):
    requested_reviewer: GQLActor | None = None

    def to_raw(self) -> RawTimelineEvent:
        reviewer = self.requested_reviewer
        if reviewer is None:
            return self._raw()
        return self._raw(target=reviewer.login or reviewer.name, target_actor=reviewer)


class GQLReviewDismissedEvent(GQLTimelineEvent):
    dismissal_message: str | None = None

    def to_raw(self) -> RawTimelineEvent:
        return self._raw(body=self.dismissal_message or "")


class GQLRenamedTitleEvent(GQLTimelineEvent):
    previous_title: str = ""
    current_title: str = ""

    def to_raw(self) -> RawTimelineEvent:
        return self._raw(body=f'Renamed from "{self.previous_title}" to "{self.current_title}"')


class GQLMentionedEvent(GQLTimelineEvent):
    def to_raw(self) -> RawTimelineEvent:
        return self._raw(body="User was mentioned")


_TIMELINE_TAGS: dict[str, str] = {
    "AssignedEvent": "assignee",
    "UnassignedEvent": "assignee",
    "LabeledEvent": "label",
    "UnlabeledEvent": "label",
    "MilestonedEvent": "milestone",
    "DemilestonedEvent": "milestone",
    "ReviewRequestedEvent": "review_request",
    "ReviewRequestRemovedEvent": "review_request",
    "ReviewDismissedEvent": "review_dismissed",
    "RenamedTitleEvent": "renamed",
    "MentionedEvent": "mentioned",
}


def _timeline_tag(value: Any) -> str | None:
    typename = value.get("__typename") if isinstance(value, dict) else value.typename
    if typename in _TIMELINE_TAGS:
        return _TIMELINE_TAGS[typename]
    if typename in TIMELINE_KINDS:
        return "plain"
    return None


TimelineNode = Annotated[
    Union[
        Annotated[GQLAssigneeEvent, Tag("assignee")],
        Annotated[GQLLabelEvent, Tag("label")],
        Annotated[GQLMilestoneEvent, Tag("milestone")],
        Annotated[GQLReviewRequestEvent, Tag("review_request")],
        Annotated[GQLReviewDismissedEvent, Tag("review_dismissed")],
        Annotated[GQLRenamedTitleEvent, Tag("renamed")],
        Annotated[GQLMentionedEvent, Tag("mentioned")],
        Annotated[GQLTimelineEvent, Tag("plain")],
    ],
    Discriminator(_timeline_tag),
]

_ROLLUP_ADAPTER: TypeAdapter[RollupContext] = TypeAdapter(RollupContext)
_TIMELINE_ADAPTER: TypeAdapter[TimelineNode] = TypeAdapter(TimelineNode)
_COMMIT_ADAPTER = TypeAdapter(GQLCommitNode)
_REVIEW_ADAPTER = TypeAdapter(GQLReview)
_COMMENT_ADAPTER = TypeAdapter(GQLComment)
_THREAD_ADAPTER = TypeAdapter(GQLReviewThread)


# pull request


class GQLStatusRollup(_GQLModel):
    state: str = ""
    contexts: _Connection = Field(default_factory=_Connection)


class GQLHeadTarget(_GQLModel):
    oid: str = ""
    status_check_rollup: GQLStatusRollup | None = None


class GQLHeadRef(_GQLModel):
    target: GQLHeadTarget | None = None


class _RequiredContexts(_GQLModel):
    required_status_check_contexts: list[str] | None = None


class GQLBaseRef(_GQLModel):
    name: str = ""
    ref_update_rule: _RequiredContexts | None = None
    branch_protection_rule: _RequiredContexts | None = None


class _ReviewRequest(_GQLModel):
    requested_reviewer: GQLActor | None = None


class GQLPullRequest(_GQLModel):
    number: int
    title: str = ""
    body: str = ""
    state: str = ""
    created_at: datetime
    updated_at: datetime | None = None
    closed_at: datetime | None = None
    merged_at: datetime | None = None
    is_draft: bool = False
    additions: int = 0
    deletions: int = 0
    changed_files: int = 0
    mergeable: str = ""
    merge_state_status: str = ""
    author_association: str = ""
    head_ref_oid: str = ""
    author: GQLActor | None = None
    merged_by: GQLActor | None = None
    assignees: _Connection = Field(default_factory=_Connection)
    labels: _Connection = Field(default_factory=_Connection)
    review_requests: _Connection = Field(default_factory=_Connection)
    base_ref: GQLBaseRef | None = None
    head_ref: GQLHeadRef | None = None
    commits: _Connection = Field(default_factory=_Connection)
    reviews: _Connection = Field(default_factory=_Connection)
    comments: _Connection = Field(default_factory=_Connection)
    review_threads: _Connection = Field(default_factory=_Connection)
    timeline_items: _Connection = Field(default_factory=_Connection)

    @property
    def head_sha(self) -> str:
        if self.head_ref and self.head_ref.target and self.head_ref.target.oid:
            return self.head_ref.target.oid
        return self.head_ref_oid

    def required_checks(self) -> list[str]:
        contexts: list[str] = []
        if self.base_ref is not None:
            for rule in (self.base_ref.ref_update_rule, self.base_ref.branch_protection_rule):
                if rule is not None:
                    contexts.extend(rule.required_status_check_contexts or [])
        return dedupe(contexts)


_MERGEABLE = {"MERGEABLE": True, "CONFLICTING": False}


def _nodes(adapter: TypeAdapter[Any], nodes: list[Any], what: str) -> list[Any]:
    """Validate each node on its own; bad nodes are logged and skipped."""
    parsed = []
    for node in nodes:
        if node is None:
            continue
        try:
            parsed.append(adapter.validate_python(node))
        except ValidationError as exc:
            typename = node.get("__typename") if isinstance(node, dict) else None
            log.debug(
                "graphql.node_skipped", kind=what, typename=typename, errors=exc.error_count()
            )
    return parsed


def to_raw_data(pr: GQLPullRequest) -> RawPullRequestData:
    """Flatten a (fully paged) GraphQL pull request into raw items."""
    author = pr.author or GQLActor()
    meta = RawPullRequest(
        number=pr.number,
        title=pr.title,
        body=pr.body,
        state=pr.state,
        draft=pr.is_draft,
        merged=pr.merged_at is not None,
        merged_by=pr.merged_by.raw() if pr.merged_by else None,
        mergeable=_MERGEABLE.get(pr.mergeable.upper()),
        mergeable_state=pr.merge_state_status,
        author=author.raw(),
        author_association=pr.author_association,
        created_at=pr.created_at,
        updated_at=pr.updated_at,
        closed_at=pr.closed_at,
        merged_at=pr.merged_at,
        additions=pr.additions,
        deletions=pr.deletions,
        changed_files=pr.changed_files,
        head_sha=pr.head_sha,
        base_ref=pr.base_ref.name if pr.base_ref else "",
        assignees=dedupe(n.get("login", "") for n in pr.assignees.nodes if n),
        labels=dedupe(n.get("name", "") for n in pr.labels.nodes if n),
        requested_reviewers=_requested_reviewers(pr.review_requests.nodes),
    )

    items: list[RawItem] = list(meta.lifecycle_items())

    for node in _nodes(_COMMIT_ADAPTER, pr.commits.nodes, "commit"):
        commit = node.commit
        user = commit.author.user
        items.append(
            RawCommit(
                sha=commit.oid,
                message=commit.message,
                committed_at=commit.committed_date,
                author=user.raw() if user and user.login else None,
                author_name=commit.author.name,
            )
        )

    for review in _nodes(_REVIEW_ADAPTER, pr.reviews.nodes, "review"):
        if not review.state:
            continue
        items.append(
            RawReview(
                submitted_at=review.submitted_at or review.created_at,
                author=(review.author or GQLActor()).raw(),
                association=review.author_association,
                state=review.state,
                body=review.body,
            )
        )

    for thread in _nodes(_THREAD_ADAPTER, pr.review_threads.nodes, "review_thread"):
        for comment in _nodes(_COMMENT_ADAPTER, thread.comments.nodes, "review_comment"):
            items.append(
                RawReviewComment(
                    created_at=comment.created_at,
                    author=(comment.author or GQLActor()).raw(),
                    association=comment.author_association,
                    body=comment.body,
                    outdated=comment.outdated or thread.is_outdated,
                )
            )

    for comment in _nodes(_COMMENT_ADAPTER, pr.comments.nodes, "comment"):
        items.append(
            RawComment(
                created_at=comment.created_at,
                author=(comment.author or GQLActor()).raw(),
                association=comment.author_association,
                body=comment.body,
            )
        )

    rollup = _rollup(pr)
    if rollup is not None:
        for context in _nodes(_ROLLUP_ADAPTER, rollup.contexts.nodes, "rollup_context"):
            items.append(context.to_raw(pr.head_sha))

    for node in _nodes(_TIMELINE_ADAPTER, pr.timeline_items.nodes, "timeline"):
        items.append(node.to_raw())

    return RawPullRequestData(
        pull_request=meta,
        items=items,
        required_checks=pr.required_checks(),
        test_state=rollup.state.lower() if rollup is not None else "",
    )


def _rollup(pr: GQLPullRequest) -> GQLStatusRollup | None:
    if pr.head_ref is None or pr.head_ref.target is None:
        return None
    return pr.head_ref.target.status_check_rollup


def _requested_reviewers(nodes: list[Any]) -> list[str]:
    names: list[str] = []
    for node in nodes:
        reviewer = (node or {}).get("requestedReviewer") or {}
        names.append(reviewer.get("login") or reviewer.get("name") or "")
    return dedupe(names)
