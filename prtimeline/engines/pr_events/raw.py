"""Transport-neutral raw items produced by the fetch strategies.

Both fetch strategies (the hybrid GraphQL query and the REST fan-out) emit
the same item shapes below. Each item is tagged by its ``item`` field, so a
loosely typed payload can be decoded through one discriminated union.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Iterable, Literal, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

log = structlog.get_logger("prtimeline.engine")


class _RawModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RawActor(_RawModel):
    login: str = ""
    id: str = ""
    type: str = ""  # "Bot", "User", "Organization", ... when known


class RawOpened(_RawModel):
    item: Literal["opened"] = "opened"
    created_at: datetime
    author: RawActor = Field(default_factory=RawActor)
    association: str = ""
    body: str = ""


class RawClosed(_RawModel):
    item: Literal["closed"] = "closed"
    closed_at: datetime
    merged_by: RawActor | None = None


class RawCommit(_RawModel):
    item: Literal["commit"] = "commit"
    sha: str
    message: str = ""
    committed_at: datetime
    author: RawActor | None = None
    author_name: str = ""


class RawComment(_RawModel):
    item: Literal["comment"] = "comment"
    created_at: datetime
    author: RawActor = Field(default_factory=RawActor)
    association: str = ""
    body: str = ""


class RawReviewComment(_RawModel):
    item: Literal["review_comment"] = "review_comment"
    created_at: datetime
    author: RawActor = Field(default_factory=RawActor)
    association: str = ""
    body: str = ""
    outdated: bool = False


class RawReview(_RawModel):
    item: Literal["review"] = "review"
    submitted_at: datetime
    author: RawActor = Field(default_factory=RawActor)
    association: str = ""
    state: str = ""
    body: str = ""


class RawCheckRun(_RawModel):
    item: Literal["check_run"] = "check_run"
    name: str
    status: str = ""
    conclusion: str = ""
    started_at: datetime | None = None
    completed_at: datetime | None = None
    title: str = ""
    summary: str = ""
    commit_sha: str = ""
    app: RawActor | None = None


class RawStatusContext(_RawModel):
    item: Literal["status_context"] = "status_context"
    context: str
    state: str = ""
    description: str = ""
    created_at: datetime
    creator: RawActor | None = None


class RawTimelineEvent(_RawModel):
    """A timeline happening; ``event`` is the upstream type name.

    REST timeline names (``labeled``) and GraphQL typenames (``LabeledEvent``)
    are both accepted; the normalizer maps them onto one event kind.
    """

    item: Literal["timeline"] = "timeline"
    event: str
    created_at: datetime
    actor: RawActor | None = None
    association: str = ""
    target: str = ""
    target_actor: RawActor | None = None
    body: str = ""


RawItem = Annotated[
    Union[
        RawOpened,
        RawClosed,
        RawCommit,
        RawComment,
        RawReviewComment,
        RawReview,
        RawCheckRun,
        RawStatusContext,
        RawTimelineEvent,
    ],
    Field(discriminator="item"),
]

_RAW_ITEM_ADAPTER: TypeAdapter[RawItem] = TypeAdapter(RawItem)


def decode_items(payloads: Iterable[dict[str, Any]]) -> list[RawItem]:
    """Validate loosely typed payloads into raw items.

    A payload that does not validate is logged and skipped; one bad item
    never fails the batch.
    """
    items: list[RawItem] = []
    for payload in payloads:
        try:
            items.append(_RAW_ITEM_ADAPTER.validate_python(payload))
        except ValidationError as exc:
            log.warning(
                "raw.item_skipped",
                item=payload.get("item") if isinstance(payload, dict) else None,
                errors=exc.error_count(),
            )
    return items


class RawPullRequest(_RawModel):
    """Pull request metadata as reported upstream."""

    number: int
    title: str = ""
    body: str = ""
    state: str = ""
    draft: bool = False
    merged: bool = False
    merged_by: RawActor | None = None
    mergeable: bool | None = None
    mergeable_state: str = ""
    author: RawActor = Field(default_factory=RawActor)
    author_association: str = ""
    created_at: datetime
    updated_at: datetime | None = None
    closed_at: datetime | None = None
    merged_at: datetime | None = None
    additions: int = 0
    deletions: int = 0
    changed_files: int = 0
    head_sha: str = ""
    base_ref: str = ""
    assignees: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    requested_reviewers: list[str] = Field(default_factory=list)

    def lifecycle_items(self) -> list[RawItem]:
        """Opened / closed items derived from the metadata itself."""
        items: list[RawItem] = [
            RawOpened(
                created_at=self.created_at,
                author=self.author,
                association=self.author_association,
                body=self.body,
            )
        ]
        if self.closed_at is not None and not self.draft:
            items.append(RawClosed(closed_at=self.closed_at, merged_by=self.merged_by))
        return items


class RawPullRequestData(_RawModel):
    """Everything a fetch strategy collected for one pull request."""

    pull_request: RawPullRequest
    items: list[RawItem] = Field(default_factory=list)
    required_checks: list[str] = Field(default_factory=list)
    test_state: str = ""
    errors: list[str] = Field(default_factory=list)


def dedupe(values: Iterable[str]) -> list[str]:
    """Drop empty and repeated values, keeping first-appearance order."""
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result
