"""prtimeline — GitHub pull request timelines with derived merge state."""

from prtimeline.client import PullRequestClient
from prtimeline.core.config import ClientConfig
from prtimeline.core.github import parse_pull_request_url
from prtimeline.engines.pr_events.models import (
    ApprovalSummary,
    CheckSummary,
    Event,
    EventKind,
    PullRequest,
    PullRequestData,
    ReviewState,
    TestState,
    WriteAccess,
)
from prtimeline.exceptions import (
    GraphQLError,
    NoEventsError,
    PullRequestError,
    PullRequestFetchError,
)

__all__ = [
    "ApprovalSummary",
    "CheckSummary",
    "ClientConfig",
    "Event",
    "EventKind",
    "GraphQLError",
    "NoEventsError",
    "PullRequest",
    "PullRequestClient",
    "PullRequestData",
    "PullRequestError",
    "PullRequestFetchError",
    "ReviewState",
    "TestState",
    "WriteAccess",
    "parse_pull_request_url",
]
