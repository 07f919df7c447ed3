"""Pull request events engine — normalize GitHub activity into a timeline."""

from prtimeline.engines.pr_events.access import AccessResolver, upgrade_write_access
from prtimeline.engines.pr_events.cache import DiskStore, FreshnessCache
from prtimeline.engines.pr_events.fetchers import Fetcher, GraphQLFetcher, RestFetcher
from prtimeline.engines.pr_events.github_client import GitHubClient, RateLimitError
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
from prtimeline.engines.pr_events.normalizer import filter_events, normalize, sort_events
from prtimeline.engines.pr_events.summary import finalize

__all__ = [
    "AccessResolver",
    "ApprovalSummary",
    "CheckSummary",
    "DiskStore",
    "Event",
    "EventKind",
    "Fetcher",
    "FreshnessCache",
    "GitHubClient",
    "GraphQLFetcher",
    "PullRequest",
    "PullRequestData",
    "RateLimitError",
    "RestFetcher",
    "ReviewState",
    "TestState",
    "WriteAccess",
    "filter_events",
    "finalize",
    "normalize",
    "sort_events",
    "upgrade_write_access",
]
