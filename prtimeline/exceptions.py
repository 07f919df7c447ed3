"""Custom exceptions for prtimeline."""


class PullRequestError(Exception):
    """Base exception for all pull request fetch errors."""


class PullRequestFetchError(PullRequestError):
    """Raised when pull request metadata cannot be fetched at all."""

    def __init__(self, owner: str, repo: str, number: int, reason: str):
        self.owner = owner
        self.repo = repo
        self.number = number
        self.reason = reason
        super().__init__(f"fetching {owner}/{repo}#{number} failed: {reason}")


class NoEventsError(PullRequestError):
    """Raised when every fetch task failed and no events were collected."""

    def __init__(self, owner: str, repo: str, number: int, errors: list[str]):
        self.owner = owner
        self.repo = repo
        self.number = number
        self.errors = errors
        super().__init__(
            f"no events collected for {owner}/{repo}#{number} "
            f"({len(errors)} task(s) failed): {'; '.join(errors)}"
        )


class GraphQLError(PullRequestError):
    """Raised when a GraphQL response carries errors and no usable data."""

    def __init__(self, messages: list[str]):
        self.messages = messages
        joined = "; ".join(messages) or "unknown error"
        self.permission_denied = any(_looks_like_permission(m) for m in messages)
        if self.permission_denied:
            super().__init__(f"GraphQL permission denied: {joined}")
        else:
            super().__init__(f"GraphQL error: {joined}")


_PERMISSION_HINTS = (
    "not accessible by integration",
    "resource not accessible",
    "forbidden",
    "insufficient permissions",
    "requires authentication",
)


def _looks_like_permission(message: str) -> bool:
    lowered = message.lower()
    return any(hint in lowered for hint in _PERMISSION_HINTS)
