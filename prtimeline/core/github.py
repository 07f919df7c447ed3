"""GitHub pull request reference parsing."""

from __future__ import annotations

import re

# owner/repo#123
_SHORT_REF_RE = re.compile(r"^([\w.-]+)/([\w.-]+)#(\d+)$")


def parse_pull_request_url(ref: str) -> tuple[str, str, int]:
    """Extract ``(owner, repo, number)`` from a pull request reference.

    Handles:
      - https://github.com/owner/repo/pull/123
      - https://github.com/owner/repo/pull/123/files
      - github.com/owner/repo/pull/123
      - owner/repo#123

    Raises ValueError if the reference cannot be parsed.
    """
    result = _extract_pull_request(ref)
    if result is None:
        raise ValueError(f"cannot parse GitHub pull request reference: {ref!r}")
    return result


def _extract_pull_request(ref: str) -> tuple[str, str, int] | None:
    ref = ref.strip().rstrip("/")

    match = _SHORT_REF_RE.match(ref)
    if match:
        return match.group(1), match.group(2), int(match.group(3))

    if "://" in ref:
        ref = ref.split("://", 1)[1]
    parts = ref.split("/")
    # github.com/owner/repo/pull/123[/...]
    if len(parts) >= 5 and parts[3] in ("pull", "pulls") and parts[4].isdigit():
        owner, repo = parts[1], parts[2]
        if owner and repo:
            return owner, repo, int(parts[4])
    return None
