"""Text heuristics: bot detection, question detection, mentions, truncation."""

from __future__ import annotations

import re

MAX_BODY_LENGTH = 256

# Case-insensitive substrings that mark a body as asking something.
QUESTION_PATTERNS: tuple[str, ...] = (
    "how can",
    "how do",
    "how would",
    "how should",
    "should i",
    "should we",
    "can i",
    "can we",
    "can you",
    "could you",
    "would you",
    "what do you think",
    "what's the best",
    "what is the best",
    "any suggestions",
    "any ideas",
    "any thoughts",
    "anyone know",
    "does anyone",
    "is it possible",
    "is there a way",
    "wondering if",
    "thoughts on",
    "advice on",
    "help with",
    "need help",
)

# "@octocat", "@my-org": 1..39 chars, no leading/trailing hyphen.  The
# handle must open the string or follow a non-alphanumeric, so e-mail
# addresses ("dev@example.com") are not treated as mentions.
MENTION_PATTERN = re.compile(
    r"(?:^|[^a-zA-Z0-9])@([a-zA-Z0-9][a-zA-Z0-9\-]{0,37}[a-zA-Z0-9]|[a-zA-Z0-9])"
)

_BOT_SUFFIXES = ("[bot]", "-bot", "_bot", "-robot")


def truncate(text: str, limit: int = MAX_BODY_LENGTH) -> str:
    """Cut *text* to at most *limit* characters."""
    if len(text) <= limit:
        return text
    return text[:limit]


def contains_question(text: str) -> bool:
    if not text:
        return False
    if "?" in text:
        return True
    lowered = text.lower()
    return any(pattern in lowered for pattern in QUESTION_PATTERNS)


def extract_mentions(text: str) -> list[str]:
    """Return ``@handle`` mentions in first-appearance order, without repeats."""
    if not text or "@" not in text:
        return []
    seen: set[str] = set()
    mentions: list[str] = []
    for match in MENTION_PATTERN.finditer(text):
        handle = match.group(1)
        if handle not in seen:
            seen.add(handle)
            mentions.append(handle)
    return mentions


def is_bot(login: str, *, actor_type: str = "", node_id: str = "") -> bool:
    """Heuristically decide whether an account is automated.

    An explicit ``Bot`` type marker always wins.  Otherwise the login is
    checked for the usual bot naming conventions and the node id for the
    ``BOT_`` prefix GitHub assigns to app accounts.
    """
    if actor_type == "Bot":
        return True
    if login:
        lowered = login.lower()
        if lowered.endswith(_BOT_SUFFIXES) or lowered.startswith("bot-"):
            return True
        # "dependabot", "renovatebot" but not a user literally named "bot"
        if len(lowered) > 3 and lowered.endswith("bot"):
            return True
    if node_id and (node_id.startswith("BOT_") or "Bot" in node_id):
        return True
    return False
