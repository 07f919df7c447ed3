"""Tests for the text heuristics."""

from __future__ import annotations

import pytest

from prtimeline.engines.pr_events.text import (
    MAX_BODY_LENGTH,
    contains_question,
    extract_mentions,
    is_bot,
    truncate,
)

# ── TestTruncate ──────────────────────────────────────────────────────────


class TestTruncate:
    def test_short_text_unchanged(self):
        assert truncate("hello") == "hello"

    def test_long_text_cut(self):
        text = "x" * (MAX_BODY_LENGTH + 50)
        assert len(truncate(text)) == MAX_BODY_LENGTH

    def test_custom_limit(self):
        assert truncate("abcdef", 3) == "abc"

    def test_empty(self):
        assert truncate("") == ""


# ── TestContainsQuestion ──────────────────────────────────────────────────


class TestContainsQuestion:
    def test_question_mark(self):
        assert contains_question("Is this ready?")

    @pytest.mark.parametrize(
        "text",
        [
            "How can I run the tests locally",
            "Could you take another look",
            "any thoughts on the naming",
            "I was wondering if we should split this",
            "Does anyone know why CI is red",
        ],
    )
    def test_phrases(self, text):
        assert contains_question(text)

    def test_phrase_match_is_case_insensitive(self):
        assert contains_question("SHOULD WE merge this now")

    def test_statement(self):
        assert not contains_question("LGTM, merging.")

    def test_empty(self):
        assert not contains_question("")


# ── TestExtractMentions ───────────────────────────────────────────────────


class TestExtractMentions:
    def test_single(self):
        assert extract_mentions("thanks @octocat") == ["octocat"]

    def test_order_and_dedupe(self):
        text = "@bob please sync with @alice, then ping @bob again"
        assert extract_mentions(text) == ["bob", "alice"]

    def test_hyphenated_handle(self):
        assert extract_mentions("cc @my-org-team") == ["my-org-team"]

    def test_trailing_hyphen_not_part_of_handle(self):
        assert extract_mentions("cc @alice-") == ["alice"]

    def test_email_is_not_a_mention(self):
        assert extract_mentions("mail dev@example.com for access") == []

    def test_mention_at_start(self):
        assert extract_mentions("@a review please") == ["a"]

    def test_no_at_sign(self):
        assert extract_mentions("nothing to see") == []


# ── TestIsBot ─────────────────────────────────────────────────────────────


class TestIsBot:
    @pytest.mark.parametrize(
        "login",
        ["dependabot[bot]", "renovate-bot", "ci_bot", "bot-deployer", "dependabot", "k8s-ci-robot"],
    )
    def test_bot_logins(self, login):
        assert is_bot(login)

    @pytest.mark.parametrize("login", ["octocat", "bot", "robotics-fan", ""])
    def test_human_logins(self, login):
        assert not is_bot(login)

    def test_type_marker_wins(self):
        assert is_bot("github-actions", actor_type="Bot")

    def test_node_id_prefix(self):
        assert is_bot("some-app", node_id="BOT_kgDOBxyz")

    def test_user_node_id(self):
        assert not is_bot("octocat", node_id="MDQ6VXNlcjU4MzIzMQ==")
