"""Tests for configuration, reference parsing and exception messages."""

from __future__ import annotations

from pathlib import Path

import pytest

from prtimeline.core.config import ClientConfig, default_cache_dir
from prtimeline.core.github import parse_pull_request_url
from prtimeline.exceptions import GraphQLError, NoEventsError, PullRequestFetchError

_ENV_KEYS = (
    "GITHUB_TOKEN",
    "GH_TOKEN",
    "PRTIMELINE_GITHUB_API",
    "PRTIMELINE_CACHE_DIR",
    "PRTIMELINE_NO_CACHE",
    "PRTIMELINE_STRATEGY",
    "PRTIMELINE_FETCH_TIMEOUT",
    "PRTIMELINE_MAX_CONCURRENCY",
    "PRTIMELINE_PERMISSION_LOOKUPS",
    "XDG_CACHE_HOME",
)


@pytest.fixture
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


# ── TestClientConfig ──────────────────────────────────────────────────────


class TestClientConfig:
    def test_defaults(self, clean_env, tmp_path):
        clean_env.setenv("XDG_CACHE_HOME", str(tmp_path))
        cfg = ClientConfig.from_env()
        assert cfg.token is None
        assert cfg.api_url == "https://api.github.com"
        assert cfg.cache_dir == tmp_path / "prtimeline"
        assert cfg.strategy == "graphql"
        assert cfg.fetch_timeout == 300
        assert cfg.max_concurrency == 5
        assert cfg.permission_lookups is True

    def test_github_token_preferred(self, clean_env):
        clean_env.setenv("GH_TOKEN", "gh")
        assert ClientConfig.from_env().token == "gh"
        clean_env.setenv("GITHUB_TOKEN", "github")
        assert ClientConfig.from_env().token == "github"

    def test_overrides(self, clean_env, tmp_path):
        clean_env.setenv("PRTIMELINE_GITHUB_API", "https://ghe.example.com/api/v3")
        clean_env.setenv("PRTIMELINE_CACHE_DIR", str(tmp_path))
        clean_env.setenv("PRTIMELINE_STRATEGY", " REST ")
        clean_env.setenv("PRTIMELINE_FETCH_TIMEOUT", "12.5")
        clean_env.setenv("PRTIMELINE_MAX_CONCURRENCY", "2")
        clean_env.setenv("PRTIMELINE_PERMISSION_LOOKUPS", "off")
        cfg = ClientConfig.from_env()
        assert cfg.api_url == "https://ghe.example.com/api/v3"
        assert cfg.cache_dir == tmp_path
        assert cfg.strategy == "rest"
        assert cfg.fetch_timeout == 12.5
        assert cfg.max_concurrency == 2
        assert cfg.permission_lookups is False

    def test_no_cache_wins_over_cache_dir(self, clean_env, tmp_path):
        clean_env.setenv("PRTIMELINE_CACHE_DIR", str(tmp_path))
        clean_env.setenv("PRTIMELINE_NO_CACHE", "1")
        assert ClientConfig.from_env().cache_dir is None

    def test_default_cache_dir_under_home(self, clean_env):
        assert default_cache_dir() == Path.home() / ".cache" / "prtimeline"

    @pytest.mark.parametrize(
        "kwargs",
        [{"strategy": "soap"}, {"max_concurrency": 0}, {"fetch_timeout": 0}],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            ClientConfig(**kwargs)

    def test_invalid_strategy_from_env(self, clean_env):
        clean_env.setenv("PRTIMELINE_STRATEGY", "soap")
        with pytest.raises(ValueError, match="unknown fetch strategy"):
            ClientConfig.from_env()


# ── TestParsePullRequestUrl ───────────────────────────────────────────────


class TestParsePullRequestUrl:
    @pytest.mark.parametrize(
        "ref",
        [
            "https://github.com/octo/hello-world/pull/42",
            "https://github.com/octo/hello-world/pull/42/files",
            "http://github.com/octo/hello-world/pulls/42/",
            "github.com/octo/hello-world/pull/42",
            "octo/hello-world#42",
            "  octo/hello-world#42\n",
        ],
    )
    def test_accepted_forms(self, ref):
        assert parse_pull_request_url(ref) == ("octo", "hello-world", 42)

    def test_dotted_names(self):
        assert parse_pull_request_url("my.org/repo.js#7") == ("my.org", "repo.js", 7)

    @pytest.mark.parametrize(
        "ref",
        [
            "",
            "octo/hello-world",
            "octo/hello-world#abc",
            "https://github.com/octo/hello-world/issues/42",
            "https://github.com/octo/hello-world/pull/",
            "https://github.com/octo",
        ],
    )
    def test_rejected(self, ref):
        with pytest.raises(ValueError, match="cannot parse"):
            parse_pull_request_url(ref)


# ── TestExceptions ────────────────────────────────────────────────────────


class TestExceptions:
    def test_fetch_error_message(self):
        err = PullRequestFetchError("o", "r", 3, "404 Not Found")
        assert str(err) == "fetching o/r#3 failed: 404 Not Found"
        assert err.reason == "404 Not Found"

    def test_no_events_error_lists_failures(self):
        err = NoEventsError("o", "r", 3, ["commits failed", "reviews failed"])
        assert "2 task(s) failed" in str(err)
        assert "commits failed; reviews failed" in str(err)

    def test_graphql_permission_detection(self):
        denied = GraphQLError(["Resource not accessible by integration"])
        other = GraphQLError(["Something broke"])
        assert denied.permission_denied
        assert str(denied).startswith("GraphQL permission denied")
        assert not other.permission_denied
        assert str(other) == "GraphQL error: Something broke"

    def test_graphql_error_without_messages(self):
        assert str(GraphQLError([])) == "GraphQL error: unknown error"
