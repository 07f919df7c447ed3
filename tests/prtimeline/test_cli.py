"""Tests for the prtimeline CLI (fetch mocked, no network)."""

from __future__ import annotations

import json
import subprocess
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from prtimeline.cli import _gh_token, _parse_reference_time, main
from prtimeline.engines.pr_events.models import (
    Event,
    EventKind,
    PullRequest,
    PullRequestData,
    WriteAccess,
)
from prtimeline.exceptions import PullRequestFetchError

T0 = datetime(2025, 3, 16, 6, 18, 8, tzinfo=timezone.utc)


def _data() -> PullRequestData:
    return PullRequestData(
        pull_request=PullRequest(number=7, author="alice", created_at=T0),
        events=[
            Event(
                kind=EventKind.PR_OPENED,
                timestamp=T0,
                actor="alice",
                write_access=WriteAccess.UNLIKELY,
            )
        ],
        cached_at=T0,
    )


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    monkeypatch.setenv("GITHUB_TOKEN", "tok")
    monkeypatch.setenv("PRTIMELINE_CACHE_DIR", str(tmp_path))
    monkeypatch.delenv("PRTIMELINE_NO_CACHE", raising=False)
    monkeypatch.delenv("PRTIMELINE_STRATEGY", raising=False)
    with patch("prtimeline.cli.setup_logging"):
        yield


# ── TestMain ──────────────────────────────────────────────────────────────


class TestMain:
    def test_prints_json(self, cli_env):
        fetch = AsyncMock(return_value=_data())
        with patch("prtimeline.cli._fetch", fetch):
            result = CliRunner().invoke(main, ["https://github.com/octo/demo/pull/7"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["pull_request"]["number"] == 7
        assert payload["events"][0]["kind"] == "pr_opened"
        assert payload["events"][0]["write_access"] == -1

        config, owner, repo, number, when = fetch.await_args.args
        assert (owner, repo, number) == ("octo", "demo", 7)
        assert when is None
        assert config.token == "tok"

    def test_options_override_config(self, cli_env):
        fetch = AsyncMock(return_value=_data())
        with patch("prtimeline.cli._fetch", fetch):
            result = CliRunner().invoke(
                main,
                [
                    "octo/demo#7",
                    "--no-cache",
                    "--strategy",
                    "rest",
                    "--reference-time",
                    "2025-03-16T06:18:08Z",
                ],
            )

        assert result.exit_code == 0, result.output
        config, *_, when = fetch.await_args.args
        assert config.cache_dir is None
        assert config.strategy == "rest"
        assert when == T0

    def test_falls_back_to_gh_token(self, cli_env, monkeypatch):
        monkeypatch.delenv("GITHUB_TOKEN")
        monkeypatch.delenv("GH_TOKEN", raising=False)
        fetch = AsyncMock(return_value=_data())
        with (
            patch("prtimeline.cli._fetch", fetch),
            patch("prtimeline.cli._gh_token", return_value="from-gh"),
        ):
            result = CliRunner().invoke(main, ["octo/demo#7"])

        assert result.exit_code == 0, result.output
        assert fetch.await_args.args[0].token == "from-gh"

    def test_invalid_ref(self, cli_env):
        result = CliRunner().invoke(main, ["not-a-pull-request"])
        assert result.exit_code == 1
        assert "cannot parse" in result.output

    def test_invalid_reference_time(self, cli_env):
        result = CliRunner().invoke(main, ["octo/demo#7", "--reference-time", "yesterday"])
        assert result.exit_code == 1
        assert "invalid reference time" in result.output

    def test_fetch_failure(self, cli_env):
        fetch = AsyncMock(side_effect=PullRequestFetchError("octo", "demo", 7, "404 Not Found"))
        with patch("prtimeline.cli._fetch", fetch):
            result = CliRunner().invoke(main, ["octo/demo#7"])
        assert result.exit_code == 1
        assert "failed to fetch octo/demo#7" in result.output


# ── TestHelpers ───────────────────────────────────────────────────────────


class TestHelpers:
    def test_reference_time_forms(self):
        assert _parse_reference_time("2025-03-16T06:18:08Z") == T0
        assert _parse_reference_time("2025-03-16T06:18:08+00:00") == T0
        assert _parse_reference_time("2025-03-16T06:18:08") == T0

    def test_gh_token(self):
        completed = MagicMock(stdout="gho_abc\n")
        with patch("prtimeline.cli.subprocess.run", return_value=completed):
            assert _gh_token() == "gho_abc"

    def test_gh_token_missing_binary(self):
        with patch("prtimeline.cli.subprocess.run", side_effect=FileNotFoundError("gh")):
            assert _gh_token() is None

    def test_gh_token_not_logged_in(self):
        error = subprocess.CalledProcessError(1, ["gh", "auth", "token"])
        with patch("prtimeline.cli.subprocess.run", side_effect=error):
            assert _gh_token() is None
