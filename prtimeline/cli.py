"""CLI entry point: prtimeline.

Usage:
    prtimeline https://github.com/owner/repo/pull/123
    prtimeline owner/repo#123 --no-cache --reference-time 2025-03-16T06:18:08Z
"""

from __future__ import annotations

import asyncio
import dataclasses
import subprocess
import sys
from datetime import datetime, timezone

import click
import httpx
from pydantic import TypeAdapter

from prtimeline.client import PullRequestClient
from prtimeline.core.config import ClientConfig
from prtimeline.core.github import parse_pull_request_url
from prtimeline.core.logging import setup_logging
from prtimeline.engines.pr_events.github_client import RateLimitError
from prtimeline.engines.pr_events.models import PullRequestData
from prtimeline.exceptions import PullRequestError

_OUTPUT = TypeAdapter(PullRequestData)


def _gh_token() -> str | None:
    """Token from ``gh auth token``, or None when the gh CLI is unavailable."""
    try:
        result = subprocess.run(
            ["gh", "auth", "token"],
            check=True,
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    return result.stdout.strip() or None


def _parse_reference_time(value: str) -> datetime:
    # fromisoformat only learned the "Z" suffix in 3.11
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def _fetch(
    config: ClientConfig, owner: str, repo: str, number: int, reference_time: datetime | None
) -> PullRequestData:
    async with PullRequestClient(config) as client:
        return await client.fetch(owner, repo, number, reference_time)


@click.command()
@click.argument("ref")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--no-cache", is_flag=True, help="Disable the on-disk cache")
@click.option(
    "--reference-time",
    default=None,
    help="Only accept cached data stored at or after this ISO 8601 time",
)
@click.option(
    "--strategy",
    type=click.Choice(["graphql", "rest"]),
    default=None,
    help="Fetch strategy (default: PRTIMELINE_STRATEGY or graphql)",
)
def main(
    ref: str,
    debug: bool,
    no_cache: bool,
    reference_time: str | None,
    strategy: str | None,
) -> None:
    """Print the timeline and derived state of a GitHub pull request as JSON."""
    setup_logging("DEBUG" if debug else None)

    try:
        owner, repo, number = parse_pull_request_url(ref)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    when: datetime | None = None
    if reference_time:
        try:
            when = _parse_reference_time(reference_time)
        except ValueError:
            click.echo(
                f"Error: invalid reference time {reference_time!r} "
                "(use ISO 8601, e.g. 2025-03-16T06:18:08Z)",
                err=True,
            )
            sys.exit(1)

    config = ClientConfig.from_env()
    overrides: dict[str, object] = {}
    if no_cache:
        overrides["cache_dir"] = None
    if strategy:
        overrides["strategy"] = strategy
    if not config.token:
        overrides["token"] = _gh_token()
    config = dataclasses.replace(config, **overrides)

    try:
        data = asyncio.run(_fetch(config, owner, repo, number, when))
    except (PullRequestError, RateLimitError, httpx.HTTPError) as e:
        click.echo(f"Error: failed to fetch {owner}/{repo}#{number}: {e}", err=True)
        sys.exit(1)

    click.echo(_OUTPUT.dump_json(data, indent=2).decode())
