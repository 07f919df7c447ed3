"""Client configuration, read from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_STRATEGIES = ("graphql", "rest")
_FALSY = ("0", "false", "no", "off", "")


def _env_float(key: str, default: float) -> float:
    return float(os.environ.get(key, default))


def _env_int(key: str, default: int) -> int:
    return int(os.environ.get(key, default))


def _env_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key)
    if value is None:
        return default
    return value.strip().lower() not in _FALSY


def default_cache_dir() -> Path:
    """``$XDG_CACHE_HOME/prtimeline``, else ``~/.cache/prtimeline``."""
    base = os.environ.get("XDG_CACHE_HOME") or os.path.join(os.path.expanduser("~"), ".cache")
    return Path(base) / "prtimeline"


@dataclass
class ClientConfig:
    token: str | None = None
    api_url: str = "https://api.github.com"
    cache_dir: Path | None = None  # None disables disk persistence
    strategy: str = "graphql"
    fetch_timeout: float = 300.0
    max_concurrency: int = 5
    permission_lookups: bool = True

    def __post_init__(self) -> None:
        if self.strategy not in _STRATEGIES:
            raise ValueError(
                f"unknown fetch strategy {self.strategy!r}, expected one of {_STRATEGIES}"
            )
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.fetch_timeout <= 0:
            raise ValueError("fetch_timeout must be positive")

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Build a config from the environment.

        Reads from environment variables:
            GITHUB_TOKEN / GH_TOKEN         — API token
            PRTIMELINE_GITHUB_API           — API base URL
            PRTIMELINE_CACHE_DIR            — disk cache directory
            PRTIMELINE_NO_CACHE             — disable disk persistence when true
            PRTIMELINE_STRATEGY             — graphql | rest (default: graphql)
            PRTIMELINE_FETCH_TIMEOUT        — seconds (default: 300)
            PRTIMELINE_MAX_CONCURRENCY      — REST fan-out bound (default: 5)
            PRTIMELINE_PERMISSION_LOOKUPS   — single-user permission lookups (default: on)
        """
        cache_dir: Path | None = None
        if not _env_bool("PRTIMELINE_NO_CACHE", False):
            configured = os.environ.get("PRTIMELINE_CACHE_DIR")
            cache_dir = Path(configured) if configured else default_cache_dir()

        return cls(
            token=os.environ.get("GITHUB_TOKEN") or os.environ.get("GH_TOKEN"),
            api_url=os.environ.get("PRTIMELINE_GITHUB_API", "https://api.github.com"),
            cache_dir=cache_dir,
            strategy=os.environ.get("PRTIMELINE_STRATEGY", "graphql").strip().lower(),
            fetch_timeout=_env_float("PRTIMELINE_FETCH_TIMEOUT", 300),
            max_concurrency=_env_int("PRTIMELINE_MAX_CONCURRENCY", 5),
            permission_lookups=_env_bool("PRTIMELINE_PERMISSION_LOOKUPS", True),
        )
