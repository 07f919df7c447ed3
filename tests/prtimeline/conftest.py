"""Shared fixtures for prtimeline tests (no network required)."""

from unittest.mock import AsyncMock, MagicMock

import pytest


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def gh():
    """A GitHubClient stand-in; tests program ``get``/``graphql``/``get_paginated``."""
    client = MagicMock()
    client.get = AsyncMock()
    client.graphql = AsyncMock()
    client.close = AsyncMock()
    return client


def _paginated(pages: dict):
    def _get_paginated(path, params=None, *, max_pages=10, items_key=None):
        async def _gen():
            result = pages.get(path, [])
            if isinstance(result, Exception):
                raise result
            for item in result:
                yield item

        return _gen()

    return _get_paginated


@pytest.fixture
def paginated():
    """Factory for ``get_paginated`` replacements serving ``{path: [items] | Exception}``."""
    return _paginated

