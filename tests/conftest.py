"""Shared test fixtures.

No cluster, terraform binary or network access is required: collaborators
are in-memory fakes and the harness tests drive a shell script standing in
for terraform.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from tfconductor.controller.settings import get_settings


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    """Invalidate the settings cache around every test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
