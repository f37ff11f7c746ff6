"""Integration test fixtures.

The in-process fixtures (``app_state``, ``provider``, ``seed_page``) come from
tests/conftest.py. This module adds what the subprocess wire tests need.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture()
def subprocess_env(tmp_path: Path) -> dict[str, str]:
    """Baseline env dict for subprocess-based MCP integration tests.

    Forces stdio transport and points the database at an isolated tmp
    directory. No generation providers are configured, so a cache miss fails
    fast instead of reaching the network.
    """
    env = os.environ.copy()
    env["ALMANAC__SERVER__TRANSPORT"] = "stdio"
    env["ALMANAC__CACHE__DB_PATH"] = str(tmp_path / "almanac.db")
    env["ALMANAC__WARMING__ON_STARTUP"] = "false"
    return env


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "almanac.db"
