"""Shared fixtures for the fastmail-calendar test suite."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest


@pytest.fixture
def http_client() -> AsyncMock:
    """An ``httpx.AsyncClient`` double; tests queue responses on ``request``."""
    return AsyncMock(spec=httpx.AsyncClient)
