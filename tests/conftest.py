"""Shared test fixtures.

Provides:
- Fresh Settings per test (get_settings is lru-cached)
- structlog configured for console output so log calls never hit a
  half-configured logger
"""

from __future__ import annotations

import pytest

from src.dealreg.api.middleware.logging import configure_structlog
from src.dealreg.config import get_settings


@pytest.fixture(scope="session", autouse=True)
def _structlog():
    configure_structlog()


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
