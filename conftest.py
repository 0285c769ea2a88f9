"""
Root-level shared test fixtures.

Provides a scripted fake Streak client for engine-level tests and
environment isolation for configuration tests.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from ringstreak.config import reset_config
from ringstreak.crm.client import StreakClient


@pytest.fixture
def clean_env(monkeypatch):
    """Remove env vars that leak between tests."""
    for key in [
        "STREAK_API_BASE",
        "STREAK_API_KEY",
        "STREAK_WEB_BASE",
        "RINGSTREAK_HTTP_TIMEOUT",
        "RINGSTREAK_HTTP_RETRIES",
        "RINGSTREAK_REDIS_HOST",
        "RINGSTREAK_REDIS_PORT",
        "RINGSTREAK_REDIS_DB",
        "RINGSTREAK_REDIS_PASSWORD",
        "RINGSTREAK_SHARED_SECRET",
        "RINGSTREAK_POP_COOLDOWN",
        "RINGSTREAK_MAX_MATCHES",
        "RINGSTREAK_HOST",
        "RINGSTREAK_PORT",
        "RINGSTREAK_LOG_LEVEL",
    ]:
        monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def fake_streak():
    """A StreakClient stand-in whose endpoints are scripted per test.

    ``fake_streak.searches`` maps query string → search payload; unknown
    queries return an empty result. Other endpoints return nothing until
    a test sets ``return_value`` / ``side_effect`` on them.
    """
    client = MagicMock(spec=StreakClient)
    client.searches = {}

    async def _search(query):
        return client.searches.get(query, {})

    client.search = AsyncMock(side_effect=_search)
    client.get_contact_detail = AsyncMock(return_value=None)
    client.get_linked_records = AsyncMock(return_value=[])
    client.get_record_detail = AsyncMock(return_value=None)
    client.get_stage_list = AsyncMock(return_value=None)
    client.get_timeline = AsyncMock(return_value={"items": []})
    client.get_legacy_threads = AsyncMock(return_value=[])
    client.person_link = MagicMock(side_effect=lambda key: f"https://www.streak.com/people/{key}")
    client.record_link = MagicMock(side_effect=lambda key: f"https://www.streak.com/p/{key}")
    return client
