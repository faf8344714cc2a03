"""Pytest configuration and fixtures."""

import os
import tempfile
from collections.abc import AsyncGenerator, Generator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

# Set test environment
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["JSON_LOGGING"] = "false"
for service in ("TAVILY", "APIFY", "YOUTUBE", "TWITCH", "REDDIT"):
    os.environ.pop(f"{service}_API_KEY", None)
os.environ.pop("TRIGGER_SECRET", None)

from coverage_monitor.config import Settings  # noqa: E402
from coverage_monitor.records import Candidate, CoverageItem  # noqa: E402
from coverage_monitor.store import CoverageStore, new_id  # noqa: E402
from coverage_monitor.utils import utc_now  # noqa: E402


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def settings(temp_dir) -> Settings:
    """Settings pointing at a throwaway database, no env API keys."""
    return Settings(database_path=temp_dir / "coverage.db", _env_file=None)


@pytest_asyncio.fixture
async def store(settings) -> AsyncGenerator[CoverageStore, None]:
    async with CoverageStore(settings.database_path) as store:
        yield store


@pytest_asyncio.fixture
async def seeded(store) -> dict[str, Any]:
    """One client with one game, a couple of outlets and keywords."""
    client = await store.add_client("Nimbus Games")
    other_client = await store.add_client("Harbor Interactive")
    game = await store.add_game("Starfall Odyssey", client.id)
    other_game = await store.add_game("Deep Harbor", other_client.id)

    outlet = await store.add_outlet("IGN", "ign.com", 50_000_000, "A")
    small_outlet = await store.add_outlet("Indie Corner", "indiecorner.net", 40_000, "D")

    await store.add_keyword("starfall", "whitelist", client.id, game.id)
    await store.add_keyword("nimbus", "whitelist", client.id)
    await store.add_keyword("deep harbor", "whitelist", other_client.id, other_game.id)
    await store.add_keyword("casino", "blacklist", client.id)

    return {
        "client": client,
        "other_client": other_client,
        "game": game,
        "other_game": other_game,
        "outlet": outlet,
        "small_outlet": small_outlet,
    }


@pytest.fixture
def make_candidate():
    """Factory for connector output."""
    def _make(url: str, title: str = "Starfall Odyssey gets a release date", **kwargs) -> Candidate:
        return Candidate(url=url, title=title, **kwargs)
    return _make


@pytest.fixture
def make_item():
    """Factory for stored coverage items."""
    def _make(url: str, title: str, **kwargs) -> CoverageItem:
        now = utc_now()
        data = {
            "id": new_id(),
            "url": url,
            "title": title,
            "discovered_at": now,
            "updated_at": now,
            "relevance_score": 60,
        }
        data.update(kwargs)
        return CoverageItem(**data)
    return _make
