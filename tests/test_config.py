"""Tests for configuration module."""

import pytest
from pydantic import ValidationError

from coverage_monitor.config import (
    CatalogConfig,
    CredentialSnapshot,
    FeedSourceConfig,
    Settings,
    SocialActorSourceConfig,
    WebSearchSourceConfig,
    clean_domain,
    parse_source_config,
    validate_config,
)
from coverage_monitor.store import CoverageStore


def test_settings_defaults(settings):
    """Defaults match the documented pipeline constants."""
    assert settings.scan_budget_seconds == 50
    assert settings.existing_url_window == 10000
    assert settings.max_queries_per_source == 3
    assert settings.search_max_results == 10
    assert settings.auto_approve_threshold == 80
    assert settings.review_threshold == 50
    assert settings.syndication_title_threshold == 0.85
    assert settings.syndication_window_days == 3


def test_settings_from_env(monkeypatch, temp_dir):
    monkeypatch.setenv("TAVILY_API_KEY", "tv-env")
    monkeypatch.setenv("SCAN_BUDGET_SECONDS", "20")
    settings = Settings(database_path=temp_dir / "x.db", _env_file=None)
    assert settings.tavily_api_key == "tv-env"
    assert settings.scan_budget_seconds == 20


def test_settings_threshold_validation(temp_dir):
    with pytest.raises(ValueError, match="Threshold must be between 0 and 1"):
        Settings(database_path=temp_dir / "x.db", syndication_title_threshold=1.5)


def test_settings_score_validation(temp_dir):
    with pytest.raises(ValueError, match="Score threshold must be between 0 and 100"):
        Settings(database_path=temp_dir / "x.db", auto_approve_threshold=120)


def test_settings_have_no_filesystem_side_effects(temp_dir):
    settings = Settings(database_path=temp_dir / "nested" / "coverage.db")
    assert not settings.database_path.parent.exists()


@pytest.mark.asyncio
async def test_store_creates_database_directory(temp_dir):
    path = temp_dir / "nested" / "coverage.db"
    async with CoverageStore(path):
        assert path.parent.is_dir()
    assert path.exists()


def test_validate_config(settings, temp_dir):
    assert validate_config(settings) == []

    bad = Settings(database_path=temp_dir / "x.db", review_threshold=90, auto_approve_threshold=80)
    problems = validate_config(bad)
    assert any("REVIEW_THRESHOLD" in p for p in problems)


class TestSourceConfig:
    """Stored source configs validate against the variant for their type."""

    def test_rss(self):
        config = parse_source_config("rss", {"url": "https://example.com/feed.xml"})
        assert isinstance(config, FeedSourceConfig)
        assert str(config.url) == "https://example.com/feed.xml"

    def test_rss_requires_url(self):
        with pytest.raises(ValidationError):
            parse_source_config("rss", {})

    def test_tavily_cleans_domain(self):
        config = parse_source_config(
            "tavily", {"domain": "https://www.IGN.com/news", "keywords": ["review", " "]}
        )
        assert isinstance(config, WebSearchSourceConfig)
        assert config.domain == "ign.com"
        assert config.keywords == ["review"]

    def test_social_platform_from_type(self):
        config = parse_source_config("tiktok", {"keywords": ["starfall"], "min_followers": 500})
        assert isinstance(config, SocialActorSourceConfig)
        assert config.platform == "tiktok"
        assert config.min_followers == 500

    def test_social_rejects_bad_limits(self):
        with pytest.raises(ValidationError):
            parse_source_config("reddit", {"max_items": 0})

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown source type"):
            parse_source_config("carrier_pigeon", {})


def test_clean_domain():
    assert clean_domain("https://www.example.com/path") == "example.com"
    assert clean_domain("Example.com") == "example.com"


def test_credential_snapshot_prefers_stored_keys(temp_dir):
    settings = Settings(
        database_path=temp_dir / "x.db", tavily_api_key="env-key", apify_api_key="env-apify",
        _env_file=None,
    )
    snapshot = CredentialSnapshot.resolve({"tavily": "db-key", "youtube": ""}, settings)

    assert snapshot.get("tavily") == "db-key"
    assert snapshot.get("apify") == "env-apify"
    assert not snapshot.has("youtube")

    with pytest.raises(ValidationError):
        snapshot.keys = {}


def test_catalog_loading(temp_dir):
    path = temp_dir / "catalog.yaml"
    path.write_text(
        """
clients:
  - name: Nimbus Games
games:
  - name: Starfall Odyssey
    client: Nimbus Games
keywords:
  - keyword: starfall
    client: Nimbus Games
    game: Starfall Odyssey
sources:
  - name: IGN feed
    source_type: rss
    config:
      url: https://feeds.ign.com/ign/games-all
credentials:
  tavily: tv-123
""",
        encoding="utf-8",
    )
    catalog = CatalogConfig(path)

    assert [c.name for c in catalog.get_clients()] == ["Nimbus Games"]
    assert catalog.get_games()[0].client == "Nimbus Games"
    assert catalog.get_keywords()[0].keyword_type == "whitelist"
    assert catalog.get_sources()[0].scan_frequency == "daily"
    assert catalog.get_credentials() == {"tavily": "tv-123"}


def test_catalog_missing_file(temp_dir):
    with pytest.raises(FileNotFoundError):
        CatalogConfig(temp_dir / "missing.yaml")
