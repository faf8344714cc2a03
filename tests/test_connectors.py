"""Tests for source connectors."""

from unittest.mock import AsyncMock, patch

import aiohttp
import httpx
import orjson
import pytest

from coverage_monitor.config import CredentialSnapshot
from coverage_monitor.errors import ConnectorError
from coverage_monitor.ingest import (
    FeedConnector,
    SocialActorConnector,
    WebSearchConnector,
    create_connector,
)
from coverage_monitor.ingest.connectors import sanitize_xml
from coverage_monitor.records import CoverageSource, Game

GAME = Game(id="g1", name="Starfall Odyssey", client_id="c1")

RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel>
  <title>Indie Corner</title>
  <item>
    <title>Starfall Odyssey preview</title>
    <link>https://indiecorner.net/starfall-preview/?utm_source=rss</link>
    <description>&lt;p&gt;Hands-on with the new build&lt;/p&gt;</description>
    <pubDate>Tue, 01 Jul 2025 10:00:00 GMT</pubDate>
    <guid>sf-1</guid>
  </item>
  <item>
    <title></title>
    <link>https://indiecorner.net/untitled</link>
  </item>
</channel></rss>"""


def _source(source_type: str, config: dict, **kwargs) -> CoverageSource:
    return CoverageSource(id="s1", name=f"{source_type} source", source_type=source_type,
                          config=config, **kwargs)


class TestCreateConnector:

    def test_dispatches_on_source_type(self, settings):
        creds = CredentialSnapshot()
        assert isinstance(
            create_connector(_source("rss", {"url": "https://a.com/feed"}), creds, settings),
            FeedConnector,
        )
        assert isinstance(
            create_connector(_source("tavily", {"domain": "ign.com"}), creds, settings),
            WebSearchConnector,
        )
        assert isinstance(
            create_connector(_source("reddit", {"keywords": ["x"]}), creds, settings),
            SocialActorConnector,
        )

    def test_invalid_config_raises_connector_error(self, settings):
        with pytest.raises(ConnectorError, match="Invalid source config"):
            create_connector(_source("rss", {"url": "not a url"}), CredentialSnapshot(), settings)

    def test_missing_credential(self, settings):
        source = _source("tavily", {"domain": "ign.com"})
        assert create_connector(source, CredentialSnapshot(), settings).missing_credential
        assert not create_connector(
            source, CredentialSnapshot(keys={"tavily": "k"}), settings
        ).missing_credential

        youtube = create_connector(_source("youtube", {}), CredentialSnapshot(keys={"apify": "k"}),
                                   settings)
        assert youtube.credential_service == "youtube"
        assert youtube.missing_credential


class TestFeedConnector:

    @pytest.mark.asyncio
    async def test_parses_entries(self, settings):
        connector = create_connector(_source("rss", {"url": "https://indiecorner.net/feed"}),
                                     CredentialSnapshot(), settings)
        assert connector.plan_queries() == ["https://indiecorner.net/feed"]

        with patch.object(connector, "_fetch_url", AsyncMock(return_value=RSS)):
            candidates = await connector.run_query("https://indiecorner.net/feed")

        assert len(candidates) == 1
        candidate = candidates[0]
        assert candidate.title == "Starfall Odyssey preview"
        assert candidate.snippet == "Hands-on with the new build"
        assert candidate.published_at.isoformat() == "2025-07-01T10:00:00+00:00"
        assert candidate.metadata["feed_title"] == "Indie Corner"
        assert candidate.metadata["guid"] == "sf-1"

    @pytest.mark.asyncio
    async def test_fetch_failure_is_connector_error(self, settings):
        connector = create_connector(_source("rss", {"url": "https://a.com/feed"}),
                                     CredentialSnapshot(), settings)
        with patch.object(connector, "_fetch_url",
                          AsyncMock(side_effect=aiohttp.ClientError("boom"))):
            with pytest.raises(ConnectorError, match="Feed fetch failed"):
                await connector.run_query("https://a.com/feed")

    def test_sanitize_xml(self):
        assert sanitize_xml("<a href=x>Tom & Jerry &amp; co</a>") == (
            '<a href="x">Tom &amp; Jerry &amp; co</a>'
        )


class TestWebSearchConnector:

    def _connector(self, settings, config, game=None, client=None):
        return create_connector(
            _source("tavily", config), CredentialSnapshot(keys={"tavily": "tv"}), settings,
            game=game, tavily_client=client,
        )

    def test_plan_queries_with_game(self, settings):
        connector = self._connector(
            settings, {"keywords": ["review", "preview", "trailer", "news"]}, game=GAME
        )
        assert connector.plan_queries() == [
            "Starfall Odyssey review", "Starfall Odyssey preview", "Starfall Odyssey trailer",
        ]

    def test_plan_queries_domain_only(self, settings):
        connector = self._connector(settings, {"domain": "www.ign.com"})
        assert connector.plan_queries() == ["site:ign.com gaming news"]

    def test_plan_queries_game_without_keywords(self, settings):
        assert self._connector(settings, {}, game=GAME).plan_queries() == ["Starfall Odyssey"]

    def test_cost_per_query(self, settings):
        assert self._connector(settings, {}).cost_per_query == 0.01

    @pytest.mark.asyncio
    async def test_run_query_maps_results(self, settings):
        client = AsyncMock()
        client.search.return_value = {"results": [
            {"url": "https://ign.com/a", "title": "Starfall Odyssey review", "content": "Great",
             "score": 0.91, "published_date": "2025-07-02"},
            {"url": "", "title": "no url"},
        ]}
        connector = self._connector(settings, {"domain": "ign.com"}, client=client)

        candidates = await connector.run_query("Starfall Odyssey review")

        client.search.assert_awaited_once_with(
            query="Starfall Odyssey review", max_results=10, search_depth="basic",
            include_answer=False, include_domains=["ign.com"],
        )
        assert len(candidates) == 1
        assert candidates[0].engine_score == 0.91
        assert candidates[0].metadata["search_query"] == "Starfall Odyssey review"

    @pytest.mark.asyncio
    async def test_run_query_error(self, settings):
        client = AsyncMock()
        client.search.side_effect = RuntimeError("quota exceeded")
        connector = self._connector(settings, {}, client=client)
        with pytest.raises(ConnectorError, match="quota exceeded"):
            await connector.run_query("q")


class TestSocialActorConnector:

    def test_instagram_queries_are_hashtags(self, settings):
        connector = create_connector(
            _source("instagram", {"keywords": ["Starfall Odyssey"]}),
            CredentialSnapshot(keys={"apify": "k"}), settings,
        )
        assert connector.plan_queries() == ["starfallodyssey"]

    def test_twitter_adds_handles(self, settings):
        connector = create_connector(
            _source("twitter", {"keywords": ["starfall"], "handles": ["@NimbusGames"]}),
            CredentialSnapshot(keys={"apify": "k"}), settings,
        )
        assert connector.plan_queries() == ["starfall", "@NimbusGames"]

    @pytest.mark.asyncio
    async def test_runs_actor_and_filters_small_accounts(self, settings):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=[
                {"webVideoUrl": "https://tiktok.com/@big/video/1", "text": "Starfall clip",
                 "authorMeta": {"name": "big", "fans": 50_000}, "createTime": 1_751_364_000},
                {"webVideoUrl": "https://tiktok.com/@small/video/2", "text": "Starfall",
                 "authorMeta": {"name": "small", "fans": 10}},
            ])

        connector = create_connector(
            _source("tiktok", {"keywords": ["starfall"]}),
            CredentialSnapshot(keys={"apify": "apify-token"}), settings,
            transport=httpx.MockTransport(handler),
        )
        async with connector:
            candidates = await connector.run_query("starfall")

        assert len(requests) == 1
        assert requests[0].url.path == "/v2/acts/clockworks~tiktok-scraper/run-sync-get-dataset-items"
        assert requests[0].url.params["token"] == "apify-token"
        assert orjson.loads(requests[0].content)["searchQueries"] == ["starfall"]

        assert [c.url for c in candidates] == ["https://tiktok.com/@big/video/1"]
        assert candidates[0].audience == 50_000
        assert candidates[0].outlet_domain == "tiktok.com/@big"
        assert candidates[0].metadata["platform"] == "tiktok"

    @pytest.mark.asyncio
    async def test_http_error_is_connector_error(self, settings):
        connector = create_connector(
            _source("reddit", {"keywords": ["starfall"]}),
            CredentialSnapshot(keys={"apify": "k"}), settings,
            transport=httpx.MockTransport(lambda request: httpx.Response(401, json={})),
        )
        async with connector:
            with pytest.raises(ConnectorError, match="reddit request failed"):
                await connector.run_query("starfall")

    @pytest.mark.asyncio
    async def test_youtube_uses_data_api(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/search"):
                return httpx.Response(200, json={"items": [{
                    "id": {"videoId": "abc"},
                    "snippet": {"title": "Starfall trailer reaction", "channelId": "ch1",
                                "channelTitle": "Gamer", "publishedAt": "2025-07-01T00:00:00Z"},
                }]})
            return httpx.Response(200, json={"items": [
                {"id": "ch1", "statistics": {"subscriberCount": "120000"}},
            ]})

        connector = create_connector(
            _source("youtube", {"keywords": ["starfall"]}),
            CredentialSnapshot(keys={"youtube": "yt"}), settings,
            transport=httpx.MockTransport(handler),
        )
        async with connector:
            candidates = await connector.run_query("starfall")

        assert candidates[0].url == "https://www.youtube.com/watch?v=abc"
        assert candidates[0].audience == 120_000
        assert candidates[0].coverage_type == "video"
