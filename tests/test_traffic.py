"""Tests for outlet traffic parsing and the tier classifier fallback chain."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from coverage_monitor.config import CredentialSnapshot
from coverage_monitor.errors import InvalidRequestError, NotFoundError
from coverage_monitor.processing.traffic import (
    NO_DATA_ERROR,
    TrafficTierClassifier,
    parse_traffic_from_html,
    suggest_tier,
)
from coverage_monitor.records import Tier
from coverage_monitor.utils import utc_now


class TestParseTraffic:
    """Pattern list is tried in order; first positive match wins."""

    def test_hypestat_monthly(self):
        html = "<dl><dt>Monthly Visits:</dt><dd>12,345,678</dd></dl>"
        assert parse_traffic_from_html(html) == 12_345_678

    def test_daily_scaled_to_monthly(self):
        html = "<dt>Daily Unique Visitors:</dt><dd>10,000</dd>"
        assert parse_traffic_from_html(html) == 300_000

    def test_monthly_beats_daily(self):
        html = (
            "<dt>Daily Unique Visitors:</dt><dd>10,000</dd>"
            "<dt>Monthly Visits:</dt><dd>450,000</dd>"
        )
        assert parse_traffic_from_html(html) == 450_000

    def test_loose_patterns(self):
        assert parse_traffic_from_html("Estimated monthly visits: 2,500,000") == 2_500_000
        assert parse_traffic_from_html("about 75,000 unique visitors per month") == 75_000
        assert parse_traffic_from_html('<div data-monthly-visits="8,000">') == 8_000

    def test_fallback_after_visit(self):
        assert parse_traffic_from_html("The site gets visits from 123,456 people") == 123_456

    def test_nothing_found(self):
        assert parse_traffic_from_html("") is None
        assert parse_traffic_from_html("<p>No stats here</p>") is None
        assert parse_traffic_from_html("Monthly Visits: 0") is None


@pytest.mark.parametrize("visitors,tier", [
    (10_000_000, Tier.A),
    (9_999_999, Tier.B),
    (1_000_000, Tier.B),
    (100_000, Tier.C),
    (99_999, Tier.D),
    (None, None),
])
def test_suggest_tier(visitors, tier):
    assert suggest_tier(visitors) == tier


def _classifier(store, settings, tavily=None, keys=None):
    credentials = CredentialSnapshot(keys=keys or ({"tavily": "tv"} if tavily else {}))
    return TrafficTierClassifier(store, credentials, settings, tavily_client=tavily)


class TestTrafficTierClassifier:

    @pytest.mark.asyncio
    async def test_html_stage(self, store, settings):
        classifier = _classifier(store, settings)
        with patch.object(classifier, "_fetch_profile_html",
                          AsyncMock(return_value="<dt>Monthly Visits:</dt><dd>2,000,000</dd>")):
            result = await classifier.lookup("example.com")

        assert result.method == "hypestat_html"
        assert result.monthly_unique_visitors == 2_000_000
        assert result.suggested_tier == "B"

    @pytest.mark.asyncio
    async def test_falls_through_to_search(self, store, settings):
        tavily = AsyncMock()
        tavily.extract.return_value = {"results": [{"raw_content": "no numbers"}]}
        tavily.search.return_value = {
            "results": [{"title": "example.com stats", "content": "Monthly Visits: 15,000,000"}]
        }
        classifier = _classifier(store, settings, tavily=tavily)

        with patch.object(classifier, "_fetch_profile_html",
                          AsyncMock(side_effect=aiohttp.ClientError("blocked"))):
            result = await classifier.lookup("example.com")

        assert result.method == "tavily_search"
        assert result.monthly_unique_visitors == 15_000_000
        assert result.suggested_tier == "A"
        tavily.search.assert_awaited_once()
        assert tavily.search.call_args.kwargs["include_domains"] == ["hypestat.com"]

    @pytest.mark.asyncio
    async def test_no_data(self, store, settings):
        classifier = _classifier(store, settings)
        with patch.object(classifier, "_fetch_profile_html", AsyncMock(return_value=None)):
            result = await classifier.lookup("example.com")

        assert result.method == "none"
        assert result.monthly_unique_visitors is None
        assert result.to_dict()["error"] == NO_DATA_ERROR

    @pytest.mark.asyncio
    async def test_refresh_requires_target(self, store, settings):
        with pytest.raises(InvalidRequestError):
            await _classifier(store, settings).refresh()

    @pytest.mark.asyncio
    async def test_refresh_unknown_outlet(self, store, settings):
        with pytest.raises(NotFoundError):
            await _classifier(store, settings).refresh(outlet_id="missing")

    @pytest.mark.asyncio
    async def test_refresh_persists_visitors_and_tier(self, store, seeded, settings):
        outlet = seeded["small_outlet"]
        classifier = _classifier(store, settings)
        with patch.object(classifier, "_fetch_profile_html",
                          AsyncMock(return_value="<dt>Monthly Visits:</dt><dd>250,000</dd>")) as fetch:
            result = await classifier.refresh(outlet_id=outlet.id)

        fetch.assert_awaited_once_with("https://hypestat.com/info/indiecorner.net")
        assert result.updated_outlet
        stored = await store.get_outlet(outlet.id)
        assert stored.monthly_unique_visitors == 250_000
        assert stored.tier == Tier.C
        assert stored.traffic_last_updated is not None

    @pytest.mark.asyncio
    async def test_refresh_domain_only_does_not_persist(self, store, seeded, settings):
        classifier = _classifier(store, settings)
        with patch.object(classifier, "_fetch_profile_html",
                          AsyncMock(return_value="Monthly Visits: 5,000")):
            result = await classifier.refresh(domain="https://www.ign.com/")

        assert result.domain == "ign.com"
        assert not result.updated_outlet
        assert (await store.get_outlet(seeded["outlet"].id)).monthly_unique_visitors == 50_000_000

    @pytest.mark.asyncio
    async def test_refresh_stale_stamps_outlets(self, store, seeded, settings):
        classifier = _classifier(store, settings)
        with patch.object(classifier, "_fetch_profile_html", AsyncMock(return_value=None)):
            results = await classifier.refresh_stale()

        assert len(results) == 2
        assert not any(r.updated_outlet for r in results)
        cutoff = utc_now() - timedelta(days=settings.traffic_stale_days)
        assert await store.list_stale_outlets(cutoff, 10) == []
