"""Tests for the trigger API."""

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from aiohttp import test_utils

from coverage_monitor.api import create_app
from coverage_monitor.processing.traffic import TrafficTierClassifier
from coverage_monitor.records import ApprovalStatus


@pytest_asyncio.fixture
async def client(store, settings):
    app = create_app(settings, store=store)
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        yield client


class TestApi:

    @pytest.mark.asyncio
    async def test_scan_requires_target(self, client):
        response = await client.post("/api/coverage-scan", json={})
        assert response.status == 400
        assert "source_id" in (await response.json())["error"]
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    @pytest.mark.asyncio
    async def test_router_errors_carry_security_headers(self, client):
        missing = await client.get("/api/unknown")
        assert missing.status == 404
        assert missing.headers["X-Content-Type-Options"] == "nosniff"
        assert missing.headers["Cache-Control"] == "no-store"

        wrong_method = await client.get("/api/coverage-scan")
        assert wrong_method.status == 405
        assert wrong_method.headers["X-Frame-Options"] == "DENY"

    @pytest.mark.asyncio
    async def test_scan_rejects_invalid_json(self, client):
        response = await client.post("/api/coverage-scan", data=b"{not json",
                                      headers={"Content-Type": "application/json"})
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_scan_unknown_source(self, client):
        response = await client.post("/api/coverage-scan", json={"source_id": "missing"})
        assert response.status == 404

    @pytest.mark.asyncio
    async def test_scan_all_skips_sources_without_credentials(self, client, store):
        await store.add_source("IGN search", "tavily", {"domain": "ign.com"})

        response = await client.post("/api/coverage-scan", json={"scan_all": True})

        assert response.status == 200
        body = await response.json()
        assert body["results"] == [{
            "source": "IGN search",
            "status": "skipped",
            "queries": 0,
            "found": 0,
            "inserted": 0,
            "cost_estimate": 0.0,
            "error": "No tavily API key configured",
        }]
        assert "duration_ms" in body

    @pytest.mark.asyncio
    async def test_traffic_refresh(self, client, seeded):
        html = "<dt>Monthly Visits:</dt><dd>1,500,000</dd>"
        with patch.object(TrafficTierClassifier, "_fetch_profile_html", AsyncMock(return_value=html)):
            response = await client.post(
                "/api/traffic-refresh", json={"outlet_id": seeded["small_outlet"].id}
            )

        assert response.status == 200
        assert await response.json() == {
            "domain": "indiecorner.net",
            "monthly_unique_visitors": 1_500_000,
            "suggested_tier": "B",
            "method": "hypestat_html",
            "updated_outlet": True,
        }

    @pytest.mark.asyncio
    async def test_traffic_refresh_validation(self, client):
        assert (await client.post("/api/traffic-refresh", json={})).status == 400
        assert (await client.post("/api/traffic-refresh", json={"outlet_id": "nope"})).status == 404

    @pytest.mark.asyncio
    async def test_single_status_update(self, client, store, make_item):
        item = make_item("https://a.com/1", "One")
        await store.insert_items([item])

        response = await client.put(
            "/api/coverage-items", json={"id": item.id, "approval_status": "manually_approved"}
        )

        assert response.status == 200
        assert await response.json() == {"id": item.id, "approval_status": "manually_approved"}

    @pytest.mark.asyncio
    async def test_invalid_transition_conflict(self, client, store, make_item):
        item = make_item("https://a.com/1", "One", approval_status=ApprovalStatus.MANUALLY_APPROVED)
        await store.insert_items([item])

        response = await client.put(
            "/api/coverage-items", json={"id": item.id, "approval_status": "pending_review"}
        )
        assert response.status == 409

    @pytest.mark.asyncio
    async def test_bulk_status_update(self, client, store, make_item):
        items = [make_item(f"https://a.com/{n}", f"Item {n}") for n in range(3)]
        await store.insert_items(items)

        response = await client.put("/api/coverage-items", json={
            "ids": [i.id for i in items], "approval_status": "rejected",
        })

        assert response.status == 200
        body = await response.json()
        assert sorted(body["updated"]) == sorted(i.id for i in items)
        assert body["approval_status"] == "rejected"

    @pytest.mark.asyncio
    async def test_bulk_approve_from_any_state(self, client, store, make_item):
        items = [
            make_item("https://a.com/1", "One"),
            make_item("https://a.com/2", "Two", approval_status=ApprovalStatus.AUTO_APPROVED),
            make_item("https://a.com/3", "Three", approval_status=ApprovalStatus.REJECTED),
        ]
        await store.insert_items(items)

        response = await client.put("/api/coverage-items", json={
            "ids": [i.id for i in items], "approval_status": "manually_approved",
        })

        assert response.status == 200
        body = await response.json()
        assert sorted(body["updated"]) == sorted(i.id for i in items)
        assert body["skipped"] == {}
        for item in await store.get_items([i.id for i in items]):
            assert item.approval_status == ApprovalStatus.MANUALLY_APPROVED

    @pytest.mark.asyncio
    async def test_status_update_validation(self, client):
        assert (await client.put("/api/coverage-items", json={"id": "x"})).status == 400
        assert (await client.put(
            "/api/coverage-items", json={"id": "x", "approval_status": "maybe"}
        )).status == 400
        assert (await client.put(
            "/api/coverage-items", json={"ids": "x", "approval_status": "rejected"}
        )).status == 400

    @pytest.mark.asyncio
    async def test_dedup(self, client):
        response = await client.post("/api/coverage-dedup")
        assert response.status == 200
        assert await response.json() == {
            "examined": 0, "groups_touched": 0, "items_grouped": 0, "singletons": 0,
            "errors": [],
        }


class TestTriggerAuth:

    @pytest_asyncio.fixture
    async def secured(self, store, settings):
        settings = settings.model_copy(update={"trigger_secret": "s3cret"})
        app = create_app(settings, store=store)
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            yield client

    @pytest.mark.asyncio
    async def test_missing_token_rejected(self, secured):
        response = await secured.post("/api/coverage-dedup")
        assert response.status == 401
        assert response.headers["Cache-Control"] == "no-store"

    @pytest.mark.asyncio
    async def test_wrong_token_rejected(self, secured):
        response = await secured.post(
            "/api/coverage-dedup", headers={"Authorization": "Bearer nope"}
        )
        assert response.status == 401

    @pytest.mark.asyncio
    async def test_valid_token_accepted(self, secured):
        response = await secured.post(
            "/api/coverage-dedup", headers={"Authorization": "Bearer s3cret"}
        )
        assert response.status == 200
