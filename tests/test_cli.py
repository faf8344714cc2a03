"""Tests for the command line entry points."""

import asyncio

import orjson
from click.testing import CliRunner

from coverage_monitor.check_sources import main as check_sources
from coverage_monitor.orchestrator import cli
from coverage_monitor.store import CoverageStore
from coverage_monitor.tracker import SourceRunTracker

CATALOG = """
clients:
  - name: Nimbus Games
sources:
  - name: Indie Corner feed
    source_type: rss
    config:
      url: https://indiecorner.net/feed
"""


def test_seed_then_check_sources(temp_dir):
    db = temp_dir / "cli.db"
    catalog = temp_dir / "catalog.yaml"
    catalog.write_text(CATALOG, encoding="utf-8")
    runner = CliRunner()

    seeded = runner.invoke(cli, ["--db", str(db), "seed", str(catalog)])
    assert seeded.exit_code == 0, seeded.output
    assert "sources=1" in seeded.output

    health = runner.invoke(check_sources, ["--db", str(db), "--json"])
    assert health.exit_code == 0, health.output
    report = orjson.loads(health.stdout)
    assert report["summary"]["unknown"] == 1
    assert report["sources"]["Indie Corner feed"]["status"] == "unknown"


def test_scan_requires_target(temp_dir):
    result = CliRunner().invoke(cli, ["--db", str(temp_dir / "cli.db"), "scan"])
    assert result.exit_code == 2
    assert "Provide source_id or scan_all" in result.output


def test_set_status_unknown_item(temp_dir):
    result = CliRunner().invoke(
        cli, ["--db", str(temp_dir / "cli.db"), "set-status", "missing", "--status", "rejected"]
    )
    assert result.exit_code == 0
    assert orjson.loads(result.stdout)["skipped"] == {"missing": "not found"}


def test_check_sources_fails_on_unhealthy(temp_dir):
    db = temp_dir / "cli.db"

    async def _break_source():
        async with CoverageStore(db) as store:
            source = await store.add_source("Flaky feed", "rss", {"url": "https://flaky.example/feed"})
            tracker = SourceRunTracker(store)
            for _ in range(3):
                source = await store.get_source(source.id)
                await tracker.record_failure(source, "timeout")

    asyncio.run(_break_source())
    runner = CliRunner()

    assert runner.invoke(check_sources, ["--db", str(db), "--json"]).exit_code == 0
    result = runner.invoke(check_sources, ["--db", str(db), "--json", "--fail-on-unhealthy"])
    assert result.exit_code == 3
    assert orjson.loads(result.stdout)["summary"]["unhealthy"] == 1
