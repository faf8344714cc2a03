import asyncio
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click
import orjson
from rich import box
from rich.console import Console
from rich.table import Table
from structlog.contextvars import bound_contextvars

from .approval import ApprovalWorkflow, determine_approval_status
from .config import (
    CatalogConfig,
    CredentialSnapshot,
    Settings,
    clean_domain,
    get_settings,
    validate_config,
)
from .errors import ConnectorError, CoverageMonitorError, InvalidRequestError, NotFoundError
from .ingest.connectors import SourceConnector, create_connector
from .logging import (
    PerformanceLogger,
    get_logger,
    log_processing_stage,
    new_scan_id,
    quiet_third_party,
    setup_logging,
)
from .processing.dedupe import ExistingUrlIndex, SyndicationClusterer
from .processing.keywords import KeywordFilter
from .processing.outlets import OutletResolver
from .processing.scoring import RelevanceScorer
from .processing.traffic import TrafficTierClassifier, suggest_tier
from .records import Candidate, CoverageItem, CoverageSource, Game, RunStatus
from .store import CoverageStore, new_id
from .tracker import SourceRunTracker
from .utils import normalize_url, utc_now

logger = get_logger(__name__)
console = Console()

ConnectorFactory = Callable[..., SourceConnector]


@dataclass
class SourceResult:
    """Outcome of scanning one source."""
    source: str
    status: RunStatus = RunStatus.SKIPPED
    queries: int = 0
    found: int = 0
    inserted: int = 0
    cost_estimate: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "source": self.source,
            "status": self.status.value,
            "queries": self.queries,
            "found": self.found,
            "inserted": self.inserted,
            "cost_estimate": self.cost_estimate,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ScanReport:
    results: list[SourceResult] = field(default_factory=list)
    duration_ms: int = 0
    budget_exhausted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "duration_ms": self.duration_ms,
        }


@dataclass
class ScanContext:
    """Reference data snapshot taken once at the start of a run."""
    keyword_filter: KeywordFilter
    games_by_id: dict[str, Game]
    credentials: CredentialSnapshot
    url_index: ExistingUrlIndex
    outlets: OutletResolver


class ScanOrchestrator:
    """Run sources through connect, filter, dedup, score and insert under a time budget."""

    def __init__(
        self,
        store: CoverageStore,
        settings: Settings | None = None,
        connector_factory: ConnectorFactory = create_connector,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.connector_factory = connector_factory
        self.clock = clock
        self.tracker = SourceRunTracker(store, self.settings)
        self.scorer = RelevanceScorer(self.settings)
        self._started: float = 0.0

    def _budget_exhausted(self) -> bool:
        return self.clock() - self._started > self.settings.scan_budget_seconds

    async def _select_sources(
        self, source_id: str | None, scan_all: bool, scheduled: bool
    ) -> list[CoverageSource]:
        if source_id:
            source = await self.store.get_source(source_id)
            if source is None or not source.is_active:
                raise NotFoundError(f"No matching active source: {source_id}")
            sources = [source]
        else:
            sources = await self.store.list_sources(active_only=True)

        if scheduled:
            now = utc_now()
            sources = [s for s in sources if self.tracker.is_due(s, now)]
        return sources

    async def _snapshot(self) -> ScanContext:
        keywords = await self.store.list_keywords()
        games = await self.store.list_games()
        credentials = CredentialSnapshot.resolve(await self.store.get_credentials(), self.settings)
        url_index = await ExistingUrlIndex.load(self.store, self.settings.existing_url_window)
        return ScanContext(
            keyword_filter=KeywordFilter(keywords, games),
            games_by_id={g.id: g for g in games},
            credentials=credentials,
            url_index=url_index,
            outlets=OutletResolver(self.store),
        )

    async def scan(
        self,
        source_id: str | None = None,
        scan_all: bool = False,
        scheduled: bool = False,
    ) -> ScanReport:
        """Scan one source or all active sources.

        Raises:
            InvalidRequestError: neither source_id nor scan_all given
            NotFoundError: source_id does not match an active source
        """
        if not source_id and not scan_all:
            raise InvalidRequestError("Provide source_id or scan_all: true")

        self._started = self.clock()
        report = ScanReport()

        with (
            bound_contextvars(scan_id=new_scan_id()),
            PerformanceLogger("coverage_scan", logger, scheduled=scheduled),
        ):
            sources = await self._select_sources(source_id, scan_all, scheduled)
            ctx = await self._snapshot()

            if self.settings.scan_concurrency > 1 and len(sources) > 1:
                semaphore = asyncio.Semaphore(self.settings.scan_concurrency)

                async def bounded(source: CoverageSource) -> SourceResult | None:
                    async with semaphore:
                        if self._budget_exhausted():
                            return None
                        return await self._scan_source_safely(source, ctx)

                outcomes = await asyncio.gather(*(bounded(s) for s in sources))
                report.results = [r for r in outcomes if r is not None]
                report.budget_exhausted = len(report.results) < len(sources)
            else:
                for source in sources:
                    if self._budget_exhausted():
                        report.budget_exhausted = True
                        break
                    report.results.append(await self._scan_source_safely(source, ctx))

        if report.budget_exhausted:
            logger.warning(
                "Scan budget exhausted",
                scanned=len(report.results),
                remaining=len(sources) - len(report.results),
            )

        report.duration_ms = int((self.clock() - self._started) * 1000)
        logger.info(
            **log_processing_stage(
                stage="coverage_scan",
                input_count=len(sources),
                output_count=sum(r.inserted for r in report.results),
                duration=report.duration_ms / 1000,
            )
        )
        return report

    async def _scan_source_safely(self, source: CoverageSource, ctx: ScanContext) -> SourceResult:
        with bound_contextvars(source=source.name):
            try:
                return await self._scan_source(source, ctx)
            except Exception as e:
                logger.error("Source scan failed", error=str(e), exc_info=True)
                await self.tracker.record_failure(source, str(e))
                return SourceResult(source=source.name, status=RunStatus.FAILED, error=str(e))

    async def _scan_source(self, source: CoverageSource, ctx: ScanContext) -> SourceResult:
        result = SourceResult(source=source.name)
        game = ctx.games_by_id.get(source.game_id) if source.game_id else None

        try:
            connector = self.connector_factory(
                source, ctx.credentials, settings=self.settings, game=game
            )
        except ConnectorError as e:
            result.status = RunStatus.FAILED
            result.error = str(e)
            await self.tracker.record_failure(source, str(e))
            return result

        if connector.missing_credential:
            result.error = f"No {connector.credential_service} API key configured"
            logger.info("Skipping source without credential", service=connector.credential_service)
            return result

        queries = connector.plan_queries()
        if not queries:
            result.error = "No queries generated"
            return result

        candidates: list[Candidate] = []
        query_error: str | None = None

        async with connector:
            for query in queries:
                if self._budget_exhausted():
                    logger.info("Budget exhausted mid-source",
                                completed=result.queries, planned=len(queries))
                    break
                result.queries += 1
                try:
                    batch = await connector.run_query(query)
                except Exception as e:
                    query_error = str(e)
                    logger.warning("Query failed", query=query, error=query_error)
                    break
                candidates.extend(batch)

        result.cost_estimate = round(result.queries * connector.cost_per_query, 4)

        if result.queries == 0:
            result.error = "Time budget exhausted"
            return result

        if query_error is not None and result.queries == 1:
            result.status = RunStatus.FAILED
            result.error = query_error
            await self.tracker.record_failure(source, query_error)
            return result

        items = await self._build_items(source, candidates, ctx)
        result.found = len(items)
        result.inserted = await self.store.insert_items(items)
        result.status = RunStatus.SUCCESS
        result.error = query_error

        message = f"{result.queries} queries, {result.found} new items"
        if query_error:
            message += f" (stopped early: {query_error})"
        await self.tracker.record_success(source, result.found, message)

        logger.info(
            "Source scanned",
            queries=result.queries,
            candidates=len(candidates),
            found=result.found,
            inserted=result.inserted,
        )
        return result

    async def _build_items(
        self,
        source: CoverageSource,
        candidates: list[Candidate],
        ctx: ScanContext,
    ) -> list[CoverageItem]:
        """Filter, dedup, resolve and score raw candidates into insertable items."""
        items = []
        now = utc_now()
        blacklisted = duplicates = 0

        for candidate in candidates:
            key = normalize_url(candidate.url)
            if key in ctx.url_index:
                duplicates += 1
                continue

            hit = ctx.keyword_filter.blacklist_hit(candidate.text)
            if hit is not None:
                blacklisted += 1
                logger.debug("Blacklisted candidate dropped", url=key, term=hit)
                continue

            # Claim before any await so concurrent sources cannot both take it.
            if not ctx.url_index.add(key):
                duplicates += 1
                continue

            match = ctx.keyword_filter.resolve_client(candidate.text, source.game_id)
            game = ctx.games_by_id.get(match.game_id) if match.game_id else None
            outlet = await ctx.outlets.resolve(candidate, source.outlet_id)
            scored = self.scorer.score(candidate, source.source_type, game, match.matched_terms)
            status = determine_approval_status(
                scored.score,
                self.settings.auto_approve_threshold,
                self.settings.review_threshold,
            )

            metadata = {**candidate.metadata, "source_id": source.id}
            if candidate.url.strip() != key:
                metadata["raw_url"] = candidate.url.strip()
            if match.matched_terms:
                metadata["matched_keywords"] = match.matched_terms

            items.append(CoverageItem(
                id=new_id(),
                url=key,
                title=candidate.title.strip(),
                publish_date=candidate.published_at,
                coverage_type=candidate.coverage_type,
                territory=candidate.territory,
                relevance_score=scored.score,
                relevance_reasoning=scored.reasoning,
                approval_status=status,
                source_type=source.source_type,
                source_metadata=metadata,
                outlet_id=outlet.id if outlet else None,
                game_id=match.game_id,
                client_id=match.client_id,
                monthly_unique_visitors=(
                    candidate.audience if candidate.audience is not None
                    else (outlet.monthly_unique_visitors if outlet else None)
                ),
                discovered_at=now,
                updated_at=now,
            ))

        logger.debug(
            **log_processing_stage(
                stage="build_items",
                input_count=len(candidates),
                output_count=len(items),
                duplicates=duplicates,
                blacklisted=blacklisted,
            )
        )
        return items


async def seed_catalog(store: CoverageStore, catalog: CatalogConfig) -> dict[str, int]:
    """Load clients, games, outlets, keywords, sources and credentials from a catalog."""
    clients = {c.name: await store.add_client(c.name) for c in catalog.get_clients()}
    games = {}
    for g in catalog.get_games():
        if g.client not in clients:
            raise InvalidRequestError(f"Game {g.name!r} references unknown client {g.client!r}")
        games[g.name] = await store.add_game(g.name, clients[g.client].id)

    outlets = {}
    for o in catalog.get_outlets():
        outlets[o.name] = await store.add_outlet(
            o.name, clean_domain(o.domain), o.monthly_unique_visitors,
            suggest_tier(o.monthly_unique_visitors), o.country,
        )

    keywords = catalog.get_keywords()
    for k in keywords:
        if k.client not in clients:
            raise InvalidRequestError(f"Keyword {k.keyword!r} references unknown client {k.client!r}")
        game_id = games[k.game].id if k.game and k.game in games else None
        await store.add_keyword(k.keyword, k.keyword_type, clients[k.client].id, game_id)

    sources = catalog.get_sources()
    for s in sources:
        await store.add_source(
            s.name, s.source_type, s.config,
            outlet_id=outlets[s.outlet].id if s.outlet and s.outlet in outlets else None,
            game_id=games[s.game].id if s.game and s.game in games else None,
            scan_frequency=s.scan_frequency,
            is_active=s.is_active,
        )

    credentials = catalog.get_credentials()
    for service, key in credentials.items():
        await store.set_credential(service, key)

    return {
        "clients": len(clients),
        "games": len(games),
        "outlets": len(outlets),
        "keywords": len(keywords),
        "sources": len(sources),
        "credentials": len(credentials),
    }


# ── CLI ────────────────────────────────────────────────────────────────────


def _print_json(data: Any) -> None:
    click.echo(orjson.dumps(data, option=orjson.OPT_INDENT_2, default=str).decode())


def _print_scan_report(report: ScanReport) -> None:
    table = Table(title="Coverage Scan", box=box.ROUNDED, header_style="bold cyan")
    table.add_column("Source", overflow="fold")
    table.add_column("Status", justify="center")
    table.add_column("Queries", justify="right")
    table.add_column("Found", justify="right")
    table.add_column("Inserted", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Error", overflow="fold")

    colors = {"success": "green", "skipped": "yellow", "failed": "red"}
    for r in report.results:
        color = colors[r.status.value]
        table.add_row(
            r.source,
            f"[{color}]{r.status.value.upper()}[/{color}]",
            str(r.queries),
            str(r.found),
            str(r.inserted),
            f"${r.cost_estimate:.2f}",
            r.error or "-",
        )
    console.print(table)
    console.print(f"Completed in {report.duration_ms} ms")


def _run(coro) -> Any:
    try:
        return asyncio.run(coro)
    except CoverageMonitorError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(2 if isinstance(e, (InvalidRequestError, NotFoundError)) else 1)


@click.group()
@click.option("--log-level", default="WARNING", help="Log level")
@click.option("--verbose", is_flag=True, help="Show detailed logs")
@click.option("--db", "database", type=click.Path(dir_okay=False, path_type=Path), help="Database file")
@click.pass_context
def cli(ctx: click.Context, log_level: str, verbose: bool, database: Path | None):
    """Coverage monitor - ingest, deduplicate and review game coverage."""
    setup_logging(log_level="DEBUG" if verbose else log_level, json_logging=False)
    if not verbose:
        quiet_third_party()

    settings = get_settings()
    if database is not None:
        settings = settings.model_copy(update={"database_path": database})

    problems = validate_config(settings)
    if problems:
        for problem in problems:
            console.print(f"[red]Configuration error:[/red] {problem}")
        sys.exit(1)

    ctx.obj = settings


@cli.command()
@click.option("--source-id", help="Scan a single source")
@click.option("--all", "scan_all", is_flag=True, help="Scan all active sources")
@click.option("--scheduled", is_flag=True, help="Only scan sources that are due and not backing off")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def scan(settings: Settings, source_id: str | None, scan_all: bool, scheduled: bool, output_json: bool):
    """Scan coverage sources."""
    async def _scan() -> ScanReport:
        async with CoverageStore(settings.database_path) as store:
            orchestrator = ScanOrchestrator(store, settings)
            return await orchestrator.scan(source_id=source_id, scan_all=scan_all or scheduled,
                                           scheduled=scheduled)

    report = _run(_scan())
    if output_json:
        _print_json(report.to_dict())
    else:
        _print_scan_report(report)


@cli.command("refresh-traffic")
@click.option("--outlet-id", help="Outlet to refresh")
@click.option("--domain", help="Domain to look up")
@click.option("--stale", is_flag=True, help="Refresh every outlet with missing or stale traffic")
@click.pass_obj
def refresh_traffic(settings: Settings, outlet_id: str | None, domain: str | None, stale: bool):
    """Look up outlet traffic and tier."""
    async def _refresh() -> Any:
        async with CoverageStore(settings.database_path) as store:
            credentials = CredentialSnapshot.resolve(await store.get_credentials(), settings)
            async with TrafficTierClassifier(store, credentials, settings) as classifier:
                if stale:
                    return [r.to_dict() for r in await classifier.refresh_stale()]
                return (await classifier.refresh(outlet_id=outlet_id, domain=domain)).to_dict()

    _print_json(_run(_refresh()))


@cli.command()
@click.pass_obj
def dedup(settings: Settings):
    """Cluster syndicated coverage."""
    async def _dedup() -> dict:
        async with CoverageStore(settings.database_path) as store:
            return (await SyndicationClusterer(store, settings).run()).to_dict()

    _print_json(_run(_dedup()))


@cli.command("set-status")
@click.argument("item_ids", nargs=-1, required=True)
@click.option(
    "--status",
    required=True,
    type=click.Choice(["pending_review", "auto_approved", "manually_approved", "rejected"]),
)
@click.pass_obj
def set_status(settings: Settings, item_ids: tuple[str, ...], status: str):
    """Change approval status of one or more items."""
    async def _set() -> dict:
        async with CoverageStore(settings.database_path) as store:
            result = await ApprovalWorkflow(store).bulk_set_status(item_ids, status)
            return result.to_dict()

    _print_json(_run(_set()))


@cli.command()
@click.argument("catalog_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def seed(settings: Settings, catalog_path: Path):
    """Seed reference data and sources from a YAML catalog."""
    async def _seed() -> dict:
        async with CoverageStore(settings.database_path) as store:
            return await seed_catalog(store, CatalogConfig(catalog_path))

    counts = _run(_seed())
    console.print("[green]Seeded:[/green] " + ", ".join(f"{k}={v}" for k, v in counts.items()))


@cli.command()
@click.option("--host", help="Bind host (defaults to API_HOST)")
@click.option("--port", type=int, help="Bind port (defaults to API_PORT)")
@click.pass_obj
def serve(settings: Settings, host: str | None, port: int | None):
    """Serve the trigger API."""
    from aiohttp import web

    from .api import create_app

    web.run_app(create_app(settings), host=host or settings.api_host, port=port or settings.api_port)


if __name__ == "__main__":
    cli()
