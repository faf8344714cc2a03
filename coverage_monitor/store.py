"""SQLite record store for sources, outlets, keywords and coverage items."""

import uuid
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
import orjson

from .logging import get_logger
from .records import (
    ApprovalStatus,
    Client,
    CoverageItem,
    CoverageKeyword,
    CoverageSource,
    Game,
    Outlet,
    RunStatus,
    Tier,
)
from .utils import format_datetime_iso, utc_now

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS clients (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS games (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    client_id TEXT NOT NULL REFERENCES clients(id)
);

CREATE TABLE IF NOT EXISTS outlets (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    domain TEXT,
    monthly_unique_visitors INTEGER,
    tier TEXT CHECK (tier IN ('A', 'B', 'C', 'D')),
    country TEXT,
    metacritic_status TEXT,
    traffic_last_updated TEXT
);
CREATE INDEX IF NOT EXISTS idx_outlets_domain ON outlets(domain);

CREATE TABLE IF NOT EXISTS coverage_keywords (
    id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL REFERENCES clients(id),
    game_id TEXT REFERENCES games(id),
    keyword TEXT NOT NULL,
    keyword_type TEXT NOT NULL CHECK (keyword_type IN ('whitelist', 'blacklist'))
);

CREATE TABLE IF NOT EXISTS coverage_sources (
    id TEXT PRIMARY KEY,
    source_type TEXT NOT NULL,
    name TEXT NOT NULL,
    config TEXT NOT NULL DEFAULT '{}',
    outlet_id TEXT REFERENCES outlets(id),
    game_id TEXT REFERENCES games(id),
    scan_frequency TEXT NOT NULL DEFAULT 'daily',
    is_active INTEGER NOT NULL DEFAULT 1,
    last_run_at TEXT,
    last_run_status TEXT,
    last_run_message TEXT,
    items_found_last_run INTEGER NOT NULL DEFAULT 0,
    total_items_found INTEGER NOT NULL DEFAULT 0,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    last_error_at TEXT
);

CREATE TABLE IF NOT EXISTS coverage_items (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    title TEXT NOT NULL,
    publish_date TEXT,
    coverage_type TEXT,
    territory TEXT,
    sentiment TEXT,
    relevance_score INTEGER,
    relevance_reasoning TEXT,
    approval_status TEXT NOT NULL DEFAULT 'pending_review',
    approved_at TEXT,
    source_type TEXT,
    source_metadata TEXT NOT NULL DEFAULT '{}',
    outlet_id TEXT REFERENCES outlets(id),
    game_id TEXT REFERENCES games(id),
    client_id TEXT REFERENCES clients(id),
    monthly_unique_visitors INTEGER,
    duplicate_group_id TEXT,
    is_original INTEGER NOT NULL DEFAULT 1,
    syndication_count INTEGER NOT NULL DEFAULT 1,
    discovered_at TEXT NOT NULL,
    updated_at TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_coverage_items_url ON coverage_items(url);
CREATE INDEX IF NOT EXISTS idx_coverage_items_group ON coverage_items(duplicate_group_id);
CREATE INDEX IF NOT EXISTS idx_coverage_items_discovered ON coverage_items(discovered_at);

CREATE TABLE IF NOT EXISTS service_api_keys (
    service_name TEXT PRIMARY KEY,
    api_key TEXT NOT NULL,
    updated_at TEXT
);
"""

ITEM_COLUMNS = (
    "id", "url", "title", "publish_date", "coverage_type", "territory", "sentiment",
    "relevance_score", "relevance_reasoning", "approval_status", "approved_at",
    "source_type", "source_metadata", "outlet_id", "game_id", "client_id",
    "monthly_unique_visitors", "duplicate_group_id", "is_original",
    "syndication_count", "discovered_at", "updated_at",
)


def new_id() -> str:
    return str(uuid.uuid4())


def _ts(value: datetime | None) -> str | None:
    return format_datetime_iso(value) if value is not None else None


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _row_to_source(row: aiosqlite.Row) -> CoverageSource:
    data = dict(row)
    data["config"] = orjson.loads(data["config"] or "{}")
    return CoverageSource(**data)


def _row_to_item(row: aiosqlite.Row) -> CoverageItem:
    data = dict(row)
    data["source_metadata"] = orjson.loads(data["source_metadata"] or "{}")
    return CoverageItem(**data)


class CoverageStore:
    """Async SQLite-backed store.

    Usage::

        async with CoverageStore(path) as store:
            sources = await store.list_sources()
    """

    def __init__(self, database_path: str | Path):
        self.database_path = str(database_path)
        self._db: aiosqlite.Connection | None = None

    async def __aenter__(self) -> "CoverageStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def connect(self) -> None:
        if self.database_path != ":memory:":
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        self._db = await aiosqlite.connect(self.database_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.debug("Store connected", database=self.database_path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store not connected. Use async context manager.")
        return self._db

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        async with self.db.execute(sql, tuple(params)) as cursor:
            return list(await cursor.fetchall())

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        async with self.db.execute(sql, tuple(params)) as cursor:
            return await cursor.fetchone()

    # ── Reference data ─────────────────────────────────────────────────────

    async def add_client(self, name: str, client_id: str | None = None) -> Client:
        client = Client(id=client_id or new_id(), name=name)
        await self.db.execute("INSERT INTO clients (id, name) VALUES (?, ?)", (client.id, client.name))
        await self.db.commit()
        return client

    async def add_game(self, name: str, client_id: str, game_id: str | None = None) -> Game:
        game = Game(id=game_id or new_id(), name=name, client_id=client_id)
        await self.db.execute(
            "INSERT INTO games (id, name, client_id) VALUES (?, ?, ?)",
            (game.id, game.name, game.client_id),
        )
        await self.db.commit()
        return game

    async def add_keyword(
        self,
        keyword: str,
        keyword_type: str,
        client_id: str,
        game_id: str | None = None,
    ) -> CoverageKeyword:
        record = CoverageKeyword(
            id=new_id(), client_id=client_id, game_id=game_id,
            keyword=keyword, keyword_type=keyword_type,
        )
        await self.db.execute(
            "INSERT INTO coverage_keywords (id, client_id, game_id, keyword, keyword_type) "
            "VALUES (?, ?, ?, ?, ?)",
            (record.id, record.client_id, record.game_id, record.keyword, record.keyword_type.value),
        )
        await self.db.commit()
        return record

    async def list_games(self) -> list[Game]:
        rows = await self._fetchall("SELECT id, name, client_id FROM games")
        return [Game(**dict(r)) for r in rows]

    async def list_keywords(self) -> list[CoverageKeyword]:
        rows = await self._fetchall(
            "SELECT id, client_id, game_id, keyword, keyword_type FROM coverage_keywords"
        )
        return [CoverageKeyword(**dict(r)) for r in rows]

    async def set_credential(self, service: str, api_key: str) -> None:
        await self.db.execute(
            "INSERT INTO service_api_keys (service_name, api_key, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(service_name) DO UPDATE SET api_key = excluded.api_key, "
            "updated_at = excluded.updated_at",
            (service, api_key, _ts(utc_now())),
        )
        await self.db.commit()

    async def get_credentials(self) -> dict[str, str]:
        rows = await self._fetchall("SELECT service_name, api_key FROM service_api_keys")
        return {r["service_name"]: r["api_key"] for r in rows}

    # ── Outlets ────────────────────────────────────────────────────────────

    async def add_outlet(
        self,
        name: str,
        domain: str | None,
        monthly_unique_visitors: int | None = None,
        tier: Tier | str | None = None,
        country: str | None = None,
        outlet_id: str | None = None,
    ) -> Outlet:
        outlet = Outlet(
            id=outlet_id or new_id(), name=name, domain=domain,
            monthly_unique_visitors=monthly_unique_visitors, tier=tier, country=country,
        )
        await self.db.execute(
            "INSERT INTO outlets (id, name, domain, monthly_unique_visitors, tier, country) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (outlet.id, outlet.name, outlet.domain, outlet.monthly_unique_visitors,
             _enum_value(outlet.tier), outlet.country),
        )
        await self.db.commit()
        return outlet

    async def get_outlet(self, outlet_id: str) -> Outlet | None:
        row = await self._fetchone("SELECT * FROM outlets WHERE id = ?", (outlet_id,))
        return Outlet(**dict(row)) if row else None

    async def find_outlet_by_domain(self, domain: str) -> Outlet | None:
        row = await self._fetchone(
            "SELECT * FROM outlets WHERE lower(domain) = lower(?) LIMIT 1", (domain,)
        )
        return Outlet(**dict(row)) if row else None

    async def update_outlet_traffic(
        self,
        outlet_id: str,
        monthly_unique_visitors: int,
        tier: Tier,
        updated_at: datetime,
    ) -> None:
        """Persist visitors, tier and timestamp together."""
        await self.db.execute(
            "UPDATE outlets SET monthly_unique_visitors = ?, tier = ?, traffic_last_updated = ? "
            "WHERE id = ?",
            (monthly_unique_visitors, tier.value, _ts(updated_at), outlet_id),
        )
        await self.db.commit()

    async def touch_outlet_traffic(self, outlet_id: str, updated_at: datetime) -> None:
        await self.db.execute(
            "UPDATE outlets SET traffic_last_updated = ? WHERE id = ?",
            (_ts(updated_at), outlet_id),
        )
        await self.db.commit()

    async def list_stale_outlets(self, cutoff: datetime, limit: int) -> list[Outlet]:
        rows = await self._fetchall(
            "SELECT * FROM outlets WHERE domain IS NOT NULL AND domain != '' "
            "AND (traffic_last_updated IS NULL OR traffic_last_updated < ?) "
            "ORDER BY traffic_last_updated IS NOT NULL, traffic_last_updated LIMIT ?",
            (_ts(cutoff), limit),
        )
        return [Outlet(**dict(r)) for r in rows]

    # ── Sources ────────────────────────────────────────────────────────────

    async def add_source(
        self,
        name: str,
        source_type: str,
        config: dict[str, Any],
        outlet_id: str | None = None,
        game_id: str | None = None,
        scan_frequency: str = "daily",
        is_active: bool = True,
        source_id: str | None = None,
    ) -> CoverageSource:
        source = CoverageSource(
            id=source_id or new_id(), name=name, source_type=source_type, config=config,
            outlet_id=outlet_id, game_id=game_id, scan_frequency=scan_frequency,
            is_active=is_active,
        )
        await self.db.execute(
            "INSERT INTO coverage_sources "
            "(id, source_type, name, config, outlet_id, game_id, scan_frequency, is_active) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (source.id, source.source_type.value, source.name, orjson.dumps(source.config).decode(),
             source.outlet_id, source.game_id, source.scan_frequency.value, int(source.is_active)),
        )
        await self.db.commit()
        return source

    async def get_source(self, source_id: str) -> CoverageSource | None:
        row = await self._fetchone("SELECT * FROM coverage_sources WHERE id = ?", (source_id,))
        return _row_to_source(row) if row else None

    async def list_sources(self, active_only: bool = True) -> list[CoverageSource]:
        sql = "SELECT * FROM coverage_sources"
        if active_only:
            sql += " WHERE is_active = 1"
        rows = await self._fetchall(sql + " ORDER BY name")
        return [_row_to_source(r) for r in rows]

    async def record_source_success(
        self, source_id: str, message: str, items_found: int, run_at: datetime
    ) -> None:
        await self.db.execute(
            "UPDATE coverage_sources SET last_run_at = ?, last_run_status = ?, "
            "last_run_message = ?, items_found_last_run = ?, "
            "total_items_found = total_items_found + ?, consecutive_failures = 0 "
            "WHERE id = ?",
            (_ts(run_at), RunStatus.SUCCESS.value, message, items_found, items_found, source_id),
        )
        await self.db.commit()

    async def record_source_failure(self, source_id: str, message: str, run_at: datetime) -> None:
        await self.db.execute(
            "UPDATE coverage_sources SET last_run_at = ?, last_run_status = ?, "
            "last_run_message = ?, items_found_last_run = 0, last_error_at = ?, "
            "consecutive_failures = consecutive_failures + 1 "
            "WHERE id = ?",
            (_ts(run_at), RunStatus.FAILED.value, message, _ts(run_at), source_id),
        )
        await self.db.commit()

    # ── Coverage items ─────────────────────────────────────────────────────

    async def recent_item_urls(self, limit: int) -> list[str]:
        rows = await self._fetchall(
            "SELECT url FROM coverage_items ORDER BY discovered_at DESC LIMIT ?", (limit,)
        )
        return [r["url"] for r in rows]

    def _item_params(self, item: CoverageItem) -> tuple:
        data = item.model_dump()
        data["source_metadata"] = orjson.dumps(item.source_metadata, default=str).decode()
        for key in ("publish_date", "approved_at", "discovered_at", "updated_at"):
            data[key] = _ts(data[key])
        for key in ("approval_status", "source_type"):
            data[key] = _enum_value(data[key])
        data["is_original"] = int(item.is_original)
        return tuple(data[c] for c in ITEM_COLUMNS)

    async def insert_items(self, items: list[CoverageItem]) -> int:
        """Insert items, silently ignoring URLs that already exist.

        Returns:
            Number of rows actually inserted
        """
        if not items:
            return 0

        placeholders = ", ".join("?" for _ in ITEM_COLUMNS)
        sql = (
            f"INSERT INTO coverage_items ({', '.join(ITEM_COLUMNS)}) VALUES ({placeholders}) "
            "ON CONFLICT(url) DO NOTHING"
        )
        inserted = 0
        for item in items:
            cursor = await self.db.execute(sql, self._item_params(item))
            inserted += cursor.rowcount
            await cursor.close()
        await self.db.commit()

        if inserted < len(items):
            logger.debug("Ignored duplicate URLs on insert", skipped=len(items) - inserted)
        return inserted

    async def get_item(self, item_id: str) -> CoverageItem | None:
        row = await self._fetchone("SELECT * FROM coverage_items WHERE id = ?", (item_id,))
        return _row_to_item(row) if row else None

    async def get_items(self, item_ids: list[str]) -> list[CoverageItem]:
        if not item_ids:
            return []
        placeholders = ", ".join("?" for _ in item_ids)
        rows = await self._fetchall(
            f"SELECT * FROM coverage_items WHERE id IN ({placeholders})", item_ids
        )
        return [_row_to_item(r) for r in rows]

    async def list_items(self, approval_status: str | None = None, limit: int = 100) -> list[CoverageItem]:
        if approval_status:
            rows = await self._fetchall(
                "SELECT * FROM coverage_items WHERE approval_status = ? "
                "ORDER BY discovered_at DESC LIMIT ?",
                (approval_status, limit),
            )
        else:
            rows = await self._fetchall(
                "SELECT * FROM coverage_items ORDER BY discovered_at DESC LIMIT ?", (limit,)
            )
        return [_row_to_item(r) for r in rows]

    async def update_approval_status(
        self,
        item_ids: list[str],
        status: ApprovalStatus,
        updated_at: datetime,
    ) -> int:
        """Set approval status on a batch of items in one statement.

        Only ``approval_status``, ``updated_at`` and (for manual approval)
        ``approved_at`` are touched.
        """
        if not item_ids:
            return 0
        placeholders = ", ".join("?" for _ in item_ids)
        if status == ApprovalStatus.MANUALLY_APPROVED:
            sql = (
                "UPDATE coverage_items SET approval_status = ?, updated_at = ?, approved_at = ? "
                f"WHERE id IN ({placeholders})"
            )
            params = [status.value, _ts(updated_at), _ts(updated_at), *item_ids]
        else:
            sql = (
                "UPDATE coverage_items SET approval_status = ?, updated_at = ? "
                f"WHERE id IN ({placeholders})"
            )
            params = [status.value, _ts(updated_at), *item_ids]
        cursor = await self.db.execute(sql, params)
        count = cursor.rowcount
        await cursor.close()
        await self.db.commit()
        return count

    # ── Syndication groups ─────────────────────────────────────────────────

    async def list_ungrouped_items(self, limit: int) -> list[CoverageItem]:
        rows = await self._fetchall(
            "SELECT * FROM coverage_items WHERE duplicate_group_id IS NULL "
            "AND approval_status != ? ORDER BY discovered_at DESC LIMIT ?",
            (ApprovalStatus.REJECTED.value, limit),
        )
        return [_row_to_item(r) for r in rows]

    async def list_items_in_window(
        self, since: datetime, until: datetime, limit: int
    ) -> list[CoverageItem]:
        """Syndication match candidates dated within [since, until].

        Items are dated by publish date, or discovery when undated. Ungrouped
        rejected items are left out, as they are never clustered themselves.
        """
        rows = await self._fetchall(
            "SELECT * FROM coverage_items "
            "WHERE COALESCE(publish_date, discovered_at) BETWEEN ? AND ? "
            "AND (duplicate_group_id IS NOT NULL OR approval_status != ?) "
            "ORDER BY COALESCE(publish_date, discovered_at) DESC LIMIT ?",
            (_ts(since), _ts(until), ApprovalStatus.REJECTED.value, limit),
        )
        return [_row_to_item(r) for r in rows]

    async def get_group_members(self, group_id: str) -> list[CoverageItem]:
        rows = await self._fetchall(
            "SELECT * FROM coverage_items WHERE duplicate_group_id = ?", (group_id,)
        )
        return [_row_to_item(r) for r in rows]

    async def write_group(
        self,
        group_id: str,
        original_id: str,
        member_ids: list[str],
        updated_at: datetime,
    ) -> None:
        """Assign group membership in one transaction; approval status is untouched."""
        count = len(member_ids)
        try:
            for member_id in member_ids:
                await self.db.execute(
                    "UPDATE coverage_items SET duplicate_group_id = ?, is_original = ?, "
                    "syndication_count = ?, updated_at = ? WHERE id = ?",
                    (group_id, int(member_id == original_id), count, _ts(updated_at), member_id),
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
