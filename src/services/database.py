import aiosqlite
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from core.entities import StageResult
from core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS raw_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        natural_key TEXT NOT NULL UNIQUE,
        source_kind TEXT NOT NULL,
        source_id TEXT NOT NULL,
        external_id TEXT NOT NULL,
        parent_id TEXT,
        title TEXT,
        body TEXT,
        author TEXT,
        score INTEGER DEFAULT 0,
        url TEXT,
        created_utc REAL NOT NULL,
        fetched_at REAL NOT NULL,
        processed INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_raw_items_ready ON raw_items(processed, created_utc)",
    """
    CREATE TABLE IF NOT EXISTS filter_decisions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        content_key TEXT NOT NULL UNIQUE,
        content_kind TEXT NOT NULL,
        is_english INTEGER NOT NULL,
        is_pain_point INTEGER NOT NULL,
        confidence REAL,
        category TEXT,
        problem_type TEXT,
        passes INTEGER NOT NULL,
        reason TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pain_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        natural_key TEXT NOT NULL UNIQUE,
        origin TEXT NOT NULL DEFAULT 'extracted',
        source_kind TEXT NOT NULL,
        source_id TEXT NOT NULL,
        author TEXT,
        problem_statement TEXT NOT NULL,
        persona TEXT,
        severity TEXT DEFAULT 'medium',
        location TEXT,
        workaround TEXT,
        willingness_to_pay TEXT,
        raw_quote TEXT,
        source_url TEXT,
        source_score INTEGER DEFAULT 0,
        topics TEXT,
        keywords TEXT,
        state TEXT NOT NULL DEFAULT 'extracted',
        cluster_id INTEGER REFERENCES clusters(id),
        similarity REAL,
        extracted_at REAL NOT NULL,
        tagged_at REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_pain_records_state ON pain_records(state, extracted_at)",
    """
    CREATE TABLE IF NOT EXISTS product_gaps (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        pain_record_id INTEGER NOT NULL UNIQUE REFERENCES pain_records(id),
        product_name TEXT NOT NULL,
        feature_gap TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS clusters (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        centroid_text TEXT,
        product_name TEXT,
        summary TEXT,
        personas TEXT,
        workarounds TEXT,
        search_keywords TEXT,
        brief_version INTEGER NOT NULL DEFAULT 0,
        member_count INTEGER NOT NULL DEFAULT 0,
        unique_author_count INTEGER NOT NULL DEFAULT 0,
        unique_source_count INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL,
        updated_at REAL,
        qualified_at REAL,
        synthesized_at REAL,
        scored_at REAL,
        last_backvalidation_at REAL,
        frequency_score REAL,
        severity_score REAL,
        economic_score REAL,
        solvability_score REAL,
        competitive_score REAL,
        regional_score REAL,
        total_score INTEGER,
        score_reasons TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cluster_members (
        pain_record_id INTEGER PRIMARY KEY REFERENCES pain_records(id),
        cluster_id INTEGER NOT NULL REFERENCES clusters(id),
        similarity REAL NOT NULL,
        origin TEXT NOT NULL DEFAULT 'clustered',
        added_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cluster_members_cluster ON cluster_members(cluster_id)",
    """
    CREATE TABLE IF NOT EXISTS alerts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        alert_type TEXT NOT NULL,
        entity_key TEXT NOT NULL,
        severity TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        cluster_id INTEGER,
        created_at REAL NOT NULL,
        read_at REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_alerts_entity ON alerts(alert_type, entity_key, created_at)",
    """
    CREATE TABLE IF NOT EXISTS trend_snapshots (
        topic TEXT NOT NULL,
        snapshot_date TEXT NOT NULL,
        mention_count INTEGER NOT NULL,
        new_mentions INTEGER NOT NULL DEFAULT 0,
        velocity REAL,
        velocity_7d REAL,
        velocity_30d REAL,
        trend_status TEXT NOT NULL,
        is_spike INTEGER NOT NULL DEFAULT 0,
        avg_severity REAL,
        source_spread INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL,
        PRIMARY KEY (topic, snapshot_date)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_trend_snapshots_date ON trend_snapshots(snapshot_date)",
    """
    CREATE TABLE IF NOT EXISTS rotation_state (
        owner TEXT PRIMARY KEY,
        position INTEGER NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stage_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        stage TEXT NOT NULL,
        started_at REAL NOT NULL,
        finished_at REAL NOT NULL,
        attempted INTEGER NOT NULL DEFAULT 0,
        succeeded INTEGER NOT NULL DEFAULT 0,
        failed INTEGER NOT NULL DEFAULT 0,
        skipped INTEGER NOT NULL DEFAULT 0,
        detail TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_stage_runs_stage ON stage_runs(stage)",
    """
    CREATE TABLE IF NOT EXISTS stage_failures (
        stage TEXT NOT NULL,
        item_key TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        updated_at REAL NOT NULL,
        PRIMARY KEY (stage, item_key)
    )
    """,
]


class Database:
    def __init__(self, path: str, timeout: float = 30.0):
        self.path = path
        self.timeout = timeout

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            conn = await aiosqlite.connect(self.path, timeout=self.timeout)
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailableError(f"Cannot open store at {self.path}: {e}") from e
        try:
            try:
                await conn.execute("PRAGMA journal_mode=WAL;")
                await conn.execute("PRAGMA foreign_keys=ON;")
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"Cannot open store at {self.path}: {e}") from e
            conn.row_factory = aiosqlite.Row
            yield conn
        finally:
            await conn.close()

    async def execute(self, query: str, params: tuple = ()) -> int:
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.rowcount

    async def fetchone(self, query: str, params: tuple = ()):
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchone()

    async def fetchall(self, query: str, params: tuple = ()):
        async with self.connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchall()

    async def init_tables(self) -> None:
        """Create every pipeline table if it does not exist yet."""
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        async with self.connect() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)
            await conn.commit()
            logger.info("Database tables initialized")

    async def count_stage_runs(self, stage: str) -> int:
        row = await self.fetchone(
            "SELECT COUNT(*) FROM stage_runs WHERE stage = ?", (stage,)
        )
        return row[0] if row else 0

    async def record_stage_run(
        self,
        conn: aiosqlite.Connection,
        result: StageResult,
        started_at: float,
        finished_at: float,
    ) -> None:
        """Append one row to the stage run log. Caller commits."""
        await conn.execute(
            """
            INSERT INTO stage_runs
            (stage, started_at, finished_at, attempted, succeeded, failed, skipped, detail)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.stage,
                started_at,
                finished_at,
                result.attempted,
                result.succeeded,
                result.failed,
                result.skipped,
                json.dumps(result.detail, default=str) if result.detail else None,
            ),
        )

    async def record_failure(
        self,
        conn: aiosqlite.Connection,
        stage: str,
        item_key: str,
        error: str,
        now: float,
    ) -> None:
        await conn.execute(
            """
            INSERT INTO stage_failures (stage, item_key, attempts, last_error, updated_at)
            VALUES (?, ?, 1, ?, ?)
            ON CONFLICT(stage, item_key) DO UPDATE SET
                attempts = stage_failures.attempts + 1,
                last_error = excluded.last_error,
                updated_at = excluded.updated_at
            """,
            (stage, item_key, error[:500], now),
        )

    async def clear_failure(self, conn: aiosqlite.Connection, stage: str, item_key: str) -> None:
        await conn.execute(
            "DELETE FROM stage_failures WHERE stage = ? AND item_key = ?",
            (stage, item_key),
        )

    async def get_stage_runs(self, stage: Optional[str] = None, limit: int = 20) -> list[Dict[str, Any]]:
        """Most recent stage runs, newest first."""
        if stage:
            rows = await self.fetchall(
                "SELECT * FROM stage_runs WHERE stage = ? ORDER BY id DESC LIMIT ?",
                (stage, limit),
            )
        else:
            rows = await self.fetchall(
                "SELECT * FROM stage_runs ORDER BY id DESC LIMIT ?", (limit,)
            )
        return [dict(row) for row in rows]
