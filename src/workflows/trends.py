"""
Trend stage: once per UTC day, records each canonical topic's cumulative
mention count together with its velocity and a trend label.

Runs later in the same day overwrite that day's rows, so the last run of
a day leaves the day's final picture.
"""
import json
import logging
import sqlite3
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import aiosqlite

from core.entities import StageResult
from core.errors import StoreUnavailableError
from processing.topics import canonical_lookup, canonical_topic
from services.config import TrendConfig
from services.database import Database
from workflows.base import Stage

logger = logging.getLogger(__name__)

TREND_STATUSES = ["hot", "rising", "stable", "cooling", "cold"]
SEVERITY_WEIGHTS = {"critical": 4, "high": 3, "medium": 2, "low": 1}


def calculate_velocity(current: int, previous: int) -> Optional[float]:
    """Relative change against previous. None when both are zero."""
    if previous == 0:
        return 1.0 if current > 0 else None
    return (current - previous) / previous


def classify_trend(velocity: Optional[float], is_spike: bool) -> str:
    if is_spike:
        return "hot"
    if velocity is None:
        return "stable"
    if velocity >= 0.5:
        return "hot"
    if velocity >= 0.1:
        return "rising"
    if velocity >= -0.1:
        return "stable"
    if velocity >= -0.3:
        return "cooling"
    return "cold"


def detect_spike(new_mentions: int, daily_average: float, multiple: float = 3.0, min_count: int = 5) -> bool:
    if daily_average <= 0:
        return new_mentions >= min_count
    return new_mentions >= daily_average * multiple


def snapshot_day(ts: float, days_back: int = 0) -> str:
    """UTC calendar date of ts, days_back days earlier, as YYYY-MM-DD."""
    day = datetime.fromtimestamp(ts, tz=timezone.utc).date() - timedelta(days=days_back)
    return day.isoformat()


@dataclass
class TopicVolume:
    mentions: int = 0
    severity_total: int = 0
    sources: Set[str] = field(default_factory=set)

    @property
    def avg_severity(self) -> Optional[float]:
        return round(self.severity_total / self.mentions, 2) if self.mentions else None


class TrendStage(Stage):
    name = "trends"

    def __init__(
        self,
        db: Database,
        config: TrendConfig,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(db, clock)
        self.config = config

    async def topic_volumes(self, conn: aiosqlite.Connection, now: float) -> Dict[str, TopicVolume]:
        """Every tagged record counted once under each canonical topic it mentions."""
        cursor = await conn.execute(
            "SELECT topics, severity, source_id FROM pain_records WHERE tagged_at IS NOT NULL AND tagged_at <= ?",
            (now,),
        )
        tagged = [
            (json.loads(row["topics"] or "[]"), row["severity"], row["source_id"])
            for row in await cursor.fetchall()
        ]
        lookup = canonical_lookup(t for topics, _, _ in tagged for t in topics)

        volumes: Dict[str, TopicVolume] = defaultdict(TopicVolume)
        for topics, severity, source_id in tagged:
            for topic in {lookup[t] for t in topics if t in lookup}:
                volume = volumes[topic]
                volume.mentions += 1
                volume.severity_total += SEVERITY_WEIGHTS.get(severity, 2)
                if source_id:
                    volume.sources.add(source_id)
        return dict(volumes)

    async def _counts_on(self, conn: aiosqlite.Connection, day: str) -> Dict[str, int]:
        cursor = await conn.execute(
            "SELECT topic, mention_count FROM trend_snapshots WHERE snapshot_date = ?", (day,)
        )
        return {row["topic"]: row["mention_count"] for row in await cursor.fetchall()}

    async def _daily_average(self, conn: aiosqlite.Connection, now: float) -> Dict[str, float]:
        # days without a snapshot count as zero new mentions
        cursor = await conn.execute(
            """
            SELECT topic, SUM(new_mentions) AS total FROM trend_snapshots
            WHERE snapshot_date >= ? AND snapshot_date < ?
            GROUP BY topic
            """,
            (snapshot_day(now, 7), snapshot_day(now)),
        )
        return {row["topic"]: (row["total"] or 0) / 7 for row in await cursor.fetchall()}

    async def _write(self, conn: aiosqlite.Connection, row: Dict[str, Any]) -> None:
        columns = ", ".join(row)
        placeholders = ", ".join(f":{c}" for c in row)
        updates = ", ".join(f"{c} = excluded.{c}" for c in row if c not in ("topic", "snapshot_date"))
        await conn.execute(
            f"""
            INSERT INTO trend_snapshots ({columns}) VALUES ({placeholders})
            ON CONFLICT(topic, snapshot_date) DO UPDATE SET {updates}
            """,
            row,
        )

    async def run(self) -> StageResult:
        result = StageResult(stage=self.name)
        started_at = now = self.clock()
        today = snapshot_day(now)
        tally: Counter = Counter()

        try:
            async with self.db.connect() as conn:
                volumes = await self.topic_volumes(conn, now)
                yesterday = await self._counts_on(conn, snapshot_day(now, 1))
                week_ago = await self._counts_on(conn, snapshot_day(now, 7))
                month_ago = await self._counts_on(conn, snapshot_day(now, 30))
                averages = await self._daily_average(conn, now)

                for topic in sorted(volumes):
                    volume = volumes[topic]
                    result.attempted += 1
                    previous = yesterday.get(topic, 0)
                    new_mentions = max(0, volume.mentions - previous)
                    velocity = calculate_velocity(volume.mentions, previous)
                    is_spike = detect_spike(
                        new_mentions,
                        averages.get(topic, 0.0),
                        self.config.spike_multiple,
                        self.config.spike_min_count,
                    )
                    status = classify_trend(velocity, is_spike)

                    await self._write(conn, {
                        "topic": topic,
                        "snapshot_date": today,
                        "mention_count": volume.mentions,
                        "new_mentions": new_mentions,
                        "velocity": velocity,
                        "velocity_7d": calculate_velocity(volume.mentions, week_ago[topic]) if topic in week_ago else None,
                        "velocity_30d": calculate_velocity(volume.mentions, month_ago[topic]) if topic in month_ago else None,
                        "trend_status": status,
                        "is_spike": int(is_spike),
                        "avg_severity": volume.avg_severity,
                        "source_spread": len(volume.sources),
                        "created_at": now,
                    })
                    result.succeeded += 1
                    tally[status] += 1
                    if is_spike:
                        tally["spikes"] += 1

                cursor = await conn.execute(
                    "DELETE FROM trend_snapshots WHERE snapshot_date < ?",
                    (snapshot_day(now, self.config.history_days),),
                )
                removed = cursor.rowcount
                await conn.commit()
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(f"[{self.name}] store error: {e}") from e

        result.detail.update(tally)
        if removed:
            result.detail["removed"] = removed
        logger.info(
            f"[{self.name}] Snapshot {today}: {result.succeeded} topic(s), "
            f"{tally['hot']} hot, {tally['spikes']} spike(s)"
        )
        return await self.finish(result, started_at)


async def latest_trends(db: Database, status: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
    """Newest snapshot per topic, spikes and biggest movers first."""
    row = await db.fetchone("SELECT MAX(snapshot_date) FROM trend_snapshots")
    if not row or row[0] is None:
        return []
    query = "SELECT * FROM trend_snapshots WHERE snapshot_date = ?"
    params: List[Any] = [row[0]]
    if status:
        query += " AND trend_status = ?"
        params.append(status)
    query += " ORDER BY is_spike DESC, new_mentions DESC, mention_count DESC, topic LIMIT ?"
    params.append(limit)
    return [dict(r) for r in await db.fetchall(query, tuple(params))]


async def topic_history(db: Database, topic: str, days: int = 30, now: Optional[float] = None) -> List[Dict[str, Any]]:
    """Daily points for one topic, oldest first. Raw topic spellings are canonicalised."""
    since = snapshot_day(time.time() if now is None else now, days)
    rows = await db.fetchall(
        """
        SELECT snapshot_date, mention_count, new_mentions, velocity, trend_status
        FROM trend_snapshots
        WHERE topic = ? AND snapshot_date >= ?
        ORDER BY snapshot_date
        """,
        (canonical_topic(topic), since),
    )
    return [dict(r) for r in rows]
