"""
Alerts stage: threshold rules over recent pipeline state.

Each rule produces candidates keyed by (alert_type, entity_key). A
candidate is stored only if no alert with the same key was created
inside that rule's suppression window. Nothing outside the alerts
table is written.
"""
import json
import logging
import sqlite3
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import aiosqlite

from core.entities import Alert, StageResult
from core.errors import StoreUnavailableError
from delivery.base import AlertChannel
from processing.topics import canonical_lookup
from services.alert_store import AlertStore
from services.config import AlertConfig
from services.database import Database
from workflows.base import Stage

logger = logging.getLogger(__name__)

HOUR = 3600
DAY = 86400
SEVERITY_ORDER = ["info", "warning", "critical"]


def severity_tier(
    observed: float,
    trigger: float,
    warning_at: float = 2.0,
    critical_at: float = 3.0,
    floor: str = "info",
) -> str:
    """Grade observed against its trigger: 2x is a warning, 3x critical."""
    if trigger <= 0:
        return floor
    ratio = observed / trigger
    if ratio >= critical_at:
        tier = "critical"
    elif ratio >= warning_at:
        tier = "warning"
    else:
        tier = "info"
    return max(tier, floor, key=SEVERITY_ORDER.index)


@dataclass(frozen=True)
class AlertCandidate:
    alert_type: str
    entity_key: str
    severity: str
    title: str
    description: str
    suppression_hours: float
    cluster_id: Optional[int] = None


class AlertStage(Stage):
    name = "alerts"

    def __init__(
        self,
        db: Database,
        config: AlertConfig,
        channels: Optional[List[AlertChannel]] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(db, clock)
        self.config = config
        self.channels = channels or []
        self.store = AlertStore(db, clock)

    async def lookback_start(self, conn: aiosqlite.Connection, now: float, window_hours: float, cap_hours: float) -> float:
        """
        Start of a rule's lookback: the configured window, stretched back to
        the previous alerts run when that is older, never past cap_hours.
        Consecutive runs therefore leave no uncovered gap.
        """
        since = now - window_hours * HOUR
        cursor = await conn.execute(
            "SELECT MAX(started_at) FROM stage_runs WHERE stage = ?", (self.name,)
        )
        row = await cursor.fetchone()
        if row and row[0] is not None:
            since = min(since, row[0])
        return max(since, now - cap_hours * HOUR)

    async def new_clusters(self, conn: aiosqlite.Connection, now: float) -> List[AlertCandidate]:
        cfg = self.config
        since = await self.lookback_start(
            conn, now, cfg.new_cluster_window_hours, cfg.new_cluster_suppression_hours
        )
        cursor = await conn.execute(
            """
            SELECT id, product_name, centroid_text, summary, member_count FROM clusters
            WHERE qualified_at IS NOT NULL AND qualified_at >= ? AND member_count >= ?
            """,
            (since, cfg.min_viable_members),
        )
        return [
            AlertCandidate(
                alert_type="new_cluster",
                entity_key=f"cluster:{row['id']}",
                severity=severity_tier(row["member_count"], cfg.min_viable_members),
                title=f"New opportunity: {row['product_name'] or row['centroid_text'][:80]}",
                description=f"{row['member_count']} people report this problem. {row['summary'] or ''}".strip(),
                suppression_hours=cfg.new_cluster_suppression_hours,
                cluster_id=row["id"],
            )
            for row in await cursor.fetchall()
        ]

    async def trend_spikes(self, conn: aiosqlite.Connection, now: float) -> List[AlertCandidate]:
        cfg = self.config
        window_start = now - cfg.spike_window_hours * HOUR
        baseline_start = window_start - cfg.spike_baseline_days * DAY
        cursor = await conn.execute(
            """
            SELECT topics, tagged_at FROM pain_records
            WHERE tagged_at IS NOT NULL AND tagged_at >= ? AND tagged_at <= ?
            """,
            (baseline_start, now),
        )
        tagged = [(json.loads(row["topics"] or "[]"), row["tagged_at"]) for row in await cursor.fetchall()]
        lookup = canonical_lookup(t for topics, _ in tagged for t in topics)

        current_counts: Counter = Counter()
        previous_counts: Counter = Counter()
        for topics, tagged_at in tagged:
            for topic in {lookup[t] for t in topics if t in lookup}:
                if tagged_at >= window_start:
                    current_counts[topic] += 1
                else:
                    previous_counts[topic] += 1

        candidates = []
        for topic in sorted(current_counts):
            current = current_counts[topic]
            baseline = previous_counts[topic] / cfg.spike_baseline_days
            if baseline > 0:
                ratio = current / baseline
                if ratio < cfg.spike_multiple or current < cfg.spike_min_current:
                    continue
                severity = severity_tier(ratio, cfg.spike_multiple, critical_at=2.0, floor="warning")
                detail = f"{ratio:.1f}x normal volume ({current} mentions in {cfg.spike_window_hours:g}h)"
            else:
                if current < cfg.spike_min_count:
                    continue
                severity = severity_tier(current, cfg.spike_min_count, critical_at=2.0, floor="warning")
                detail = f"{current} mentions in {cfg.spike_window_hours:g}h with no prior volume"

            candidates.append(AlertCandidate(
                alert_type="trend_spike",
                entity_key=f"topic:{topic}",
                severity=severity,
                title=f"Trend spike: {topic}",
                description=detail,
                suppression_hours=cfg.spike_suppression_hours,
            ))
        return candidates

    async def competitor_gaps(self, conn: aiosqlite.Connection, now: float) -> List[AlertCandidate]:
        cfg = self.config
        cursor = await conn.execute(
            """
            SELECT product_name, feature_gap, COUNT(*) AS mentions
            FROM product_gaps
            WHERE created_at >= ?
            GROUP BY product_name, feature_gap
            HAVING COUNT(*) >= ?
            """,
            (now - cfg.gap_window_hours * HOUR, cfg.gap_min_mentions),
        )
        return [
            AlertCandidate(
                alert_type="competitor_gap",
                entity_key=f"gap:{row['product_name']}:{row['feature_gap']}",
                severity=severity_tier(row["mentions"], cfg.gap_min_mentions),
                title=f"Feature gap: {row['product_name']}",
                description=f"\"{row['feature_gap']}\" - {row['mentions']} users want this",
                suppression_hours=cfg.gap_suppression_hours,
            )
            for row in await cursor.fetchall()
        ]

    async def high_severity(self, conn: aiosqlite.Connection, now: float) -> List[AlertCandidate]:
        cfg = self.config
        cursor = await conn.execute(
            """
            SELECT c.id, c.product_name, c.centroid_text,
                   COUNT(*) AS total,
                   SUM(CASE WHEN p.severity IN ('critical', 'high') THEN 1 ELSE 0 END) AS severe
            FROM clusters c
            JOIN cluster_members m ON m.cluster_id = c.id
            JOIN pain_records p ON p.id = m.pain_record_id
            WHERE c.updated_at >= ? AND c.member_count >= ?
            GROUP BY c.id
            """,
            (now - cfg.severity_window_hours * HOUR, cfg.min_viable_members),
        )

        candidates = []
        for row in await cursor.fetchall():
            total, severe = row["total"], row["severe"] or 0
            if not total or severe < cfg.severity_min_count or severe / total < cfg.severity_ratio:
                continue
            candidates.append(AlertCandidate(
                alert_type="high_severity",
                entity_key=f"cluster:{row['id']}",
                severity="critical",
                title=f"High-severity pain: {row['product_name'] or row['centroid_text'][:80]}",
                description=f"{round(100 * severe / total)}% report critical/high severity ({severe}/{total})",
                suppression_hours=cfg.severity_suppression_hours,
                cluster_id=row["id"],
            ))
        return candidates

    async def _store(self, conn: aiosqlite.Connection, candidate: AlertCandidate, now: float) -> Optional[int]:
        cursor = await conn.execute(
            """
            SELECT 1 FROM alerts
            WHERE alert_type = ? AND entity_key = ? AND created_at > ?
            LIMIT 1
            """,
            (candidate.alert_type, candidate.entity_key, now - candidate.suppression_hours * HOUR),
        )
        if await cursor.fetchone():
            return None

        cursor = await conn.execute(
            """
            INSERT INTO alerts (alert_type, entity_key, severity, title, description, cluster_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                candidate.alert_type,
                candidate.entity_key,
                candidate.severity,
                candidate.title,
                candidate.description,
                candidate.cluster_id,
                now,
            ),
        )
        return cursor.lastrowid

    async def detect(self) -> tuple[List[Alert], StageResult]:
        """Run every rule once and store the unsuppressed candidates."""
        result = StageResult(stage=self.name)
        now = self.clock()
        created_ids: List[int] = []
        per_type: Dict[str, int] = {}

        rules = [self.new_clusters, self.trend_spikes, self.competitor_gaps, self.high_severity]
        try:
            async with self.db.connect() as conn:
                for rule in rules:
                    for candidate in await rule(conn, now):
                        result.attempted += 1
                        alert_id = await self._store(conn, candidate, now)
                        if alert_id is None:
                            result.skipped += 1
                            continue
                        result.succeeded += 1
                        per_type[candidate.alert_type] = per_type.get(candidate.alert_type, 0) + 1
                        created_ids.append(alert_id)
                await conn.commit()

                alerts = []
                if created_ids:
                    placeholders = ", ".join("?" for _ in created_ids)
                    cursor = await conn.execute(
                        f"SELECT * FROM alerts WHERE id IN ({placeholders}) ORDER BY id",
                        tuple(created_ids),
                    )
                    alerts = [Alert.from_row(row) for row in await cursor.fetchall()]
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(f"[{self.name}] store error: {e}") from e

        result.detail.update(per_type)
        return alerts, result

    async def deliver(self, alerts: List[Alert]) -> Dict[str, str]:
        outcome = {}
        run_date = datetime.fromtimestamp(self.clock(), tz=timezone.utc).strftime("%Y-%m-%d_%H%M")
        for channel in self.channels:
            try:
                await channel.deliver(run_date=run_date, alerts=alerts)
                outcome[channel.name] = "ok"
                logger.info(f"[{self.name}] Delivered {len(alerts)} alert(s) via {channel.name}")
            except Exception as e:
                outcome[channel.name] = "failed"
                logger.error(
                    f"[{self.name}] Delivery via {channel.name} failed: {e}",
                    extra={"stage": self.name},
                )
        return outcome

    async def run(self) -> StageResult:
        started_at = self.clock()
        alerts, result = await self.detect()

        removed = await self.store.cleanup(self.config.retention_days)
        if removed:
            result.detail["removed"] = removed

        if alerts and self.channels:
            result.detail["delivery"] = await self.deliver(alerts)

        return await self.finish(result, started_at)
