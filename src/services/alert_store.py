"""
AlertStore - read side and housekeeping for the alerts table.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from core.entities import Alert
from services.database import Database

logger = logging.getLogger(__name__)


class AlertStore:
    def __init__(self, database: Database, clock: Callable[[], float] = time.time):
        self.db = database
        self.clock = clock

    async def list_alerts(
        self,
        alert_type: Optional[str] = None,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Alert]:
        """Newest alerts first, optionally filtered by type and read state."""
        clauses = []
        params: List[Any] = []
        if alert_type:
            clauses.append("alert_type = ?")
            params.append(alert_type)
        if unread_only:
            clauses.append("read_at IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        rows = await self.db.fetchall(
            f"SELECT * FROM alerts {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        return [Alert.from_row(row) for row in rows]

    async def unread_count(self) -> int:
        row = await self.db.fetchone("SELECT COUNT(*) FROM alerts WHERE read_at IS NULL")
        return row[0] if row else 0

    async def mark_read(self, alert_id: int) -> bool:
        return await self.db.execute(
            "UPDATE alerts SET read_at = ? WHERE id = ? AND read_at IS NULL",
            (self.clock(), alert_id),
        ) == 1

    async def mark_all_read(self) -> int:
        return await self.db.execute(
            "UPDATE alerts SET read_at = ? WHERE read_at IS NULL", (self.clock(),)
        )

    async def cleanup(self, retention_days: int = 30) -> int:
        """Delete read alerts older than the retention horizon. Unread alerts are kept."""
        horizon = self.clock() - retention_days * 86400
        deleted = await self.db.execute(
            "DELETE FROM alerts WHERE read_at IS NOT NULL AND created_at < ?",
            (horizon,),
        )
        if deleted:
            logger.info(f"Removed {deleted} alert(s) older than {retention_days} days")
        return deleted

    async def stats(self) -> Dict[str, Any]:
        rows = await self.db.fetchall(
            """
            SELECT alert_type,
                   COUNT(*) AS total,
                   SUM(CASE WHEN read_at IS NULL THEN 1 ELSE 0 END) AS unread
            FROM alerts GROUP BY alert_type
            """
        )
        by_type = {row["alert_type"]: {"total": row["total"], "unread": row["unread"]} for row in rows}
        return {
            "total": sum(v["total"] for v in by_type.values()),
            "unread": sum(v["unread"] for v in by_type.values()),
            "by_type": by_type,
        }
