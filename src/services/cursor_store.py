"""
Persisted rotation cursors, one row per rotating owner.
"""
import logging
import time
from typing import Callable, Optional

from services.database import Database

logger = logging.getLogger(__name__)


class CursorStore:
    """
    Durable, monotonic position counters.

    A missing cursor means "start of rotation". Advancing is a single
    guarded upsert, so a racing or retried invocation can never move a
    cursor backwards.
    """

    def __init__(self, db: Database, clock: Callable[[], float] = time.time):
        self.db = db
        self.clock = clock

    async def peek(self, owner: str) -> Optional[int]:
        row = await self.db.fetchone(
            "SELECT position FROM rotation_state WHERE owner = ?", (owner,)
        )
        return row[0] if row else None

    async def get_cursor(self, owner: str) -> int:
        position = await self.peek(owner)
        return position if position is not None else 0

    async def advance_cursor(self, owner: str, new_position: int) -> bool:
        """Move the cursor forward. Returns False if it was already at or past new_position."""
        if new_position < 0:
            raise ValueError(f"Cursor position must be non-negative, got {new_position}")

        async with self.db.connect() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO rotation_state (owner, position, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(owner) DO UPDATE SET
                    position = excluded.position,
                    updated_at = excluded.updated_at
                WHERE excluded.position > rotation_state.position
                """,
                (owner, new_position, self.clock()),
            )
            await conn.commit()
            advanced = cursor.rowcount > 0

        if not advanced:
            logger.debug(f"Cursor {owner} already at or past {new_position}")
        return advanced
