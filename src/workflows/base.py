"""
Contains base classes for pipeline stages
"""
import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Callable, List, Optional, Tuple

import aiosqlite

from core.entities import StageResult
from core.errors import StoreUnavailableError
from services.database import Database

logger = logging.getLogger(__name__)


class Stage(ABC):
    """
    One step of the pipeline, run to completion once per invocation.
    """

    name: str

    def __init__(self, db: Database, clock: Callable[[], float] = time.time):
        self.db = db
        self.clock = clock

    @abstractmethod
    async def run(self) -> StageResult:
        """
        Execute the stage and return aggregate counts.
        Only StoreUnavailableError may escape.
        """
        raise NotImplementedError

    async def finish(self, result: StageResult, started_at: float) -> StageResult:
        """Log the run in stage_runs and return it."""
        async with self.db.connect() as conn:
            await self.db.record_stage_run(conn, result, started_at, self.clock())
            await conn.commit()

        logger.info(
            f"[{self.name}] attempted={result.attempted} succeeded={result.succeeded} "
            f"failed={result.failed} skipped={result.skipped}",
            extra={"stage": self.name},
        )
        return result


class BatchStage(Stage):
    """
    Generic bounded batch processor.

    Subclasses supply the readiness predicate (select_ready), the
    transform and the idempotent persist step. A failing item is logged,
    counted and skipped; it never aborts the batch.
    """

    batch_size: int = 5
    # None disables the attempt ceiling for stages gated some other way
    max_attempts: Optional[int] = 3

    def __init__(
        self,
        db: Database,
        *,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(db, clock)
        if batch_size is not None:
            self.batch_size = batch_size
        if max_attempts is not None:
            self.max_attempts = max_attempts
        self.counters: Counter = Counter()

    @abstractmethod
    async def select_ready(self, conn: aiosqlite.Connection, limit: int) -> List[Any]:
        raise NotImplementedError

    @abstractmethod
    def item_key(self, item: Any) -> str:
        raise NotImplementedError

    @abstractmethod
    async def transform(self, item: Any) -> Any:
        raise NotImplementedError

    @abstractmethod
    async def persist(self, conn: aiosqlite.Connection, item: Any, output: Any) -> bool:
        """
        Write output through the dedup layer and advance the source row.
        Return False when another invocation got there first.
        """
        raise NotImplementedError

    async def prepare(self, items: List[Any]) -> None:
        """
        Optional up-front pass over the whole batch, for concurrent fan-out.
        Per-item errors must be kept for transform to raise, not raised here.
        """
        return None

    async def after_commit(self, item: Any, output: Any) -> None:
        """Side effects outside the database, run only once the item is committed."""
        return None

    async def on_failure(self, conn: aiosqlite.Connection, item: Any, error: Exception) -> None:
        return None

    def not_exhausted(self, key_expr: str) -> Tuple[str, tuple]:
        """SQL condition excluding items that already failed max_attempts times."""
        if self.max_attempts is None:
            return "1 = 1", ()
        return (
            "NOT EXISTS (SELECT 1 FROM stage_failures sf "
            f"WHERE sf.stage = ? AND sf.item_key = {key_expr} AND sf.attempts >= ?)",
            (self.name, self.max_attempts),
        )

    async def run(self) -> StageResult:
        result = StageResult(stage=self.name)
        started_at = self.clock()
        self.counters = Counter()

        async with self.db.connect() as conn:
            items = await self.select_ready(conn, self.batch_size)
            logger.info(f"[{self.name}] {len(items)} item(s) ready (ceiling {self.batch_size})")
            await self.prepare(items)

            for item in items:
                key = self.item_key(item)
                result.attempted += 1

                try:
                    output = await self.transform(item)
                    written = await self.persist(conn, item, output)
                    await self.db.clear_failure(conn, self.name, key)
                    await conn.commit()

                except StoreUnavailableError:
                    await conn.rollback()
                    raise

                except sqlite3.OperationalError as e:
                    await conn.rollback()
                    raise StoreUnavailableError(f"[{self.name}] store error on {key}: {e}") from e

                except Exception as e:
                    await conn.rollback()
                    result.failed += 1
                    reason = str(e) or e.__class__.__name__
                    logger.warning(
                        f"[{self.name}] {key} failed: {reason}",
                        extra={"stage": self.name, "item_id": key},
                    )
                    await self.db.record_failure(conn, self.name, key, reason, self.clock())
                    await self.on_failure(conn, item, e)
                    await conn.commit()
                    continue

                if written:
                    result.succeeded += 1
                    try:
                        await self.after_commit(item, output)
                    except Exception as e:
                        self.counters["after_commit_failed"] += 1
                        logger.error(
                            f"[{self.name}] {key} committed but follow-up failed: {e}",
                            extra={"stage": self.name, "item_id": key},
                        )
                else:
                    result.skipped += 1
                    logger.info(f"[{self.name}] {key} already handled elsewhere, skipped")

        result.detail.update(self.counters)
        return await self.finish(result, started_at)
