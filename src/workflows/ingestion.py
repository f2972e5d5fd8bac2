"""
Ingest stage: pulls the next slice of the source rotation into raw_items.
"""
import logging
import time
from typing import Callable, Dict, List, Tuple

import aiosqlite

from core.entities import StageResult
from core.errors import AcquisitionError
from ingestion.base import RawItemCandidate, SourceAdapter
from processing.prefilter import is_relevant_content
from services.config import IngestionConfig, SourceConfig
from services.cursor_store import CursorStore
from services.database import Database
from services.dedup import insert_if_absent
from services.scheduler import list_rotation_slice
from workflows.base import Stage

logger = logging.getLogger(__name__)


class IngestionStage(Stage):
    name = "ingest"

    def __init__(
        self,
        db: Database,
        adapters: Dict[str, SourceAdapter],
        sources: List[SourceConfig],
        config: IngestionConfig,
        cursors: CursorStore,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(db, clock)
        self.adapters = adapters
        self.sources = sources
        self.config = config
        self.cursors = cursors

    async def _rotation_position(self) -> int:
        position = await self.cursors.peek(self.name)
        if position is None:
            # cursor row lost or never written: the run log says how far we got
            position = await self.db.count_stage_runs(self.name)
            logger.info(f"[{self.name}] No stored cursor, resuming from run count {position}")
        return position

    async def _store(
        self,
        conn: aiosqlite.Connection,
        candidates: List[RawItemCandidate],
    ) -> Tuple[List[RawItemCandidate], int]:
        """Insert candidates; returns the newly inserted ones and the duplicate count."""
        now = self.clock()
        inserted: List[RawItemCandidate] = []
        duplicates = 0

        for candidate in candidates:
            outcome = await insert_if_absent(
                conn,
                "raw_items",
                candidate.natural_key,
                {
                    "source_kind": candidate.source_kind,
                    "source_id": candidate.source_id,
                    "external_id": candidate.external_id,
                    "parent_id": candidate.parent_id,
                    "title": candidate.title,
                    "body": candidate.text,
                    "author": candidate.author,
                    "score": candidate.score,
                    "url": candidate.url,
                    "created_utc": candidate.created_utc,
                    "fetched_at": now,
                },
            )
            if outcome.inserted:
                inserted.append(candidate)
            else:
                duplicates += 1

        return inserted, duplicates

    async def _fetch_threads(
        self,
        adapter: SourceAdapter,
        posts: List[RawItemCandidate],
        budget: int,
    ) -> List[RawItemCandidate]:
        comments: List[RawItemCandidate] = []

        for post in posts:
            if len(comments) >= budget:
                break
            if post.num_comments <= self.config.min_comments:
                continue
            if not is_relevant_content(post.full_text, self.config.min_content_length):
                continue

            try:
                thread = await adapter.fetch_thread(post)
            except AcquisitionError as e:
                logger.warning(f"[{self.name}] Thread fetch failed for {post.natural_key}: {e}")
                continue

            relevant = [
                c for c in thread
                if is_relevant_content(c.text, self.config.min_content_length)
            ]
            comments.extend(relevant[:budget - len(comments)])

        return comments

    async def run(self) -> StageResult:
        result = StageResult(stage=self.name)
        started_at = self.clock()

        if not self.sources:
            logger.warning(f"[{self.name}] No enabled sources configured")
            return await self.finish(result, started_at)

        position = await self._rotation_position()
        selected = list_rotation_slice(self.sources, position, self.config.sources_per_run)
        result.detail["rotation_position"] = position
        result.detail["sources"] = [s.source_id for s in selected]

        comment_budget = self.config.max_comments_per_run
        inserted_total = 0
        duplicate_total = 0

        async with self.db.connect() as conn:
            for source in selected:
                adapter = self.adapters[source.type.lower()]
                result.attempted += 1

                try:
                    candidates = await adapter.fetch(source.source_id)
                except AcquisitionError as e:
                    result.failed += 1
                    logger.warning(
                        f"[{self.name}] {source.source_id} fetch failed: {e}",
                        extra={"stage": self.name, "item_id": source.source_id},
                    )
                    continue

                new_posts, duplicates = await self._store(conn, candidates)
                await conn.commit()

                comments = await self._fetch_threads(adapter, new_posts, comment_budget)
                comment_budget -= len(comments)
                new_comments, comment_duplicates = await self._store(conn, comments)
                await conn.commit()

                inserted_total += len(new_posts) + len(new_comments)
                duplicate_total += duplicates + comment_duplicates
                result.succeeded += 1

                logger.info(
                    f"[{self.name}] {source.source_id}: {len(new_posts)} new posts, "
                    f"{len(new_comments)} new comments, {duplicates + comment_duplicates} already stored"
                )

        result.detail["inserted"] = inserted_total
        result.detail["already_present"] = duplicate_total

        # rotation moves on only once the whole slice has been handled
        await self.cursors.advance_cursor(self.name, position + 1)
        return await self.finish(result, started_at)
