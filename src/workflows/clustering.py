"""
Cluster stage: records tagged pain records' cluster membership and
keeps cluster aggregates in step with it.
"""
import logging
import time
from typing import Callable, Dict, List

import aiosqlite

from core.entities import PainRecord, RecordState, check_transition
from processing.clustering import Assignment, ClusterAssigner
from services.config import StagesConfig
from services.database import Database
from services.dedup import insert_if_absent
from workflows.base import BatchStage

logger = logging.getLogger(__name__)

# updated_at is pushed strictly past any derived timestamp so growth always reads as stale
FRESHNESS_EPSILON = 0.001


async def refresh_cluster_stats(
    conn: aiosqlite.Connection,
    cluster_id: int,
    now: float,
    qualify_threshold: int,
) -> None:
    """
    Recompute member/author/source counts and mark the cluster as changed.
    Call after any membership insert. Caller commits.
    """
    await conn.execute(
        """
        UPDATE clusters SET
            member_count = (
                SELECT COUNT(*) FROM cluster_members WHERE cluster_id = :id
            ),
            unique_author_count = (
                SELECT COUNT(DISTINCT p.author)
                FROM cluster_members m JOIN pain_records p ON p.id = m.pain_record_id
                WHERE m.cluster_id = :id AND p.author IS NOT NULL
                  AND p.author NOT IN ('[deleted]', 'AutoModerator')
            ),
            unique_source_count = (
                SELECT COUNT(DISTINCT p.source_id)
                FROM cluster_members m JOIN pain_records p ON p.id = m.pain_record_id
                WHERE m.cluster_id = :id
            ),
            updated_at = MAX(
                :now,
                COALESCE(scored_at, 0) + :eps,
                COALESCE(synthesized_at, 0) + :eps
            ),
            qualified_at = CASE
                WHEN qualified_at IS NULL
                 AND (SELECT COUNT(*) FROM cluster_members WHERE cluster_id = :id) >= :threshold
                THEN :now
                ELSE qualified_at
            END
        WHERE id = :id
        """,
        {"id": cluster_id, "now": now, "eps": FRESHNESS_EPSILON, "threshold": qualify_threshold},
    )


class ClusteringStage(BatchStage):
    name = "cluster"

    def __init__(
        self,
        db: Database,
        assigner: ClusterAssigner,
        config: StagesConfig,
        qualify_threshold: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(
            db,
            batch_size=config.cluster_batch_size,
            max_attempts=config.max_attempts,
            clock=clock,
        )
        self.assigner = assigner
        self.qualify_threshold = qualify_threshold
        # clusters seeded in this run, registered with the assigner after commit
        self._seeded: Dict[str, int] = {}

    async def select_ready(self, conn: aiosqlite.Connection, limit: int) -> List[PainRecord]:
        clause, params = self.not_exhausted("p.natural_key")
        cursor = await conn.execute(
            f"""
            SELECT p.* FROM pain_records p
            WHERE p.state = ? AND {clause}
            ORDER BY p.extracted_at DESC
            LIMIT ?
            """,
            (RecordState.TAGGED.value, *params, limit),
        )
        return [PainRecord.from_row(row) for row in await cursor.fetchall()]

    def item_key(self, record: PainRecord) -> str:
        return record.natural_key

    async def transform(self, record: PainRecord) -> Assignment:
        return await self.assigner.assign(record)

    async def _mark_clustered(
        self,
        conn: aiosqlite.Connection,
        record: PainRecord,
        cluster_id: int,
        similarity: float,
    ) -> bool:
        cursor = await conn.execute(
            """
            UPDATE pain_records SET state = ?, cluster_id = ?, similarity = ?
            WHERE id = ? AND state = ?
            """,
            (RecordState.CLUSTERED.value, cluster_id, similarity, record.id, record.state.value),
        )
        return cursor.rowcount == 1

    async def persist(self, conn: aiosqlite.Connection, record: PainRecord, output: Assignment) -> bool:
        check_transition(record.state, RecordState.CLUSTERED)
        now = self.clock()
        self._seeded.pop(record.natural_key, None)

        cursor = await conn.execute(
            "SELECT cluster_id, similarity FROM cluster_members WHERE pain_record_id = ?",
            (record.id,),
        )
        existing = await cursor.fetchone()
        if existing:
            # membership landed in an earlier, interrupted attempt
            await self._mark_clustered(conn, record, existing["cluster_id"], existing["similarity"])
            return False

        cluster_id = output.cluster_id
        if cluster_id is not None:
            cursor = await conn.execute("SELECT 1 FROM clusters WHERE id = ?", (cluster_id,))
            if await cursor.fetchone() is None:
                logger.warning(f"[{self.name}] Assigned cluster {cluster_id} does not exist, seeding a new one")
                cluster_id = None

        created = cluster_id is None
        similarity = output.similarity
        if created:
            cursor = await conn.execute(
                "INSERT INTO clusters (centroid_text, created_at, updated_at) VALUES (?, ?, ?)",
                (record.problem_statement, now, now),
            )
            cluster_id = cursor.lastrowid
            similarity = 1.0

        membership = await insert_if_absent(
            conn,
            "cluster_members",
            record.id,
            {
                "cluster_id": cluster_id,
                "similarity": similarity,
                "origin": "clustered",
                "added_at": now,
            },
            key_column="pain_record_id",
        )
        if not membership.inserted:
            return False

        await self._mark_clustered(conn, record, cluster_id, similarity)
        await refresh_cluster_stats(conn, cluster_id, now, self.qualify_threshold)

        if created:
            self._seeded[record.natural_key] = cluster_id
        return True

    async def after_commit(self, record: PainRecord, output: Assignment) -> None:
        cluster_id = self._seeded.pop(record.natural_key, None)
        if cluster_id is not None:
            self.counters["clusters_created"] += 1
            await self.assigner.register(cluster_id, output)
