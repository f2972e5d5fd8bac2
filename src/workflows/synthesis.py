"""
Synthesize stage: writes an opportunity brief for clusters that grew
since their last brief.
"""
import json
import logging
import time
from collections import Counter
from typing import Callable, List

import aiosqlite

from core.entities import Cluster, PainRecord
from core.schemas import OpportunityBrief
from services.config import StagesConfig
from services.database import Database
from services.llm import OllamaClient
from workflows.base import BatchStage

logger = logging.getLogger(__name__)

SYNTHESIS_INSTRUCTIONS = """You are given several people describing the same underlying problem.
Write a short opportunity brief for a founder deciding what to build.

- product_name: a working name for a product that would solve it
- summary: 2-3 sentences on the problem and who has it
- personas: the kinds of people affected
- workarounds: what they currently do instead
- search_keywords: 3-6 phrases to search for more people with this problem"""


async def load_members(db: Database, cluster_id: int, limit: int) -> List[PainRecord]:
    rows = await db.fetchall(
        """
        SELECT p.* FROM pain_records p
        JOIN cluster_members m ON m.pain_record_id = p.id
        WHERE m.cluster_id = ?
        ORDER BY m.similarity DESC, p.source_score DESC
        LIMIT ?
        """,
        (cluster_id, limit),
    )
    return [PainRecord.from_row(row) for row in rows]


def top_keywords(members: List[PainRecord], limit: int) -> List[str]:
    counts = Counter(k for m in members for k in m.keywords)
    return [k for k, _ in counts.most_common(limit)]


class SynthesisStage(BatchStage):
    name = "synthesize"

    def __init__(
        self,
        db: Database,
        llm: OllamaClient,
        config: StagesConfig,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(
            db,
            batch_size=config.synthesis_batch_size,
            max_attempts=config.max_attempts,
            clock=clock,
        )
        self.llm = llm
        self.min_cluster_size = config.min_cluster_size
        self.member_sample = config.synthesis_member_sample

    async def select_ready(self, conn: aiosqlite.Connection, limit: int) -> List[Cluster]:
        # growth gives the cluster a fresh attempt budget
        clause, params = self.not_exhausted("'cluster_' || c.id || '_' || c.member_count")
        cursor = await conn.execute(
            f"""
            SELECT c.* FROM clusters c
            WHERE c.member_count >= ?
              AND (c.synthesized_at IS NULL OR c.synthesized_at < c.updated_at)
              AND {clause}
            ORDER BY c.member_count DESC, c.updated_at DESC
            LIMIT ?
            """,
            (self.min_cluster_size, *params, limit),
        )
        return [Cluster.from_row(row) for row in await cursor.fetchall()]

    def item_key(self, cluster: Cluster) -> str:
        return f"cluster_{cluster.id}_{cluster.member_count}"

    async def transform(self, cluster: Cluster) -> OpportunityBrief:
        members = await load_members(self.db, cluster.id, self.member_sample)
        quotes = "\n".join(
            f"- {m.problem_statement}" + (f" (persona: {m.persona})" if m.persona else "")
            for m in members
        )
        text = f"{cluster.member_count} people reported:\n{quotes}"

        brief = await self.llm.generate(text, SYNTHESIS_INSTRUCTIONS, OpportunityBrief)

        keywords = [k.strip().lower() for k in brief.search_keywords if k.strip()]
        if not keywords:
            keywords = top_keywords(members, 6)
        return brief.model_copy(update={"search_keywords": keywords[:10]})

    async def persist(self, conn: aiosqlite.Connection, cluster: Cluster, output: OpportunityBrief) -> bool:
        # only lands if membership is unchanged since the brief was built
        cursor = await conn.execute(
            """
            UPDATE clusters SET
                product_name = ?, summary = ?, personas = ?, workarounds = ?,
                search_keywords = ?, brief_version = brief_version + 1,
                synthesized_at = MAX(?, COALESCE(updated_at, 0))
            WHERE id = ? AND updated_at IS ? AND member_count = ?
            """,
            (
                output.product_name,
                output.summary,
                json.dumps(output.personas),
                json.dumps(output.workarounds),
                json.dumps(output.search_keywords),
                self.clock(),
                cluster.id,
                cluster.updated_at,
                cluster.member_count,
            ),
        )
        return cursor.rowcount == 1
