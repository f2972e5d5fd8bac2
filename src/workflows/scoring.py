"""
Score stage: recomputes the composite score of clusters whose brief or
membership changed after their last score.
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List

import aiosqlite

from core.entities import Cluster
from core.schemas import ClusterScoreJudgment
from core.scoring import frequency_score, regional_fit_score, total_score
from processing.prefilter import matches_region
from services.config import ScoringConfig, StagesConfig
from services.database import Database
from services.llm import OllamaClient
from workflows.base import BatchStage

logger = logging.getLogger(__name__)

SCORING_INSTRUCTIONS = """Rate this product opportunity. Give every dimension a score
from 0 to 100 and a one-sentence reason.

- frequency: how often people run into this problem
- severity: how painful it is when they do
- economic_value: how much money is at stake for them
- solvability: how feasible a software product could fix it
- competition: how open the market is (100 = no good solutions exist)
- regional_fit: how relevant it is to {region}"""


@dataclass(frozen=True)
class ScoreCard:
    sub_scores: Dict[str, float]
    total: int
    reasons: Dict[str, str]


class ScoringStage(BatchStage):
    name = "score"

    def __init__(
        self,
        db: Database,
        llm: OllamaClient,
        config: ScoringConfig,
        stages_config: StagesConfig,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(
            db,
            batch_size=stages_config.score_batch_size,
            max_attempts=stages_config.max_attempts,
            clock=clock,
        )
        self.llm = llm
        self.config = config

    async def select_ready(self, conn: aiosqlite.Connection, limit: int) -> List[Cluster]:
        clause, params = self.not_exhausted("'cluster_' || c.id || '_' || c.member_count")
        cursor = await conn.execute(
            f"""
            SELECT c.* FROM clusters c
            WHERE c.synthesized_at IS NOT NULL
              AND (c.scored_at IS NULL
                   OR c.scored_at < MAX(c.synthesized_at, COALESCE(c.updated_at, 0)))
              AND {clause}
            ORDER BY c.updated_at DESC
            LIMIT ?
            """,
            (*params, limit),
        )
        return [Cluster.from_row(row) for row in await cursor.fetchall()]

    def item_key(self, cluster: Cluster) -> str:
        return f"cluster_{cluster.id}_{cluster.member_count}"

    async def _region_share(self, cluster_id: int) -> tuple[int, int]:
        rows = await self.db.fetchall(
            """
            SELECT p.problem_statement, p.location, p.raw_quote, p.source_id
            FROM pain_records p JOIN cluster_members m ON m.pain_record_id = p.id
            WHERE m.cluster_id = ?
            """,
            (cluster_id,),
        )
        region = self.config.region
        matched = sum(
            1 for row in rows
            if matches_region(
                " ".join(filter(None, (row["problem_statement"], row["location"], row["raw_quote"]))),
                row["source_id"],
                region_sources=region.sources,
                region_terms=region.terms,
            )
        )
        return matched, len(rows)

    async def _sample_quotes(self, cluster_id: int) -> List[str]:
        rows = await self.db.fetchall(
            """
            SELECT p.problem_statement FROM pain_records p
            JOIN cluster_members m ON m.pain_record_id = p.id
            WHERE m.cluster_id = ?
            ORDER BY m.similarity DESC
            LIMIT ?
            """,
            (cluster_id, self.config.member_sample),
        )
        return [row["problem_statement"] for row in rows]

    async def transform(self, cluster: Cluster) -> ScoreCard:
        quotes = await self._sample_quotes(cluster.id)
        text = "\n".join([
            f"Product: {cluster.product_name or 'unnamed'}",
            f"Summary: {cluster.summary or cluster.centroid_text}",
            f"Reported by {cluster.member_count} people "
            f"({cluster.unique_author_count} authors, {cluster.unique_source_count} communities):",
            *[f"- {q}" for q in quotes],
        ])
        judgment = await self.llm.classify(
            text,
            SCORING_INSTRUCTIONS.format(region=self.config.region.name),
            ClusterScoreJudgment,
        )

        region_members, total_members = await self._region_share(cluster.id)

        sub_scores = {
            "frequency": frequency_score(
                judgment.frequency.score,
                cluster.member_count,
                cluster.unique_author_count,
                cluster.unique_source_count,
            ),
            "severity": judgment.severity.score,
            "economic": judgment.economic_value.score,
            "solvability": judgment.solvability.score,
            "competitive": judgment.competition.score,
            "regional": regional_fit_score(
                judgment.regional_fit.score, region_members, total_members
            ),
        }
        reasons = {
            "frequency": judgment.frequency.reason,
            "severity": judgment.severity.reason,
            "economic": judgment.economic_value.reason,
            "solvability": judgment.solvability.reason,
            "competitive": judgment.competition.reason,
            "regional": judgment.regional_fit.reason,
            "region_members": f"{region_members}/{total_members}",
        }
        return ScoreCard(sub_scores, total_score(sub_scores, self.config.weights), reasons)

    async def persist(self, conn: aiosqlite.Connection, cluster: Cluster, output: ScoreCard) -> bool:
        s = output.sub_scores
        cursor = await conn.execute(
            """
            UPDATE clusters SET
                frequency_score = ?, severity_score = ?, economic_score = ?,
                solvability_score = ?, competitive_score = ?, regional_score = ?,
                total_score = ?, score_reasons = ?,
                scored_at = MAX(?, synthesized_at, COALESCE(updated_at, 0))
            WHERE id = ? AND synthesized_at IS ? AND updated_at IS ?
            """,
            (
                s["frequency"], s["severity"], s["economic"],
                s["solvability"], s["competitive"], s["regional"],
                output.total,
                json.dumps(output.reasons),
                self.clock(),
                cluster.id,
                cluster.synthesized_at,
                cluster.updated_at,
            ),
        )
        if cursor.rowcount == 1:
            logger.info(f"[{self.name}] cluster {cluster.id} scored {output.total}")
            return True
        return False


async def request_rescore(db: Database, cluster_id: int) -> bool:
    """Force the next score pass to recompute this cluster."""
    return await db.execute(
        "UPDATE clusters SET scored_at = NULL WHERE id = ? AND synthesized_at IS NOT NULL",
        (cluster_id,),
    ) == 1
