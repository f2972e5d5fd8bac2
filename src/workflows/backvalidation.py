"""
Back-validation: searches the sources again with a cluster's own keywords
and adds matching items as lower-weight members.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Union

import aiosqlite

from core.entities import Cluster, RecordState
from core.errors import AcquisitionError, OracleError
from core.schemas import RelevanceJudgment
from ingestion.base import RawItemCandidate, SourceAdapter
from services.config import BackValidationConfig
from services.database import Database
from services.dedup import insert_if_absent, natural_key
from services.llm import OllamaClient
from workflows.base import BatchStage
from workflows.clustering import refresh_cluster_stats
from workflows.synthesis import load_members, top_keywords

logger = logging.getLogger(__name__)

RELEVANCE_INSTRUCTIONS = """Decide whether the post below describes the same underlying problem
as the opportunity. Set match to true only for a clear match."""


@dataclass
class Evidence:
    matches: List[RawItemCandidate] = field(default_factory=list)
    candidates: int = 0


class BackValidationStage(BatchStage):
    name = "backvalidate"
    # the cooldown stamp gates retries instead of an attempt ceiling
    max_attempts = None

    def __init__(
        self,
        db: Database,
        llm: OllamaClient,
        adapters: Dict[str, SourceAdapter],
        config: BackValidationConfig,
        qualify_threshold: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(db, batch_size=config.batch_size, clock=clock)
        self.llm = llm
        self.adapters = adapters
        self.config = config
        self.qualify_threshold = qualify_threshold
        self._searched: Dict[int, Union[List[RawItemCandidate], BaseException]] = {}

    async def select_ready(self, conn: aiosqlite.Connection, limit: int) -> List[Cluster]:
        horizon = self.clock() - self.config.cooldown_hours * 3600
        cursor = await conn.execute(
            """
            SELECT * FROM clusters
            WHERE member_count >= ?
              AND (last_backvalidation_at IS NULL OR last_backvalidation_at < ?)
            ORDER BY member_count DESC
            LIMIT ?
            """,
            (self.config.validation_threshold, horizon, limit),
        )
        return [Cluster.from_row(row) for row in await cursor.fetchall()]

    def item_key(self, cluster: Cluster) -> str:
        return f"cluster_{cluster.id}"

    async def keywords_for(self, cluster: Cluster) -> List[str]:
        keywords = [k for k in cluster.search_keywords if k]
        if not keywords:
            members = await load_members(self.db, cluster.id, 50)
            keywords = top_keywords(members, self.config.max_keywords)
        return keywords[: self.config.max_keywords]

    async def _search(self, keywords: List[str]) -> List[RawItemCandidate]:
        calls = [
            (source_type, keyword)
            for source_type in self.adapters
            for keyword in keywords
        ]
        results = await asyncio.gather(
            *[
                self.adapters[source_type].search(keyword, limit=self.config.results_per_query)
                for source_type, keyword in calls
            ],
            return_exceptions=True,
        )

        found: Dict[str, RawItemCandidate] = {}
        for (source_type, keyword), result in zip(calls, results):
            if isinstance(result, AcquisitionError):
                self.counters["search_errors"] += 1
                logger.warning(f"[{self.name}] {source_type} search for '{keyword}' failed: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            for candidate in result:
                found.setdefault(candidate.natural_key, candidate)
        return list(found.values())

    async def _unseen(self, cluster_id: int, candidates: List[RawItemCandidate]) -> List[RawItemCandidate]:
        """
        Drop candidates already in this cluster, and items some earlier run
        already back-validated. Posts ingested or clustered elsewhere stay eligible.
        """
        if not candidates:
            return []
        keys = [c.natural_key for c in candidates]
        validated = [natural_key(c.source_kind, c.external_id, origin="backvalidated") for c in candidates]
        member_slots = ", ".join("?" for _ in keys + validated)
        validated_slots = ", ".join("?" for _ in validated)
        rows = await self.db.fetchall(
            f"""
            SELECT p.natural_key FROM cluster_members m
            JOIN pain_records p ON p.id = m.pain_record_id
            WHERE m.cluster_id = ? AND p.natural_key IN ({member_slots})
            UNION
            SELECT natural_key FROM pain_records WHERE natural_key IN ({validated_slots})
            """,
            (cluster_id, *keys, *validated, *validated),
        )
        existing = {row["natural_key"] for row in rows}
        return [
            c for c in candidates
            if c.natural_key not in existing
            and natural_key(c.source_kind, c.external_id, origin="backvalidated") not in existing
        ]

    async def _is_match(self, cluster: Cluster, candidate: RawItemCandidate, semaphore: asyncio.Semaphore) -> bool:
        text = (
            f"Opportunity: {cluster.product_name or ''}\n"
            f"{cluster.summary or cluster.centroid_text}\n\n"
            f"Post:\n{candidate.full_text[:1500]}"
        )
        async with semaphore:
            try:
                judgment = await self.llm.classify(text, RELEVANCE_INSTRUCTIONS, RelevanceJudgment)
            except OracleError as e:
                self.counters["relevance_errors"] += 1
                logger.debug(f"[{self.name}] relevance check on {candidate.natural_key} failed: {e}")
                return False
        return judgment.match

    async def _candidates_for(self, cluster: Cluster) -> List[RawItemCandidate]:
        keywords = await self.keywords_for(cluster)
        if not keywords:
            logger.info(f"[{self.name}] cluster {cluster.id} has no keywords to search with")
            return []
        return await self._search(keywords)

    async def prepare(self, clusters: List[Cluster]) -> None:
        """Search for every selected cluster at once; transform picks the results up."""
        results = await asyncio.gather(
            *[self._candidates_for(cluster) for cluster in clusters],
            return_exceptions=True,
        )
        self._searched = {cluster.id: result for cluster, result in zip(clusters, results)}

    async def transform(self, cluster: Cluster) -> Evidence:
        searched = self._searched.pop(cluster.id, None)
        if searched is None:
            searched = await self._candidates_for(cluster)
        if isinstance(searched, BaseException):
            raise searched
        if not searched:
            return Evidence()

        candidates = await self._unseen(cluster.id, searched)
        candidates = candidates[: self.config.max_candidates]
        self.counters["found"] += len(candidates)

        semaphore = asyncio.Semaphore(self.config.concurrency)
        verdicts = await asyncio.gather(
            *[self._is_match(cluster, c, semaphore) for c in candidates]
        )
        matches = [c for c, ok in zip(candidates, verdicts) if ok]
        logger.info(
            f"[{self.name}] cluster {cluster.id}: {len(matches)}/{len(candidates)} candidates matched"
        )
        return Evidence(matches=matches, candidates=len(candidates))

    async def _stamp(self, conn: aiosqlite.Connection, cluster_id: int) -> None:
        await conn.execute(
            "UPDATE clusters SET last_backvalidation_at = ? WHERE id = ?",
            (self.clock(), cluster_id),
        )

    async def persist(self, conn: aiosqlite.Connection, cluster: Cluster, output: Evidence) -> bool:
        now = self.clock()
        added = 0
        for candidate in output.matches:
            record = await insert_if_absent(
                conn,
                "pain_records",
                natural_key(candidate.source_kind, candidate.external_id, origin="backvalidated"),
                {
                    "origin": "backvalidated",
                    "source_kind": candidate.source_kind,
                    "source_id": candidate.source_id,
                    "author": candidate.author,
                    "problem_statement": candidate.full_text[:500],
                    "raw_quote": candidate.full_text[:1000],
                    "source_url": candidate.url,
                    "source_score": candidate.score,
                    "severity": "medium",
                    "state": RecordState.CLUSTERED.value,
                    "cluster_id": cluster.id,
                    "similarity": self.config.membership_weight,
                    "extracted_at": now,
                },
            )
            if not record.inserted:
                continue
            membership = await insert_if_absent(
                conn,
                "cluster_members",
                record.row_id,
                {
                    "cluster_id": cluster.id,
                    "similarity": self.config.membership_weight,
                    "origin": "backvalidated",
                    "added_at": now,
                },
                key_column="pain_record_id",
            )
            if membership.inserted:
                added += 1

        if added:
            await refresh_cluster_stats(conn, cluster.id, now, self.qualify_threshold)
        self.counters["added"] += added

        await self._stamp(conn, cluster.id)
        return True

    async def on_failure(self, conn: aiosqlite.Connection, cluster: Cluster, error: Exception) -> None:
        await self._stamp(conn, cluster.id)
