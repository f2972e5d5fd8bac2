"""
Filter stage: decides which raw items describe a real pain point.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Tuple

import aiosqlite

from core.entities import RawItem
from core.schemas import FilterJudgment
from processing.prefilter import is_likely_english
from services.config import StagesConfig
from services.database import Database
from services.dedup import insert_if_absent
from services.llm import OllamaClient
from workflows.base import BatchStage

logger = logging.getLogger(__name__)

FILTER_INSTRUCTIONS = """You screen social media posts for a product research team.
Decide whether the text describes a concrete problem, frustration or unmet need
that the author (or someone they know) actually has.

- is_pain_point: true only for a real, specific problem
- confidence: 0-100, how sure you are
- category: one of complaint, ask, rant, how_to, other
- problem_type: a short label for the kind of problem, or null"""


def decide(judgment: FilterJudgment, min_confidence: float) -> Tuple[bool, str]:
    if not judgment.is_pain_point:
        return False, "not_pain_point"
    if judgment.confidence < min_confidence:
        return False, "low_confidence"
    if judgment.category == "other":
        return False, "irrelevant_category"
    return True, "passed"


class FilterStage(BatchStage):
    name = "filter"

    def __init__(
        self,
        db: Database,
        llm: OllamaClient,
        config: StagesConfig,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(
            db,
            batch_size=config.filter_batch_size,
            max_attempts=config.max_attempts,
            clock=clock,
        )
        self.llm = llm
        self.min_length = config.min_content_length
        self.min_confidence = config.min_confidence

    async def select_ready(self, conn: aiosqlite.Connection, limit: int) -> List[RawItem]:
        clause, params = self.not_exhausted("r.natural_key")
        cursor = await conn.execute(
            f"""
            SELECT r.* FROM raw_items r
            WHERE r.processed = 0 AND {clause}
            ORDER BY r.created_utc DESC
            LIMIT ?
            """,
            (*params, limit),
        )
        return [RawItem.from_row(row) for row in await cursor.fetchall()]

    def item_key(self, item: RawItem) -> str:
        return item.natural_key

    async def transform(self, item: RawItem) -> Dict[str, Any]:
        text = item.text

        if len(text) < self.min_length:
            self.counters["too_short"] += 1
            return self._decision(is_english=True, passes=False, reason="too_short")

        if not is_likely_english(text):
            self.counters["not_english"] += 1
            return self._decision(is_english=False, passes=False, reason="not_english")

        judgment = await self.llm.classify(text[:2000], FILTER_INSTRUCTIONS, FilterJudgment)
        passes, reason = decide(judgment, self.min_confidence)
        self.counters[reason] += 1

        return self._decision(
            is_english=True,
            passes=passes,
            reason=reason,
            is_pain_point=judgment.is_pain_point,
            confidence=judgment.confidence,
            category=judgment.category,
            problem_type=judgment.problem_type,
        )

    @staticmethod
    def _decision(*, is_english: bool, passes: bool, reason: str, **judgment: Any) -> Dict[str, Any]:
        return {
            "is_english": int(is_english),
            "is_pain_point": int(judgment.get("is_pain_point", False)),
            "confidence": judgment.get("confidence"),
            "category": judgment.get("category"),
            "problem_type": judgment.get("problem_type"),
            "passes": int(passes),
            "reason": reason,
        }

    async def persist(self, conn: aiosqlite.Connection, item: RawItem, output: Dict[str, Any]) -> bool:
        outcome = await insert_if_absent(
            conn,
            "filter_decisions",
            item.natural_key,
            {"content_kind": item.source_kind, "created_at": self.clock(), **output},
            key_column="content_key",
        )
        cursor = await conn.execute(
            "UPDATE raw_items SET processed = 1 WHERE id = ? AND processed = 0",
            (item.id,),
        )
        return outcome.inserted or cursor.rowcount == 1
