"""
Tag stage: topics, keywords and severity for freshly extracted records.
"""
import json
import logging
import time
from typing import Callable, List

import aiosqlite

from core.entities import PainRecord, RecordState, check_transition
from core.errors import OracleError
from core.schemas import TaggingJudgment
from processing.prefilter import normalize_topic
from services.config import StagesConfig
from services.database import Database
from services.llm import OllamaClient
from workflows.base import BatchStage

logger = logging.getLogger(__name__)

TAG_INSTRUCTIONS = """Tag this problem statement for clustering.

- topics: 3-5 short snake_case topic tags (e.g. "invoicing", "rental_bond")
- keywords: 5-10 search keywords someone with this problem would use
- persona: who has the problem, or null
- severity: one of low, medium, high, critical"""


def _dedupe(values: List[str]) -> List[str]:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


class TaggingStage(BatchStage):
    name = "tag"

    def __init__(
        self,
        db: Database,
        llm: OllamaClient,
        config: StagesConfig,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(
            db,
            batch_size=config.tag_batch_size,
            max_attempts=config.max_attempts,
            clock=clock,
        )
        self.llm = llm

    async def select_ready(self, conn: aiosqlite.Connection, limit: int) -> List[PainRecord]:
        clause, params = self.not_exhausted("p.natural_key")
        cursor = await conn.execute(
            f"""
            SELECT p.* FROM pain_records p
            WHERE p.state = ? AND {clause}
            ORDER BY p.extracted_at DESC
            LIMIT ?
            """,
            (RecordState.EXTRACTED.value, *params, limit),
        )
        return [PainRecord.from_row(row) for row in await cursor.fetchall()]

    def item_key(self, record: PainRecord) -> str:
        return record.natural_key

    async def transform(self, record: PainRecord) -> TaggingJudgment:
        text = record.problem_statement
        if record.raw_quote:
            text = f"{text}\n\nOriginal post:\n{record.raw_quote[:800]}"

        judgment = await self.llm.classify(text, TAG_INSTRUCTIONS, TaggingJudgment)

        topics = _dedupe([normalize_topic(t) for t in judgment.topics])[:5]
        if not topics:
            raise OracleError("Tagging returned no usable topics")
        keywords = _dedupe([k.strip().lower() for k in judgment.keywords])[:10]

        return judgment.model_copy(update={"topics": topics, "keywords": keywords})

    async def persist(self, conn: aiosqlite.Connection, record: PainRecord, output: TaggingJudgment) -> bool:
        check_transition(record.state, RecordState.TAGGED)
        cursor = await conn.execute(
            """
            UPDATE pain_records
            SET topics = ?, keywords = ?, persona = COALESCE(persona, ?),
                severity = ?, tagged_at = ?, state = ?
            WHERE id = ? AND state = ?
            """,
            (
                json.dumps(output.topics),
                json.dumps(output.keywords),
                output.persona,
                output.severity,
                self.clock(),
                RecordState.TAGGED.value,
                record.id,
                record.state.value,
            ),
        )
        return cursor.rowcount == 1
