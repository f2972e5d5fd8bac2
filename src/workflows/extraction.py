"""
Extract stage: turns items that passed the filter into structured pain records.
"""
import logging
import re
import time
from typing import Callable, List, Optional

import aiosqlite

from core.entities import RawItem, RecordState
from core.schemas import PainExtraction
from services.config import StagesConfig
from services.database import Database
from services.dedup import insert_if_absent
from services.llm import OllamaClient
from workflows.base import BatchStage

logger = logging.getLogger(__name__)

EXTRACT_INSTRUCTIONS = """Extract the core problem from this post for a product research database.

- problem_statement: one or two sentences describing the problem in neutral terms
- persona: who has the problem (e.g. "small business owner", "new parent"), or null
- location: any country, state or city mentioned, or null
- workaround: what they do today to cope, or null
- willingness_to_pay: any signal they would pay for a fix, or null
- product_name: an existing product or service they complain about, or null
- feature_gap: the specific thing that product fails to do, or null"""


def normalize_phrase(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = re.sub(r"\s+", " ", value.strip().lower())
    return value or None


class ExtractionStage(BatchStage):
    name = "extract"

    def __init__(
        self,
        db: Database,
        llm: OllamaClient,
        config: StagesConfig,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(
            db,
            batch_size=config.extract_batch_size,
            max_attempts=config.max_attempts,
            clock=clock,
        )
        self.llm = llm

    async def select_ready(self, conn: aiosqlite.Connection, limit: int) -> List[RawItem]:
        clause, params = self.not_exhausted("r.natural_key")
        cursor = await conn.execute(
            f"""
            SELECT r.* FROM raw_items r
            JOIN filter_decisions f ON f.content_key = r.natural_key AND f.passes = 1
            LEFT JOIN pain_records p ON p.natural_key = r.natural_key
            WHERE p.id IS NULL AND {clause}
            ORDER BY r.created_utc DESC
            LIMIT ?
            """,
            (*params, limit),
        )
        return [RawItem.from_row(row) for row in await cursor.fetchall()]

    def item_key(self, item: RawItem) -> str:
        return item.natural_key

    async def transform(self, item: RawItem) -> PainExtraction:
        return await self.llm.generate(item.text[:3000], EXTRACT_INSTRUCTIONS, PainExtraction)

    async def persist(self, conn: aiosqlite.Connection, item: RawItem, output: PainExtraction) -> bool:
        now = self.clock()
        record = await insert_if_absent(
            conn,
            "pain_records",
            item.natural_key,
            {
                "origin": "extracted",
                "source_kind": item.source_kind,
                "source_id": item.source_id,
                "author": item.author,
                "problem_statement": output.problem_statement.strip(),
                "persona": output.persona,
                "location": output.location,
                "workaround": output.workaround,
                "willingness_to_pay": output.willingness_to_pay,
                "raw_quote": item.text[:1000],
                "source_url": item.url,
                "source_score": item.score,
                "state": RecordState.EXTRACTED.value,
                "extracted_at": now,
            },
        )
        if not record.inserted:
            return False

        product = normalize_phrase(output.product_name)
        gap = normalize_phrase(output.feature_gap)
        if product and gap:
            await insert_if_absent(
                conn,
                "product_gaps",
                record.row_id,
                {"product_name": product, "feature_gap": gap, "created_at": now},
                key_column="pain_record_id",
            )
            self.counters["product_gaps"] += 1

        return True
