import inspect
import json
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest

from core.entities import PainRecord
from ingestion.base import RawItemCandidate, SourceAdapter
from processing.clustering import Assignment, ClusterAssigner
from services.config import Config
from services.database import Database


class Clock:
    """Hand-driven replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeOracle:
    """
    Scripted stand-in for OllamaClient.

    Responses are registered per schema. A response may be a pydantic
    instance, a dict, an exception (raised), or a callable/coroutine
    taking the prompt text. A list is consumed one entry per call and the
    last entry repeats.
    """

    def __init__(self):
        self.responses: Dict[type, Any] = {}
        self.calls: List[tuple] = []

    def on(self, schema: type, response: Any) -> "FakeOracle":
        self.responses[schema] = response
        return self

    async def _respond(self, kind: str, text: str, schema: type):
        self.calls.append((kind, schema.__name__, text))
        if schema not in self.responses:
            raise AssertionError(f"No scripted response for {schema.__name__}")

        response = self.responses[schema]
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if callable(response) and not isinstance(response, type):
            response = response(text)
            if inspect.isawaitable(response):
                response = await response
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, dict):
            return schema.model_validate(response)
        return response

    async def classify(self, text: str, instructions: str, schema: type):
        return await self._respond("classify", text, schema)

    async def generate(self, text: str, instructions: str, schema: type):
        return await self._respond("generate", text, schema)

    def count(self, schema: type) -> int:
        return sum(1 for _, name, _ in self.calls if name == schema.__name__)


class FakeSource(SourceAdapter):
    name = "fake"

    def __init__(self):
        self.feeds: Dict[str, Any] = {}
        self.threads: Dict[str, List[RawItemCandidate]] = {}
        self.results: Dict[str, Any] = {}
        self.fetched: List[str] = []
        self.searched: List[str] = []

    async def fetch(self, source_id: str, cursor: Optional[str] = None) -> List[RawItemCandidate]:
        self.fetched.append(source_id)
        feed = self.feeds.get(source_id, [])
        if isinstance(feed, BaseException):
            raise feed
        return list(feed)

    async def search(self, query: str, limit: int = 25) -> List[RawItemCandidate]:
        self.searched.append(query)
        found = self.results.get(query, [])
        if isinstance(found, BaseException):
            raise found
        return list(found)[:limit]

    async def fetch_thread(self, item: RawItemCandidate, limit: int = 50) -> List[RawItemCandidate]:
        return list(self.threads.get(item.external_id, []))


class FakeAssigner(ClusterAssigner):
    """Routes records to clusters by natural key; unknown keys seed a new cluster."""

    def __init__(self):
        self.routes: Dict[str, int] = {}
        self.registered: List[int] = []

    async def assign(self, record: PainRecord) -> Assignment:
        if isinstance(self.routes.get(record.natural_key), BaseException):
            raise self.routes[record.natural_key]
        cluster_id = self.routes.get(record.natural_key)
        return Assignment(cluster_id=cluster_id, similarity=0.9 if cluster_id else 1.0)

    async def register(self, cluster_id: int, assignment: Assignment) -> None:
        self.registered.append(cluster_id)


def candidate(
    external_id: str,
    text: str,
    *,
    source_kind: str = "post",
    source_id: str = "smallbusiness",
    author: str = "someone",
    created_utc: float = 1_700_000_000.0,
    num_comments: int = 0,
    title: str = "",
) -> RawItemCandidate:
    return RawItemCandidate(
        external_id=external_id,
        source_kind=source_kind,
        source_id=source_id,
        text=text,
        title=title,
        author=author,
        created_utc=created_utc,
        num_comments=num_comments,
        url=f"https://example.com/{external_id}",
    )


class Seeder:
    """Writes fixture rows straight into the store."""

    def __init__(self, db: Database, clock: Clock):
        self.db = db
        self.clock = clock
        self._counter = defaultdict(int)

    async def _insert(self, table: str, row: Dict[str, Any]) -> int:
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        async with self.db.connect() as conn:
            cursor = await conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(row.values())
            )
            await conn.commit()
            return cursor.lastrowid

    async def raw(
        self,
        external_id: str,
        body: str,
        *,
        source_kind: str = "post",
        created_utc: Optional[float] = None,
        passes: Optional[bool] = None,
        processed: bool = False,
    ) -> int:
        key = f"{source_kind}_{external_id}"
        row_id = await self._insert("raw_items", {
            "natural_key": key,
            "source_kind": source_kind,
            "source_id": "smallbusiness",
            "external_id": external_id,
            "title": "",
            "body": body,
            "author": "someone",
            "created_utc": created_utc or self.clock(),
            "fetched_at": self.clock(),
            "processed": int(processed or passes is not None),
        })
        if passes is not None:
            await self._insert("filter_decisions", {
                "content_key": key,
                "content_kind": source_kind,
                "is_english": 1,
                "is_pain_point": int(passes),
                "confidence": 80,
                "category": "complaint",
                "passes": int(passes),
                "reason": "passed" if passes else "not_pain_point",
                "created_at": self.clock(),
            })
        return row_id

    async def record(
        self,
        external_id: Optional[str] = None,
        *,
        state: str = "tagged",
        problem_statement: str = "Invoicing clients takes hours every week",
        topics: Optional[List[str]] = None,
        keywords: Optional[List[str]] = None,
        severity: str = "medium",
        author: Optional[str] = None,
        source_id: str = "smallbusiness",
        origin: str = "extracted",
        tagged_at: Optional[float] = None,
        location: Optional[str] = None,
    ) -> int:
        self._counter["record"] += 1
        n = self._counter["record"]
        external_id = external_id or f"r{n}"
        return await self._insert("pain_records", {
            "natural_key": f"post_{external_id}",
            "origin": origin,
            "source_kind": "post",
            "source_id": source_id,
            "author": author or f"author{n}",
            "problem_statement": problem_statement,
            "severity": severity,
            "location": location,
            "topics": json.dumps(topics or [f"topic_{n}"]),
            "keywords": json.dumps(keywords or ["invoice software"]),
            "state": state,
            "extracted_at": self.clock(),
            "tagged_at": tagged_at if tagged_at is not None else (self.clock() if state != "extracted" else None),
        })

    async def cluster(self, **fields: Any) -> int:
        row = {
            "centroid_text": "Invoicing clients takes hours every week",
            "created_at": self.clock(),
            "updated_at": self.clock(),
            **fields,
        }
        for key in ("search_keywords", "personas", "workarounds"):
            if isinstance(row.get(key), list):
                row[key] = json.dumps(row[key])
        return await self._insert("clusters", row)

    async def member(self, cluster_id: int, record_id: int, similarity: float = 0.9) -> None:
        await self._insert("cluster_members", {
            "pain_record_id": record_id,
            "cluster_id": cluster_id,
            "similarity": similarity,
            "origin": "clustered",
            "added_at": self.clock(),
        })
        async with self.db.connect() as conn:
            await conn.execute(
                "UPDATE pain_records SET state = 'clustered', cluster_id = ? WHERE id = ?",
                (cluster_id, record_id),
            )
            await conn.execute(
                """
                UPDATE clusters SET
                    member_count = (SELECT COUNT(*) FROM cluster_members WHERE cluster_id = :id),
                    unique_author_count = (
                        SELECT COUNT(DISTINCT p.author) FROM cluster_members m
                        JOIN pain_records p ON p.id = m.pain_record_id WHERE m.cluster_id = :id
                    ),
                    unique_source_count = (
                        SELECT COUNT(DISTINCT p.source_id) FROM cluster_members m
                        JOIN pain_records p ON p.id = m.pain_record_id WHERE m.cluster_id = :id
                    )
                WHERE id = :id
                """,
                {"id": cluster_id},
            )
            await conn.commit()

    async def clustered(self, count: int, **cluster_fields: Any) -> int:
        """A cluster with `count` fresh members."""
        cluster_id = await self.cluster(**cluster_fields)
        for _ in range(count):
            await self.member(cluster_id, await self.record(state="tagged"))
        return cluster_id


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
async def db(tmp_path) -> Database:
    database = Database(str(tmp_path / "data" / "test.db"))
    await database.init_tables()
    return database


@pytest.fixture
def seed(db, clock) -> Seeder:
    return Seeder(db, clock)


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def assigner() -> FakeAssigner:
    return FakeAssigner()


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        DATABASE_PATH=str(tmp_path / "data" / "test.db"),
        FAISS_INDEX_PATH=str(tmp_path / "data" / "clusters.index"),
        OLLAMA_BASE_URL="http://localhost:11434",
        OLLAMA_MODEL="test-model",
        OLLAMA_EMBED_MODEL="test-embed",
        ALERT_OUTPUT_DIR=None,
    )
