import json

import pytest

from core.entities import Cluster, ClusterStage
from core.errors import OracleError
from core.schemas import FilterJudgment, OpportunityBrief, PainExtraction, TaggingJudgment
from processing.clustering import VectorClusterAssigner
from services.config import StagesConfig
from services.vector_store import VectorStore
from workflows.clustering import ClusteringStage, refresh_cluster_stats
from workflows.extraction import ExtractionStage
from workflows.filtering import FilterStage, decide
from workflows.synthesis import SynthesisStage
from workflows.tagging import TaggingStage

PAIN_TEXT = (
    "I spend hours every week chasing clients for unpaid invoices and it is "
    "killing my small business, there has to be a better way to do this"
)
GERMAN_TEXT = (
    "Ich verbringe jede Woche Stunden damit, Kunden wegen unbezahlter Rechnungen "
    "hinterherzulaufen, und das macht mein kleines Unternehmen kaputt"
)
PASSING = {"is_pain_point": True, "confidence": 80, "category": "complaint", "problem_type": "invoicing"}


async def _cluster(db, cluster_id: int) -> Cluster:
    return Cluster.from_row(await db.fetchone("SELECT * FROM clusters WHERE id = ?", (cluster_id,)))


# filter

async def test_filter_prechecks_skip_the_oracle(db, seed, oracle, clock):
    await seed.raw("short", "lol same")
    await seed.raw("german", GERMAN_TEXT)
    await seed.raw("pain", PAIN_TEXT)
    oracle.on(FilterJudgment, PASSING)

    result = await FilterStage(db, oracle, StagesConfig(), clock=clock).run()

    assert (result.attempted, result.succeeded, result.failed) == (3, 3, 0)
    assert result.detail["too_short"] == 1
    assert result.detail["not_english"] == 1
    assert result.detail["passed"] == 1
    assert oracle.count(FilterJudgment) == 1

    rows = await db.fetchall("SELECT content_key, passes, reason FROM filter_decisions ORDER BY content_key")
    assert {r["content_key"]: (r["passes"], r["reason"]) for r in rows} == {
        "post_german": (0, "not_english"),
        "post_pain": (1, "passed"),
        "post_short": (0, "too_short"),
    }
    pending = await db.fetchone("SELECT COUNT(*) FROM raw_items WHERE processed = 0")
    assert pending[0] == 0


async def test_filter_is_idempotent(db, seed, oracle, clock):
    await seed.raw("pain", PAIN_TEXT)
    oracle.on(FilterJudgment, PASSING)
    stage = FilterStage(db, oracle, StagesConfig(), clock=clock)

    await stage.run()
    again = await stage.run()

    assert again.attempted == 0
    assert oracle.count(FilterJudgment) == 1


async def test_filter_oracle_failure_is_per_item(db, seed, oracle, clock):
    await seed.raw("bad", PAIN_TEXT, created_utc=clock() + 10)
    await seed.raw("good", PAIN_TEXT + " again")
    oracle.on(FilterJudgment, [OracleError("malformed"), PASSING])

    result = await FilterStage(db, oracle, StagesConfig(), clock=clock).run()

    assert (result.attempted, result.succeeded, result.failed) == (2, 1, 1)
    bad = await db.fetchone("SELECT processed FROM raw_items WHERE natural_key = 'post_bad'")
    assert bad["processed"] == 0
    failure = await db.fetchone("SELECT attempts FROM stage_failures WHERE item_key = 'post_bad'")
    assert failure["attempts"] == 1


async def test_filter_gives_up_after_max_attempts(db, seed, oracle, clock):
    await seed.raw("bad", PAIN_TEXT)
    oracle.on(FilterJudgment, OracleError("malformed"))
    stage = FilterStage(db, oracle, StagesConfig(max_attempts=2), clock=clock)

    await stage.run()
    await stage.run()
    third = await stage.run()

    assert third.attempted == 0
    assert oracle.count(FilterJudgment) == 2


@pytest.mark.parametrize(
    "judgment,expected",
    [
        (PASSING, (True, "passed")),
        ({**PASSING, "is_pain_point": False}, (False, "not_pain_point")),
        ({**PASSING, "confidence": 20}, (False, "low_confidence")),
        ({**PASSING, "confidence": 35}, (True, "passed")),
        ({**PASSING, "category": "other"}, (False, "irrelevant_category")),
    ],
)
def test_filter_decision(judgment, expected):
    assert decide(FilterJudgment(**judgment), 35) == expected


# extract

async def test_extract_writes_record_and_product_gap(db, seed, oracle, clock):
    await seed.raw("x1", PAIN_TEXT, passes=True)
    await seed.raw("x2", PAIN_TEXT, passes=False)
    oracle.on(PainExtraction, {
        "problem_statement": "Chasing unpaid invoices takes hours every week",
        "persona": "freelancer",
        "product_name": "Xero",
        "feature_gap": "Automatic   payment reminders",
    })
    stage = ExtractionStage(db, oracle, StagesConfig(), clock=clock)

    result = await stage.run()

    assert (result.attempted, result.succeeded) == (1, 1)
    record = await db.fetchone("SELECT * FROM pain_records WHERE natural_key = 'post_x1'")
    assert record["state"] == "extracted"
    assert record["origin"] == "extracted"
    assert record["persona"] == "freelancer"

    gap = await db.fetchone("SELECT product_name, feature_gap FROM product_gaps")
    assert (gap["product_name"], gap["feature_gap"]) == ("xero", "automatic payment reminders")

    # extraction is monotonic: nothing is ready a second time
    again = await stage.run()
    assert again.attempted == 0


async def test_extract_schema_violation_counts_as_failure(db, seed, oracle, clock):
    await seed.raw("x1", PAIN_TEXT, passes=True)
    oracle.on(PainExtraction, OracleError("PainExtraction validation failed"))

    result = await ExtractionStage(db, oracle, StagesConfig(), clock=clock).run()

    assert result.failed == 1
    count = await db.fetchone("SELECT COUNT(*) FROM pain_records")
    assert count[0] == 0


# tag

async def test_tag_normalizes_and_advances_state(db, seed, oracle, clock):
    record_id = await seed.record(state="extracted")
    oracle.on(TaggingJudgment, {
        "topics": ["Small Business Tax", "Invoicing", "invoicing"],
        "keywords": ["Invoice App", "invoice app"],
        "severity": "HIGH",
    })

    result = await TaggingStage(db, oracle, StagesConfig(), clock=clock).run()

    assert result.succeeded == 1
    row = await db.fetchone("SELECT * FROM pain_records WHERE id = ?", (record_id,))
    assert row["state"] == "tagged"
    assert json.loads(row["topics"]) == ["small_business_tax", "invoicing"]
    assert json.loads(row["keywords"]) == ["invoice app"]
    assert row["severity"] == "high"
    assert row["tagged_at"] == clock()


async def test_tag_without_usable_topics_fails(db, seed, oracle, clock):
    record_id = await seed.record(state="extracted")
    oracle.on(TaggingJudgment, {"topics": ["!!!"]})

    result = await TaggingStage(db, oracle, StagesConfig(), clock=clock).run()

    assert result.failed == 1
    row = await db.fetchone("SELECT state FROM pain_records WHERE id = ?", (record_id,))
    assert row["state"] == "extracted"


# cluster

async def test_cluster_seeds_then_grows(db, seed, assigner, clock):
    stage = ClusteringStage(db, assigner, StagesConfig(), qualify_threshold=2, clock=clock)

    first = await seed.record("r1", author="alice")
    result = await stage.run()
    assert result.succeeded == 1
    assert result.detail["clusters_created"] == 1
    assert assigner.registered == [1]

    clock.advance(60)
    second = await seed.record("r2", author="bob", source_id="freelance")
    assigner.routes["post_r2"] = 1
    result = await stage.run()
    assert result.succeeded == 1
    assert assigner.registered == [1]

    cluster = await _cluster(db, 1)
    assert cluster.member_count == 2
    assert cluster.unique_author_count == 2
    assert cluster.unique_source_count == 2
    assert cluster.updated_at == clock()
    assert cluster.qualified_at == clock()

    rows = await db.fetchall("SELECT id, state, cluster_id FROM pain_records ORDER BY id")
    assert [(r["id"], r["state"], r["cluster_id"]) for r in rows] == [
        (first, "clustered", 1),
        (second, "clustered", 1),
    ]
    assert (await stage.run()).attempted == 0


async def test_cluster_membership_is_unique(db, seed, assigner, clock):
    stage = ClusteringStage(db, assigner, StagesConfig(), clock=clock)
    await seed.record("r1")
    await stage.run()

    members = await db.fetchone("SELECT COUNT(*) FROM cluster_members")
    assert members[0] == 1


class _FixedEmbedder:
    async def embed(self, text):
        return [1.0, 0.0, 0.0, 0.0]


async def test_cluster_index_untouched_when_commit_never_happens(db, seed, clock, tmp_path, monkeypatch):
    index_path = tmp_path / "clusters.index"
    assigner = VectorClusterAssigner(_FixedEmbedder(), str(index_path))
    stage = ClusteringStage(db, assigner, StagesConfig(), clock=clock)
    await seed.record("r1")

    async def broken_clear_failure(conn, stage_name, key):
        raise RuntimeError("disk hiccup")

    monkeypatch.setattr(db, "clear_failure", broken_clear_failure)
    result = await stage.run()

    assert result.failed == 1
    assert "clusters_created" not in result.detail
    assert (await db.fetchone("SELECT COUNT(*) FROM clusters"))[0] == 0
    assert (await db.fetchone("SELECT state FROM pain_records"))["state"] == "tagged"
    assert not index_path.exists()
    assert assigner.store.index.ntotal == 0

    monkeypatch.undo()
    result = await stage.run()

    assert result.succeeded == 1
    assert VectorStore(str(index_path)).search([1.0, 0.0, 0.0, 0.0], k=1)[0][0] == 1


async def test_touch_invalidates_freshness_even_at_same_instant(db, seed, clock):
    cluster_id = await seed.clustered(2, synthesized_at=clock(), scored_at=clock())
    assert (await _cluster(db, cluster_id)).is_score_fresh is True

    async with db.connect() as conn:
        await refresh_cluster_stats(conn, cluster_id, clock(), 5)
        await conn.commit()

    cluster = await _cluster(db, cluster_id)
    assert cluster.updated_at > cluster.scored_at
    assert cluster.is_score_fresh is False
    assert cluster.stage(2) is ClusterStage.NEEDS_SYNTHESIS


# synthesize

BRIEF = {
    "product_name": "InvoiceChaser",
    "summary": "Freelancers lose hours every week chasing unpaid invoices.",
    "personas": ["freelancer"],
    "workarounds": ["spreadsheets"],
    "search_keywords": [],
}


async def test_synthesis_writes_versioned_brief(db, seed, oracle, clock):
    cluster_id = await seed.clustered(2)
    oracle.on(OpportunityBrief, BRIEF)
    stage = SynthesisStage(db, oracle, StagesConfig(), clock=clock)

    result = await stage.run()

    assert result.succeeded == 1
    cluster = await _cluster(db, cluster_id)
    assert cluster.brief_version == 1
    assert cluster.product_name == "InvoiceChaser"
    assert cluster.synthesized_at >= cluster.updated_at
    # empty keyword list falls back to the members' keywords
    assert cluster.search_keywords == ["invoice software"]
    assert cluster.stage(2) is ClusterStage.NEEDS_SCORING

    assert (await stage.run()).attempted == 0


async def test_synthesis_waits_for_minimum_size(db, seed, oracle, clock):
    await seed.clustered(1)
    oracle.on(OpportunityBrief, BRIEF)

    result = await SynthesisStage(db, oracle, StagesConfig(min_cluster_size=2), clock=clock).run()

    assert result.attempted == 0


async def test_synthesis_reruns_after_growth(db, seed, oracle, clock):
    cluster_id = await seed.clustered(2)
    oracle.on(OpportunityBrief, BRIEF)
    stage = SynthesisStage(db, oracle, StagesConfig(), clock=clock)
    await stage.run()

    clock.advance(30)
    await seed.member(cluster_id, await seed.record())
    async with db.connect() as conn:
        await refresh_cluster_stats(conn, cluster_id, clock(), 5)
        await conn.commit()

    result = await stage.run()
    assert result.succeeded == 1
    assert (await _cluster(db, cluster_id)).brief_version == 2


async def test_synthesis_loses_race_to_concurrent_growth(db, seed, oracle, clock):
    cluster_id = await seed.clustered(2)

    async def grow_while_generating(text):
        await db.execute("UPDATE clusters SET updated_at = updated_at + 5 WHERE id = ?", (cluster_id,))
        return BRIEF

    oracle.on(OpportunityBrief, grow_while_generating)

    result = await SynthesisStage(db, oracle, StagesConfig(), clock=clock).run()

    assert (result.succeeded, result.skipped, result.failed) == (0, 1, 0)
    cluster = await _cluster(db, cluster_id)
    assert cluster.brief_version == 0
    assert cluster.synthesized_at is None
