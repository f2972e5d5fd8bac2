import pytest

from core.entities import StageResult
from core.errors import StoreUnavailableError
from services.config import DEFAULT_STAGE_ORDER
from services.database import Database
from workflows.base import Stage
from workflows.filtering import FilterStage
from workflows.orchestrator import PipelineOrchestrator, build_orchestrator, pipeline_status
from services.config import StagesConfig

SLOT = 600


class ScriptedStage(Stage):
    def __init__(self, name, db, clock, error=None):
        super().__init__(db, clock)
        self.name = name
        self.error = error
        self.runs = 0

    async def run(self) -> StageResult:
        self.runs += 1
        if self.error:
            raise self.error
        return StageResult(stage=self.name, attempted=1, succeeded=1)


def _orchestrator(db, clock, **errors):
    stages = {
        name: ScriptedStage(name, db, clock, errors.get(name))
        for name in ("ingest", "filter", "extract")
    }
    return PipelineOrchestrator(stages, ["ingest", "filter", "extract"], slot_minutes=10, clock=clock), stages


def test_select_stage_follows_time_slots(db, clock):
    orchestrator, _ = _orchestrator(db, clock)
    base = 1_700_000_400.0  # slot boundary
    picks = [orchestrator.select_stage(base + i * SLOT) for i in range(6)]
    assert picks[:3] == picks[3:]
    assert sorted(picks[:3]) == ["extract", "filter", "ingest"]


async def test_tick_runs_exactly_one_stage(db, clock):
    orchestrator, stages = _orchestrator(db, clock)

    invocation = await orchestrator.run_tick()

    assert invocation.status == "ok"
    assert sum(s.runs for s in stages.values()) == 1
    assert stages[invocation.stage].runs == 1


async def test_store_outage_is_reported_not_raised(db, clock):
    orchestrator, _ = _orchestrator(db, clock, filter=StoreUnavailableError("disk gone"))

    invocation = await orchestrator.run_stage("filter")

    assert invocation.status == "error"
    assert "disk gone" in invocation.error
    assert invocation.as_dict() == {"stage": "filter", "status": "error", "error": "disk gone"}


async def test_failed_stage_does_not_block_next_tick(db, clock):
    orchestrator, stages = _orchestrator(db, clock, filter=StoreUnavailableError("locked"))
    base = 1_700_000_400.0
    ticks = [await orchestrator.run_tick(base + i * SLOT) for i in range(3)]

    assert sorted(t.stage for t in ticks) == ["extract", "filter", "ingest"]
    assert {t.stage: t.status for t in ticks}["filter"] == "error"
    assert stages["extract"].runs == 1 and stages["ingest"].runs == 1


async def test_unknown_stage_rejected(db, clock):
    orchestrator, _ = _orchestrator(db, clock)
    with pytest.raises(ValueError):
        await orchestrator.run_stage("publish")


def test_stage_order_must_be_registered(db, clock):
    with pytest.raises(ValueError):
        PipelineOrchestrator({}, ["ingest"], clock=clock)


async def test_unreachable_store_surfaces_as_error(tmp_path, oracle, clock):
    # a directory cannot be opened as a database file
    db = Database(str(tmp_path))
    stages = {"filter": FilterStage(db, oracle, StagesConfig(), clock=clock)}
    orchestrator = PipelineOrchestrator(stages, ["filter"], clock=clock)

    invocation = await orchestrator.run_tick()

    assert invocation.status == "error"


async def test_build_orchestrator_wires_every_stage(config, db, oracle, source, assigner, clock):
    orchestrator = build_orchestrator(
        config, db, oracle, adapters={"reddit": source}, assigner=assigner, clock=clock
    )
    assert set(orchestrator.stages) == set(DEFAULT_STAGE_ORDER)
    assert orchestrator.stage_order == DEFAULT_STAGE_ORDER

    invocation = await orchestrator.run_stage("synthesize")
    assert invocation.status == "ok"
    assert invocation.result.attempted == 0


async def test_pipeline_status(config, db, seed, clock):
    await seed.raw("a", "pending text")
    await seed.record(state="extracted")
    await seed.clustered(2)

    status = await pipeline_status(db, config)

    assert status["raw_items"] == {"total": 1, "pending_filter": 1}
    assert status["pain_records"] == {"extracted": 1, "clustered": 2}
    assert status["clusters"]["total"] == 1
    assert status["clusters"]["needs_synthesis"] == 1
    assert status["unread_alerts"] == 0
