"""
Pipeline orchestrator - picks which stage runs on each tick and builds
the stages from configuration.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from core.entities import Cluster, StageResult
from core.errors import StoreUnavailableError
from delivery.base import AlertChannel
from ingestion.base import SourceAdapter
from ingestion.source_factory import create_adapters_from_config, rotation_sources
from processing.clustering import ClusterAssigner, VectorClusterAssigner
from services.config import Config
from services.cursor_store import CursorStore
from services.database import Database
from services.llm import OllamaClient
from services.scheduler import time_slot_index
from workflows.alerts import AlertStage
from workflows.backvalidation import BackValidationStage
from workflows.base import Stage
from workflows.clustering import ClusteringStage
from workflows.extraction import ExtractionStage
from workflows.filtering import FilterStage
from workflows.ingestion import IngestionStage
from workflows.scoring import ScoringStage
from workflows.synthesis import SynthesisStage
from workflows.tagging import TaggingStage
from workflows.trends import TrendStage

logger = logging.getLogger(__name__)


@dataclass
class InvocationResult:
    stage: str
    status: str  # ok, error
    result: Optional[StageResult] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"stage": self.stage, "status": self.status}
        if self.result is not None:
            data["result"] = self.result.as_dict()
        if self.error:
            data["error"] = self.error
        return data


class PipelineOrchestrator:
    """
    Runs exactly one stage per invocation. Stage order repeats across
    time slots so every stage gets a turn.
    """

    def __init__(
        self,
        stages: Dict[str, Stage],
        stage_order: List[str],
        slot_minutes: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        missing = [name for name in stage_order if name not in stages]
        if missing:
            raise ValueError(f"No stage registered for: {missing}")
        self.stages = stages
        self.stage_order = stage_order
        self.slot_minutes = slot_minutes
        self.clock = clock

    def select_stage(self, now: Optional[float] = None) -> str:
        now = self.clock() if now is None else now
        return self.stage_order[time_slot_index(now, self.slot_minutes, len(self.stage_order))]

    async def run_tick(self, now: Optional[float] = None) -> InvocationResult:
        name = self.select_stage(now)
        logger.info(f"Tick selected stage '{name}'")
        return await self.run_stage(name)

    async def run_stage(self, name: str) -> InvocationResult:
        stage = self.stages.get(name)
        if stage is None:
            raise ValueError(f"Unknown stage: {name}")

        started = time.perf_counter()
        try:
            result = await stage.run()
        except StoreUnavailableError as e:
            logger.error(f"[{name}] Store unavailable, invocation aborted: {e}", extra={"stage": name})
            return InvocationResult(stage=name, status="error", error=str(e))

        logger.info(f"[{name}] Finished in {time.perf_counter() - started:.2f}s")
        return InvocationResult(stage=name, status="ok", result=result)


def build_orchestrator(
    config: Config,
    db: Database,
    llm: OllamaClient,
    adapters: Optional[Dict[str, SourceAdapter]] = None,
    assigner: Optional[ClusterAssigner] = None,
    channels: Optional[List[AlertChannel]] = None,
    clock: Callable[[], float] = time.time,
) -> PipelineOrchestrator:
    """Wire every stage from config. Collaborators can be swapped for tests."""
    if adapters is None:
        adapters = create_adapters_from_config(config.ingestion)
    if assigner is None:
        assigner = VectorClusterAssigner(
            llm,
            config.FAISS_INDEX_PATH,
            similarity_threshold=config.clustering.similarity_threshold,
        )
    qualify_threshold = config.alerts.min_viable_members

    stages: Dict[str, Stage] = {
        "ingest": IngestionStage(
            db,
            adapters,
            rotation_sources(config.ingestion, adapters),
            config.ingestion,
            CursorStore(db, clock),
            clock=clock,
        ),
        "filter": FilterStage(db, llm, config.stages, clock=clock),
        "extract": ExtractionStage(db, llm, config.stages, clock=clock),
        "tag": TaggingStage(db, llm, config.stages, clock=clock),
        "cluster": ClusteringStage(db, assigner, config.stages, qualify_threshold, clock=clock),
        "synthesize": SynthesisStage(db, llm, config.stages, clock=clock),
        "score": ScoringStage(db, llm, config.scoring, config.stages, clock=clock),
        "backvalidate": BackValidationStage(
            db, llm, adapters, config.backvalidation, qualify_threshold, clock=clock
        ),
        "trends": TrendStage(db, config.trends, clock=clock),
        "alerts": AlertStage(db, config.alerts, channels, clock=clock),
    }

    return PipelineOrchestrator(
        stages,
        config.scheduler.stages,
        slot_minutes=config.scheduler.slot_minutes,
        clock=clock,
    )


async def pipeline_status(db: Database, config: Config) -> Dict[str, Any]:
    """Snapshot of queue depths, cluster lifecycle and last runs."""
    status: Dict[str, Any] = {}

    row = await db.fetchone(
        "SELECT COUNT(*) AS total, SUM(CASE WHEN processed = 0 THEN 1 ELSE 0 END) AS pending FROM raw_items"
    )
    status["raw_items"] = {"total": row["total"], "pending_filter": row["pending"] or 0}

    rows = await db.fetchall("SELECT state, COUNT(*) AS n FROM pain_records GROUP BY state")
    status["pain_records"] = {r["state"]: r["n"] for r in rows}

    clusters = [Cluster.from_row(r) for r in await db.fetchall("SELECT * FROM clusters")]
    lifecycle: Dict[str, int] = {}
    for cluster in clusters:
        stage = cluster.stage(config.stages.min_cluster_size).value
        lifecycle[stage] = lifecycle.get(stage, 0) + 1
    status["clusters"] = {"total": len(clusters), **lifecycle}

    rows = await db.fetchall("SELECT owner, position FROM rotation_state")
    status["cursors"] = {r["owner"]: r["position"] for r in rows}

    rows = await db.fetchall(
        """
        SELECT stage, MAX(finished_at) AS last_run, COUNT(*) AS runs
        FROM stage_runs GROUP BY stage
        """
    )
    status["stages"] = {r["stage"]: {"last_run": r["last_run"], "runs": r["runs"]} for r in rows}

    row = await db.fetchone("SELECT COUNT(*) FROM alerts WHERE read_at IS NULL")
    status["unread_alerts"] = row[0]
    return status
