"""
Workflows module - pipeline stages and the orchestrator that rotates them.
"""
from workflows.base import BatchStage, Stage
from workflows.orchestrator import (
    InvocationResult,
    PipelineOrchestrator,
    build_orchestrator,
    pipeline_status,
)

__all__ = [
    "Stage",
    "BatchStage",
    "InvocationResult",
    "PipelineOrchestrator",
    "build_orchestrator",
    "pipeline_status",
]
