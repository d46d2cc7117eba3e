"""Orchestration engine: executor, exec handles and the pipeline runner."""

from cairn.engine.executor import OrchestrationExecutor, error_payload
from cairn.engine.handle import ExecHandle
from cairn.engine.pipeline import IngestStage, OrchestrationPipeline, Stage, StageContext

__all__ = [
    "ExecHandle",
    "IngestStage",
    "OrchestrationExecutor",
    "OrchestrationPipeline",
    "Stage",
    "StageContext",
    "error_payload",
]
