"""
Pipeline control for makerfleet.

Stage sequencing, crash-only supervision, and batched fan-out.
"""

from makerfleet.pipeline.batching import BatchReport, run_in_batches
from makerfleet.pipeline.orchestrator import PipelineRun, PipelineState, Stage, StagePipelineOrchestrator
from makerfleet.pipeline.supervisor import Supervisor

__all__ = [
    "BatchReport",
    "PipelineRun",
    "PipelineState",
    "Stage",
    "StagePipelineOrchestrator",
    "Supervisor",
    "run_in_batches",
]
