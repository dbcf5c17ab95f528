from api.src.models.pipeline import PipelineRun, PipelineStage
from api.src.models.run import (
    DefinitionRequest,
    TriggerRequest,
    TriggerResponse,
    ValidationResponse,
    PipelineRunResponse,
    StageResponse,
    ReportResponse,
)

__all__ = [
    "PipelineRun",
    "PipelineStage",
    "DefinitionRequest",
    "TriggerRequest",
    "TriggerResponse",
    "ValidationResponse",
    "PipelineRunResponse",
    "StageResponse",
    "ReportResponse",
]
