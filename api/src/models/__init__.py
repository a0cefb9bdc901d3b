from api.src.models.pipeline import Repository, PipelineRun, StageOutcome
from api.src.models.run import (
    PipelineRunResponse,
    StageOutcomeResponse,
    AbortRequest,
    RepositoryResponse
)

__all__ = [
    "Repository",
    "PipelineRun",
    "StageOutcome",
    "PipelineRunResponse",
    "StageOutcomeResponse",
    "AbortRequest",
    "RepositoryResponse"
]
