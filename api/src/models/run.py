from pydantic import BaseModel
from typing import Optional, List, Dict, Any
from datetime import datetime
from uuid import UUID

class StageOutcomeResponse(BaseModel):
    id: UUID
    stage: str
    stage_order: int
    artifact: str
    status: str
    error_kind: Optional[str] = None
    message: Optional[str] = None
    attempts: int = 0
    detail: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PipelineRunBase(BaseModel):
    commit_sha: str
    branch: str

class PipelineRunResponse(PipelineRunBase):
    id: UUID
    status: str
    triggered_by: Optional[str] = None
    target: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    outcomes: List[StageOutcomeResponse] = []

    class Config:
        from_attributes = True

class AbortRequest(BaseModel):
    reason: Optional[str] = None

class RepositoryResponse(BaseModel):
    id: UUID
    name: str
    full_name: str
    clone_url: str
    created_at: datetime

    class Config:
        from_attributes = True
