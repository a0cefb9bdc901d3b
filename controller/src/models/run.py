"""
Pipeline run and stage execution models.
"""

import uuid
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from enum import Enum

from controller.src.errors import ReleaseError, RunStateError
from controller.src.models.artifact import GateDecision, GatePolicy, ImageTag, ScanReport, ServiceImage
from controller.src.models.pipeline import Trigger
from controller.src.models.resources import ApplyResult, RolloutRecord

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

TERMINAL_RUN_STATUSES = (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED)

class StageName(str, Enum):
    BUILD = "build"
    SCAN = "scan"
    GATE = "gate"
    PUSH = "push"
    DEPLOY = "deploy"
    ROLLOUT = "rollout"

STAGE_ORDER = [
    StageName.BUILD,
    StageName.SCAN,
    StageName.GATE,
    StageName.PUSH,
    StageName.DEPLOY,
    StageName.ROLLOUT,
]

class ArtifactStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    ABORTED = "aborted"

class StageExecution(BaseModel):
    """One stage applied to one artifact (service) or workload."""
    stage: StageName
    artifact: str
    status: ArtifactStatus = ArtifactStatus.PENDING
    error_kind: Optional[str] = None
    exit_code: int = 0
    message: Optional[str] = None
    attempts: int = 0
    detail: Dict[str, Any] = {}
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.status not in (ArtifactStatus.PENDING, ArtifactStatus.RUNNING)

class PipelineRun(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    trigger: Trigger
    target: Optional[str] = None
    gate_policy: GatePolicy = Field(default_factory=GatePolicy)
    status: RunStatus = RunStatus.PENDING
    error: Optional[str] = None
    stages: List[StageExecution] = []
    images: Dict[str, ServiceImage] = {}
    reports: Dict[str, ScanReport] = {}
    decisions: Dict[str, GateDecision] = {}
    tags: Dict[str, ImageTag] = {}
    apply_result: Optional[ApplyResult] = None
    rollouts: List[RolloutRecord] = []
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def _ensure_mutable(self):
        if self.is_terminal:
            raise RunStateError(f"Run {self.id} is {self.status.value} and can no longer change")

    def start(self):
        self._ensure_mutable()
        self.status = RunStatus.RUNNING
        self.started_at = utcnow()

    def begin(self, stage: StageName, artifact: str) -> StageExecution:
        self._ensure_mutable()
        execution = StageExecution(
            stage=stage,
            artifact=artifact,
            status=ArtifactStatus.RUNNING,
            started_at=utcnow(),
        )
        self.stages.append(execution)
        return execution

    def succeed(self, execution: StageExecution, attempts: int = 1, message: Optional[str] = None, **detail):
        self._ensure_mutable()
        execution.status = ArtifactStatus.SUCCEEDED
        execution.attempts = attempts
        execution.message = message
        execution.detail = detail
        execution.finished_at = utcnow()

    def fail(self, execution: StageExecution, error: BaseException, attempts: int = 1, **detail):
        self._ensure_mutable()
        execution.status = ArtifactStatus.FAILED
        execution.attempts = getattr(error, "attempts", attempts)
        execution.error_kind = getattr(error, "kind", "error")
        execution.exit_code = getattr(error, "exit_code", ReleaseError.exit_code)
        execution.message = str(error)
        execution.detail = detail
        execution.finished_at = utcnow()

    def skip(self, stage: StageName, artifact: str, reason: str) -> StageExecution:
        self._ensure_mutable()
        execution = StageExecution(
            stage=stage,
            artifact=artifact,
            status=ArtifactStatus.SKIPPED,
            message=reason,
            started_at=utcnow(),
            finished_at=utcnow(),
        )
        self.stages.append(execution)
        return execution

    def abort_in_flight(self, reason: str) -> List[StageExecution]:
        """Mark every unfinished execution aborted and return them."""
        self._ensure_mutable()
        aborted = []
        for execution in self.stages:
            if not execution.is_finished:
                execution.status = ArtifactStatus.ABORTED
                execution.message = reason
                execution.finished_at = utcnow()
                aborted.append(execution)
        return aborted

    def finish(self, status: RunStatus, error: Optional[str] = None):
        self._ensure_mutable()
        if status not in TERMINAL_RUN_STATUSES:
            raise RunStateError(f"Cannot finish run with non-terminal status {status.value}")
        self.status = status
        self.error = error
        self.finished_at = utcnow()

    def executions(self, stage: Optional[StageName] = None, artifact: Optional[str] = None) -> List[StageExecution]:
        return [
            e for e in self.stages
            if (stage is None or e.stage == stage) and (artifact is None or e.artifact == artifact)
        ]

    def failed_executions(self) -> List[StageExecution]:
        return [e for e in self.stages if e.status == ArtifactStatus.FAILED]

    def artifact_summary(self) -> Dict[str, Dict[str, str]]:
        """Latest status per artifact per stage, for reporting."""
        summary: Dict[str, Dict[str, str]] = {}
        for execution in self.stages:
            summary.setdefault(execution.artifact, {})[execution.stage.value] = execution.status.value
        return summary
