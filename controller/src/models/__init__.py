from controller.src.models.artifact import (
    Severity,
    GateMode,
    GateOutcome,
    GatePolicy,
    ServiceImageSpec,
    ServiceImage,
    ImageTag,
    ScanFinding,
    ScanReport,
    GateDecision,
)
from controller.src.models.pipeline import (
    ServiceDeclaration,
    TargetConfig,
    PipelineConfig,
    Trigger,
    parse_pipeline_config,
    load_pipeline_config,
    deployment_target,
)
from controller.src.models.resources import (
    Workload,
    ExposureType,
    ExposureRule,
    NetworkPolicyRule,
    ResourceSet,
    DeploymentTarget,
    DeployedWorkload,
    WorkloadApplyStatus,
    WorkloadApplyResult,
    PolicyDiff,
    ApplyResult,
    RolloutStatus,
    RolloutRecord,
    parse_resource_set,
    load_resource_set,
)
from controller.src.models.run import (
    RunStatus,
    StageName,
    STAGE_ORDER,
    ArtifactStatus,
    StageExecution,
    PipelineRun,
)

__all__ = [
    "Severity",
    "GateMode",
    "GateOutcome",
    "GatePolicy",
    "ServiceImageSpec",
    "ServiceImage",
    "ImageTag",
    "ScanFinding",
    "ScanReport",
    "GateDecision",
    "ServiceDeclaration",
    "TargetConfig",
    "PipelineConfig",
    "Trigger",
    "parse_pipeline_config",
    "load_pipeline_config",
    "deployment_target",
    "Workload",
    "ExposureType",
    "ExposureRule",
    "NetworkPolicyRule",
    "ResourceSet",
    "DeploymentTarget",
    "DeployedWorkload",
    "WorkloadApplyStatus",
    "WorkloadApplyResult",
    "PolicyDiff",
    "ApplyResult",
    "RolloutStatus",
    "RolloutRecord",
    "parse_resource_set",
    "load_resource_set",
    "RunStatus",
    "StageName",
    "STAGE_ORDER",
    "ArtifactStatus",
    "StageExecution",
    "PipelineRun",
]
