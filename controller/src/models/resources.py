"""
Declarative resource set, deployment target and apply/rollout results.
"""

import re
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from typing import Any, Dict, List, Optional, Union
from datetime import datetime
from enum import Enum

import yaml

from controller.src.errors import ConfigurationError

IMAGE_PLACEHOLDER = re.compile(r"^\{\{\s*images\.([a-z0-9][a-z0-9-]*)\s*\}\}$")
ANY_SOURCE = "*"

class Workload(BaseModel):
    name: str
    image: str
    replicas: int = Field(default=1, ge=0)
    port: Optional[int] = None
    env: Dict[str, str] = {}

    @property
    def service(self) -> Optional[str]:
        """Service whose built image this workload runs, if image is a placeholder."""
        match = IMAGE_PLACEHOLDER.match(self.image.strip())
        return match.group(1) if match else None

class ExposureType(str, Enum):
    CLUSTER_IP = "ClusterIP"
    NODE_PORT = "NodePort"
    LOAD_BALANCER = "LoadBalancer"

class ExposureRule(BaseModel):
    name: str
    workload: str
    port: int
    target_port: Optional[int] = None
    type: ExposureType = ExposureType.CLUSTER_IP
    node_port: Optional[int] = None

class NetworkPolicyRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    destination: str
    allowed: bool = True

    @property
    def pair(self):
        return (self.source, self.destination)

    def __str__(self) -> str:
        verb = "allow" if self.allowed else "deny"
        return f"{verb} {self.source} -> {self.destination}"

class ResourceSet(BaseModel):
    namespace: str
    workloads: List[Workload] = []
    exposures: List[ExposureRule] = []
    network_policies: List[NetworkPolicyRule] = []

    @field_validator("namespace")
    @classmethod
    def _valid_namespace(cls, value: str) -> str:
        if not re.match(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$", value):
            raise ValueError(f"'{value}' is not a valid namespace name")
        return value

    @model_validator(mode="after")
    def _check_references(self):
        names = [w.name for w in self.workloads]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate workload names: {sorted(duplicates)}")

        for exposure in self.exposures:
            if exposure.workload not in names:
                raise ValueError(f"Exposure '{exposure.name}' references unknown workload '{exposure.workload}'")
        return self

    def workload(self, name: str) -> Optional[Workload]:
        for workload in self.workloads:
            if workload.name == name:
                return workload
        return None

def parse_resource_set(content: Union[str, Dict[str, Any]]) -> ResourceSet:
    """Parse and validate a resource set from YAML text or an already-loaded dict."""
    if isinstance(content, str):
        try:
            content = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid resource set YAML: {e}")

    if not content or not isinstance(content, dict):
        raise ConfigurationError("Resource set must be a non-empty mapping")

    try:
        return ResourceSet.model_validate(content)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid resource set: {e}")

def load_resource_set(path: str) -> ResourceSet:
    try:
        with open(path, "r") as f:
            return parse_resource_set(f.read())
    except OSError as e:
        raise ConfigurationError(f"Cannot read resource set {path}: {e}")

class DeploymentTarget(BaseModel):
    cluster: str
    namespace: str
    resources: ResourceSet

    @property
    def key(self) -> str:
        """Identity used for the runner's mutation lock."""
        return f"{self.cluster}/{self.namespace}"

    @model_validator(mode="after")
    def _namespace_matches(self):
        if self.resources.namespace != self.namespace:
            raise ValueError(
                f"Resource set namespace '{self.resources.namespace}' does not match target '{self.namespace}'"
            )
        return self

class DeployedWorkload(BaseModel):
    """What the cluster currently runs for a workload."""
    name: str
    image: str
    digest: Optional[str] = None
    replicas: int = 0

class WorkloadApplyStatus(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"

class WorkloadApplyResult(BaseModel):
    name: str
    service: Optional[str] = None
    status: WorkloadApplyStatus
    previous_image: Optional[str] = None
    previous_digest: Optional[str] = None
    image: Optional[str] = None
    digest: Optional[str] = None
    error: Optional[str] = None

    @property
    def existed(self) -> bool:
        return self.previous_image is not None

    @property
    def previous_reference(self) -> Optional[str]:
        if self.previous_image and self.previous_digest:
            return f"{self.previous_image}@{self.previous_digest}"
        return self.previous_image

    @property
    def new_reference(self) -> Optional[str]:
        if self.image and self.digest:
            return f"{self.image}@{self.digest}"
        return self.image

    @property
    def image_changed(self) -> bool:
        """True when the deployed image reference or digest differs from the new one."""
        if self.image is None or not self.existed:
            return False
        if self.previous_image != self.image:
            return True
        return self.digest is not None and self.previous_digest != self.digest

class PolicyDiff(BaseModel):
    added: List[NetworkPolicyRule] = []
    removed: List[NetworkPolicyRule] = []
    destinations: List[str] = []

    @property
    def empty(self) -> bool:
        return not self.added and not self.removed

class ApplyResult(BaseModel):
    target: str
    workloads: List[WorkloadApplyResult] = []
    policy_diff: PolicyDiff = Field(default_factory=PolicyDiff)
    policy_applied: bool = False
    errors: List[str] = []

    @property
    def failed_workloads(self) -> List[str]:
        return [w.name for w in self.workloads if w.status == WorkloadApplyStatus.FAILED]

    @property
    def succeeded(self) -> bool:
        return self.policy_applied and not self.failed_workloads and not self.errors

class RolloutStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"

class RolloutRecord(BaseModel):
    workload: str
    previous_image: Optional[str] = None
    new_image: str
    status: RolloutStatus = RolloutStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (RolloutStatus.COMPLETE, RolloutStatus.FAILED)
