"""
Pipeline configuration (.releasex.yml) and trigger models.
"""

import re
from pydantic import BaseModel, ValidationError, field_validator, model_validator
from typing import Any, Dict, List, Optional, Union

import yaml

from controller.src.errors import ConfigurationError
from controller.src.models.artifact import GatePolicy
from controller.src.models.resources import DeploymentTarget, ResourceSet

SERVICE_NAME = re.compile(r"^[a-z0-9][a-z0-9-]{0,52}$")

class ServiceDeclaration(BaseModel):
    name: str
    context: str
    dockerfile: str = "Dockerfile"

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        if not SERVICE_NAME.match(value):
            raise ValueError(f"Service name '{value}' must be lowercase alphanumeric or '-'")
        return value

class TargetConfig(BaseModel):
    cluster: Optional[str] = None
    namespace: str
    resources: str = "resources.yml"

class PipelineConfig(BaseModel):
    name: str = "Unnamed Pipeline"
    services: List[ServiceDeclaration]
    target: Optional[TargetConfig] = None
    gate: Optional[GatePolicy] = None
    stable_tag: Optional[str] = None

    @model_validator(mode="after")
    def _unique_services(self):
        if not self.services:
            raise ValueError("Pipeline must declare at least one service")
        names = [s.name for s in self.services]
        if len(names) != len(set(names)):
            raise ValueError("Service names must be unique")
        return self

def parse_pipeline_config(content: Union[str, Dict[str, Any]]) -> PipelineConfig:
    if isinstance(content, str):
        try:
            content = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid pipeline YAML: {e}")

    if not content or not isinstance(content, dict):
        raise ConfigurationError("Pipeline configuration must be a non-empty mapping")

    try:
        return PipelineConfig.model_validate(content)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid pipeline configuration: {e}")

def load_pipeline_config(path: str) -> PipelineConfig:
    try:
        with open(path, "r") as f:
            return parse_pipeline_config(f.read())
    except OSError as e:
        raise ConfigurationError(f"Cannot read pipeline configuration {path}: {e}")

def deployment_target(config: PipelineConfig, resources: ResourceSet, default_cluster: str) -> DeploymentTarget:
    """Bind the pipeline's target section to its loaded resource set."""
    if config.target is None:
        raise ConfigurationError(f"Pipeline '{config.name}' declares no deployment target")
    try:
        return DeploymentTarget(
            cluster=config.target.cluster or default_cluster,
            namespace=config.target.namespace,
            resources=resources,
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid deployment target: {e}")

class Trigger(BaseModel):
    """A push on a tracked revision: what to build and from where."""
    revision: str
    branch: str = "main"
    repository: Optional[str] = None  # clone URL
    services: List[ServiceDeclaration]
    triggered_by: Optional[str] = None
    gate: Optional[GatePolicy] = None
    stable_tag: Optional[str] = None

    @field_validator("revision")
    @classmethod
    def _non_empty_revision(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Trigger revision must not be empty")
        return value.strip()

    @property
    def short_revision(self) -> str:
        return self.revision[:12]

    @classmethod
    def from_config(cls, config: PipelineConfig, revision: str, **kwargs) -> "Trigger":
        try:
            return cls(
                revision=revision,
                services=config.services,
                gate=config.gate,
                stable_tag=config.stable_tag,
                **kwargs,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid trigger: {e}")
