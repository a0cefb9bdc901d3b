"""
Release pipeline YAML parser and validator (.releasex.yml and resource sets).
"""

import re
import yaml
from typing import List, Dict, Any, Optional

SEVERITIES = ["low", "medium", "high", "critical"]
GATE_MODES = ["strict", "warn", "warn-only"]
SERVICE_NAME = re.compile(r"^[a-z0-9][a-z0-9-]{0,52}$")
NAMESPACE_NAME = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

class PipelineConfigError(Exception):
    """Raised when pipeline configuration is invalid."""
    pass

def parse_pipeline_config(yaml_content: str) -> Dict[str, Any]:
    """Parse pipeline YAML configuration from string."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise PipelineConfigError(f"Invalid YAML: {e}")

    return validate_config(config)

def parse_pipeline_dict(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate pipeline configuration from dict."""
    return validate_config(config)

def validate_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate pipeline configuration structure."""
    if not config:
        raise PipelineConfigError("Empty pipeline configuration")

    if not isinstance(config, dict):
        raise PipelineConfigError("Pipeline configuration must be a dictionary")

    # Validate name (optional but recommended)
    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise PipelineConfigError("Pipeline 'name' must be a string")

    # Validate services
    if "services" not in config:
        raise PipelineConfigError("Pipeline must have 'services' defined")

    services = config["services"]
    if not isinstance(services, list):
        raise PipelineConfigError("Pipeline 'services' must be a list")

    if len(services) == 0:
        raise PipelineConfigError("Pipeline must have at least one service")

    validated_services = []
    seen = set()
    for i, service in enumerate(services):
        validated_service = validate_service(service, i)
        if validated_service["name"] in seen:
            raise PipelineConfigError(f"Service '{validated_service['name']}' declared more than once")
        seen.add(validated_service["name"])
        validated_services.append(validated_service)

    validated = {
        "name": name,
        "services": validated_services,
    }

    if config.get("target") is not None:
        validated["target"] = validate_target(config["target"])

    if config.get("gate") is not None:
        validated["gate"] = validate_gate(config["gate"])

    stable_tag = config.get("stable_tag")
    if stable_tag is not None:
        if not isinstance(stable_tag, str) or not stable_tag:
            raise PipelineConfigError("Pipeline 'stable_tag' must be a non-empty string")
        if stable_tag.startswith("candidate-"):
            raise PipelineConfigError("Pipeline 'stable_tag' must not start with 'candidate-'")
        validated["stable_tag"] = stable_tag

    return validated

def validate_service(service: Dict[str, Any], index: int) -> Dict[str, Any]:
    """Validate a single service declaration."""
    if not isinstance(service, dict):
        raise PipelineConfigError(f"Service {index} must be a dictionary")

    # Required fields
    if "name" not in service:
        raise PipelineConfigError(f"Service {index} missing 'name'")

    if "context" not in service:
        raise PipelineConfigError(f"Service {index} missing 'context'")

    # Validate types
    if not isinstance(service["name"], str) or not SERVICE_NAME.match(service["name"]):
        raise PipelineConfigError(f"Service {index} 'name' must be lowercase alphanumeric or '-'")

    if not isinstance(service["context"], str):
        raise PipelineConfigError(f"Service {index} 'context' must be a string")

    dockerfile = service.get("dockerfile", "Dockerfile")
    if not isinstance(dockerfile, str):
        raise PipelineConfigError(f"Service {index} 'dockerfile' must be a string")

    return {
        "name": service["name"],
        "context": service["context"],
        "dockerfile": dockerfile,
    }

def validate_target(target: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(target, dict):
        raise PipelineConfigError("Pipeline 'target' must be a dictionary")

    namespace = target.get("namespace")
    if not isinstance(namespace, str) or not NAMESPACE_NAME.match(namespace):
        raise PipelineConfigError("Target 'namespace' must be a valid namespace name")

    resources = target.get("resources", "resources.yml")
    if not isinstance(resources, str):
        raise PipelineConfigError("Target 'resources' must be a path")

    validated = {"namespace": namespace, "resources": resources}
    if target.get("cluster") is not None:
        validated["cluster"] = str(target["cluster"])
    return validated

def validate_gate(gate: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(gate, dict):
        raise PipelineConfigError("Pipeline 'gate' must be a dictionary")

    threshold = str(gate.get("threshold", "high")).lower()
    if threshold not in SEVERITIES:
        raise PipelineConfigError(f"Gate 'threshold' must be one of: {', '.join(SEVERITIES)}")

    mode = str(gate.get("mode", "strict")).lower()
    if mode not in GATE_MODES:
        raise PipelineConfigError("Gate 'mode' must be 'strict' or 'warn'")

    return {"threshold": threshold, "mode": "warn" if mode == "warn-only" else mode}

def validate_resource_set(resources: Optional[Dict[str, Any]], namespace: str) -> Dict[str, Any]:
    """Structural checks on the resource-set file; the controller validates the policy graph."""
    if not resources or not isinstance(resources, dict):
        raise PipelineConfigError("Resource set must be a non-empty dictionary")

    if resources.get("namespace") != namespace:
        raise PipelineConfigError(
            f"Resource set namespace '{resources.get('namespace')}' does not match target '{namespace}'"
        )

    for key in ["workloads", "exposures", "network_policies"]:
        value = resources.get(key, [])
        if not isinstance(value, list):
            raise PipelineConfigError(f"Resource set '{key}' must be a list")

    names: List[str] = []
    for i, workload in enumerate(resources.get("workloads", [])):
        if not isinstance(workload, dict) or "name" not in workload or "image" not in workload:
            raise PipelineConfigError(f"Workload {i} needs 'name' and 'image'")
        names.append(workload["name"])

    for i, exposure in enumerate(resources.get("exposures", [])):
        if not isinstance(exposure, dict) or exposure.get("workload") not in names:
            raise PipelineConfigError(f"Exposure {i} must reference a declared workload")

    return resources
