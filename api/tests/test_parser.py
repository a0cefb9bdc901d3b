"""Tests for pipeline parser."""

import pytest
from api.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    validate_resource_set,
    PipelineConfigError,
)

def test_valid_pipeline():
    config = """
name: Shop
services:
  - name: web
    context: services/web
  - name: api
    context: services/api
    dockerfile: Dockerfile.prod
target:
  cluster: prod-eu
  namespace: shop
  resources: deploy/resources.yml
gate:
  threshold: HIGH
  mode: warn-only
"""
    result = parse_pipeline_config(config)
    assert result["name"] == "Shop"
    assert len(result["services"]) == 2
    assert result["services"][0]["dockerfile"] == "Dockerfile"
    assert result["services"][1]["dockerfile"] == "Dockerfile.prod"
    assert result["target"] == {
        "namespace": "shop",
        "resources": "deploy/resources.yml",
        "cluster": "prod-eu",
    }
    assert result["gate"] == {"threshold": "high", "mode": "warn"}

def test_missing_services():
    config = """
name: Bad Pipeline
"""
    with pytest.raises(PipelineConfigError, match="must have 'services'"):
        parse_pipeline_config(config)

def test_missing_service_context():
    config = """
services:
  - name: web
"""
    with pytest.raises(PipelineConfigError, match="missing 'context'"):
        parse_pipeline_config(config)

def test_duplicate_service():
    config = {
        "services": [
            {"name": "web", "context": "."},
            {"name": "web", "context": "other"},
        ]
    }
    with pytest.raises(PipelineConfigError, match="more than once"):
        parse_pipeline_dict(config)

def test_invalid_service_name():
    with pytest.raises(PipelineConfigError, match="lowercase"):
        parse_pipeline_dict({"services": [{"name": "Web_App", "context": "."}]})

def test_unknown_gate_threshold():
    config = {
        "services": [{"name": "web", "context": "."}],
        "gate": {"threshold": "severe"},
    }
    with pytest.raises(PipelineConfigError, match="threshold"):
        parse_pipeline_dict(config)

def test_candidate_stable_tag_rejected():
    config = {
        "services": [{"name": "web", "context": "."}],
        "stable_tag": "candidate-abc",
    }
    with pytest.raises(PipelineConfigError, match="candidate-"):
        parse_pipeline_dict(config)

def test_empty_config():
    with pytest.raises(PipelineConfigError, match="Empty"):
        parse_pipeline_config("")

def test_dict_parsing():
    config = {
        "name": "Dict Pipeline",
        "services": [{"name": "web", "context": "."}],
    }
    result = parse_pipeline_dict(config)
    assert result["name"] == "Dict Pipeline"
    assert "target" not in result

def test_resource_set_namespace_must_match():
    with pytest.raises(PipelineConfigError, match="does not match"):
        validate_resource_set({"namespace": "other", "workloads": []}, "shop")

def test_resource_set_exposure_needs_workload():
    resources = {
        "namespace": "shop",
        "workloads": [{"name": "web", "image": "web"}],
        "exposures": [{"workload": "api", "port": 80}],
    }
    with pytest.raises(PipelineConfigError, match="Exposure 0"):
        validate_resource_set(resources, "shop")

def test_resource_set_valid():
    resources = {
        "namespace": "shop",
        "workloads": [{"name": "web", "image": "web"}],
        "exposures": [{"workload": "web", "port": 80}],
        "network_policies": [{"from": "*", "to": "web"}],
    }
    assert validate_resource_set(resources, "shop") is resources
