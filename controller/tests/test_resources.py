"""Tests for pipeline configuration and resource-set parsing."""

import pytest

from controller.src.errors import ConfigurationError
from controller.src.models.pipeline import Trigger, deployment_target, parse_pipeline_config
from controller.src.models.resources import parse_resource_set
from controller.src.stages.resolver import resolve_services
from controller.tests.fakes import make_trigger

PIPELINE = """
name: shop
services:
  - name: web
    context: services/web
  - name: api
    context: services/api
    dockerfile: Dockerfile.prod
target:
  namespace: shop
  resources: deploy/resources.yml
gate:
  threshold: critical
  mode: warn-only
"""

RESOURCES = """
namespace: shop
workloads:
  - name: web
    image: "{{ images.web }}"
    port: 8080
  - name: cache
    image: redis:7
exposures:
  - name: web
    workload: web
    port: 80
network_policies:
  - source: web
    destination: cache
"""

def test_parse_pipeline_config():
    config = parse_pipeline_config(PIPELINE)
    assert [s.name for s in config.services] == ["web", "api"]
    assert config.services[1].dockerfile == "Dockerfile.prod"
    assert config.target.resources == "deploy/resources.yml"
    assert config.gate.threshold.value == "critical"
    assert config.gate.mode.value == "warn"

def test_duplicate_services_rejected():
    with pytest.raises(ConfigurationError, match="unique"):
        parse_pipeline_config({"services": [{"name": "web", "context": "."}, {"name": "web", "context": "x"}]})

def test_empty_pipeline_rejected():
    with pytest.raises(ConfigurationError):
        parse_pipeline_config("")

def test_parse_resource_set():
    resources = parse_resource_set(RESOURCES)
    assert [w.service for w in resources.workloads] == ["web", None]
    assert resources.workload("cache").image == "redis:7"
    assert resources.network_policies[0].pair == ("web", "cache")

def test_exposure_must_reference_workload():
    with pytest.raises(ConfigurationError, match="unknown workload"):
        parse_resource_set({"namespace": "shop", "exposures": [{"name": "x", "workload": "ghost", "port": 80}]})

def test_invalid_namespace_rejected():
    with pytest.raises(ConfigurationError):
        parse_resource_set({"namespace": "Shop_Prod"})

def test_deployment_target_binds_cluster():
    target = deployment_target(parse_pipeline_config(PIPELINE), parse_resource_set(RESOURCES), "prod-eu")
    assert target.key == "prod-eu/shop"

def test_deployment_target_namespace_mismatch():
    resources = parse_resource_set({"namespace": "blog"})
    with pytest.raises(ConfigurationError, match="does not match"):
        deployment_target(parse_pipeline_config(PIPELINE), resources, "prod-eu")

def test_trigger_from_config():
    trigger = Trigger.from_config(parse_pipeline_config(PIPELINE), revision=" abc123 ")
    assert trigger.revision == "abc123"
    assert trigger.gate.mode.value == "warn"

def test_resolve_services():
    specs = resolve_services(make_trigger("web", "api"), "registry.local", "releasex", "latest")
    assert [s.candidate_reference for s in specs] == [
        "registry.local/releasex/web:candidate-0123456789ab",
        "registry.local/releasex/api:candidate-0123456789ab",
    ]
    assert {s.stable_tag for s in specs} == {"latest"}

def test_candidate_prefixed_stable_tag_rejected():
    with pytest.raises(ConfigurationError, match="collides"):
        resolve_services(make_trigger("web", stable_tag="candidate-x"), "registry.local", "releasex", "latest")

def test_empty_trigger_rejected():
    with pytest.raises(ConfigurationError):
        resolve_services(make_trigger(), "registry.local", "releasex", "latest")
