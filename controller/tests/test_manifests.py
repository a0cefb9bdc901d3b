"""Tests for rendering resource-set entries as Kubernetes objects."""

from kubernetes import client

from controller.src.k8s.manifests import (
    DIGEST_ANNOTATION,
    MANAGED_BY_LABEL,
    RESTARTED_AT_ANNOTATION,
    deployed_workload,
    deployment_matches,
    deployment_ready,
    policy_rules,
    render_default_deny,
    render_deployment,
    render_network_policy,
    render_service,
    restart_patch,
)
from controller.src.models.resources import ExposureRule, NetworkPolicyRule, Workload

WEB = Workload(name="web", image="{{ images.web }}", replicas=2, port=8080, env={"MODE": "prod"})

def test_render_deployment():
    deployment = render_deployment("shop", WEB, "registry.local/releasex/web:latest", "sha256:abc")

    assert deployment.metadata.namespace == "shop"
    assert deployment.metadata.labels[MANAGED_BY_LABEL] == "releasex"
    assert deployment.metadata.annotations == {DIGEST_ANNOTATION: "sha256:abc"}
    assert deployment.spec.replicas == 2
    container = deployment.spec.template.spec.containers[0]
    assert container.image == "registry.local/releasex/web:latest"
    assert container.image_pull_policy == "Always"
    assert container.ports[0].container_port == 8080

def test_deployed_workload_round_trip():
    deployment = render_deployment("shop", WEB, "registry.local/releasex/web:latest", "sha256:abc")
    current = deployed_workload(deployment)
    assert (current.image, current.digest, current.replicas) == ("registry.local/releasex/web:latest", "sha256:abc", 2)

def test_deployment_matches():
    deployment = render_deployment("shop", WEB, "registry.local/releasex/web:latest", "sha256:abc")
    assert deployment_matches(deployment, WEB, "registry.local/releasex/web:latest", "sha256:abc")
    assert not deployment_matches(deployment, WEB, "registry.local/releasex/web:latest", "sha256:def")
    assert not deployment_matches(deployment, WEB.model_copy(update={"replicas": 3}), "registry.local/releasex/web:latest", None)
    assert not deployment_matches(deployment, WEB.model_copy(update={"env": {}}), "registry.local/releasex/web:latest", None)

def test_deployment_ready():
    deployment = render_deployment("shop", WEB, "web:latest")
    deployment.metadata.generation = 4
    deployment.status = client.V1DeploymentStatus(
        observed_generation=4, replicas=2, updated_replicas=2, available_replicas=2,
    )
    assert deployment_ready(deployment)

    deployment.status.updated_replicas = 1
    assert not deployment_ready(deployment)

    deployment.status.updated_replicas = 2
    deployment.status.observed_generation = 3
    assert not deployment_ready(deployment)

def test_restart_patch():
    patch = restart_patch("2024-05-01T10:00:00+00:00")
    assert patch["spec"]["template"]["metadata"]["annotations"] == {
        RESTARTED_AT_ANNOTATION: "2024-05-01T10:00:00+00:00"
    }

def test_render_service():
    exposure = ExposureRule(name="web", workload="web", port=80, type="LoadBalancer")
    service = render_service("shop", exposure, WEB)
    assert service.spec.type == "LoadBalancer"
    assert service.spec.selector == {"app.kubernetes.io/name": "web"}
    assert service.spec.ports[0].port == 80
    assert service.spec.ports[0].target_port == 8080

def test_default_deny_selects_every_pod():
    policy = render_default_deny("shop")
    assert policy.metadata.name == "releasex-default-deny"
    assert policy.spec.pod_selector.match_labels is None
    assert policy.spec.ingress is None

def test_network_policy_round_trip():
    rules = [
        NetworkPolicyRule(source="web", destination="api"),
        NetworkPolicyRule(source="*", destination="api"),
    ]
    policy = render_network_policy("shop", "api", rules)

    assert policy.metadata.name == "releasex-allow-api"
    assert policy.spec.pod_selector.match_labels == {"app.kubernetes.io/name": "api"}
    assert sorted(policy_rules(policy), key=lambda r: r.source) == sorted(rules, key=lambda r: r.source)

def test_any_source_admits_traffic_from_outside_namespace():
    policy = render_network_policy("shop", "web", [NetworkPolicyRule(source="*", destination="web")])

    assert len(policy.spec.ingress) == 1
    # No `from` clause: every namespace and external clients
    assert policy.spec.ingress[0]._from is None
    assert policy_rules(policy) == [NetworkPolicyRule(source="*", destination="web")]

def test_named_sources_stay_pod_selectors():
    policy = render_network_policy("shop", "api", [
        NetworkPolicyRule(source="web", destination="api"),
        NetworkPolicyRule(source="*", destination="api"),
    ])

    named, anywhere = policy.spec.ingress
    assert [p.pod_selector.match_labels for p in named._from] == [{"app.kubernetes.io/name": "web"}]
    assert anywhere._from is None

def test_unlabelled_policy_has_no_rules():
    policy = render_default_deny("shop")
    assert policy_rules(policy) == []
