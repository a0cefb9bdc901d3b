"""
Render resource-set entries as Kubernetes objects, and read them back.

Objects owned by the controller carry the managed-by label; network policies
are one object per destination workload plus the namespace default-deny.
"""

from kubernetes import client
from typing import Dict, List, Optional

from controller.src.models.resources import (
    ANY_SOURCE,
    DeployedWorkload,
    ExposureRule,
    NetworkPolicyRule,
    Workload,
)

MANAGED_BY = "releasex"
NAME_LABEL = "app.kubernetes.io/name"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
DESTINATION_LABEL = "releasex.io/destination"
DIGEST_ANNOTATION = "releasex.io/image-digest"
RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"

DEFAULT_DENY_NAME = "releasex-default-deny"
POLICY_PREFIX = "releasex-allow-"

def workload_labels(name: str) -> Dict[str, str]:
    return {NAME_LABEL: name, MANAGED_BY_LABEL: MANAGED_BY}

def policy_name(destination: str) -> str:
    return f"{POLICY_PREFIX}{destination}"

def render_deployment(namespace: str, workload: Workload, image: str, digest: Optional[str] = None) -> client.V1Deployment:
    labels = workload_labels(workload.name)
    annotations = {DIGEST_ANNOTATION: digest} if digest else None

    ports = None
    if workload.port:
        ports = [client.V1ContainerPort(container_port=workload.port)]

    container = client.V1Container(
        name=workload.name,
        image=image,
        # Stable tags move; always resolve the tag on pod start
        image_pull_policy="Always",
        ports=ports,
        env=[client.V1EnvVar(name=k, value=v) for k, v in sorted(workload.env.items())] or None,
    )

    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(
            name=workload.name,
            namespace=namespace,
            labels=labels,
            annotations=annotations,
        ),
        spec=client.V1DeploymentSpec(
            replicas=workload.replicas,
            selector=client.V1LabelSelector(match_labels={NAME_LABEL: workload.name}),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(containers=[container]),
            ),
        ),
    )

def deployed_workload(deployment: client.V1Deployment) -> DeployedWorkload:
    containers = deployment.spec.template.spec.containers
    annotations = deployment.metadata.annotations or {}
    return DeployedWorkload(
        name=deployment.metadata.name,
        image=containers[0].image if containers else "",
        digest=annotations.get(DIGEST_ANNOTATION),
        replicas=deployment.spec.replicas or 0,
    )

def deployment_matches(
    deployment: client.V1Deployment,
    workload: Workload,
    image: str,
    digest: Optional[str],
) -> bool:
    """True when the live Deployment already has the desired spec."""
    current = deployed_workload(deployment)
    if current.image != image or current.replicas != workload.replicas:
        return False
    if digest is not None and current.digest != digest:
        return False

    container = deployment.spec.template.spec.containers[0]
    live_env = {e.name: e.value for e in (container.env or [])}
    if live_env != workload.env:
        return False

    live_ports = [p.container_port for p in (container.ports or [])]
    return live_ports == ([workload.port] if workload.port else [])

def deployment_ready(deployment: client.V1Deployment) -> bool:
    """All replicas updated to the latest template and available."""
    status = deployment.status
    if status is None:
        return False
    desired = deployment.spec.replicas if deployment.spec.replicas is not None else 1
    if (status.observed_generation or 0) < (deployment.metadata.generation or 0):
        return False
    return (
        (status.updated_replicas or 0) == desired
        and (status.available_replicas or 0) == desired
        and (status.replicas or 0) == desired
    )

def restart_patch(restarted_at: str) -> dict:
    return {
        "spec": {
            "template": {
                "metadata": {"annotations": {RESTARTED_AT_ANNOTATION: restarted_at}}
            }
        }
    }

def render_service(namespace: str, exposure: ExposureRule, workload: Workload) -> client.V1Service:
    port = client.V1ServicePort(
        port=exposure.port,
        target_port=exposure.target_port or workload.port or exposure.port,
        node_port=exposure.node_port,
        protocol="TCP",
    )
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=exposure.name,
            namespace=namespace,
            labels=workload_labels(workload.name),
        ),
        spec=client.V1ServiceSpec(
            type=exposure.type.value,
            selector={NAME_LABEL: workload.name},
            ports=[port],
        ),
    )

def render_default_deny(namespace: str) -> client.V1NetworkPolicy:
    return client.V1NetworkPolicy(
        api_version="networking.k8s.io/v1",
        kind="NetworkPolicy",
        metadata=client.V1ObjectMeta(
            name=DEFAULT_DENY_NAME,
            namespace=namespace,
            labels={MANAGED_BY_LABEL: MANAGED_BY},
        ),
        spec=client.V1NetworkPolicySpec(
            pod_selector=client.V1LabelSelector(),
            policy_types=["Ingress"],
        ),
    )

def render_network_policy(namespace: str, destination: str, rules: List[NetworkPolicyRule]) -> client.V1NetworkPolicy:
    """Allow-list of one destination workload.

    Named sources become pod selector peers. The any-source rule is an
    ingress entry without a `from` clause, which admits traffic from other
    namespaces and from outside the cluster.
    """
    peers = [
        client.V1NetworkPolicyPeer(
            pod_selector=client.V1LabelSelector(match_labels={NAME_LABEL: rule.source})
        )
        for rule in sorted(rules, key=lambda r: r.source)
        if rule.source != ANY_SOURCE
    ]

    ingress = []
    if peers:
        ingress.append(client.V1NetworkPolicyIngressRule(_from=peers))
    if any(rule.source == ANY_SOURCE for rule in rules):
        ingress.append(client.V1NetworkPolicyIngressRule())

    return client.V1NetworkPolicy(
        api_version="networking.k8s.io/v1",
        kind="NetworkPolicy",
        metadata=client.V1ObjectMeta(
            name=policy_name(destination),
            namespace=namespace,
            labels={MANAGED_BY_LABEL: MANAGED_BY, DESTINATION_LABEL: destination},
        ),
        spec=client.V1NetworkPolicySpec(
            pod_selector=client.V1LabelSelector(match_labels={NAME_LABEL: destination}),
            policy_types=["Ingress"],
            ingress=ingress,
        ),
    )

def policy_rules(policy: client.V1NetworkPolicy) -> List[NetworkPolicyRule]:
    """Read back the allow rules of a policy written by render_network_policy."""
    labels = policy.metadata.labels or {}
    destination = labels.get(DESTINATION_LABEL)
    if destination is None:
        return []

    rules = []
    for ingress in policy.spec.ingress or []:
        if not ingress._from:
            rules.append(NetworkPolicyRule(source=ANY_SOURCE, destination=destination, allowed=True))
            continue
        for peer in ingress._from:
            selector = peer.pod_selector
            match = (selector.match_labels or {}) if selector else {}
            source = match.get(NAME_LABEL)
            if source is None:
                # Not a peer this module writes
                continue
            rules.append(NetworkPolicyRule(source=source, destination=destination, allowed=True))
    return rules
