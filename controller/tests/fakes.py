"""In-memory collaborators for controller tests."""

import asyncio
from typing import Dict, List, Optional, Set

from controller.src.errors import (
    BuildError,
    ClusterError,
    ClusterUnavailableError,
    RegistryUnavailableError,
)
from controller.src.models.artifact import ImageTag, ScanFinding, ScanReport, ServiceImage, Severity
from controller.src.models.pipeline import ServiceDeclaration, Trigger
from controller.src.models.resources import (
    DeployedWorkload,
    DeploymentTarget,
    NetworkPolicyRule,
    ResourceSet,
)

REVISION = "0123456789abcdef0123"

def digest_for(name: str) -> str:
    return "sha256:" + (name.encode().hex() * 64)[:64]

async def no_sleep(_delay):
    return None

class FakeBuilder:
    def __init__(self, failing: Optional[Set[str]] = None, block: bool = False):
        self.failing = failing or set()
        self.built: List[str] = []
        self.started = asyncio.Event()
        self.block = block

    async def build(self, spec, revision, repository_url):
        self.started.set()
        if self.block:
            await asyncio.Event().wait()
        if spec.name in self.failing:
            raise BuildError(f"Dockerfile for {spec.name} does not build")
        self.built.append(spec.name)
        return ServiceImage(
            name=spec.name,
            context=spec.context,
            repository=spec.repository,
            tag=spec.candidate_tag,
            stable_tag=spec.stable_tag,
            digest=digest_for(spec.name),
        )

class FakeScanner:
    """`outages[name]` calls per service fail with a dropped connection."""

    def __init__(self, findings: Optional[Dict[str, List[Severity]]] = None, outages: Optional[Dict[str, int]] = None):
        self.findings = findings or {}
        self.outages = dict(outages or {})
        self.scanned: List[str] = []

    async def scan(self, image):
        self.scanned.append(image.name)
        if self.outages.get(image.name, 0) > 0:
            self.outages[image.name] -= 1
            raise ConnectionResetError(f"connection to apiserver reset while scanning {image.name}")
        return ScanReport(
            image=image.reference,
            findings=[
                ScanFinding(severity=severity, identifier=f"CVE-2024-{i:04d}", component="openssl")
                for i, severity in enumerate(self.findings.get(image.name, []))
            ],
        )

class FakeRegistry:
    """Fails the first `failures[name]` promote calls of a service."""

    def __init__(self, failures: Optional[Dict[str, int]] = None, error=RegistryUnavailableError):
        self.failures = dict(failures or {})
        self.error = error
        self.calls: Dict[str, int] = {}
        self.published: List[str] = []

    async def promote(self, image, tag):
        self.calls[image.name] = self.calls.get(image.name, 0) + 1
        if self.failures.get(image.name, 0) > 0:
            self.failures[image.name] -= 1
            raise self.error(f"registry unavailable for {image.name}")
        self.published.append(image.name)
        return ImageTag(service=image.name, repository=image.repository, tag=tag, digest=image.digest)

class FakeCluster:
    """In-memory cluster state plus failure injection."""

    def __init__(self):
        self.workloads: Dict[str, DeployedWorkload] = {}
        self.policies: Dict[str, List[NetworkPolicyRule]] = {}
        self.default_deny = False
        self.exposures: Dict[str, str] = {}
        self.restarts: List[str] = []
        self.not_ready: Set[str] = set()
        self.fail_policy_writes: Set[str] = set()
        self.fail_default_deny = False
        self.fail_workloads: Set[str] = set()
        # Calls that hang (once) until cancelled; `blocked` is set when one does
        self.block_policy_writes: Set[str] = set()
        self.block_ready: Set[str] = set()
        self.blocked = asyncio.Event()
        self.log: List[str] = []

    async def read_workload(self, namespace, name):
        return self.workloads.get(name)

    async def apply_workload(self, namespace, workload, image, digest):
        self.log.append(f"workload {workload.name}")
        if workload.name in self.fail_workloads:
            raise ClusterError(f"admission webhook rejected {workload.name}")
        current = self.workloads.get(workload.name)
        self.workloads[workload.name] = DeployedWorkload(
            name=workload.name, image=image, digest=digest, replicas=workload.replicas,
        )
        if current is None:
            return "created"
        if current.image == image and current.digest == digest and current.replicas == workload.replicas:
            return "unchanged"
        return "updated"

    async def apply_exposure(self, namespace, exposure, workload):
        self.log.append(f"exposure {exposure.name}")
        self.exposures[exposure.name] = workload.name
        return "created"

    async def ensure_default_deny(self, namespace):
        self.log.append("default-deny")
        if self.fail_default_deny:
            raise ClusterError("default deny rejected")
        self.default_deny = True

    async def read_policy_rules(self, namespace):
        return {d: list(rules) for d, rules in self.policies.items()}

    async def write_policy_rules(self, namespace, destination, rules):
        self.log.append(f"policy {destination}")
        if destination in self.fail_policy_writes:
            raise ClusterError(f"policy for {destination} rejected")
        if rules:
            self.policies[destination] = list(rules)
        else:
            self.policies.pop(destination, None)
        if destination in self.block_policy_writes:
            self.block_policy_writes.discard(destination)
            await self._hang()

    async def restart_workload(self, namespace, name, restarted_at):
        self.restarts.append(name)

    async def workload_ready(self, namespace, name):
        if name in self.block_ready:
            self.block_ready.discard(name)
            await self._hang()
        return name not in self.not_ready

    async def _hang(self):
        self.blocked.set()
        await asyncio.Event().wait()

class FlakyCluster(FakeCluster):
    """Cluster whose first `outages` calls to workload_ready are unreachable."""

    def __init__(self, outages: int):
        super().__init__()
        self.outages = outages

    async def workload_ready(self, namespace, name):
        if self.outages:
            self.outages -= 1
            raise ClusterUnavailableError("apiserver timeout")
        return await super().workload_ready(namespace, name)

class ListOutcomeSink:
    def __init__(self):
        self.events: List[str] = []
        self.records = []

    def run_started(self, run):
        self.events.append("run_started")

    def record(self, run, execution):
        self.records.append((execution.stage.value, execution.artifact, execution.status.value))

    def run_finished(self, run):
        self.events.append("run_finished")

def allow(source: str, destination: str) -> NetworkPolicyRule:
    return NetworkPolicyRule(source=source, destination=destination)

def make_target(**resources) -> DeploymentTarget:
    resources.setdefault("namespace", "shop")
    return DeploymentTarget(cluster="test", namespace=resources["namespace"], resources=ResourceSet(**resources))

def make_trigger(*names: str, **kwargs) -> Trigger:
    return Trigger(
        revision=REVISION,
        services=[ServiceDeclaration(name=n, context=f"services/{n}") for n in names],
        **kwargs,
    )

