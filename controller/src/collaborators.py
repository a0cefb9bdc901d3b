"""
Interfaces of the external systems the pipeline orchestrates.

Production implementations live in controller.src.services (Kaniko builder,
Trivy scanner, registry HTTP client) and controller.src.k8s.cluster.
"""

from typing import Dict, List, Optional, Protocol

from controller.src.models.artifact import ImageTag, ScanReport, ServiceImage, ServiceImageSpec
from controller.src.models.resources import DeployedWorkload, ExposureRule, NetworkPolicyRule, Workload
from controller.src.models.run import PipelineRun, StageExecution

class ImageBuilder(Protocol):
    async def build(self, spec: ServiceImageSpec, revision: str, repository_url: Optional[str]) -> ServiceImage:
        """Build the image and store it under its candidate tag. Raises BuildError."""
        ...

class VulnerabilityScanner(Protocol):
    async def scan(self, image: ServiceImage) -> ScanReport:
        """Raises ScanError when the scanner could not produce a report."""
        ...

class ImageRegistry(Protocol):
    async def promote(self, image: ServiceImage, tag: str) -> ImageTag:
        """Publish the candidate image under `tag`.

        Raises RegistryUnavailableError, RegistryAuthError or PushError.
        """
        ...

class ClusterClient(Protocol):
    async def read_workload(self, namespace: str, name: str) -> Optional[DeployedWorkload]:
        ...

    async def apply_workload(self, namespace: str, workload: Workload, image: str, digest: Optional[str]) -> str:
        """Create or update; returns "created", "updated" or "unchanged"."""
        ...

    async def apply_exposure(self, namespace: str, exposure: ExposureRule, workload: Workload) -> str:
        ...

    async def ensure_default_deny(self, namespace: str) -> None:
        ...

    async def read_policy_rules(self, namespace: str) -> Dict[str, List[NetworkPolicyRule]]:
        """Active allow rules keyed by destination workload."""
        ...

    async def write_policy_rules(self, namespace: str, destination: str, rules: List[NetworkPolicyRule]) -> None:
        """Replace the allow-list of one destination; an empty list removes it."""
        ...

    async def restart_workload(self, namespace: str, name: str, restarted_at: str) -> None:
        ...

    async def workload_ready(self, namespace: str, name: str) -> bool:
        ...

class OutcomeSink(Protocol):
    def run_started(self, run: PipelineRun) -> None:
        ...

    def record(self, run: PipelineRun, execution: StageExecution) -> None:
        ...

    def run_finished(self, run: PipelineRun) -> None:
        ...
