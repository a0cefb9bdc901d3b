"""
DeployStage - apply the declarative resource set to one target.

Order inside the runner's exclusive context:
    validate -> network policies (atomic) -> workloads -> exposures
"""

import logging
from typing import Dict, Iterable, Optional

from controller.src.errors import ConfigurationError, ReleaseError
from controller.src.models.artifact import ImageTag
from controller.src.models.resources import (
    ApplyResult,
    DeploymentTarget,
    Workload,
    WorkloadApplyResult,
    WorkloadApplyStatus,
)
from controller.src.runner import Runner
from controller.src.stages.network_policy import NetworkPolicyEnforcer

logger = logging.getLogger(__name__)

class DeployStage:
    def __init__(self, runner: Runner):
        self.runner = runner
        self.policies = NetworkPolicyEnforcer(runner)

    def validate(self, target: DeploymentTarget):
        """Raise ConfigurationError before anything is sent to the cluster."""
        graph = self.policies.validate(target)
        for workload in target.resources.workloads:
            if workload.service is None and "{{" in workload.image:
                raise ConfigurationError(f"Workload '{workload.name}' has a malformed image placeholder: {workload.image}")
        return graph

    async def deploy(
        self,
        target: DeploymentTarget,
        resolved_tags: Dict[str, ImageTag],
        excluded: Optional[Iterable[str]] = None,
    ) -> ApplyResult:
        """Apply the resource set.

        `resolved_tags` maps service name to its published image. Workloads
        bound to a service without a resolved tag keep what is deployed.
        """
        self.runner.require(target)
        excluded = set(excluded or ())
        result = ApplyResult(target=target.key)

        desired = self.validate(target)

        try:
            result.policy_diff = await self.policies.apply(target, desired)
            result.policy_applied = True
        except ConfigurationError:
            raise
        except ReleaseError as e:
            result.errors.append(str(e))
            for workload in target.resources.workloads:
                result.workloads.append(WorkloadApplyResult(
                    name=workload.name,
                    service=workload.service,
                    status=WorkloadApplyStatus.SKIPPED,
                    error="network policy apply failed",
                ))
            return result

        for workload in target.resources.workloads:
            result.workloads.append(await self._apply_workload(target, workload, resolved_tags, excluded))

        for exposure in target.resources.exposures:
            workload = target.resources.workload(exposure.workload)
            try:
                await self.runner.dispatch(
                    target,
                    f"apply exposure {exposure.name}",
                    self.runner.cluster.apply_exposure,
                    target.namespace,
                    exposure,
                    workload,
                )
            except ConfigurationError:
                raise
            except ReleaseError as e:
                logger.error(f"Exposure {exposure.name} failed on {target.key}: {e}")
                result.errors.append(f"exposure {exposure.name}: {e}")

        if result.failed_workloads:
            logger.error(f"Deployment to {target.key} partially failed: {result.failed_workloads}")
        else:
            logger.info(f"Deployment to {target.key} applied")
        return result

    async def _apply_workload(
        self,
        target: DeploymentTarget,
        workload: Workload,
        resolved_tags: Dict[str, ImageTag],
        excluded,
    ) -> WorkloadApplyResult:
        service = workload.service
        if service is not None and service not in resolved_tags:
            reason = "excluded from this run" if service in excluded else "not built in this run"
            logger.info(f"Skipping workload {workload.name}: service {service} {reason}")
            return WorkloadApplyResult(
                name=workload.name,
                service=service,
                status=WorkloadApplyStatus.SKIPPED,
                error=reason,
            )

        if service is not None:
            tag = resolved_tags[service]
            image, digest = tag.reference, tag.digest
        else:
            image, digest = workload.image, None

        cluster = self.runner.cluster
        try:
            current = (await self.runner.dispatch(
                target, f"read workload {workload.name}", cluster.read_workload, target.namespace, workload.name,
            )).value
            outcome = (await self.runner.dispatch(
                target,
                f"apply workload {workload.name}",
                cluster.apply_workload,
                target.namespace,
                workload,
                image,
                digest,
            )).value
        except ConfigurationError:
            raise
        except ReleaseError as e:
            logger.error(f"Workload {workload.name} failed on {target.key}: {e}")
            return WorkloadApplyResult(
                name=workload.name,
                service=service,
                status=WorkloadApplyStatus.FAILED,
                image=image,
                digest=digest,
                error=str(e),
            )

        return WorkloadApplyResult(
            name=workload.name,
            service=service,
            status=WorkloadApplyStatus(outcome),
            previous_image=current.image if current else None,
            previous_digest=current.digest if current else None,
            image=image,
            digest=digest,
        )
