"""
RolloutStage - force running workloads onto their newly published image.

A tag-only bump leaves the declarative spec unchanged, so the restart has to be
signalled explicitly. Failure (no healthy replacement within the timeout) is
reported on the record; rolling back is a separate operator action.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

from controller.src.errors import ConfigurationError, ReleaseError
from controller.src.models.resources import (
    ApplyResult,
    DeploymentTarget,
    RolloutRecord,
    RolloutStatus,
    WorkloadApplyResult,
)
from controller.src.models.run import utcnow
from controller.src.runner import Runner
from controller.src.stages.fanout import fan_out

logger = logging.getLogger(__name__)

class RolloutStage:
    def __init__(
        self,
        runner: Runner,
        timeout: float = 300,
        poll_interval: float = 2.0,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.runner = runner
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._sleep = sleep

    @staticmethod
    def needs_rollout(workload: WorkloadApplyResult) -> bool:
        """Only workloads that already ran and whose image changed are restarted."""
        return workload.image_changed

    def select(self, apply_result: ApplyResult) -> List[WorkloadApplyResult]:
        return [w for w in apply_result.workloads if self.needs_rollout(w)]

    async def rollout(
        self,
        target: DeploymentTarget,
        workload: str,
        new_image: str,
        previous_image: Optional[str] = None,
    ) -> RolloutRecord:
        self.runner.require(target)
        cluster = self.runner.cluster
        record = RolloutRecord(workload=workload, previous_image=previous_image, new_image=new_image)

        record.status = RolloutStatus.IN_PROGRESS
        record.started_at = utcnow()
        logger.info(f"Rolling out {workload} on {target.key}: {previous_image} -> {new_image}")

        try:
            await self.runner.dispatch(
                target,
                f"restart {workload}",
                cluster.restart_workload,
                target.namespace,
                workload,
                record.started_at.isoformat(),
            )
            healthy = await self._wait_until_ready(target, workload)
        except ConfigurationError:
            raise
        except ReleaseError as e:
            return self._finish(record, RolloutStatus.FAILED, f"Restart failed: {e}")

        if healthy:
            return self._finish(record, RolloutStatus.COMPLETE, "Replacement pods healthy")
        return self._finish(record, RolloutStatus.FAILED, f"Timed out after {self.timeout}s waiting for healthy replacement")

    async def rollout_all(self, target: DeploymentTarget, apply_result: ApplyResult) -> List[RolloutRecord]:
        """Roll out every changed workload in parallel."""
        selected = self.select(apply_result)
        if not selected:
            logger.info(f"No workload on {target.key} needs a rollout")
            return []

        return await fan_out(
            self.rollout(target, w.name, w.new_reference, w.previous_reference)
            for w in selected
        )

    async def _wait_until_ready(self, target: DeploymentTarget, workload: str) -> bool:
        deadline = time.monotonic() + self.timeout
        while True:
            ready = (await self.runner.dispatch(
                target, f"check {workload}", self.runner.cluster.workload_ready, target.namespace, workload,
            )).value
            if ready:
                return True
            if time.monotonic() >= deadline:
                logger.error(f"Rollout of {workload} on {target.key} timed out")
                return False
            await self._sleep(self.poll_interval)

    @staticmethod
    def _finish(record: RolloutRecord, status: RolloutStatus, message: str) -> RolloutRecord:
        record.status = status
        record.message = message
        record.finished_at = utcnow()
        log = logger.info if status == RolloutStatus.COMPLETE else logger.error
        log(f"Rollout of {record.workload}: {status.value} ({message})")
        return record
