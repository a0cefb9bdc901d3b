"""
Pipeline executor - sequences Build -> Scan -> Gate -> Push -> Deploy -> Rollout.

A stage never starts before every artifact of the previous stage finished.
An artifact that fails any stage is excluded from the later ones while the
others continue; a ConfigurationError aborts the whole run.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import redis.asyncio
from pydantic import ValidationError

from controller.src.config import get_settings
from controller.src.collaborators import ImageBuilder, ImageRegistry, OutcomeSink, VulnerabilityScanner
from controller.src.errors import (
    ConfigurationError,
    PartialDeploymentFailure,
    ReleaseError,
    SecurityGateFailure,
)
from controller.src.models.artifact import GatePolicy, ServiceImage
from controller.src.models.pipeline import Trigger, deployment_target, parse_pipeline_config
from controller.src.models.resources import (
    ApplyResult,
    DeploymentTarget,
    RolloutStatus,
    WorkloadApplyStatus,
    parse_resource_set,
)
from controller.src.models.run import PipelineRun, RunStatus, StageExecution, StageName
from controller.src.retry import RetryConfig, RetryPolicy
from controller.src.runner import LocalTargetLock, RedisTargetLock, Runner
from controller.src.k8s.cluster import KubernetesCluster
from controller.src.services.builder import KanikoBuilder
from controller.src.services.registry import RegistryClient
from controller.src.services.scanner import TrivyScanner
from controller.src.services.status_reporter import DatabaseOutcomeSink, LoggingOutcomeSink, mark_run_failed
from controller.src.stages import (
    BuildStage,
    DeployStage,
    GateEvaluator,
    PushStage,
    RolloutStage,
    ScanStage,
    resolve_services,
)

logger = logging.getLogger(__name__)

class PipelineController:
    def __init__(
        self,
        builder: ImageBuilder,
        scanner: VulnerabilityScanner,
        registry: ImageRegistry,
        runner: Runner,
        *,
        registry_host: str,
        image_namespace: str,
        stable_tag: str = "latest",
        gate_policy: Optional[GatePolicy] = None,
        retry_policy: Optional[RetryPolicy] = None,
        rollout_timeout: float = 300,
        rollout_poll_interval: float = 2.0,
        sinks: Iterable[OutcomeSink] = (),
    ):
        retry_policy = retry_policy or RetryPolicy()
        self.build_stage = BuildStage(builder)
        self.scan_stage = ScanStage(scanner, retry_policy)
        self.push_stage = PushStage(registry, retry_policy)
        self.deploy_stage = DeployStage(runner)
        self.rollout_stage = RolloutStage(runner, timeout=rollout_timeout, poll_interval=rollout_poll_interval)
        self.runner = runner
        self.registry_host = registry_host
        self.image_namespace = image_namespace
        self.stable_tag = stable_tag
        self.gate_policy = gate_policy or GatePolicy()
        self.sinks = list(sinks)

        self._task: Optional[asyncio.Task] = None
        self._abort_reason: Optional[str] = None

    async def run(
        self,
        trigger: Trigger,
        target: Optional[DeploymentTarget] = None,
        run_id: Optional[str] = None,
    ) -> PipelineRun:
        """Execute one pipeline run and return it in a terminal state."""
        run = PipelineRun(
            trigger=trigger,
            target=target.key if target else None,
            gate_policy=trigger.gate or self.gate_policy,
        )
        if run_id:
            run.id = run_id

        self._task = asyncio.current_task()
        self._abort_reason = None

        logger.info(
            f"Starting pipeline run {run.id} for {trigger.short_revision} "
            f"({len(trigger.services)} services, gate={run.gate_policy.threshold.value}/{run.gate_policy.mode.value})"
        )
        run.start()
        self._notify("run_started", run)

        try:
            await self._execute(run, target)
        except ConfigurationError as e:
            logger.error(f"Pipeline run {run.id} aborted by configuration error: {e}")
            self._abort_in_flight(run, f"Run aborted: {e}")
            run.finish(RunStatus.FAILED, error=f"{e.kind}: {e}")
        except asyncio.CancelledError:
            reason = self._abort_reason or "Run cancelled"
            logger.warning(f"Pipeline run {run.id} aborted: {reason}")
            self._abort_in_flight(run, reason)
            run.finish(RunStatus.ABORTED, error=reason)
            self._notify("run_finished", run)
            if self._abort_reason is None:
                raise
            self._task = None
            # An operator abort is a handled outcome, not a cancellation of the caller
            asyncio.current_task().uncancel()
            await self._flush_sinks()
            return run
        except Exception as e:
            logger.exception(f"Pipeline run {run.id} failed with unexpected error")
            self._abort_in_flight(run, f"Run failed: {e}")
            run.finish(RunStatus.FAILED, error=str(e))
        else:
            failed = run.failed_executions()
            run.finish(RunStatus.FAILED if failed else RunStatus.SUCCEEDED)
        finally:
            self._task = None

        logger.info(f"Pipeline run {run.id} finished with status: {run.status.value}")
        self._notify("run_finished", run)
        await self._flush_sinks()
        return run

    def abort(self, reason: str = "Aborted by operator") -> bool:
        """Cancel the in-flight run. Already pushed images are not retracted."""
        if self._task is None or self._task.done():
            return False
        self._abort_reason = reason
        self._task.cancel()
        return True

    async def _execute(self, run: PipelineRun, target: Optional[DeploymentTarget]):
        trigger = run.trigger
        excluded: Dict[str, str] = {}

        specs = resolve_services(trigger, self.registry_host, self.image_namespace, self.stable_tag)
        if target is not None:
            # Fail fast on a bad resource set before anything is built
            self.deploy_stage.validate(target)

        images = await self._build(run, specs, excluded)
        await self._scan(run, images, excluded)
        self._gate(run, excluded)
        await self._push(run, excluded)

        if target is None:
            logger.info(f"Run {run.id} has no deployment target; stopping after push")
            return

        async with self.runner.exclusive(target):
            apply_result = await self._deploy(run, target, excluded)
            if apply_result.policy_applied:
                await self._rollout(run, target, apply_result)

    async def _build(self, run: PipelineRun, specs, excluded: Dict[str, str]) -> List[ServiceImage]:
        executions = {spec.name: run.begin(StageName.BUILD, spec.name) for spec in specs}
        results = await self.build_stage.build_all(specs, run.trigger.revision, run.trigger.repository)

        images = []
        for spec in specs:
            result, execution = results[spec.name], executions[spec.name]
            if isinstance(result, ReleaseError):
                run.fail(execution, result)
                excluded[spec.name] = "build failed"
            else:
                run.images[spec.name] = result
                run.succeed(execution, reference=result.reference, digest=result.digest)
                images.append(result)
            self._emit(run, execution)
        return images

    async def _scan(self, run: PipelineRun, images: List[ServiceImage], excluded: Dict[str, str]):
        self._skip_excluded(run, StageName.SCAN, excluded)
        executions = {image.name: run.begin(StageName.SCAN, image.name) for image in images}
        results = await self.scan_stage.scan_all(images)

        for image in images:
            result, execution = results[image.name], executions[image.name]
            if isinstance(result, ReleaseError):
                run.fail(execution, result)
                excluded[image.name] = "scan failed"
            else:
                run.reports[image.name] = result.value
                run.succeed(execution, attempts=result.attempts, findings=len(result.value.findings))
            self._emit(run, execution)

    def _gate(self, run: PipelineRun, excluded: Dict[str, str]):
        self._skip_excluded(run, StageName.GATE, excluded)
        evaluator = GateEvaluator(run.gate_policy)

        for name, report in run.reports.items():
            execution = run.begin(StageName.GATE, name)
            decision = evaluator.evaluate(report)
            run.decisions[name] = decision
            detail = {
                "outcome": decision.outcome.value,
                "threshold": decision.threshold.value,
                "mode": decision.mode.value,
                "blocking_count": decision.blocking_count,
                "findings": decision.render()[1:],
            }
            if decision.passed:
                run.succeed(execution, message=decision.render()[0], **detail)
            else:
                run.fail(
                    execution,
                    SecurityGateFailure(decision.image, decision.blocking_count, decision.threshold.value),
                    **detail,
                )
                excluded[name] = "failed security gate"
            self._emit(run, execution)

    async def _push(self, run: PipelineRun, excluded: Dict[str, str]):
        self._skip_excluded(run, StageName.PUSH, excluded)
        approved = [
            (run.images[name], decision)
            for name, decision in run.decisions.items()
            if decision.passed and name not in excluded
        ]
        executions = {image.name: run.begin(StageName.PUSH, image.name) for image, _ in approved}
        results = await self.push_stage.push_all(approved)

        for image, _ in approved:
            result, execution = results[image.name], executions[image.name]
            if isinstance(result, ReleaseError):
                run.fail(execution, result)
                excluded[image.name] = "push failed"
            else:
                run.tags[image.name] = result.value
                run.succeed(execution, attempts=result.attempts, reference=result.value.reference, digest=result.value.digest)
            self._emit(run, execution)

    async def _deploy(self, run: PipelineRun, target: DeploymentTarget, excluded: Dict[str, str]) -> ApplyResult:
        execution = run.begin(StageName.DEPLOY, target.key)
        apply_result = await self.deploy_stage.deploy(target, run.tags, excluded=excluded.keys())
        run.apply_result = apply_result

        for workload in apply_result.workloads:
            detail = workload.model_dump(exclude_none=True, mode="json", exclude={"error"})
            if workload.status == WorkloadApplyStatus.SKIPPED:
                workload_execution = run.skip(StageName.DEPLOY, workload.name, workload.error or "skipped")
                workload_execution.detail = detail
            else:
                workload_execution = run.begin(StageName.DEPLOY, workload.name)
                if workload.status == WorkloadApplyStatus.FAILED:
                    run.fail(workload_execution, PartialDeploymentFailure([workload.name]), **detail)
                    workload_execution.message = workload.error
                else:
                    run.succeed(workload_execution, message=workload.status.value, **detail)
            self._emit(run, workload_execution)

        diff = apply_result.policy_diff
        detail = {
            "policy_applied": apply_result.policy_applied,
            "policies_added": [str(r) for r in diff.added],
            "policies_removed": [str(r) for r in diff.removed],
            "errors": apply_result.errors,
        }
        if apply_result.succeeded:
            run.succeed(execution, **detail)
        elif apply_result.failed_workloads:
            run.fail(execution, PartialDeploymentFailure(apply_result.failed_workloads), **detail)
        else:
            run.fail(execution, ReleaseError("; ".join(apply_result.errors) or "deployment failed"), **detail)
        self._emit(run, execution)
        return apply_result

    async def _rollout(self, run: PipelineRun, target: DeploymentTarget, apply_result: ApplyResult):
        executions = {
            w.name: run.begin(StageName.ROLLOUT, w.name)
            for w in self.rollout_stage.select(apply_result)
        }
        records = await self.rollout_stage.rollout_all(target, apply_result)

        for record in records:
            run.rollouts.append(record)
            execution = executions[record.workload]
            detail = record.model_dump(exclude_none=True, mode="json", exclude={"message"})
            if record.status == RolloutStatus.COMPLETE:
                run.succeed(execution, message=record.message, **detail)
            else:
                run.fail(execution, PartialDeploymentFailure([record.workload]), **detail)
                execution.message = record.message
            self._emit(run, execution)

    def _skip_excluded(self, run: PipelineRun, stage: StageName, excluded: Dict[str, str]):
        for name, reason in excluded.items():
            self._emit(run, run.skip(stage, name, reason))

    def _abort_in_flight(self, run: PipelineRun, reason: str):
        for execution in run.abort_in_flight(reason):
            self._emit(run, execution)

    def _emit(self, run: PipelineRun, execution: StageExecution):
        self._notify("record", run, execution)

    def _notify(self, event: str, *args: Any):
        for sink in self.sinks:
            try:
                getattr(sink, event)(*args)
            except Exception:
                # Reporting must not change the outcome of the run
                logger.exception(f"Outcome sink {type(sink).__name__}.{event} failed")

    async def _flush_sinks(self):
        """Wait for sinks that write in the background."""
        for sink in self.sinks:
            flush = getattr(sink, "flush", None)
            if flush is None:
                continue
            try:
                await asyncio.to_thread(flush)
            except Exception:
                logger.exception(f"Outcome sink {type(sink).__name__} failed to flush")

def create_runner(settings, retry_policy: RetryPolicy) -> Runner:
    if settings.lock_backend == "redis":
        lock = RedisTargetLock(redis.asyncio.from_url(settings.redis_url), ttl=settings.lock_ttl)
    elif settings.lock_backend == "local":
        lock = LocalTargetLock()
    else:
        raise ConfigurationError(f"Unknown lock backend '{settings.lock_backend}' (expected redis or local)")
    return Runner(KubernetesCluster(), lock, retry_policy)

def create_controller(settings, sinks: Optional[Iterable[OutcomeSink]] = None) -> PipelineController:
    """Wire the production collaborators from settings."""
    retry_policy = RetryPolicy(RetryConfig.from_settings(settings))

    if sinks is None:
        sinks = [LoggingOutcomeSink(), DatabaseOutcomeSink(settings.database_url)]

    return PipelineController(
        KanikoBuilder(settings),
        TrivyScanner(settings),
        RegistryClient.from_settings(settings),
        create_runner(settings, retry_policy),
        registry_host=settings.registry_host,
        image_namespace=settings.image_namespace,
        stable_tag=settings.stable_tag,
        gate_policy=GatePolicy(threshold=settings.gate_threshold, mode=settings.gate_mode),
        retry_policy=retry_policy,
        rollout_timeout=settings.rollout_timeout,
        rollout_poll_interval=settings.rollout_poll_interval,
        sinks=sinks,
    )

def trigger_from_job(job_data: Dict[str, Any], default_cluster: str) -> Tuple[Trigger, Optional[DeploymentTarget]]:
    """Rebuild the trigger and target from a queued job.

    job_data: {"run_id", "config", "resources", "repo_info"} as enqueued by the API.
    """
    config = parse_pipeline_config(job_data.get("config") or {})
    repo_info = job_data.get("repo_info") or {}

    trigger = Trigger.from_config(
        config,
        revision=repo_info.get("commit_sha", ""),
        branch=repo_info.get("branch") or "main",
        repository=repo_info.get("clone_url"),
        triggered_by=repo_info.get("pusher"),
    )

    target = None
    if config.target is not None:
        resources = parse_resource_set(job_data.get("resources") or {})
        target = deployment_target(config, resources, default_cluster)
    return trigger, target

async def execute_pipeline(job_data: Dict[str, Any], controller: Optional[PipelineController] = None) -> PipelineRun:
    """
    Execute a queued pipeline run.
    Returns the finished PipelineRun.
    """
    settings = get_settings()
    run_id = job_data["run_id"]
    controller = controller or create_controller(settings)

    try:
        trigger, target = trigger_from_job(job_data, settings.cluster_name)
    except (ConfigurationError, ValidationError) as e:
        logger.error(f"Run {run_id} has an invalid job payload: {e}")
        mark_run_failed(settings.database_url, run_id, f"configuration: {e}")
        raise ConfigurationError(str(e)) from e

    return await controller.run(trigger, target, run_id=run_id)
