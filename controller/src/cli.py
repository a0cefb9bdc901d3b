"""
ReleaseX CLI - run the pipeline, or one stage at a time.

Usage:
    releasex build --revision <sha>        # Build every declared service
    releasex scan                          # Scan the images from the last build
    releasex gate --threshold high         # Evaluate the scan reports
    releasex push                          # Publish images that passed the gate
    releasex deploy --target <namespace>   # Apply the resource set
    releasex rollout --target <namespace>  # Restart workloads whose image changed
    releasex run --revision <sha>          # All of the above

Stages hand their results to the next one through JSON files in --state-dir.
Exit codes: 0 ok, 1 artifact failure, 2 configuration, 3 transient
infrastructure, 4 security gate, 5 partial deployment.
"""

import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, Optional

import typer

from controller.src.config import get_settings
from controller.src.errors import (
    ConfigurationError,
    PartialDeploymentFailure,
    ReleaseError,
    SecurityGateFailure,
    exit_code_for,
)
from controller.src.models.artifact import (
    GateDecision,
    GatePolicy,
    ImageTag,
    ScanReport,
    ServiceImage,
)
from controller.src.models.pipeline import PipelineConfig, Trigger, deployment_target, load_pipeline_config
from controller.src.models.resources import ApplyResult, DeploymentTarget, RolloutStatus, load_resource_set
from controller.src.models.run import RunStatus
from controller.src.retry import RetryConfig, RetryPolicy
from controller.src.services import executor
from controller.src.services.builder import KanikoBuilder
from controller.src.services.registry import RegistryClient
from controller.src.services.scanner import TrivyScanner
from controller.src.services.status_reporter import LoggingOutcomeSink
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

app = typer.Typer(
    name="releasex",
    help="ReleaseX - build, scan, gate, publish and deploy services",
    add_completion=False,
    no_args_is_help=True,
)

CONFIG_OPTION = typer.Option(".releasex.yml", "--config", "-c", help="Pipeline configuration file")
STATE_OPTION = typer.Option(".releasex", "--state-dir", help="Directory for stage results")

# State files

def write_state(state_dir: str, stage: str, results: Dict[str, Any], failures: Dict[str, ReleaseError], **extra):
    os.makedirs(state_dir, exist_ok=True)
    payload = {
        "results": {name: value.model_dump(mode="json") for name, value in results.items()},
        "failures": {
            name: {"kind": e.kind, "exit_code": e.exit_code, "message": str(e)}
            for name, e in failures.items()
        },
        **extra,
    }
    with open(os.path.join(state_dir, f"{stage}.json"), "w") as f:
        json.dump(payload, f, indent=2)

def read_state(state_dir: str, stage: str) -> Dict[str, Any]:
    path = os.path.join(state_dir, f"{stage}.json")
    if not os.path.exists(path):
        raise ConfigurationError(f"No {stage} results in {state_dir}; run `releasex {stage}` first")
    with open(path, "r") as f:
        return json.load(f)

def read_results(state_dir: str, stage: str, model):
    state = read_state(state_dir, stage)
    return {name: model.model_validate(value) for name, value in state.get("results", {}).items()}

def excluded_services(state_dir: str, *stages: str) -> Dict[str, str]:
    """Services that failed any of the given earlier stages."""
    excluded = {}
    for stage in stages:
        path = os.path.join(state_dir, f"{stage}.json")
        if not os.path.exists(path):
            continue
        for name, failure in read_state(state_dir, stage).get("failures", {}).items():
            excluded.setdefault(name, f"{stage} failed: {failure['kind']}")
    return excluded

# Helpers

def configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )

def finish(failures: Dict[str, ReleaseError]):
    """Print failures and exit with the most severe code."""
    for name, error in sorted(failures.items()):
        typer.secho(f"{name}: {error.kind}: {error}", fg=typer.colors.RED, err=True)
    code = exit_code_for(e.exit_code for e in failures.values())
    if code:
        raise typer.Exit(code)

def fail(error: ReleaseError):
    typer.secho(f"{error.kind}: {error}", fg=typer.colors.RED, err=True)
    raise typer.Exit(error.exit_code)

def gate_policy(config: Optional[PipelineConfig], threshold: Optional[str], mode: Optional[str]) -> GatePolicy:
    settings = get_settings()
    base = (config.gate if config and config.gate else None) or GatePolicy(
        threshold=settings.gate_threshold, mode=settings.gate_mode,
    )
    return GatePolicy(threshold=threshold or base.threshold, mode=mode or base.mode)

def load_target(config_path: str, namespace: str) -> DeploymentTarget:
    config = load_pipeline_config(config_path)
    if config.target is None:
        raise ConfigurationError(f"{config_path} declares no deployment target")
    if config.target.namespace != namespace:
        raise ConfigurationError(
            f"Target '{namespace}' does not match the configured namespace '{config.target.namespace}'"
        )
    resources_path = os.path.join(os.path.dirname(os.path.abspath(config_path)), config.target.resources)
    return deployment_target(config, load_resource_set(resources_path), get_settings().cluster_name)

def retry_policy() -> RetryPolicy:
    return RetryPolicy(RetryConfig.from_settings(get_settings()))

# Production collaborators; tests replace these

def create_builder():
    return KanikoBuilder(get_settings())

def create_scanner():
    return TrivyScanner(get_settings())

def create_registry():
    return RegistryClient.from_settings(get_settings())

def create_runner():
    return executor.create_runner(get_settings(), retry_policy())

# Commands

@app.command()
def build(
    revision: str = typer.Option(..., "--revision", "-r", envvar="RELEASEX_REVISION", help="Git revision to build"),
    repository: Optional[str] = typer.Option(None, "--repository", envvar="RELEASEX_REPOSITORY", help="Git clone URL"),
    config_path: str = CONFIG_OPTION,
    state_dir: str = STATE_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Build every declared service at the given revision."""
    configure_logging(verbose)
    settings = get_settings()
    try:
        config = load_pipeline_config(config_path)
        trigger = Trigger.from_config(config, revision=revision, repository=repository)
        specs = resolve_services(trigger, settings.registry_host, settings.image_namespace, settings.stable_tag)
        results = asyncio.run(BuildStage(create_builder()).build_all(specs, revision, repository))
    except ConfigurationError as e:
        fail(e)

    images = {n: r for n, r in results.items() if isinstance(r, ServiceImage)}
    failures = {n: r for n, r in results.items() if isinstance(r, ReleaseError)}
    write_state(state_dir, "build", images, failures, revision=revision)
    for image in images.values():
        typer.echo(f"built {image.pinned_reference}")
    finish(failures)

@app.command()
def scan(
    state_dir: str = STATE_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Scan the images produced by the last build."""
    configure_logging(verbose)
    try:
        images = read_results(state_dir, "build", ServiceImage)
        results = asyncio.run(ScanStage(create_scanner(), retry_policy()).scan_all(list(images.values())))
    except ConfigurationError as e:
        fail(e)

    reports = {n: r.value for n, r in results.items() if not isinstance(r, ReleaseError)}
    failures = {n: r for n, r in results.items() if isinstance(r, ReleaseError)}
    write_state(state_dir, "scan", reports, failures)
    for name, report in reports.items():
        typer.echo(f"scanned {name}: {len(report.findings)} finding(s)")
    finish(failures)

@app.command()
def gate(
    threshold: Optional[str] = typer.Option(None, "--threshold", "-t", help="low, medium, high or critical"),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="strict or warn"),
    config_path: str = CONFIG_OPTION,
    state_dir: str = STATE_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Evaluate the scan reports against the severity threshold."""
    configure_logging(verbose)
    try:
        config = load_pipeline_config(config_path) if os.path.exists(config_path) else None
        policy = gate_policy(config, threshold, mode)
        reports = read_results(state_dir, "scan", ScanReport)
    except ConfigurationError as e:
        fail(e)

    decisions = GateEvaluator(policy).evaluate_all(reports)
    failures: Dict[str, ReleaseError] = {}
    for name, decision in decisions.items():
        for line in decision.render():
            typer.echo(line)
        if not decision.passed:
            failures[name] = SecurityGateFailure(decision.image, decision.blocking_count, decision.threshold.value)

    write_state(state_dir, "gate", decisions, failures, threshold=policy.threshold.value, mode=policy.mode.value)
    finish(failures)

@app.command()
def push(
    state_dir: str = STATE_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Publish every image that passed the gate under its stable tag."""
    configure_logging(verbose)
    try:
        images = read_results(state_dir, "build", ServiceImage)
        decisions = read_results(state_dir, "gate", GateDecision)
        approved = [(images[n], d) for n, d in decisions.items() if d.passed and n in images]
        results = asyncio.run(PushStage(create_registry(), retry_policy()).push_all(approved))
    except ConfigurationError as e:
        fail(e)

    tags = {n: r.value for n, r in results.items() if not isinstance(r, ReleaseError)}
    failures = {n: r for n, r in results.items() if isinstance(r, ReleaseError)}
    write_state(state_dir, "push", tags, failures)
    for tag in tags.values():
        typer.echo(f"published {tag.reference} ({tag.digest})")
    finish(failures)

@app.command()
def deploy(
    target: str = typer.Option(..., "--target", help="Namespace to deploy to"),
    config_path: str = CONFIG_OPTION,
    state_dir: str = STATE_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Apply network policies, workloads and exposures to the target."""
    configure_logging(verbose)
    try:
        deployment = load_target(config_path, target)
        tags = read_results(state_dir, "push", ImageTag)
        excluded = excluded_services(state_dir, "build", "scan", "gate", "push")
        result = asyncio.run(_deploy(deployment, tags, excluded))
    except ConfigurationError as e:
        fail(e)

    write_state(state_dir, "deploy", {"result": result}, {})
    for workload in result.workloads:
        typer.echo(f"{workload.name}: {workload.status.value}" + (f" ({workload.error})" if workload.error else ""))

    if result.failed_workloads:
        finish({deployment.key: PartialDeploymentFailure(result.failed_workloads)})
    elif not result.succeeded:
        finish({deployment.key: ReleaseError("; ".join(result.errors))})

async def _deploy(target: DeploymentTarget, tags: Dict[str, ImageTag], excluded: Dict[str, str]) -> ApplyResult:
    runner = create_runner()
    async with runner.exclusive(target):
        return await DeployStage(runner).deploy(target, tags, excluded=excluded.keys())

@app.command()
def rollout(
    target: str = typer.Option(..., "--target", help="Namespace to roll out"),
    config_path: str = CONFIG_OPTION,
    state_dir: str = STATE_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Restart the workloads whose image changed in the last deploy."""
    configure_logging(verbose)
    settings = get_settings()
    try:
        deployment = load_target(config_path, target)
        apply_result = ApplyResult.model_validate(read_state(state_dir, "deploy")["results"]["result"])
        records = asyncio.run(_rollout(deployment, apply_result, settings))
    except ConfigurationError as e:
        fail(e)

    write_state(state_dir, "rollout", {r.workload: r for r in records}, {})
    for record in records:
        typer.echo(f"{record.workload}: {record.status.value} ({record.message})")

    failed = [r.workload for r in records if r.status != RolloutStatus.COMPLETE]
    if failed:
        finish({deployment.key: PartialDeploymentFailure(failed)})

async def _rollout(target: DeploymentTarget, apply_result: ApplyResult, settings):
    runner = create_runner()
    stage = RolloutStage(runner, timeout=settings.rollout_timeout, poll_interval=settings.rollout_poll_interval)
    async with runner.exclusive(target):
        return await stage.rollout_all(target, apply_result)

@app.command()
def run(
    revision: str = typer.Option(..., "--revision", "-r", envvar="RELEASEX_REVISION", help="Git revision to release"),
    repository: Optional[str] = typer.Option(None, "--repository", envvar="RELEASEX_REPOSITORY", help="Git clone URL"),
    threshold: Optional[str] = typer.Option(None, "--threshold", "-t"),
    mode: Optional[str] = typer.Option(None, "--mode", "-m"),
    no_deploy: bool = typer.Option(False, "--no-deploy", help="Stop after push"),
    config_path: str = CONFIG_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run the whole pipeline: build, scan, gate, push, deploy, rollout."""

    configure_logging(verbose)
    settings = get_settings()
    try:
        config = load_pipeline_config(config_path)
        policy = gate_policy(config, threshold, mode)
        trigger = Trigger.from_config(config, revision=revision, repository=repository)
        trigger.gate = policy
        target = None
        if config.target is not None and not no_deploy:
            target = load_target(config_path, config.target.namespace)
        controller = executor.create_controller(settings, sinks=[LoggingOutcomeSink()])
    except ConfigurationError as e:
        fail(e)

    pipeline_run = asyncio.run(controller.run(trigger, target))

    for name, stages in sorted(pipeline_run.artifact_summary().items()):
        typer.echo(f"{name}: " + ", ".join(f"{stage}={status}" for stage, status in stages.items()))
    typer.echo(f"run {pipeline_run.id}: {pipeline_run.status.value}")

    if pipeline_run.error:
        typer.secho(pipeline_run.error, fg=typer.colors.RED, err=True)
    codes = [e.exit_code for e in pipeline_run.failed_executions()]
    if pipeline_run.error and pipeline_run.error.startswith(ConfigurationError.kind):
        codes.append(ConfigurationError.exit_code)
    code = exit_code_for(codes)
    if not code and pipeline_run.status != RunStatus.SUCCEEDED:
        code = ReleaseError.exit_code
    if code:
        raise typer.Exit(code)

def main():
    app()

if __name__ == "__main__":
    main()
