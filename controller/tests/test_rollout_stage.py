"""Tests for forcing workloads onto a newly published image."""

import pytest

from controller.src.models.resources import (
    ApplyResult,
    RolloutStatus,
    WorkloadApplyResult,
    WorkloadApplyStatus,
)
from controller.src.retry import RetryConfig, RetryPolicy
from controller.src.runner import LocalTargetLock, Runner
from controller.src.stages.rollout import RolloutStage
from controller.tests.fakes import FlakyCluster, no_sleep

def applied(name, previous_image=None, previous_digest=None, image=None, digest=None, status=WorkloadApplyStatus.UPDATED):
    return WorkloadApplyResult(
        name=name,
        status=status,
        previous_image=previous_image,
        previous_digest=previous_digest,
        image=image or f"registry.local/releasex/{name}:latest",
        digest=digest,
    )

def apply_result(*workloads):
    return ApplyResult(target="test/shop", workloads=list(workloads), policy_applied=True)

def test_select_only_changed_existing_workloads():
    stage = RolloutStage(runner=None)
    result = apply_result(
        applied("web", "registry.local/releasex/web:latest", "sha256:old", digest="sha256:new"),
        applied("api", "registry.local/releasex/api:latest", "sha256:same", digest="sha256:same",
                status=WorkloadApplyStatus.UNCHANGED),
        applied("db", status=WorkloadApplyStatus.CREATED),
        applied("cache", "redis:6", image="redis:7"),
    )
    assert [w.name for w in stage.select(result)] == ["web", "cache"]

@pytest.mark.asyncio
async def test_rollout_completes_when_ready(runner, cluster, shop_target):
    stage = RolloutStage(runner, timeout=5, poll_interval=0, sleep=no_sleep)
    result = apply_result(applied("web", "registry.local/releasex/web:latest", "sha256:old", digest="sha256:new"))

    async with runner.exclusive(shop_target):
        records = await stage.rollout_all(shop_target, result)

    assert cluster.restarts == ["web"]
    assert len(records) == 1
    record = records[0]
    assert record.status == RolloutStatus.COMPLETE
    assert record.previous_image == "registry.local/releasex/web:latest@sha256:old"
    assert record.new_image == "registry.local/releasex/web:latest@sha256:new"
    assert record.is_terminal

@pytest.mark.asyncio
async def test_rollout_times_out(runner, cluster, shop_target):
    cluster.not_ready = {"web"}
    stage = RolloutStage(runner, timeout=0, poll_interval=0, sleep=no_sleep)
    result = apply_result(applied("web", "registry.local/releasex/web:latest", "sha256:old", digest="sha256:new"))

    async with runner.exclusive(shop_target):
        records = await stage.rollout_all(shop_target, result)

    assert records[0].status == RolloutStatus.FAILED
    assert "Timed out" in records[0].message

@pytest.mark.asyncio
async def test_readiness_check_retried_on_transient_error(shop_target):
    cluster = FlakyCluster(outages=2)
    runner = Runner(cluster, LocalTargetLock(), RetryPolicy(RetryConfig(initial_delay=0, jitter=False), sleep=no_sleep))
    stage = RolloutStage(runner, timeout=5, poll_interval=0, sleep=no_sleep)

    async with runner.exclusive(shop_target):
        record = await stage.rollout(shop_target, "web", "registry.local/releasex/web:latest")

    assert record.status == RolloutStatus.COMPLETE

@pytest.mark.asyncio
async def test_nothing_to_roll_out(runner, cluster, shop_target):
    stage = RolloutStage(runner, sleep=no_sleep)
    async with runner.exclusive(shop_target):
        records = await stage.rollout_all(shop_target, apply_result(applied("db", status=WorkloadApplyStatus.CREATED)))

    assert records == []
    assert cluster.restarts == []
