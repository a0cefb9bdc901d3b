import pytest

from controller.src.retry import RetryConfig, RetryPolicy
from controller.src.runner import LocalTargetLock, Runner
from controller.tests.fakes import FakeCluster, make_target, no_sleep

@pytest.fixture
def retry_policy():
    return RetryPolicy(RetryConfig(max_attempts=3, initial_delay=0, jitter=False), sleep=no_sleep)

@pytest.fixture
def cluster():
    return FakeCluster()

@pytest.fixture
def runner(cluster, retry_policy):
    return Runner(cluster, LocalTargetLock(), retry_policy)

@pytest.fixture
def shop_target():
    """Three services, default-deny with web -> api -> db allowed."""
    return make_target(
        workloads=[
            {"name": "web", "image": "{{ images.web }}", "port": 8080},
            {"name": "api", "image": "{{ images.api }}", "port": 9000},
            {"name": "db", "image": "{{ images.db }}", "port": 5432},
        ],
        exposures=[{"name": "web", "workload": "web", "port": 80, "type": "LoadBalancer"}],
        network_policies=[
            {"source": "web", "destination": "api"},
            {"source": "api", "destination": "db"},
        ],
    )
