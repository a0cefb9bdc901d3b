from controller.src.k8s.client import (
    init_k8s_client,
    get_batch_api,
    get_core_api,
    get_apps_api,
    get_networking_api,
    ensure_namespace,
    delete_job,
    translate_api_error,
)
from controller.src.k8s.job_builder import (
    build_job,
    build_job_name,
    get_job_status,
)
from controller.src.k8s.jobs import submit_job, wait_for_job
from controller.src.k8s.cluster import KubernetesCluster

__all__ = [
    "init_k8s_client",
    "get_batch_api",
    "get_core_api",
    "get_apps_api",
    "get_networking_api",
    "ensure_namespace",
    "delete_job",
    "translate_api_error",
    "build_job",
    "build_job_name",
    "get_job_status",
    "submit_job",
    "wait_for_job",
    "KubernetesCluster",
]
