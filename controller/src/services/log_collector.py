"""
Collect logs and termination messages from build and scan job pods.
"""

import asyncio
import logging
from typing import Optional
from kubernetes.client.rest import ApiException

from controller.src.k8s.client import get_core_api, translate_api_error
from controller.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

def _job_pod(job_name: str):
    core_v1 = get_core_api()

    try:
        pods = core_v1.list_namespaced_pod(
            namespace=settings.k8s_namespace,
            label_selector=f"job-name={job_name}",
        )
        if pods.items:
            return pods.items[0]
        return None
    except ApiException as e:
        logger.error(f"Failed to get pod for job {job_name}: {e}")
        return None
    except Exception as e:
        raise translate_api_error(e, f"find pod for job {job_name}")

async def get_job_pod_name(job_name: str) -> Optional[str]:
    """Get the pod name for a job."""
    pod = await asyncio.to_thread(_job_pod, job_name)
    return pod.metadata.name if pod else None

async def collect_logs(job_name: str, tail_lines: Optional[int] = 1000) -> str:
    """Collect logs from a job's pod."""
    core_v1 = get_core_api()

    pod_name = await get_job_pod_name(job_name)
    if not pod_name:
        return "No pod found for job"

    try:
        return await asyncio.to_thread(
            core_v1.read_namespaced_pod_log,
            name=pod_name,
            namespace=settings.k8s_namespace,
            tail_lines=tail_lines,
        )
    except ApiException as e:
        if e.status == 400:
            # Pod might not have started yet
            return "Waiting for pod to start..."
        logger.error(f"Failed to collect logs for {pod_name}: {e}")
        return f"Error collecting logs: {e.reason}"
    except Exception as e:
        raise translate_api_error(e, f"read logs of {pod_name}")

async def termination_message(job_name: str) -> Optional[str]:
    """Termination message written by the job's container, if any."""
    pod = await asyncio.to_thread(_job_pod, job_name)
    if pod is None or pod.status is None:
        return None

    for status in pod.status.container_statuses or []:
        terminated = status.state.terminated if status.state else None
        if terminated and terminated.message:
            return terminated.message.strip()
    return None
