"""
Submit build/scan Jobs and wait for them to finish.
"""

import asyncio
import logging
import time
from kubernetes import client
from kubernetes.client.rest import ApiException

from controller.src.config import get_settings
from controller.src.k8s.client import delete_job, get_batch_api, translate_api_error
from controller.src.k8s.job_builder import get_job_status

logger = logging.getLogger(__name__)
settings = get_settings()

async def submit_job(job: client.V1Job) -> str:
    """Create the job; returns its name."""
    batch_v1 = get_batch_api()
    job_name = job.metadata.name
    logger.info(f"Creating job {job_name}")

    try:
        await asyncio.to_thread(
            batch_v1.create_namespaced_job,
            namespace=settings.k8s_namespace,
            body=job,
        )
    except Exception as e:
        raise translate_api_error(e, f"create job {job_name}")
    return job_name

async def wait_for_job(job_name: str, timeout: int, poll_interval: float = 2.0) -> str:
    """
    Wait for a job to complete.
    Returns 'succeeded', 'failed' or 'timeout'.
    """
    batch_v1 = get_batch_api()
    start_time = time.monotonic()

    while True:
        if time.monotonic() - start_time > timeout:
            logger.error(f"Job {job_name} timed out after {timeout}s")
            try:
                await asyncio.to_thread(delete_job, job_name)
            except Exception as e:
                logger.error(f"Failed to delete timed out job {job_name}: {e}")
            return "timeout"

        try:
            job = await asyncio.to_thread(
                batch_v1.read_namespaced_job,
                name=job_name,
                namespace=settings.k8s_namespace,
            )
        except ApiException as e:
            if e.status in (401, 403, 404):
                raise translate_api_error(e, f"read job {job_name}")
            logger.error(f"Error checking job status: {e}")
            await asyncio.sleep(5)
            continue
        except Exception as e:
            raise translate_api_error(e, f"read job {job_name}")

        status = get_job_status(job)
        if status in ("succeeded", "failed"):
            logger.info(f"Job {job_name} {status}")
            return status

        # Still running or pending
        await asyncio.sleep(poll_interval)
