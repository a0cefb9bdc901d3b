"""
Queue worker - pulls pipeline runs from Redis and executes them.
"""

import asyncio
import logging
import json
import redis.asyncio as redis
from typing import Optional, Dict, Any

from controller.src.config import get_settings
from controller.src.errors import ReleaseError
from controller.src.services.executor import PipelineController, create_controller, execute_pipeline

logger = logging.getLogger(__name__)
settings = get_settings()

PIPELINE_QUEUE = "releasex:runs"
ABORT_KEY_PREFIX = "releasex:abort:"

async def get_next_job(client: redis.Redis) -> Optional[Dict[str, Any]]:
    """Pull next job from Redis queue."""
    result = await client.brpop(PIPELINE_QUEUE, timeout=5)
    if result:
        _, job_data = result
        return json.loads(job_data)
    return None

async def watch_for_abort(
    client: redis.Redis,
    controller: PipelineController,
    run_id: str,
    poll_interval: float = 1.0,
):
    """Abort the run once the API sets its abort flag."""
    key = ABORT_KEY_PREFIX + run_id
    while True:
        reason = await client.get(key)
        # abort() is a no-op until the run has actually started
        if reason is not None and controller.abort(reason or "Aborted by operator"):
            logger.warning(f"Abort requested for run {run_id}: {reason}")
            await client.delete(key)
            return
        await asyncio.sleep(poll_interval)

async def run_job(client: redis.Redis, controller: PipelineController, job: Dict[str, Any]):
    run_id = job.get("run_id", "unknown")
    logger.info(f"Received job for run {run_id}")

    watcher = asyncio.create_task(watch_for_abort(client, controller, run_id))
    try:
        run = await execute_pipeline(job, controller)
        logger.info(f"Run {run_id} completed: {run.status.value}")
    except ReleaseError as e:
        logger.error(f"Run {run_id} could not start: {e}")
    except Exception as e:
        logger.exception(f"Failed to execute pipeline {run_id}: {e}")
    finally:
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)

async def worker_loop():
    """Main worker loop."""
    client = redis.from_url(settings.redis_url, decode_responses=True)
    controller = create_controller(settings)
    logger.info("Worker started, waiting for jobs...")

    try:
        while True:
            try:
                job = await get_next_job(client)
                if job:
                    await run_job(client, controller, job)
            except redis.ConnectionError as e:
                logger.error(f"Lost connection to Redis: {e}")
                await asyncio.sleep(5)
            except Exception as e:
                logger.exception(f"Worker error: {e}")
                await asyncio.sleep(5)
    finally:
        await client.aclose()

def run_worker():
    """Entry point for worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
