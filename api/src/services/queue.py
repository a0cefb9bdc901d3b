"""
Redis queue service for pipeline runs.
"""

import redis.asyncio as redis
import json
from typing import Dict, Any, Optional
from datetime import datetime

from api.src.config import get_settings

settings = get_settings()

PIPELINE_QUEUE = "releasex:runs"
PIPELINE_STATUS = "releasex:status"
ABORT_KEY_PREFIX = "releasex:abort:"
ABORT_FLAG_TTL = 3600

async def get_redis_client() -> redis.Redis:
    """Get async Redis client."""
    return redis.from_url(settings.redis_url, decode_responses=True)

async def enqueue_pipeline_run(
    run_id: str,
    config: Dict[str, Any],
    repo_info: Dict[str, Any],
    resources: Optional[Dict[str, Any]] = None,
):
    """Add pipeline run to processing queue."""
    client = await get_redis_client()

    job = {
        "run_id": run_id,
        "config": config,
        "resources": resources,
        "repo_info": repo_info,
        "queued_at": datetime.utcnow().isoformat(),
    }

    try:
        await client.lpush(PIPELINE_QUEUE, json.dumps(job))
        await client.hset(PIPELINE_STATUS, run_id, "queued")
    finally:
        await client.aclose()

async def request_abort(run_id: str, reason: str):
    """Set the abort flag the controller worker watches for this run."""
    client = await get_redis_client()

    try:
        await client.set(ABORT_KEY_PREFIX + run_id, reason, ex=ABORT_FLAG_TTL)
        await client.hset(PIPELINE_STATUS, run_id, "aborting")
    finally:
        await client.aclose()

async def get_run_status(run_id: str) -> Optional[str]:
    """Get pipeline run status from Redis."""
    client = await get_redis_client()

    try:
        return await client.hget(PIPELINE_STATUS, run_id)
    finally:
        await client.aclose()

async def get_queue_length() -> int:
    """Get number of runs in queue."""
    client = await get_redis_client()

    try:
        return await client.llen(PIPELINE_QUEUE)
    finally:
        await client.aclose()
