"""
Redis queue service for pipeline runs.
"""

import redis.asyncio as redis
import json
from typing import Dict, Any, Optional
from datetime import datetime, timezone

from api.src.config import get_settings

PIPELINE_QUEUE = "stageline:jobs"
PIPELINE_STATUS = "stageline:status"
PIPELINE_CANCEL = "stageline:cancel"

async def get_redis_client() -> redis.Redis:
    """Get async Redis client."""
    return redis.from_url(get_settings().redis_url, decode_responses=True)

async def enqueue_pipeline_run(
    run_id: str,
    config: Dict[str, Any],
    parameters: Optional[Dict[str, str]] = None,
    repo_info: Optional[Dict[str, Any]] = None,
):
    """Add pipeline run to processing queue."""
    client = await get_redis_client()

    job = {
        "run_id": run_id,
        "config": config,
        "parameters": parameters or {},
        "repo_info": repo_info or {},
        "queued_at": datetime.now(timezone.utc).isoformat(),
    }

    try:
        await client.lpush(PIPELINE_QUEUE, json.dumps(job))
        await client.hset(PIPELINE_STATUS, run_id, "queued")
    finally:
        await client.aclose()

async def request_cancel(run_id: str):
    """
    Ask the runner to cancel a run. Queued runs finish as cancelled before
    their first stage; running runs have their current step terminated.
    """
    client = await get_redis_client()

    try:
        await client.sadd(PIPELINE_CANCEL, run_id)
        await client.hset(PIPELINE_STATUS, run_id, "cancelling")
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
    """Get number of runs waiting in the queue."""
    client = await get_redis_client()

    try:
        return await client.llen(PIPELINE_QUEUE)
    finally:
        await client.aclose()
