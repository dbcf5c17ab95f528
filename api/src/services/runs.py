"""
Recording and queueing new pipeline runs.
"""

import logging
from uuid import uuid4
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from api.src.models.pipeline import PipelineRun
from api.src.services.queue import enqueue_pipeline_run
from runner.src.models.run import RunStatus
from runner.src.services.pipeline_parser import load_definition

logger = logging.getLogger(__name__)

async def create_pipeline_run(
    db: AsyncSession,
    config: Dict[str, Any],
    parameters: Optional[Dict[str, str]] = None,
    triggered_by: Optional[str] = None,
    repo_info: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Record a pending run for a validated config and put it on the queue.

    The config must come from the parser; it is loaded once here so that a
    definition the runner would reject never reaches the queue.
    """
    definition = load_definition(config)
    repo_info = repo_info or {}
    parameters = parameters or {}

    run_id = str(uuid4())
    pipeline_run = PipelineRun(
        id=run_id,
        pipeline_name=definition.name,
        status=RunStatus.PENDING.value,
        triggered_by=triggered_by,
        repository=repo_info.get("repo_full_name") or repo_info.get("clone_url"),
        branch=repo_info.get("branch"),
        commit_sha=repo_info.get("commit_sha"),
        config=config,
        parameters=parameters,
    )
    db.add(pipeline_run)
    await db.commit()

    await enqueue_pipeline_run(
        run_id=run_id,
        config=config,
        parameters=parameters,
        repo_info=repo_info,
    )

    logger.info(f"Pipeline run {run_id} ({definition.name}) created and queued")
    return run_id
