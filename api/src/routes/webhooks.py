"""
GitHub webhook endpoints.
"""

from fastapi import APIRouter, Request, HTTPException, Header, Depends
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging

from api.src.db.database import get_db
from api.src.services.github import (
    verify_signature,
    parse_webhook_payload,
    clone_repository,
    fetch_pipeline_config,
    cleanup_repo,
)
from api.src.services.runs import create_pipeline_run
from runner.src.errors import EngineFault
from runner.src.services.pipeline_parser import parse_pipeline_config, PipelineConfigError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

async def process_push_event(payload: dict, db: AsyncSession):
    """Read the pushed commit's pipeline definition and queue a run of it."""
    webhook_data = parse_webhook_payload(payload)

    if not webhook_data["commit_sha"]:
        logger.warning("No commit SHA in webhook payload")
        return {"status": "skipped", "reason": "No commit SHA"}

    repo_path = None
    try:
        repo_path = await run_in_threadpool(
            clone_repository,
            webhook_data["clone_url"],
            webhook_data["commit_sha"],
        )

        definition = fetch_pipeline_config(repo_path)
        if definition is None:
            logger.info(f"No pipeline definition found in {webhook_data['repo_full_name']}")
            return {"status": "skipped", "reason": "No pipeline definition found"}

        config = parse_pipeline_config(definition)
    except PipelineConfigError as e:
        logger.error(f"Invalid pipeline definition in {webhook_data['repo_full_name']}: {e}")
        return {"status": "error", "reason": str(e)}
    except EngineFault as e:
        logger.error(f"Failed to process repository: {e}")
        return {"status": "error", "reason": str(e)}
    finally:
        cleanup_repo(repo_path)

    parameters = {
        "BRANCH_NAME": webhook_data["branch"],
        "GIT_COMMIT": webhook_data["commit_sha"],
    }

    try:
        run_id = await create_pipeline_run(
            db,
            config,
            parameters=parameters,
            triggered_by=webhook_data["pusher"],
            repo_info=webhook_data,
        )
    except PipelineConfigError as e:
        logger.error(f"Invalid pipeline definition in {webhook_data['repo_full_name']}: {e}")
        return {"status": "error", "reason": str(e)}

    return {
        "status": "queued",
        "run_id": run_id,
        "stages": len(config["stages"]),
    }

@router.post("/github")
async def github_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
):
    """
    Receive GitHub webhook events.
    """
    body = await request.body()

    if not verify_signature(body, x_hub_signature_256 or ""):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    if x_github_event == "ping":
        return {"status": "pong", "message": "Webhook configured successfully"}

    if x_github_event == "push":
        return await process_push_event(payload, db)

    return {
        "status": "ignored",
        "event": x_github_event,
        "message": f"Event type '{x_github_event}' not handled"
    }
