from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from typing import List, Optional

from api.src.db.database import get_db
from api.src.models.pipeline import PipelineRun, PipelineStage
from api.src.models.run import (
    DefinitionRequest,
    PipelineRunResponse,
    TriggerRequest,
    TriggerResponse,
    ValidationResponse,
)
from api.src.services.queue import get_run_status, get_queue_length, request_cancel
from api.src.services.runs import create_pipeline_run
from runner.src.models.run import RunStatus
from runner.src.services.pipeline_parser import (
    PipelineConfigError,
    load_definition,
    parse_pipeline_config,
)

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

TERMINAL_STATUSES = {s.value for s in RunStatus if s.is_terminal}

def parse_definition(definition: str) -> dict:
    """Parse and fully validate a YAML definition, or fail with 422."""
    try:
        config = parse_pipeline_config(definition)
        load_definition(config)
    except PipelineConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return config

async def load_run(db: AsyncSession, run_id: str) -> PipelineRun:
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.stages))
        .where(PipelineRun.id == run_id)
    )
    result = await db.execute(query)
    run = result.scalar_one_or_none()

    if not run:
        raise HTTPException(status_code=404, detail="Pipeline run not found")
    return run

@router.post("/validate", response_model=ValidationResponse)
async def validate_pipeline(request: DefinitionRequest):
    """Validate a pipeline definition without running it."""
    return {"valid": True, "pipeline": parse_definition(request.definition)}

@router.post("/runs", response_model=TriggerResponse, status_code=202)
async def trigger_run(request: TriggerRequest, db: AsyncSession = Depends(get_db)):
    """Queue a run of the given definition."""
    config = parse_definition(request.definition)

    repo_info = {}
    if request.repository_url:
        repo_info = {
            "clone_url": request.repository_url,
            "branch": request.branch,
            "commit_sha": request.commit_sha,
        }

    run_id = await create_pipeline_run(
        db,
        config,
        parameters=request.parameters,
        triggered_by=request.triggered_by,
        repo_info=repo_info,
    )
    return {"status": "queued", "run_id": run_id, "stages": len(config["stages"])}

@router.get("/runs", response_model=List[PipelineRunResponse])
async def list_runs(
    limit: int = 20,
    offset: int = 0,
    status: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """List pipeline runs, newest first."""
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.stages))
        .order_by(PipelineRun.created_at.desc())
    )

    if status:
        query = query.where(PipelineRun.status == status)

    query = query.limit(limit).offset(offset)

    result = await db.execute(query)
    return result.scalars().all()

@router.get("/runs/{run_id}", response_model=PipelineRunResponse)
async def get_run(run_id: str, db: AsyncSession = Depends(get_db)):
    return await load_run(db, run_id)

@router.get("/runs/{run_id}/status")
async def get_run_status_endpoint(run_id: str, db: AsyncSession = Depends(get_db)):
    """Get real-time status of a pipeline run."""
    run = await load_run(db, run_id)
    live_status = await get_run_status(run_id)

    return {
        "run_id": run_id,
        "db_status": run.status,
        "live_status": live_status,
        "stages": [
            {
                "name": stage.name,
                "status": stage.status,
                "order": stage.stage_order,
                "error_kind": stage.error_kind,
            }
            for stage in sorted(run.stages, key=lambda s: s.stage_order)
        ]
    }

@router.get("/runs/{run_id}/logs")
async def get_run_logs(run_id: str, db: AsyncSession = Depends(get_db)):
    """Get the (redacted) logs of every stage that ran."""
    await load_run(db, run_id)

    query = (
        select(PipelineStage)
        .where(PipelineStage.run_id == run_id)
        .order_by(PipelineStage.stage_order)
    )
    result = await db.execute(query)
    stages = result.scalars().all()

    return {
        "run_id": run_id,
        "stages": [
            {
                "name": stage.name,
                "status": stage.status,
                "logs": stage.logs,
                "started_at": stage.started_at,
                "finished_at": stage.finished_at,
            }
            for stage in stages
        ]
    }

@router.post("/runs/{run_id}/cancel", status_code=202)
async def cancel_run(run_id: str, db: AsyncSession = Depends(get_db)):
    """Request cancellation of a queued or running run."""
    run = await load_run(db, run_id)
    if run.status in TERMINAL_STATUSES:
        raise HTTPException(status_code=409, detail=f"Pipeline run already finished with status '{run.status}'")

    await request_cancel(run_id)
    return {"status": "cancelling", "run_id": run_id}

@router.get("/stats")
async def get_pipeline_stats(db: AsyncSession = Depends(get_db)):
    """Get pipeline statistics."""
    status_query = (
        select(PipelineRun.status, func.count(PipelineRun.id))
        .group_by(PipelineRun.status)
    )
    result = await db.execute(status_query)
    status_counts = {row[0]: row[1] for row in result.all()}

    pipeline_query = select(func.count(func.distinct(PipelineRun.pipeline_name)))
    result = await db.execute(pipeline_query)

    return {
        "pipelines": result.scalar(),
        "runs": status_counts,
        "total_runs": sum(status_counts.values()),
        "queue_length": await get_queue_length(),
    }
