"""
Report pipeline and stage status to database.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import create_engine, update, select
from sqlalchemy.orm import sessionmaker

from runner.src.config import get_settings
from runner.src.models.db import Base, PipelineRun, PipelineStage
from runner.src.models.run import PipelineRun as RunResult, StageResult
from runner.src.services.executor import RunListener

logger = logging.getLogger(__name__)

_session_factory = None
_session_factory_lock = threading.Lock()

def get_session_factory() -> sessionmaker:
    """Sync database connection for the runner, created on first use."""
    global _session_factory
    with _session_factory_lock:
        if _session_factory is None:
            engine = create_engine(get_settings().database_url)
            _session_factory = sessionmaker(bind=engine)
        return _session_factory

def init_db(session_factory: Optional[sessionmaker] = None):
    """Create tables that do not exist yet."""
    session_factory = session_factory or get_session_factory()
    Base.metadata.create_all(session_factory.kw["bind"])

def _now() -> datetime:
    return datetime.now(timezone.utc)

def update_run_status(
    run_id: str,
    status: str,
    started_at: Optional[datetime] = None,
    finished_at: Optional[datetime] = None,
    error: Optional[str] = None,
    manifest: Optional[dict] = None,
    session_factory: Optional[sessionmaker] = None,
):
    """Update pipeline run status in database."""
    session_factory = session_factory or get_session_factory()

    with session_factory() as session:
        values = {"status": status, "updated_at": _now()}

        if started_at:
            values["started_at"] = started_at
        if finished_at:
            values["finished_at"] = finished_at
        if error is not None:
            values["error"] = error
        if manifest is not None:
            values["manifest"] = manifest

        session.execute(
            update(PipelineRun)
            .where(PipelineRun.id == run_id)
            .values(**values)
        )
        session.commit()
        logger.info(f"Updated run {run_id} status to {status}")

def record_stage(
    run_id: str,
    stage_order: int,
    result: StageResult,
    session_factory: Optional[sessionmaker] = None,
):
    """Insert or update the row for a stage result. Logs are already redacted."""
    session_factory = session_factory or get_session_factory()

    with session_factory() as session:
        row = session.execute(
            select(PipelineStage)
            .where(PipelineStage.run_id == run_id)
            .where(PipelineStage.stage_order == stage_order)
        ).scalar_one_or_none()

        if row is None:
            row = PipelineStage(run_id=run_id, name=result.stage, stage_order=stage_order)
            session.add(row)

        row.status = result.status.value
        row.error_kind = result.error_kind
        row.error = result.error
        row.logs = result.logs
        row.report = result.report.model_dump() if result.report else None
        row.started_at = result.started_at
        row.finished_at = result.finished_at
        row.updated_at = _now()

        session.commit()
        logger.debug(f"Recorded stage {stage_order} ({result.stage}) of run {run_id}: {result.status.value}")

def get_run_stages(run_id: str, session_factory: Optional[sessionmaker] = None):
    """Get all stages for a run."""
    session_factory = session_factory or get_session_factory()

    with session_factory() as session:
        stages = session.query(PipelineStage).filter(
            PipelineStage.run_id == run_id
        ).order_by(PipelineStage.stage_order).all()

        return [
            {
                "order": s.stage_order,
                "name": s.name,
                "status": s.status,
                "error_kind": s.error_kind,
            }
            for s in stages
        ]

class DatabaseStatusReporter(RunListener):
    """
    Mirrors run progress into the database.

    Database errors are logged and never interrupt the run itself.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def run_started(self, run: RunResult) -> None:
        try:
            update_run_status(run.run_id, run.status.value, started_at=run.started_at,
                              session_factory=self.session_factory)
        except Exception:
            logger.exception(f"Failed to record start of run {run.run_id}")

    def stage_started(self, run: RunResult, result: StageResult) -> None:
        self._record(run, result)

    def stage_finished(self, run: RunResult, result: StageResult) -> None:
        self._record(run, result)

    def run_finished(self, run: RunResult) -> None:
        try:
            update_run_status(
                run.run_id,
                run.status.value,
                finished_at=run.finished_at,
                error=run.error,
                manifest=run.manifest(),
                session_factory=self.session_factory,
            )
        except Exception:
            logger.exception(f"Failed to record end of run {run.run_id}")

    def _record(self, run: RunResult, result: StageResult) -> None:
        try:
            order = next(i for i, stage in enumerate(run.stages) if stage is result)
            record_stage(run.run_id, order, result, session_factory=self.session_factory)
        except Exception:
            logger.exception(f"Failed to record stage '{result.stage}' of run {run.run_id}")
