"""
Queue worker - pulls jobs from Redis and executes them.

Each run executes in its own thread; up to ``max_concurrent_runs`` runs are
in flight at once. A watcher polls the cancel set and signals the matching
run's cancel event.
"""

import asyncio
import logging
import os
import threading
import redis.asyncio as redis
import json
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Dict, Any

from pydantic import ValidationError

from runner.src.config import get_settings, Settings
from runner.src.errors import EngineFault
from runner.src.models.run import PipelineJob, PipelineRun, RunStatus
from runner.src.services.credentials import CredentialStore, build_credential_store
from runner.src.services.executor import execute_pipeline, utcnow
from runner.src.services.pipeline_parser import PipelineConfigError, load_definition
from runner.src.services.run_log import RunLog
from runner.src.services.status_reporter import DatabaseStatusReporter, update_run_status
from runner.src.services.workspace import cleanup_workspace, prepare_workspace

logger = logging.getLogger(__name__)

PIPELINE_QUEUE = "stageline:jobs"
PIPELINE_STATUS = "stageline:status"
PIPELINE_CANCEL = "stageline:cancel"

async def get_next_job(client: redis.Redis, timeout: int = 5) -> Optional[Dict[str, Any]]:
    """Pull next job from Redis queue."""
    result = await client.brpop(PIPELINE_QUEUE, timeout=timeout)
    if result:
        _, job_data = result
        return json.loads(job_data)
    return None

def execute_job(
    job: PipelineJob,
    cancel_event: threading.Event,
    credentials: CredentialStore,
    run_log: RunLog,
    settings: Settings,
    listener: Optional[DatabaseStatusReporter] = None,
) -> PipelineRun:
    """Run one queued job to completion. Called from a worker thread."""
    listener = listener or DatabaseStatusReporter()
    workspace = None

    try:
        definition = load_definition(job.config)
        workspace = prepare_workspace(settings.workspace_root, job.run_id, job.repo_info)
    except (PipelineConfigError, EngineFault) as e:
        logger.error(f"Run {job.run_id} could not start: {e}")
        status = RunStatus.FAILURE if isinstance(e, PipelineConfigError) else RunStatus.FAULT
        run = PipelineRun(
            run_id=job.run_id,
            pipeline_name=job.config.get("name", "Unnamed Pipeline"),
            status=status,
            parameters=job.parameters,
            error=str(e),
            started_at=utcnow(),
            finished_at=utcnow(),
        )
        run_log.append(run.manifest())
        listener.run_finished(run)
        cleanup_workspace(workspace)
        return run

    try:
        return execute_pipeline(
            definition,
            job.parameters,
            run_id=job.run_id,
            workspace=workspace,
            credentials=credentials,
            cancel_event=cancel_event,
            listener=listener,
            run_log=run_log,
            settings=settings,
        )
    finally:
        if not settings.keep_workspaces:
            cleanup_workspace(workspace)

class Worker:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.client = redis.from_url(self.settings.redis_url, decode_responses=True)
        self.run_log = RunLog(self.settings.run_log_path)
        self.credentials = build_credential_store(self.settings, os.environ)
        self.active: Dict[str, threading.Event] = {}
        self.pool = ThreadPoolExecutor(max_workers=self.settings.max_concurrent_runs)
        self.slots = asyncio.Semaphore(self.settings.max_concurrent_runs)

    async def run(self):
        """Main worker loop."""
        logger.info("Worker started, waiting for jobs...")
        watcher = asyncio.create_task(self.watch_cancellations())
        tasks = set()

        try:
            while True:
                await self.slots.acquire()
                try:
                    job = await get_next_job(self.client)
                except Exception as e:
                    self.slots.release()
                    logger.exception(f"Worker error: {e}")
                    await asyncio.sleep(5)
                    continue

                if not job:
                    self.slots.release()
                    continue

                task = asyncio.create_task(self.handle(job))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        finally:
            watcher.cancel()
            for event in self.active.values():
                event.set()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            self.pool.shutdown(wait=True)
            await self.client.aclose()

    async def handle(self, job_data: Dict[str, Any]):
        try:
            job = PipelineJob.model_validate(job_data)
        except ValidationError as e:
            logger.error(f"Discarding malformed job: {e}")
            self.slots.release()
            return

        logger.info(f"Received job for run {job.run_id}")
        cancel_event = threading.Event()
        self.active[job.run_id] = cancel_event

        try:
            if await self.client.sismember(PIPELINE_CANCEL, job.run_id):
                # Cancelled while queued: the run finishes as cancelled before its first stage
                cancel_event.set()
            await self.client.hset(PIPELINE_STATUS, job.run_id, RunStatus.RUNNING.value)
            loop = asyncio.get_running_loop()
            run = await loop.run_in_executor(
                self.pool,
                execute_job,
                job,
                cancel_event,
                self.credentials,
                self.run_log,
                self.settings,
            )
            await self.client.hset(PIPELINE_STATUS, job.run_id, run.status.value)
            await self.client.srem(PIPELINE_CANCEL, job.run_id)
        except Exception as e:
            logger.exception(f"Failed to execute pipeline {job.run_id}: {e}")
            await self.mark_fault(job.run_id, str(e))
        finally:
            self.active.pop(job.run_id, None)
            self.slots.release()

    async def mark_fault(self, run_id: str, error: str):
        try:
            await self.client.hset(PIPELINE_STATUS, run_id, RunStatus.FAULT.value)
            await asyncio.to_thread(
                update_run_status, run_id, RunStatus.FAULT.value, finished_at=utcnow(), error=error
            )
        except Exception:
            logger.exception(f"Failed to record fault of run {run_id}")

    async def watch_cancellations(self):
        """Poll the cancel set and signal matching active runs."""
        while True:
            try:
                requested = await self.client.smembers(PIPELINE_CANCEL)
                for run_id in requested:
                    event = self.active.get(run_id)
                    if event is not None and not event.is_set():
                        logger.info(f"Cancellation requested for run {run_id}")
                        event.set()
            except Exception as e:
                logger.warning(f"Failed to poll cancellations: {e}")
            await asyncio.sleep(self.settings.cancel_poll_interval)

async def worker_loop():
    worker = Worker()
    try:
        await worker.run()
    except asyncio.CancelledError:
        logger.info("Worker shutting down...")

def run_worker():
    """Entry point for worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
