"""
Pipeline executor - runs pipeline stages as local processes.
"""

import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from runner.src.config import Settings, get_settings
from runner.src.errors import (
    ConditionEvaluationError,
    CredentialNotFound,
    EngineFault,
    ExecutorTimeout,
    RunCancelled,
    StagelineError,
    StepFailure,
)
from runner.src.models.pipeline import PipelineDefinition, PostHooks, Stage, Step
from runner.src.models.run import (
    HookResult,
    PipelineRun,
    RunStatus,
    StageResult,
    StageStatus,
    StepOutcome,
)
from runner.src.process import (
    build_command,
    build_environment,
    build_stage_environment,
    display_command,
    missing_env,
    run_process,
)
from runner.src.services import reporter
from runner.src.services.conditions import ConditionContext, evaluate
from runner.src.services.credentials import CredentialStore, StageEnvironment, environment_scope
from runner.src.services.run_log import RunLog

logger = logging.getLogger(__name__)

RESERVED_ENV_PREFIX = "STAGELINE_"

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class RunListener:
    """
    Receives progress of a run. Called from the thread executing the run.
    The default implementation ignores everything.
    """

    def run_started(self, run: PipelineRun) -> None:
        pass

    def stage_started(self, run: PipelineRun, result: StageResult) -> None:
        pass

    def stage_finished(self, run: PipelineRun, result: StageResult) -> None:
        pass

    def run_finished(self, run: PipelineRun) -> None:
        pass

@dataclass
class RunContext:
    run: PipelineRun
    definition: PipelineDefinition
    workspace: Path
    base_env: Mapping[str, str]
    settings: Settings
    credentials: Optional[CredentialStore] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    listener: RunListener = field(default_factory=RunListener)

    @property
    def params(self) -> Mapping[str, str]:
        return self.run.parameters

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def condition_context(self, stage: Stage) -> ConditionContext:
        return ConditionContext(
            params=self.params,
            env={**self.base_env, **stage.environment},
            workspace=self.workspace,
        )

def inherited_environment(settings: Settings, environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    The runner's own environment as passed down to steps, minus the
    runner's configuration and credential variables.
    """
    if not settings.inherit_environment:
        return {}
    environ = os.environ if environ is None else environ
    return {
        key: value
        for key, value in environ.items()
        if not key.startswith(RESERVED_ENV_PREFIX)
        and not key.startswith(settings.credential_env_prefix)
    }

def execute_pipeline(
    definition: PipelineDefinition,
    parameters: Optional[Dict[str, str]] = None,
    *,
    run_id: Optional[str] = None,
    workspace: Optional[Path] = None,
    credentials: Optional[CredentialStore] = None,
    cancel_event: Optional[threading.Event] = None,
    listener: Optional[RunListener] = None,
    run_log: Optional[RunLog] = None,
    settings: Optional[Settings] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PipelineRun:
    """
    Execute a pipeline run.

    Stages run in declared order; the first failed stage stops the pipeline.
    Post hooks matching the final outcome run afterwards and never change it.
    Returns the finished run; engine faults are reported as status ``fault``.
    """
    settings = settings or get_settings()
    workspace = Path(workspace or Path.cwd()).resolve()

    run = PipelineRun(
        run_id=run_id or str(uuid.uuid4()),
        pipeline_name=definition.name,
        parameters=definition.resolve_parameters(parameters),
        environment=dict(definition.environment),
    )

    base_env = {
        **inherited_environment(settings, environ),
        **run.parameters,
        **definition.environment,
        **build_environment(run.run_id, workspace),
    }

    ctx = RunContext(
        run=run,
        definition=definition,
        workspace=workspace,
        base_env=MappingProxyType(base_env),
        settings=settings,
        credentials=credentials,
        cancel_event=cancel_event or threading.Event(),
        listener=listener or RunListener(),
    )

    logger.info(f"Starting pipeline run {run.run_id} ({definition.name}) with {len(definition.stages)} stages")

    run.status = RunStatus.RUNNING
    run.started_at = utcnow()
    ctx.listener.run_started(run)

    try:
        outcome = _run_stages(ctx)
    except EngineFault as e:
        logger.error(f"Pipeline run {run.run_id} aborted: {e}")
        run.status = RunStatus.FAULT
        run.error = str(e)
        _finish(ctx, run_log)
        return run

    # The outcome is final before any post hook runs
    run.status = outcome
    run.hooks.extend(run_hooks(definition.post, outcome.value, ctx))

    _finish(ctx, run_log)
    return run

def _run_stages(ctx: RunContext) -> RunStatus:
    for stage in ctx.definition.stages:
        if ctx.cancelled:
            logger.info(f"Run {ctx.run.run_id} cancelled before stage '{stage.name}'")
            return RunStatus.CANCELLED

        try:
            active = evaluate(stage.when, ctx.condition_context(stage))
        except ConditionEvaluationError as e:
            logger.error(f"Stage '{stage.name}' has an invalid condition: {e}")
            ctx.run.error = f"Stage '{stage.name}': {e}"
            return RunStatus.FAILURE

        if not active:
            logger.info(f"Skipping stage '{stage.name}': condition not met")
            continue

        result = run_stage(stage, ctx)

        if result.status == StageStatus.CANCELLED:
            return RunStatus.CANCELLED
        if result.status != StageStatus.SUCCESS:
            return RunStatus.FAILURE

    return RunStatus.SUCCESS

def _finish(ctx: RunContext, run_log: Optional[RunLog]) -> None:
    ctx.run.finished_at = utcnow()
    try:
        reporter.publish(ctx.run, run_log)
    except OSError as e:
        # The outcome stands; only the record of it is lost
        logger.error(f"Failed to write run log for run {ctx.run.run_id}: {e}")
        ctx.run.warnings.append(f"run log not written: {e}")
    ctx.listener.run_finished(ctx.run)

def _seal(result: StageResult, status: StageStatus, error: Optional[StagelineError] = None) -> None:
    result.status = status
    if error is not None:
        result.error_kind = error.kind
        result.error = str(error)

def run_stage(stage: Stage, ctx: RunContext) -> StageResult:
    """
    Run one stage whose condition already evaluated true.

    The result is appended to the run as soon as the stage starts and sealed
    (``finished_at`` set) when it ends. Raises EngineFault only.
    """
    result = StageResult(stage=stage.name, started_at=utcnow())
    ctx.run.stages.append(result)
    ctx.listener.stage_started(ctx.run, result)
    logger.info(f"Running stage '{stage.name}' ({len(stage.steps)} steps)")

    overrides = {**stage.environment, **build_stage_environment(stage.name)}

    try:
        with environment_scope(ctx.base_env, overrides, stage.credentials, ctx.credentials) as scope:
            try:
                _run_steps(stage, scope, ctx, result)
            except EngineFault as e:
                raise EngineFault(scope.redact(str(e))) from None

            if result.status != StageStatus.CANCELLED:
                _collect_reports(stage, ctx, result)

            result.hooks.extend(
                run_hooks(stage.post, result.status.value, ctx, scope=scope, stage=stage.name)
            )
    except CredentialNotFound as e:
        logger.error(f"Stage '{stage.name}' failed: {e}")
        _seal(result, StageStatus.FAILURE, e)
    except EngineFault as e:
        _seal(result, StageStatus.FAILURE, e)
        raise
    finally:
        result.finished_at = utcnow()
        ctx.listener.stage_finished(ctx.run, result)

    if result.status == StageStatus.SUCCESS:
        logger.info(f"Stage '{stage.name}' succeeded")
    else:
        logger.error(f"Stage '{stage.name}' {result.status.value}: {result.error}")
    return result

def _run_steps(stage: Stage, scope: StageEnvironment, ctx: RunContext, result: StageResult) -> None:
    for step in stage.steps:
        try:
            if ctx.cancelled:
                raise RunCancelled(f"Run cancelled before step '{scope.redact(step.display_name)}'")
            outcome = run_step(step, scope, ctx, cancel_event=ctx.cancel_event)
            result.steps.append(outcome)
            check_outcome(step, outcome, ctx.settings)
        except RunCancelled as e:
            _seal(result, StageStatus.CANCELLED, e)
            return
        except (StepFailure, ExecutorTimeout) as e:
            _seal(result, StageStatus.FAILURE, e)
            return

    result.status = StageStatus.SUCCESS

def run_step(
    step: Step,
    scope: StageEnvironment,
    ctx: RunContext,
    cancel_event: Optional[threading.Event] = None,
) -> StepOutcome:
    """
    Execute a single step under ``scope``. Output and command text are
    redacted before they leave this function.

    Raises StepFailure if a required variable is missing, EngineFault if the
    process cannot be started.
    """
    name = scope.redact(step.display_name)
    missing = missing_env(step, scope.variables)
    if missing:
        raise StepFailure(f"Step '{name}' requires environment variables: {', '.join(missing)}")

    argv = build_command(step, ctx.params, scope.variables, ctx.settings.shell)
    command = scope.redact(display_command(step, ctx.params))
    logger.info(f"Executing step: {command}")

    result = run_process(
        argv,
        scope.variables,
        ctx.workspace,
        timeout=_step_timeout(step, ctx.settings),
        cancel_event=cancel_event,
        grace_period=ctx.settings.kill_grace_period,
        buffer_limit=ctx.settings.output_buffer_limit,
    )

    return StepOutcome(
        name=name,
        command=command,
        exit_code=result.exit_code,
        stdout=scope.redact(result.stdout),
        stderr=scope.redact(result.stderr),
        timed_out=result.timed_out,
        cancelled=result.cancelled,
        truncated=result.truncated,
        duration=result.duration,
    )

def _step_timeout(step: Step, settings: Settings) -> Optional[float]:
    timeout = step.timeout if step.timeout is not None else settings.default_step_timeout
    return timeout or None  # 0 disables the timeout

def check_outcome(step: Step, outcome: StepOutcome, settings: Settings) -> None:
    """Raise the error kind matching a step outcome, if it is not a success."""
    if outcome.cancelled:
        raise RunCancelled(f"Step '{outcome.name}' cancelled")
    if outcome.timed_out:
        timeout = _step_timeout(step, settings)
        raise ExecutorTimeout(f"Step '{outcome.name}' timed out after {timeout}s", timeout)
    if outcome.exit_code not in step.success_codes:
        raise StepFailure(
            f"Step '{outcome.name}' exited with code {outcome.exit_code}",
            exit_code=outcome.exit_code,
        )

def _collect_reports(stage: Stage, ctx: RunContext, result: StageResult) -> None:
    if not stage.reports:
        return

    artifacts, problems = reporter.collect(stage.reports, ctx.workspace)
    result.artifacts = [artifact.path for artifact in artifacts]
    result.report = reporter.summarize(artifacts)
    ctx.run.artifacts.extend(artifacts)
    ctx.run.warnings.extend(f"{stage.name}: {problem}" for problem in problems)

    required = [problem for problem in problems if problem.required]
    if required and result.status == StageStatus.SUCCESS:
        _seal(result, StageStatus.FAILURE, StepFailure(f"Required test report unavailable: {required[0]}"))

def run_hooks(
    hooks: PostHooks,
    outcome: str,
    ctx: RunContext,
    scope: Optional[StageEnvironment] = None,
    stage: Optional[str] = None,
) -> List[HookResult]:
    """
    Run the hook blocks matching ``outcome``, then ``always``.

    Hook failures are logged and recorded; they never propagate. Hooks are
    not cancellable, so cleanup still runs for cancelled runs.
    """
    blocks = hooks.for_outcome(outcome)
    if not blocks:
        return []

    if scope is None:
        with environment_scope(ctx.base_env, {}) as pipeline_scope:
            return [_run_hook_block(trigger, steps, pipeline_scope, ctx, stage) for trigger, steps in blocks]
    return [_run_hook_block(trigger, steps, scope, ctx, stage) for trigger, steps in blocks]

def _run_hook_block(trigger, steps, scope: StageEnvironment, ctx: RunContext, stage: Optional[str]) -> HookResult:
    hook = HookResult(trigger=trigger, stage=stage, status=StageStatus.SUCCESS)
    where = f"stage '{stage}'" if stage else "pipeline"

    for step in steps:
        try:
            outcome = run_step(step, scope, ctx)
            hook.steps.append(outcome)
            check_outcome(step, outcome, ctx.settings)
        except (StepFailure, ExecutorTimeout, EngineFault) as e:
            hook.status = StageStatus.FAILURE
            hook.error = scope.redact(str(e))
            logger.warning(f"Post hook '{trigger}' of {where} failed: {hook.error}")
            break

    return hook
