"""
Stageline runner - main entry point.
"""

import logging
import os
import signal
import sys
import threading
import uuid
from pathlib import Path
from typing import Optional, Tuple

import click

from runner.src.config import get_settings
from runner.src.errors import StagelineError
from runner.src.models.run import PipelineRun, RunStatus
from runner.src.services.credentials import build_credential_store
from runner.src.services.executor import execute_pipeline
from runner.src.services.pipeline_parser import load_pipeline_file
from runner.src.services.run_log import RunLog

logger = logging.getLogger(__name__)

EXIT_CODES = {
    RunStatus.SUCCESS: 0,
    RunStatus.FAILURE: 1,
    RunStatus.CANCELLED: 1,
    RunStatus.FAULT: 2,
}

STATUS_COLORS = {
    "success": "green",
    "failure": "red",
    "cancelled": "yellow",
    "fault": "magenta",
}

def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

def parse_params(values: Tuple[str, ...]) -> dict:
    params = {}
    for value in values:
        name, sep, param = value.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected KEY=VALUE, got '{value}'", param_hint="--param")
        params[name] = param
    return params

@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--verbose", is_flag=True, default=False, help="Increase logging verbosity.")
def main(verbose: bool) -> None:
    """Stageline pipeline runner."""
    configure_logging(verbose)

@main.command()
def worker() -> None:  # pragma: no cover - needs Redis and a database
    """Pull queued runs from Redis and execute them."""
    from runner.src.services.status_reporter import init_db
    from runner.src.worker import run_worker

    settings = get_settings()
    logger.info("Starting Stageline runner")
    logger.info(f"Redis URL: {settings.redis_url}")
    logger.info(f"Workspace root: {settings.workspace_root}")

    try:
        init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    logger.info("Starting worker...")
    run_worker()

@main.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-p", "--param", "params", multiple=True, help="Pipeline parameter as KEY=VALUE.")
@click.option("--workspace", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Working directory for steps (default: current directory).")
@click.option("--run-log", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Append the run record to this file (default: configured run log).")
@click.option("--run-id", type=str, default=None, help="Override generated run identifier.")
def run(
    pipeline_file: Path,
    params: Tuple[str, ...],
    workspace: Optional[Path],
    run_log: Optional[Path],
    run_id: Optional[str],
) -> None:
    """Run a pipeline file locally. Ctrl-C cancels the run."""
    settings = get_settings()

    try:
        definition = load_pipeline_file(pipeline_file)
        credentials = build_credential_store(settings, os.environ)
    except (StagelineError, OSError, ValueError) as e:
        raise click.ClickException(str(e))

    workspace = (workspace or Path.cwd()).resolve()
    workspace.mkdir(parents=True, exist_ok=True)

    cancel_event = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda *_: cancel_event.set())
    try:
        result = execute_pipeline(
            definition,
            parse_params(params),
            run_id=run_id or str(uuid.uuid4()),
            workspace=workspace,
            credentials=credentials,
            cancel_event=cancel_event,
            run_log=RunLog(run_log or settings.run_log_path),
            settings=settings,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    print_summary(result)
    sys.exit(EXIT_CODES.get(result.status, 2))

def print_summary(result: PipelineRun) -> None:
    click.echo("")
    color = STATUS_COLORS.get(result.status.value, "white")
    click.echo(click.style(f"Run {result.run_id} status: {result.status.value}", fg=color))
    for stage in result.stages:
        line = f" - {stage.stage}: {stage.status.value}"
        if stage.report:
            line += (f" (tests: {stage.report.tests}, passed: {stage.report.passed}, "
                     f"failed: {stage.report.failures}, errors: {stage.report.errors})")
        if stage.error:
            line += f" :: {stage.error}"
        click.echo(line)
    for hook in result.hooks:
        click.echo(f" * post {hook.trigger}: {hook.status.value}")
    for warning in result.warnings:
        click.echo(click.style(f" ! {warning}", fg="yellow"))
    if result.error:
        click.echo(click.style(f"Error: {result.error}", fg="red"))

if __name__ == "__main__":
    main()
