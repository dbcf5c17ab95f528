from runner.src.process.runner import (
    OutputBuffer,
    ProcessResult,
    run_process,
    terminate_process,
)
from runner.src.process.command_builder import (
    build_command,
    build_environment,
    build_stage_environment,
    display_command,
    missing_env,
    render_template,
)

__all__ = [
    "OutputBuffer",
    "ProcessResult",
    "run_process",
    "terminate_process",
    "build_command",
    "build_environment",
    "build_stage_environment",
    "display_command",
    "missing_env",
    "render_template",
]
