"""
Argv and environment builder for pipeline step processes.
"""

import re
from pathlib import Path
from typing import Dict, List, Mapping

from runner.src.models.pipeline import Step

PARAM_PATTERN = re.compile(r"\$\{params\.([A-Za-z_][A-Za-z0-9_]*)\}")
ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")

def render_template(template: str, params: Mapping[str, str]) -> str:
    """Substitute ``${params.NAME}`` placeholders. Unknown names are left as-is."""
    def replace(match: re.Match) -> str:
        name = match.group(1)
        return str(params[name]) if name in params else match.group(0)

    return PARAM_PATTERN.sub(replace, template)

def expand_env(value: str, env: Mapping[str, str]) -> str:
    """
    Expand ``$VAR`` and ``${VAR}`` for argv-form commands, which never see a
    shell. Unknown variables are left untouched.
    """
    def replace(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        return env[name] if name in env else match.group(0)

    return ENV_PATTERN.sub(replace, value)

def build_command(
    step: Step,
    params: Mapping[str, str],
    env: Mapping[str, str],
    shell: str = "/bin/sh",
) -> List[str]:
    """
    Build the argv for a step.

    String commands run through ``shell -c`` so the shell expands variables
    itself; argv commands are expanded here.
    """
    if isinstance(step.command, str):
        return [shell, "-c", render_template(step.command, params)]
    return [expand_env(render_template(arg, params), env) for arg in step.command]

def display_command(step: Step, params: Mapping[str, str]) -> str:
    """Command text for logs. Environment values are never expanded into it."""
    if isinstance(step.command, str):
        return render_template(step.command, params)
    return " ".join(render_template(arg, params) for arg in step.command)

def build_environment(run_id: str, workspace: Path) -> Dict[str, str]:
    """Run-wide variables every step process receives."""
    return {
        "STAGELINE_RUN_ID": run_id,
        "WORKSPACE": str(workspace),
    }

def build_stage_environment(stage_name: str) -> Dict[str, str]:
    return {"STAGELINE_STAGE_NAME": stage_name}

def missing_env(step: Step, env: Mapping[str, str]) -> List[str]:
    return [key for key in step.required_env if not env.get(key)]
