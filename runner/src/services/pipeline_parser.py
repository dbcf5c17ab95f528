"""
Pipeline YAML parser and validator.

Produces a normalized dict (safe to put on the queue as JSON) that
``load_definition`` turns into a PipelineDefinition.
"""

import yaml
from pathlib import Path
from typing import List, Dict, Any, Optional, Union

from pydantic import ValidationError

from runner.src.errors import StagelineError
from runner.src.models.pipeline import PipelineDefinition

DEFINITION_FILES = [
    "Stagelinefile.yml",
    "Stagelinefile.yaml",
    ".stageline.yml",
    ".stageline.yaml",
]

HOOK_TRIGGERS = ("success", "failure", "cancelled", "always")

class PipelineConfigError(StagelineError):
    """Raised when pipeline configuration is invalid."""
    kind = "config_error"

def parse_pipeline_config(yaml_content: str) -> Dict[str, Any]:
    """Parse pipeline YAML configuration from string."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise PipelineConfigError(f"Invalid YAML: {e}")

    return validate_config(config)

def parse_pipeline_dict(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate pipeline configuration from dict."""
    return validate_config(config)

def load_definition(config: Dict[str, Any]) -> PipelineDefinition:
    """Build a definition from a normalized config dict."""
    try:
        return PipelineDefinition.model_validate(config)
    except ValidationError as e:
        raise PipelineConfigError(f"Invalid pipeline definition: {e}")

def load_pipeline_file(path: Union[str, Path]) -> PipelineDefinition:
    with open(path, "r") as f:
        return load_definition(parse_pipeline_config(f.read()))

def find_definition_file(repo_path: Union[str, Path]) -> Optional[Path]:
    for name in DEFINITION_FILES:
        candidate = Path(repo_path) / name
        if candidate.exists():
            return candidate
    return None

def validate_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate pipeline configuration structure."""
    if not config:
        raise PipelineConfigError("Empty pipeline configuration")

    if not isinstance(config, dict):
        raise PipelineConfigError("Pipeline configuration must be a dictionary")

    # Validate name (optional but recommended)
    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise PipelineConfigError("Pipeline 'name' must be a string")

    # Validate stages
    if "stages" not in config:
        raise PipelineConfigError("Pipeline must have 'stages' defined")

    stages = config["stages"]
    if not isinstance(stages, list):
        raise PipelineConfigError("Pipeline 'stages' must be a list")

    if len(stages) == 0:
        raise PipelineConfigError("Pipeline must have at least one stage")

    validated_stages = []
    seen = set()
    for i, stage in enumerate(stages):
        validated_stage = validate_stage(stage, i)
        if validated_stage["name"] in seen:
            raise PipelineConfigError(f"Duplicate stage name '{validated_stage['name']}'")
        seen.add(validated_stage["name"])
        validated_stages.append(validated_stage)

    return {
        "name": name,
        "environment": validate_env(config.get("environment", {}), "Pipeline"),
        "parameters": validate_parameters(config.get("parameters") or []),
        "stages": validated_stages,
        "post": validate_post(config.get("post", {}), "Pipeline"),
    }

def validate_stage(stage: Dict[str, Any], index: int) -> Dict[str, Any]:
    """Validate a single pipeline stage."""
    if not isinstance(stage, dict):
        raise PipelineConfigError(f"Stage {index} must be a dictionary")

    # Required fields
    if "name" not in stage:
        raise PipelineConfigError(f"Stage {index} missing 'name'")

    if "steps" not in stage:
        raise PipelineConfigError(f"Stage {index} missing 'steps'")

    # Validate types
    if not isinstance(stage["name"], str) or not stage["name"].strip():
        raise PipelineConfigError(f"Stage {index} 'name' must be a non-empty string")

    where = f"Stage '{stage['name']}'"

    if not isinstance(stage["steps"], list) or not stage["steps"]:
        raise PipelineConfigError(f"{where} 'steps' must be a non-empty list")

    unknown = set(stage) - {"name", "when", "steps", "environment", "credentials", "reports", "post"}
    if unknown:
        raise PipelineConfigError(f"{where} has unknown keys: {', '.join(sorted(unknown))}")

    validated = {
        "name": stage["name"],
        "steps": [validate_step(step, f"{where} step {j}") for j, step in enumerate(stage["steps"])],
        "environment": validate_env(stage.get("environment", {}), where),
        "credentials": validate_credentials(stage.get("credentials") or [], where),
        "reports": validate_reports(stage.get("reports") or [], where),
        "post": validate_post(stage.get("post", {}), where),
    }
    if stage.get("when") is not None:
        validated["when"] = validate_condition(stage["when"], f"{where} 'when'")
    return validated

def validate_step(step: Any, where: str) -> Dict[str, Any]:
    """A step is a command string, an argv list, or a mapping with 'command'."""
    if isinstance(step, (str, list)):
        step = {"command": step}

    if not isinstance(step, dict):
        raise PipelineConfigError(f"{where} must be a string, list or dictionary")

    if "command" not in step:
        raise PipelineConfigError(f"{where} missing 'command'")

    command = step["command"]
    if isinstance(command, list):
        if not command or not all(isinstance(arg, (str, int, float)) for arg in command):
            raise PipelineConfigError(f"{where} 'command' list must contain strings")
        command = [str(arg) for arg in command]
    elif not isinstance(command, str) or not command.strip():
        raise PipelineConfigError(f"{where} 'command' must be a non-empty string or list")

    success_codes = step.get("success_codes", [0])
    if isinstance(success_codes, int):
        success_codes = [success_codes]
    if not isinstance(success_codes, list) or not all(isinstance(c, int) for c in success_codes):
        raise PipelineConfigError(f"{where} 'success_codes' must be a list of integers")

    timeout = step.get("timeout")
    if timeout is not None and (not isinstance(timeout, (int, float)) or timeout < 0):
        raise PipelineConfigError(f"{where} 'timeout' must be a non-negative number")

    required_env = step.get("required_env", [])
    if not isinstance(required_env, list) or not all(isinstance(k, str) for k in required_env):
        raise PipelineConfigError(f"{where} 'required_env' must be a list of strings")

    validated = {
        "command": command,
        "success_codes": success_codes,
        "required_env": required_env,
        "timeout": timeout,
    }
    if step.get("name") is not None:
        validated["name"] = str(step["name"])
    return validated

def validate_env(env: Any, where: str) -> Dict[str, str]:
    if env is None:
        return {}
    if not isinstance(env, dict):
        raise PipelineConfigError(f"{where} 'environment' must be a dictionary")
    validated = {}
    for key, value in env.items():
        if not isinstance(key, str):
            raise PipelineConfigError(f"{where} environment keys must be strings")
        if isinstance(value, bool):
            value = "true" if value else "false"
        validated[key] = "" if value is None else str(value)
    return validated

def validate_parameters(parameters: Any) -> List[Dict[str, Any]]:
    if not isinstance(parameters, list):
        raise PipelineConfigError("Pipeline 'parameters' must be a list")
    validated = []
    for i, param in enumerate(parameters):
        if isinstance(param, str):
            param = {"name": param}
        if not isinstance(param, dict) or not isinstance(param.get("name"), str):
            raise PipelineConfigError(f"Parameter {i} must have a 'name'")
        default = param.get("default")
        if isinstance(default, bool):
            default = "true" if default else "false"
        validated.append({
            "name": param["name"],
            "default": None if default is None else str(default),
            "description": str(param.get("description", "")),
        })
    return validated

def validate_credentials(credentials: Any, where: str) -> List[Dict[str, str]]:
    if not isinstance(credentials, list):
        raise PipelineConfigError(f"{where} 'credentials' must be a list")
    validated = []
    for i, binding in enumerate(credentials):
        if not isinstance(binding, dict) or "id" not in binding or "variable" not in binding:
            raise PipelineConfigError(f"{where} credential {i} needs 'id' and 'variable'")
        validated.append({"id": str(binding["id"]), "variable": str(binding["variable"])})
    return validated

def validate_reports(reports: Any, where: str) -> List[Dict[str, Any]]:
    if not isinstance(reports, list):
        raise PipelineConfigError(f"{where} 'reports' must be a list")
    validated = []
    for i, report in enumerate(reports):
        if isinstance(report, str):
            report = {"path": report}
        if not isinstance(report, dict) or not isinstance(report.get("path"), str):
            raise PipelineConfigError(f"{where} report {i} must have a 'path'")
        validated.append({"path": report["path"], "required": bool(report.get("required", False))})
    return validated

def validate_post(post: Any, where: str) -> Dict[str, List[Dict[str, Any]]]:
    if post is None:
        return {}
    if not isinstance(post, dict):
        raise PipelineConfigError(f"{where} 'post' must be a dictionary")
    unknown = set(post) - set(HOOK_TRIGGERS)
    if unknown:
        raise PipelineConfigError(f"{where} 'post' has unknown triggers: {', '.join(sorted(unknown))}")
    validated = {}
    for trigger, steps in post.items():
        if not isinstance(steps, list):
            steps = [steps]
        validated[trigger] = [
            validate_step(step, f"{where} post '{trigger}' step {j}") for j, step in enumerate(steps)
        ]
    return validated

def validate_condition(condition: Any, where: str) -> Dict[str, Any]:
    """
    Normalize a ``when`` condition into its tagged form.

    Accepted shapes (one key per mapping)::

        {param: NAME}             {file_exists: PATH}
        {env: NAME}               {env: {name: NAME, equals: VALUE}}
        {branch: PATTERN}         {expression: "params.X == 'y'"}
        {all: [...]}              {any: [...]}
        {not: {...}}              always
    """
    if condition == "always" or condition is True:
        return {"kind": "always"}

    if not isinstance(condition, dict) or len(condition) != 1:
        raise PipelineConfigError(f"{where} must be a mapping with exactly one key")

    key, value = next(iter(condition.items()))

    if key == "param":
        return {"kind": "param", "name": _require_str(value, where, key)}

    if key == "file_exists":
        return {"kind": "file_exists", "path": _require_str(value, where, key)}

    if key == "branch":
        return {"kind": "branch", "pattern": _require_str(value, where, key)}

    if key == "expression":
        return {"kind": "expression", "source": _require_str(value, where, key)}

    if key == "env":
        if isinstance(value, str):
            return {"kind": "env", "name": value}
        if isinstance(value, dict) and isinstance(value.get("name"), str):
            equals = value.get("equals")
            return {
                "kind": "env",
                "name": value["name"],
                "equals": None if equals is None else str(equals),
            }
        raise PipelineConfigError(f"{where} 'env' needs a variable name")

    if key in ("all", "any"):
        if not isinstance(value, list) or not value:
            raise PipelineConfigError(f"{where} '{key}' must be a non-empty list")
        return {
            "kind": key,
            "conditions": [validate_condition(c, f"{where}.{key}[{i}]") for i, c in enumerate(value)],
        }

    if key == "not":
        return {"kind": "not", "condition": validate_condition(value, f"{where}.not")}

    raise PipelineConfigError(f"{where} has unknown condition '{key}'")

def _require_str(value: Any, where: str, key: str) -> str:
    if not isinstance(value, str) or not value:
        raise PipelineConfigError(f"{where} '{key}' must be a non-empty string")
    return value
