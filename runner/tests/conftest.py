import sys

import pytest

from runner.src.config import Settings
from runner.src.services.pipeline_parser import load_definition, parse_pipeline_dict
from runner.src.services.run_log import RunLog

@pytest.fixture
def settings(tmp_path):
    return Settings(
        workspace_root=tmp_path / "workspaces",
        run_log_path=tmp_path / "runs.log",
        default_step_timeout=30,
        kill_grace_period=1,
        credentials_file=None,
    )

@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "workspace"
    path.mkdir()
    return path

@pytest.fixture
def run_log(tmp_path):
    return RunLog(tmp_path / "runs.log")

@pytest.fixture
def py():
    """Build an argv that runs a Python snippet with the current interpreter."""
    def command(code):
        return [sys.executable, "-c", code]
    return command

@pytest.fixture
def pipeline():
    """Build a definition from a raw config dict, as loaded from YAML."""
    def build(config):
        return load_definition(parse_pipeline_dict(config))
    return build
