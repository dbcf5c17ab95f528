"""Tests for definition and result models."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from runner.src.models.pipeline import PipelineDefinition, PostHooks, Stage, Step
from runner.src.models.run import PipelineRun, RunStatus, StageResult, StageStatus, StepOutcome

def test_definitions_are_immutable():
    definition = PipelineDefinition(stages=[Stage(name="a", steps=[Step(command="x")])])

    with pytest.raises(ValidationError):
        definition.name = "changed"

    assert definition.name == "Unnamed Pipeline"

def test_post_hooks_order():
    hooks = PostHooks(
        success=[Step(command="ok")],
        failure=[Step(command="bad")],
        always=[Step(command="cleanup")],
    )

    assert [trigger for trigger, _ in hooks.for_outcome("success")] == ["success", "always"]
    assert [trigger for trigger, _ in hooks.for_outcome("failure")] == ["failure", "always"]
    assert [trigger for trigger, _ in hooks.for_outcome("cancelled")] == ["always"]
    assert PostHooks().for_outcome("success") == []
    assert PostHooks().is_empty()

def test_resolve_parameters():
    definition = PipelineDefinition(
        parameters=[{"name": "A", "default": "1"}, {"name": "B"}],
        stages=[Stage(name="a", steps=[Step(command="x")])],
    )

    assert definition.resolve_parameters() == {"A": "1"}
    assert definition.resolve_parameters({"A": "2", "C": True}) == {"A": "2", "C": "true"}

def test_stage_logs():
    now = datetime.now(timezone.utc)
    result = StageResult(
        stage="test",
        status=StageStatus.FAILURE,
        error_kind="step_failure",
        error="Step 'make test' exited with code 2",
        started_at=now,
        steps=[
            StepOutcome(name="make", command="make", exit_code=0, stdout="built"),
            StepOutcome(name="make test", command="make test", exit_code=2, stderr="boom\n"),
        ],
    )

    assert result.logs == (
        "$ make\nbuilt\n[exit 0]\n"
        "$ make test\nboom\n[exit 2]\n"
        "[step_failure] Step 'make test' exited with code 2\n"
    )

def test_manifest_excludes_output():
    now = datetime.now(timezone.utc)
    run = PipelineRun(
        run_id="r",
        pipeline_name="p",
        status=RunStatus.SUCCESS,
        started_at=now,
        finished_at=now,
        stages=[StageResult(
            stage="a",
            status=StageStatus.SUCCESS,
            started_at=now,
            finished_at=now,
            steps=[StepOutcome(name="x", command="x", exit_code=0, stdout="private output")],
        )],
    )

    manifest = run.manifest()

    assert manifest["status"] == "success"
    assert manifest["stages"] == [{
        "name": "a",
        "status": "success",
        "error_kind": None,
        "started_at": now.isoformat(),
        "finished_at": now.isoformat(),
    }]
    assert "private output" not in str(manifest)
    assert RunStatus.SUCCESS.is_terminal
    assert not RunStatus.RUNNING.is_terminal
