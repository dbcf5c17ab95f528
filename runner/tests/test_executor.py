"""Tests for running whole pipelines through real processes."""

import threading

import pytest

from runner.src.models.run import RunStatus, StageStatus
from runner.src.services.credentials import REDACTED, InMemoryCredentialStore
from runner.src.services.executor import RunListener, execute_pipeline, inherited_environment
from runner.src.services.run_log import RunLog

def append_line(name):
    return f"open('hooks.txt', 'a').write('{name}\\n')"

def hook_lines(workspace):
    path = workspace / "hooks.txt"
    return path.read_text().splitlines() if path.exists() else []

@pytest.fixture
def run(settings, workspace, run_log):
    def execute(definition, parameters=None, **kwargs):
        return execute_pipeline(
            definition,
            parameters,
            workspace=workspace,
            settings=settings,
            run_log=run_log,
            **kwargs,
        )
    return execute

def test_stage_with_false_condition_is_skipped(pipeline, py, run):
    definition = pipeline({
        "name": "skip",
        "stages": [
            {"name": "A", "steps": [py("print('a')")]},
            {"name": "B", "when": {"file_exists": "Dockerfile"}, "steps": [py("print('b')")]},
            {"name": "C", "steps": [py("print('c')")]},
        ],
    })

    result = run(definition)

    assert result.status == RunStatus.SUCCESS
    assert result.stage_names == ["A", "C"]
    assert result.stage("A").stdout == "a\n"
    assert result.stage("B") is None
    assert all(stage.finished_at is not None for stage in result.stages)

def test_failed_stage_stops_pipeline_and_runs_hooks_once(pipeline, py, run, workspace):
    definition = pipeline({
        "name": "fail",
        "stages": [
            {"name": "build", "steps": [py("print('built')")]},
            {"name": "test", "steps": [py("import sys; sys.exit(3)")]},
            {"name": "deploy", "steps": [py("open('deployed', 'w').close()")]},
        ],
        "post": {
            "success": [py(append_line("success"))],
            "failure": [py(append_line("failure"))],
            "always": [py(append_line("always"))],
        },
    })

    result = run(definition)

    assert result.status == RunStatus.FAILURE
    assert result.stage_names == ["build", "test"]
    assert result.stage("test").status == StageStatus.FAILURE
    assert result.stage("test").error_kind == "step_failure"
    assert "code 3" in result.stage("test").error
    assert not (workspace / "deployed").exists()
    assert [hook.trigger for hook in result.hooks] == ["failure", "always"]
    assert hook_lines(workspace) == ["failure", "always"]

def test_success_codes(pipeline, py, run):
    definition = pipeline({
        "stages": [{
            "name": "lint",
            "steps": [{"command": py("import sys; sys.exit(1)"), "success_codes": [0, 1]}],
        }],
    })

    assert run(definition).status == RunStatus.SUCCESS

def test_failing_post_hook_does_not_change_outcome(pipeline, py, run, workspace):
    definition = pipeline({
        "stages": [{"name": "build", "steps": [py("pass")]}],
        "post": {
            "success": [py("import sys; sys.exit(1)"), py(append_line("never"))],
            "always": [py(append_line("always"))],
        },
    })

    result = run(definition)

    assert result.status == RunStatus.SUCCESS
    assert [hook.status for hook in result.hooks] == [StageStatus.FAILURE, StageStatus.SUCCESS]
    assert hook_lines(workspace) == ["always"]

def test_stage_post_hooks(pipeline, py, run, workspace):
    definition = pipeline({
        "stages": [{
            "name": "test",
            "steps": [py("import sys; sys.exit(2)")],
            "post": {
                "failure": [py(append_line("stage-failure"))],
                "success": [py(append_line("stage-success"))],
            },
        }],
    })

    result = run(definition)

    assert result.status == RunStatus.FAILURE
    assert [hook.trigger for hook in result.stage("test").hooks] == ["failure"]
    assert result.stage("test").hooks[0].stage == "test"
    assert hook_lines(workspace) == ["stage-failure"]

def test_secrets_are_redacted(pipeline, py, run, run_log):
    secret = "hunter2-very-secret"
    definition = pipeline({
        "stages": [{
            "name": "publish",
            "credentials": [{"id": "registry-token", "variable": "TOKEN"}],
            "steps": [
                py("import os, sys; print('token=' + os.environ['TOKEN']); "
                   "sys.stderr.write(os.environ['TOKEN'])"),
                py("import os, sys; sys.exit(os.environ['TOKEN'] == '' and 0 or 4)"),
            ],
        }],
    })

    result = run(definition, credentials=InMemoryCredentialStore({"registry-token": secret}))

    stage = result.stage("publish")
    assert stage.status == StageStatus.FAILURE
    assert stage.steps[0].stdout == f"token={REDACTED}\n"
    assert secret not in stage.logs
    assert secret not in result.model_dump_json()
    assert secret not in run_log.path.read_text()

def test_secret_not_visible_to_other_stages(pipeline, py, run):
    definition = pipeline({
        "stages": [
            {
                "name": "publish",
                "credentials": [{"id": "token", "variable": "PUBLISH_TOKEN"}],
                "steps": [py("pass")],
            },
            {"name": "after", "steps": [py("import os; print(os.environ.get('PUBLISH_TOKEN', 'unset'))")]},
        ],
    })

    result = run(definition, credentials=InMemoryCredentialStore({"token": "abc123"}))

    assert result.stage("after").stdout == "unset\n"

def test_missing_credential_fails_stage(pipeline, py, run, workspace):
    definition = pipeline({
        "stages": [
            {
                "name": "publish",
                "credentials": [{"id": "missing", "variable": "TOKEN"}],
                "steps": [py("open('ran', 'w').close()")],
            },
            {"name": "after", "steps": [py("pass")]},
        ],
    })

    result = run(definition, credentials=InMemoryCredentialStore())

    assert result.status == RunStatus.FAILURE
    assert result.stage_names == ["publish"]
    assert result.stage("publish").error_kind == "credential_not_found"
    assert result.stage("publish").steps == []
    assert not (workspace / "ran").exists()

def test_required_env_missing_fails_step(pipeline, py, run):
    definition = pipeline({
        "stages": [{
            "name": "deploy",
            "steps": [{"command": py("pass"), "required_env": ["DEPLOY_TARGET"]}],
        }],
    })

    result = run(definition)

    assert result.status == RunStatus.FAILURE
    assert "DEPLOY_TARGET" in result.stage("deploy").error

def test_timeout_fails_stage(pipeline, py, run):
    definition = pipeline({
        "stages": [{
            "name": "slow",
            "steps": [{"command": py("import time; time.sleep(30)"), "timeout": 0.5}],
        }],
    })

    result = run(definition)

    stage = result.stage("slow")
    assert result.status == RunStatus.FAILURE
    assert stage.error_kind == "timeout"
    assert stage.steps[0].timed_out
    assert stage.steps[0].duration < 10
    assert "[timed out]" in stage.logs

def test_cancel_during_step(pipeline, py, run, workspace):
    definition = pipeline({
        "stages": [
            {"name": "slow", "steps": [py("import time; time.sleep(30)")]},
            {"name": "never", "steps": [py("pass")]},
        ],
        "post": {
            "failure": [py(append_line("failure"))],
            "cancelled": [py(append_line("cancelled"))],
            "always": [py(append_line("always"))],
        },
    })
    cancel_event = threading.Event()
    timer = threading.Timer(0.5, cancel_event.set)
    timer.start()

    try:
        result = run(definition, cancel_event=cancel_event)
    finally:
        timer.cancel()

    assert result.status == RunStatus.CANCELLED
    assert result.stage_names == ["slow"]
    assert result.stage("slow").status == StageStatus.CANCELLED
    assert result.stage("slow").steps[0].cancelled
    assert hook_lines(workspace) == ["cancelled", "always"]

def test_cancel_before_start(pipeline, py, run, workspace):
    definition = pipeline({
        "stages": [{"name": "build", "steps": [py("open('ran', 'w').close()")]}],
        "post": {"always": [py(append_line("always"))]},
    })
    cancel_event = threading.Event()
    cancel_event.set()

    result = run(definition, cancel_event=cancel_event)

    assert result.status == RunStatus.CANCELLED
    assert result.stages == []
    assert not (workspace / "ran").exists()
    assert hook_lines(workspace) == ["always"]

def test_engine_fault_aborts_run(pipeline, py, run, workspace):
    definition = pipeline({
        "stages": [
            {"name": "broken", "steps": [["/nonexistent/stageline-tool", "--version"]]},
            {"name": "after", "steps": [py("pass")]},
        ],
        "post": {"always": [py(append_line("always"))]},
    })

    result = run(definition)

    assert result.status == RunStatus.FAULT
    assert "nonexistent" in result.error
    assert result.stage_names == ["broken"]
    assert result.stage("broken").error_kind == "engine_fault"
    assert result.hooks == []
    assert hook_lines(workspace) == []

def test_unspawnable_environment_is_engine_fault(pipeline, py, run, run_log):
    definition = pipeline({
        "environment": {"BAD": "a\0b"},
        "stages": [{"name": "build", "steps": [py("pass")]}],
    })

    result = run(definition)

    assert result.status == RunStatus.FAULT
    assert result.stage("build").error_kind == "engine_fault"
    assert result.finished_at is not None
    assert run_log.read()[0]["status"] == "fault"

def test_condition_error_fails_run(pipeline, py, run):
    definition = pipeline({
        "stages": [
            {"name": "ok", "steps": [py("pass")]},
            {"name": "bad", "when": {"expression": "params.X +"}, "steps": [py("pass")]},
            {"name": "after", "steps": [py("pass")]},
        ],
    })

    result = run(definition)

    assert result.status == RunStatus.FAILURE
    assert result.stage_names == ["ok"]
    assert "bad" in result.error

def test_parameters_drive_conditions_and_environment(pipeline, py, run):
    definition = pipeline({
        "parameters": [{"name": "DEPLOY", "default": "false"}, {"name": "TARGET", "default": "staging"}],
        "stages": [
            {"name": "build", "steps": [py("import os; print(os.environ['TARGET'])")]},
            {
                "name": "deploy",
                "when": {"param": "DEPLOY"},
                "steps": [py("print('${params.TARGET}')")],
            },
        ],
    })

    skipped = run(definition)
    deployed = run(definition, {"DEPLOY": "true", "TARGET": "prod"})

    assert skipped.stage_names == ["build"]
    assert skipped.stage("build").stdout == "staging\n"
    assert deployed.stage_names == ["build", "deploy"]
    assert deployed.stage("deploy").stdout == "prod\n"
    assert deployed.parameters == {"DEPLOY": "true", "TARGET": "prod"}

def test_stage_environment_overrides_pipeline_environment(pipeline, py, run, workspace):
    show = py("import os; print(os.environ['LEVEL'], os.environ['STAGELINE_STAGE_NAME'], "
              "os.environ['WORKSPACE'])")
    definition = pipeline({
        "environment": {"LEVEL": "pipeline"},
        "stages": [
            {"name": "first", "environment": {"LEVEL": "stage"}, "steps": [show]},
            {"name": "second", "steps": [show]},
        ],
    })

    result = run(definition)

    assert result.stage("first").stdout == f"stage first {workspace.resolve()}\n"
    assert result.stage("second").stdout == f"pipeline second {workspace.resolve()}\n"
    assert definition.environment == {"LEVEL": "pipeline"}

def test_inherited_environment_drops_runner_variables(settings):
    environ = {
        "PATH": "/usr/bin",
        "STAGELINE_DATABASE_URL": "postgresql://secret@db/stageline",
        "STAGELINE_CREDENTIAL_TOKEN": "abc",
    }

    assert inherited_environment(settings, environ) == {"PATH": "/usr/bin"}
    assert inherited_environment(settings.model_copy(update={"inherit_environment": False}), environ) == {}

def test_malformed_report_is_a_warning(pipeline, py, run):
    definition = pipeline({
        "stages": [
            {
                "name": "test",
                "steps": [py("open('report.xml', 'w').write('<testsuite')")],
                "reports": ["report.xml"],
            },
            {"name": "after", "steps": [py("pass")]},
        ],
    })

    result = run(definition)

    assert result.status == RunStatus.SUCCESS
    assert result.stage_names == ["test", "after"]
    assert len(result.warnings) == 1
    assert "report.xml" in result.warnings[0]

def test_report_summary(pipeline, py, run):
    xml = '<testsuite tests="5" failures="1" errors="0" skipped="1"/>'
    definition = pipeline({
        "stages": [{
            "name": "test",
            "steps": [py(f"open('junit.xml', 'w').write('{xml}')")],
            "reports": [{"path": "junit.xml", "required": True}],
        }],
    })

    result = run(definition)

    stage = result.stage("test")
    assert result.status == RunStatus.SUCCESS
    assert stage.artifacts == ["junit.xml"]
    assert (stage.report.tests, stage.report.failures, stage.report.passed) == (5, 1, 3)
    assert result.manifest()["artifacts"][0]["path"] == "junit.xml"

def test_missing_required_report_fails_stage(pipeline, py, run):
    definition = pipeline({
        "stages": [{
            "name": "test",
            "steps": [py("pass")],
            "reports": [{"path": "junit.xml", "required": True}],
        }],
    })

    result = run(definition)

    assert result.status == RunStatus.FAILURE
    assert "junit.xml" in result.stage("test").error

def test_run_log_records_manifest_without_output(pipeline, py, run, run_log):
    definition = pipeline({
        "name": "logged",
        "stages": [{"name": "build", "steps": [py("print('noisy output')")]}],
    })

    result = run(definition, run_id="run-1")

    records = run_log.read()
    assert len(records) == 1
    assert records[0]["run_id"] == "run-1"
    assert records[0]["status"] == "success"
    assert records[0]["stages"][0]["name"] == "build"
    assert "noisy output" not in run_log.path.read_text()
    assert result.finished_at is not None

def test_same_inputs_same_outcome(pipeline, py, run):
    definition = pipeline({
        "stages": [
            {"name": "a", "steps": [py("pass")]},
            {"name": "b", "when": {"param": "SKIP_B"}, "steps": [py("pass")]},
            {"name": "c", "steps": [py("import sys; sys.exit(1)")]},
            {"name": "d", "steps": [py("pass")]},
        ],
    })

    first = run(definition, {"SKIP_B": "no"})
    second = run(definition, {"SKIP_B": "no"})

    def shape(result):
        return result.status, [(s.stage, s.status, s.error_kind) for s in result.stages]

    assert shape(first) == shape(second)
    assert shape(first) == (RunStatus.FAILURE, [
        ("a", StageStatus.SUCCESS, None),
        ("c", StageStatus.FAILURE, "step_failure"),
    ])

class RecordingListener(RunListener):
    def __init__(self):
        self.events = []

    def run_started(self, run):
        self.events.append(("run_started", run.status.value))

    def stage_started(self, run, result):
        self.events.append(("stage_started", result.stage))

    def stage_finished(self, run, result):
        self.events.append(("stage_finished", result.stage, result.status.value))

    def run_finished(self, run):
        self.events.append(("run_finished", run.status.value))

def test_listener_sees_progress(pipeline, py, run):
    listener = RecordingListener()
    definition = pipeline({
        "stages": [
            {"name": "a", "steps": [py("pass")]},
            {"name": "b", "steps": [py("pass")]},
        ],
    })

    run(definition, listener=listener)

    assert listener.events == [
        ("run_started", "running"),
        ("stage_started", "a"),
        ("stage_finished", "a", "success"),
        ("stage_started", "b"),
        ("stage_finished", "b", "success"),
        ("run_finished", "success"),
    ]

def test_unwritable_run_log_keeps_outcome(pipeline, py, settings, workspace, tmp_path):
    (tmp_path / "not-a-dir").write_text("")
    listener = RecordingListener()
    definition = pipeline({"stages": [{"name": "build", "steps": [py("pass")]}]})

    result = execute_pipeline(
        definition,
        workspace=workspace,
        settings=settings,
        run_log=RunLog(tmp_path / "not-a-dir" / "runs.log"),
        listener=listener,
    )

    assert result.status == RunStatus.SUCCESS
    assert any("run log" in warning for warning in result.warnings)
    assert listener.events[-1] == ("run_finished", "success")
