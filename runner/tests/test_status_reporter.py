"""Tests for mirroring runs into the database."""

import sys
import threading
import time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from runner.src.models.db import PipelineRun
from runner.src.services import status_reporter
from runner.src.services.executor import execute_pipeline
from runner.src.services.status_reporter import (
    DatabaseStatusReporter,
    get_run_stages,
    init_db,
    update_run_status,
)

@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'stageline.db'}")
    factory = sessionmaker(bind=engine)
    init_db(factory)

    with factory() as session:
        session.add(PipelineRun(id="run-1", pipeline_name="db", status="pending"))
        session.commit()

    yield factory
    engine.dispose()

def test_update_run_status(session_factory):
    update_run_status("run-1", "fault", error="boom", session_factory=session_factory)

    with session_factory() as session:
        row = session.get(PipelineRun, "run-1")
        assert (row.status, row.error) == ("fault", "boom")

def test_reporter_records_run_and_stages(session_factory, pipeline, settings, workspace):
    definition = pipeline({
        "name": "db",
        "stages": [
            {"name": "build", "steps": [[sys.executable, "-c", "print('compiled')"]]},
            {"name": "test", "steps": [[sys.executable, "-c", "import sys; sys.exit(1)"]]},
        ],
    })

    execute_pipeline(
        definition,
        run_id="run-1",
        workspace=workspace,
        listener=DatabaseStatusReporter(session_factory),
        settings=settings,
    )

    with session_factory() as session:
        row = session.get(PipelineRun, "run-1")
        assert row.status == "failure"
        assert row.started_at is not None
        assert row.finished_at is not None
        assert [s["name"] for s in row.manifest["stages"]] == ["build", "test"]

    assert get_run_stages("run-1", session_factory) == [
        {"order": 0, "name": "build", "status": "success", "error_kind": None},
        {"order": 1, "name": "test", "status": "failure", "error_kind": "step_failure"},
    ]

def test_reporter_survives_database_errors(pipeline, settings, workspace, tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'empty.db'}")
    definition = pipeline({"stages": [{"name": "build", "steps": [[sys.executable, "-c", "pass"]]}]})

    result = execute_pipeline(
        definition,
        workspace=workspace,
        listener=DatabaseStatusReporter(sessionmaker(bind=engine)),
        settings=settings,
    )

    assert result.status.value == "success"

def test_session_factory_created_once_across_threads(monkeypatch):
    engines = []

    def slow_create_engine(url):
        time.sleep(0.05)
        engines.append(url)
        return create_engine("sqlite://")

    monkeypatch.setattr(status_reporter, "_session_factory", None)
    monkeypatch.setattr(status_reporter, "create_engine", slow_create_engine)

    factories = []
    threads = [
        threading.Thread(target=lambda: factories.append(status_reporter.get_session_factory()))
        for _ in range(4)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(engines) == 1
    assert len(factories) == 4
    assert all(factory is factories[0] for factory in factories)
