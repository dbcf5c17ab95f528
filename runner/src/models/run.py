"""
Run and result models.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    FAULT = "fault"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.PENDING, RunStatus.RUNNING)

class StageStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"

class StepOutcome(BaseModel):
    name: str
    command: str
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False
    truncated: bool = False
    duration: float = 0.0

class ReportSummary(BaseModel):
    tests: int = 0
    failures: int = 0
    errors: int = 0
    skipped: int = 0

    @property
    def passed(self) -> int:
        return max(self.tests - self.failures - self.errors - self.skipped, 0)

    def __add__(self, other: "ReportSummary") -> "ReportSummary":
        return ReportSummary(
            tests=self.tests + other.tests,
            failures=self.failures + other.failures,
            errors=self.errors + other.errors,
            skipped=self.skipped + other.skipped,
        )

class Artifact(BaseModel):
    path: str
    kind: str = "test-report"
    summary: Optional[ReportSummary] = None

class HookResult(BaseModel):
    trigger: str
    stage: Optional[str] = None  # None for pipeline-level hooks
    status: StageStatus
    steps: List[StepOutcome] = Field(default_factory=list)
    error: Optional[str] = None

class StageResult(BaseModel):
    stage: str
    status: StageStatus = StageStatus.RUNNING
    steps: List[StepOutcome] = Field(default_factory=list)
    hooks: List[HookResult] = Field(default_factory=list)
    artifacts: List[str] = Field(default_factory=list)
    report: Optional[ReportSummary] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None

    @property
    def stdout(self) -> str:
        return "".join(step.stdout for step in self.steps)

    @property
    def stderr(self) -> str:
        return "".join(step.stderr for step in self.steps)

    @property
    def logs(self) -> str:
        """Combined, per-step log text as shown to users."""
        chunks = []
        for step in self.steps:
            chunks.append(f"$ {step.command}\n")
            if step.stdout:
                chunks.append(step.stdout if step.stdout.endswith("\n") else step.stdout + "\n")
            if step.stderr:
                chunks.append(step.stderr if step.stderr.endswith("\n") else step.stderr + "\n")
            if step.timed_out:
                chunks.append("[timed out]\n")
            elif step.cancelled:
                chunks.append("[cancelled]\n")
            else:
                chunks.append(f"[exit {step.exit_code}]\n")
        if self.error:
            chunks.append(f"[{self.error_kind}] {self.error}\n")
        return "".join(chunks)

class PipelineRun(BaseModel):
    run_id: str
    pipeline_name: str
    status: RunStatus = RunStatus.PENDING
    parameters: Dict[str, str] = Field(default_factory=dict)
    environment: Dict[str, str] = Field(default_factory=dict)
    stages: List[StageResult] = Field(default_factory=list)
    hooks: List[HookResult] = Field(default_factory=list)
    artifacts: List[Artifact] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def stage(self, name: str) -> Optional[StageResult]:
        for result in self.stages:
            if result.stage == name:
                return result
        return None

    @property
    def stage_names(self) -> List[str]:
        return [result.stage for result in self.stages]

    def manifest(self) -> dict:
        """Terminal record written to the run log. Never includes captured output."""
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline_name,
            "status": self.status.value,
            "parameters": self.parameters,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "stages": [
                {
                    "name": result.stage,
                    "status": result.status.value,
                    "error_kind": result.error_kind,
                    "started_at": result.started_at.isoformat(),
                    "finished_at": result.finished_at.isoformat() if result.finished_at else None,
                }
                for result in self.stages
            ],
            "hooks": [
                {"trigger": hook.trigger, "stage": hook.stage, "status": hook.status.value}
                for hook in self.hooks
            ],
            "artifacts": [artifact.model_dump() for artifact in self.artifacts],
            "warnings": list(self.warnings),
            "error": self.error,
        }

class PipelineJob(BaseModel):
    """A queued run as pulled from Redis."""
    run_id: str
    config: Dict[str, Any]
    parameters: Dict[str, str] = Field(default_factory=dict)
    repo_info: Dict[str, Any] = Field(default_factory=dict)
    queued_at: Optional[str] = None
