from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional, List
from datetime import datetime

class ReportResponse(BaseModel):
    tests: int = 0
    failures: int = 0
    errors: int = 0
    skipped: int = 0

class StageResponse(BaseModel):
    name: str
    stage_order: int
    status: str
    error_kind: Optional[str] = None
    error: Optional[str] = None
    report: Optional[ReportResponse] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

class PipelineRunResponse(BaseModel):
    id: str
    pipeline_name: str
    status: str
    triggered_by: Optional[str] = None
    repository: Optional[str] = None
    branch: Optional[str] = None
    commit_sha: Optional[str] = None
    parameters: Optional[Dict[str, str]] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    stages: List[StageResponse] = []

    model_config = ConfigDict(from_attributes=True)

class DefinitionRequest(BaseModel):
    definition: str = Field(..., description="Pipeline definition as YAML")

class TriggerRequest(DefinitionRequest):
    parameters: Dict[str, str] = {}
    triggered_by: Optional[str] = None
    repository_url: Optional[str] = None
    branch: Optional[str] = None
    commit_sha: Optional[str] = None

class TriggerResponse(BaseModel):
    status: str
    run_id: str
    stages: int

class ValidationResponse(BaseModel):
    valid: bool
    pipeline: Dict[str, Any]
