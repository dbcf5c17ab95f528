from runner.src.models.pipeline import (
    Condition,
    Always,
    ParamFlag,
    FileExists,
    EnvEquals,
    Branch,
    Expression,
    AllOf,
    AnyOf,
    Not,
    Step,
    Stage,
    CredentialBinding,
    ReportSpec,
    PostHooks,
    ParameterSpec,
    PipelineDefinition,
)
from runner.src.models.run import (
    RunStatus,
    StageStatus,
    StepOutcome,
    ReportSummary,
    Artifact,
    HookResult,
    StageResult,
    PipelineRun,
    PipelineJob,
)

__all__ = [
    "Condition",
    "Always",
    "ParamFlag",
    "FileExists",
    "EnvEquals",
    "Branch",
    "Expression",
    "AllOf",
    "AnyOf",
    "Not",
    "Step",
    "Stage",
    "CredentialBinding",
    "ReportSpec",
    "PostHooks",
    "ParameterSpec",
    "PipelineDefinition",
    "RunStatus",
    "StageStatus",
    "StepOutcome",
    "ReportSummary",
    "Artifact",
    "HookResult",
    "StageResult",
    "PipelineRun",
    "PipelineJob",
]
