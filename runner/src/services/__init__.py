from runner.src.services.executor import (
    RunListener,
    execute_pipeline,
    run_stage,
    run_step,
)
from runner.src.services.conditions import ConditionContext, evaluate
from runner.src.services.credentials import (
    CredentialStore,
    InMemoryCredentialStore,
    EnvironmentCredentialStore,
    FileCredentialStore,
    build_credential_store,
    environment_scope,
)
from runner.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    load_definition,
    load_pipeline_file,
    PipelineConfigError,
)
from runner.src.services.reporter import collect, publish
from runner.src.services.run_log import RunLog

__all__ = [
    "RunListener",
    "execute_pipeline",
    "run_stage",
    "run_step",
    "ConditionContext",
    "evaluate",
    "CredentialStore",
    "InMemoryCredentialStore",
    "EnvironmentCredentialStore",
    "FileCredentialStore",
    "build_credential_store",
    "environment_scope",
    "parse_pipeline_config",
    "parse_pipeline_dict",
    "load_definition",
    "load_pipeline_file",
    "PipelineConfigError",
    "collect",
    "publish",
    "RunLog",
]
