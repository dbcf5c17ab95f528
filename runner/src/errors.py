"""
Error kinds raised while running a pipeline.

Every kind carries a short ``kind`` tag that is stored on stage results and
in the run log, so callers can classify failures without string matching.
"""

from typing import Optional

class StagelineError(Exception):
    """Base class for engine errors."""

    kind = "error"

class StepFailure(StagelineError):
    """A step exited with a code outside its success set."""

    kind = "step_failure"

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code

class ExecutorTimeout(StagelineError):
    """A step ran past its timeout and was terminated."""

    kind = "timeout"

    def __init__(self, message: str, timeout: Optional[float] = None):
        super().__init__(message)
        self.timeout = timeout

class CredentialNotFound(StagelineError):
    kind = "credential_not_found"

    def __init__(self, credential_id: str):
        super().__init__(f"Credential '{credential_id}' not found")
        self.credential_id = credential_id

class ConditionEvaluationError(StagelineError):
    """A ``when`` condition is malformed or could not be evaluated."""

    kind = "condition_error"

class EngineFault(StagelineError):
    """Internal failure, e.g. a process could not be spawned. Aborts the run."""

    kind = "engine_fault"

class RunCancelled(StagelineError):
    kind = "cancelled"

class ReportingWarning(UserWarning):
    """
    Non-fatal problem with a declared report file.

    Collected and logged, never raised through the engine.
    """

    def __init__(self, message: str, path: str, required: bool = False):
        super().__init__(message)
        self.path = path
        self.required = required
