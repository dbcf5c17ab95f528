"""
Pipeline definition models.

Definitions are immutable once loaded. Stage order is the order of
``PipelineDefinition.stages`` and is never changed by the runner.
"""

from typing import Annotated, Dict, FrozenSet, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

class DefinitionModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

# Conditions

class Always(DefinitionModel):
    kind: Literal["always"] = "always"

class ParamFlag(DefinitionModel):
    """True when the named parameter is truthy."""
    kind: Literal["param"] = "param"
    name: str

class FileExists(DefinitionModel):
    """True when ``path`` exists, relative to the run workspace."""
    kind: Literal["file_exists"] = "file_exists"
    path: str

class EnvEquals(DefinitionModel):
    """
    True when environment variable ``name`` equals ``equals``.
    Without ``equals``, true when the variable is set and non-empty.
    """
    kind: Literal["env"] = "env"
    name: str
    equals: Optional[str] = None

class Branch(DefinitionModel):
    """Glob match against the ``BRANCH_NAME`` parameter or variable."""
    kind: Literal["branch"] = "branch"
    pattern: str

class Expression(DefinitionModel):
    kind: Literal["expression"] = "expression"
    source: str

class AllOf(DefinitionModel):
    kind: Literal["all"] = "all"
    conditions: Tuple["Condition", ...]

class AnyOf(DefinitionModel):
    kind: Literal["any"] = "any"
    conditions: Tuple["Condition", ...]

class Not(DefinitionModel):
    kind: Literal["not"] = "not"
    condition: "Condition"

Condition = Annotated[
    Union[Always, ParamFlag, FileExists, EnvEquals, Branch, Expression, AllOf, AnyOf, Not],
    Field(discriminator="kind"),
]

AllOf.model_rebuild()
AnyOf.model_rebuild()
Not.model_rebuild()

# Stages and steps

class Step(DefinitionModel):
    # A string runs through the shell, a list is executed as argv
    command: Union[str, Tuple[str, ...]]
    name: Optional[str] = None
    required_env: Tuple[str, ...] = ()
    success_codes: FrozenSet[int] = frozenset({0})
    timeout: Optional[float] = None

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if isinstance(self.command, str):
            return self.command
        return " ".join(self.command)

class CredentialBinding(DefinitionModel):
    id: str
    variable: str

class ReportSpec(DefinitionModel):
    path: str
    required: bool = False

class PostHooks(DefinitionModel):
    success: Tuple[Step, ...] = ()
    failure: Tuple[Step, ...] = ()
    cancelled: Tuple[Step, ...] = ()
    always: Tuple[Step, ...] = ()

    def for_outcome(self, outcome: str) -> List[Tuple[str, Tuple[Step, ...]]]:
        """
        Hook blocks to run for a final outcome, in execution order.
        ``always`` runs last, after the outcome-specific block.
        """
        blocks = []
        if outcome in ("success", "failure", "cancelled"):
            blocks.append((outcome, getattr(self, outcome)))
        blocks.append(("always", self.always))
        return [(trigger, steps) for trigger, steps in blocks if steps]

    def is_empty(self) -> bool:
        return not (self.success or self.failure or self.cancelled or self.always)

class ParameterSpec(DefinitionModel):
    name: str
    default: Optional[str] = None
    description: str = ""

class Stage(DefinitionModel):
    name: str
    when: Optional[Condition] = None
    steps: Tuple[Step, ...]
    environment: Dict[str, str] = Field(default_factory=dict)
    credentials: Tuple[CredentialBinding, ...] = ()
    reports: Tuple[ReportSpec, ...] = ()
    post: PostHooks = PostHooks()

class PipelineDefinition(DefinitionModel):
    name: str = "Unnamed Pipeline"
    environment: Dict[str, str] = Field(default_factory=dict)
    parameters: Tuple[ParameterSpec, ...] = ()
    stages: Tuple[Stage, ...]
    post: PostHooks = PostHooks()

    def resolve_parameters(self, supplied: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Declared defaults, overridden by trigger-supplied values."""
        resolved = {p.name: p.default for p in self.parameters if p.default is not None}
        for name, value in (supplied or {}).items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            resolved[name] = str(value)
        return resolved
