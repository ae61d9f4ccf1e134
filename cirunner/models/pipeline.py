"""
Pipeline Definition Models
==========================
Pydantic models for the declarative pipeline: stages, steps, guards,
options, environment bindings, triggers and post actions.

Definitions are frozen: once a run starts nothing may change them.

Stage invariant:
    A stage either has a body (``steps``) or is a pure grouping node
    (``parallel``), never both and never neither.
"""
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cirunner.core.config import DEFAULT_HISTORY_RETENTION, DEFAULT_TIMEOUT_MINUTES
from cirunner.core.constants import COVERAGE_ADAPTERS


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------
class _StepBase(_Frozen):
    enabled: bool = True


class ShellStep(_StepBase):
    """One shell invocation, optionally scoped to a workspace sub-directory."""
    kind: Literal["sh"] = "sh"
    script: str
    dir: str = ""


class EchoStep(_StepBase):
    kind: Literal["echo"] = "echo"
    message: str


class JUnitStep(_StepBase):
    """Publish JUnit XML results matching a workspace glob."""
    kind: Literal["junit"] = "junit"
    results: str
    allow_empty_results: bool = False


class CoverageStep(_StepBase):
    """Publish coverage XML through a named adapter."""
    kind: Literal["coverage"] = "coverage"
    reports: str
    adapter: str = "cobertura"
    allow_empty_results: bool = False

    @field_validator("adapter")
    @classmethod
    def known_adapter(cls, v: str) -> str:
        if v not in COVERAGE_ADAPTERS:
            raise ValueError(f"Unknown coverage adapter '{v}' (known: {COVERAGE_ADAPTERS})")
        return v


class CheckoutStep(_StepBase):
    kind: Literal["checkout"] = "checkout"


class CleanWorkspaceStep(_StepBase):
    kind: Literal["clean_ws"] = "clean_ws"
    exclude: List[str] = []


class NotifyStep(_StepBase):
    kind: Literal["notify"] = "notify"
    to: str = ""
    subject: str = ""
    body: str = ""


Step = Annotated[
    Union[ShellStep, EchoStep, JUnitStep, CoverageStep, CheckoutStep, CleanWorkspaceStep, NotifyStep],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Guards / agents / post actions
# ---------------------------------------------------------------------------
class When(_Frozen):
    """
    Guard predicate over the branch name and the changed paths.

    mode="any" runs the stage if any declared condition holds (anyOf),
    mode="all" requires every declared condition (allOf).
    """
    branch: Optional[str] = None
    changeset: List[str] = []
    mode: Literal["any", "all"] = "any"

    @model_validator(mode="after")
    def has_condition(self) -> "When":
        if self.branch is None and not self.changeset:
            raise ValueError("'when' needs at least one of 'branch' or 'changeset'")
        return self


class Agent(_Frozen):
    kind: Literal["any", "docker"] = "any"
    image: Optional[str] = None


class PostActions(_Frozen):
    always: List[Step] = []
    aborted: List[Step] = []
    failure: List[Step] = []
    success: List[Step] = []
    unstable: List[Step] = []

    def is_empty(self) -> bool:
        return not (self.always or self.aborted or self.failure or self.success or self.unstable)


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------
class Stage(_Frozen):
    name: str
    steps: List[Step] = []
    parallel: List["Stage"] = []
    when: Optional[When] = None
    agent: Optional[Agent] = None
    post: Optional[PostActions] = None
    fail_fast: bool = False
    required: bool = False

    @model_validator(mode="after")
    def body_xor_children(self) -> "Stage":
        if self.steps and self.parallel:
            raise ValueError(f"Stage '{self.name}' has both steps and parallel children")
        if not self.steps and not self.parallel:
            raise ValueError(f"Stage '{self.name}' has neither steps nor parallel children")
        _check_unique([c.name for c in self.parallel], f"stage '{self.name}'")
        return self

    @property
    def is_group(self) -> bool:
        return bool(self.parallel)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
class PipelineOptions(_Frozen):
    history_retention_count: int = Field(DEFAULT_HISTORY_RETENTION, ge=1)
    timeout_minutes: float = Field(DEFAULT_TIMEOUT_MINUTES, gt=0)
    timestamps: bool = True
    skip_stages_after_unstable: bool = False


class Trigger(_Frozen):
    poll_scm: str


class PipelineDefinition(_Frozen):
    name: str
    agent: Agent = Agent()
    options: PipelineOptions = PipelineOptions()
    # Ordered: later bindings may reference earlier ones
    environment: Dict[str, str] = {}
    triggers: List[Trigger] = []
    stages: List[Stage]
    post: PostActions = PostActions()

    @model_validator(mode="after")
    def unique_stage_names(self) -> "PipelineDefinition":
        if not self.stages:
            raise ValueError("Pipeline must declare at least one stage")
        _check_unique([s.name for s in self.stages], f"pipeline '{self.name}'")
        return self

    def iter_stages(self):
        """Yield every stage in the tree, depth first, parents before children."""
        stack = list(reversed(self.stages))
        while stack:
            stage = stack.pop()
            yield stage
            stack.extend(reversed(stage.parallel))


def _check_unique(names: List[str], where: str) -> None:
    seen = set()
    for name in names:
        if name in seen:
            raise ValueError(f"Duplicate stage name '{name}' in {where}")
        seen.add(name)
