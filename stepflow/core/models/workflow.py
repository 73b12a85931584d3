# stepflow/core/models/workflow.py
"""Workflow definition models: steps, step kinds, error actions, parameters."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Step kinds
# =============================================================================
# A closed tagged union discriminated by ``kind``. The core never interprets
# these; a driver dispatches with ``match step.step_type: case AgentStep(): ...``.


class AgentStep(BaseModel):
    """Delegate the step to an agent."""

    model_config = ConfigDict(extra='forbid')

    kind: Literal['agent'] = 'agent'
    agent_id: str
    task: str


class CommandStep(BaseModel):
    """Run a shell command."""

    model_config = ConfigDict(extra='forbid')

    kind: Literal['command'] = 'command'
    command: str
    args: list[str] = Field(default_factory=list)


class ConditionStep(BaseModel):
    """Branch on an expression over earlier step outputs."""

    model_config = ConfigDict(extra='forbid')

    kind: Literal['condition'] = 'condition'
    condition: str
    then_steps: list[str] = Field(default_factory=list)
    else_steps: list[str] = Field(default_factory=list)


class ParallelStep(BaseModel):
    """Run a group of steps concurrently."""

    model_config = ConfigDict(extra='forbid')

    kind: Literal['parallel'] = 'parallel'
    steps: list[str] = Field(default_factory=list)
    max_concurrency: Annotated[int, Field(ge=1)] | None = None


class ApprovalStep(BaseModel):
    """Block until an external approval signal arrives."""

    model_config = ConfigDict(extra='forbid')

    kind: Literal['approval'] = 'approval'
    message: str = ''
    timeout_ms: Annotated[int, Field(ge=0)] | None = None


StepType = Annotated[
    Union[AgentStep, CommandStep, ConditionStep, ParallelStep, ApprovalStep],
    Field(discriminator='kind'),
]


# =============================================================================
# Error actions
# =============================================================================
# Consumed by the driver (see stepflow.core.workflows.error_handler); the state
# machine itself never reads them.


class FailAction(BaseModel):
    """Fail the workflow when the step fails."""

    action: Literal['fail'] = 'fail'


class ContinueAction(BaseModel):
    """Record the failure and keep dispatching independent steps."""

    action: Literal['continue'] = 'continue'


class RetryAction(BaseModel):
    """Retry the step with exponential backoff before giving up."""

    action: Literal['retry'] = 'retry'
    max_attempts: Annotated[int, Field(ge=1)] = 3
    delay_ms: Annotated[int, Field(ge=0)] = 1_000


class SkipAction(BaseModel):
    """Mark the step skipped so its dependents still run."""

    action: Literal['skip'] = 'skip'


class RollbackAction(BaseModel):
    """Fail the workflow and let the driver roll back completed steps."""

    action: Literal['rollback'] = 'rollback'


ErrorAction = Annotated[
    Union[FailAction, ContinueAction, RetryAction, SkipAction, RollbackAction],
    Field(discriminator='action'),
]


# =============================================================================
# Parameters
# =============================================================================


class ParameterType(str, Enum):
    STRING = 'string'
    NUMBER = 'number'
    BOOLEAN = 'boolean'
    OBJECT = 'object'
    ARRAY = 'array'

    def matches(self, value: Any) -> bool:
        """Check if a JSON-like value matches this parameter type."""
        match self:
            case ParameterType.STRING:
                return isinstance(value, str)
            case ParameterType.NUMBER:
                # bool is an int subclass but is not a number here
                return isinstance(value, (int, float)) and not isinstance(value, bool)
            case ParameterType.BOOLEAN:
                return isinstance(value, bool)
            case ParameterType.OBJECT:
                return isinstance(value, dict)
            case ParameterType.ARRAY:
                return isinstance(value, list)


class WorkflowParameter(BaseModel):
    name: str
    type: ParameterType = ParameterType.STRING
    default: Any = None
    """None means no default."""
    required: bool = False
    description: str = ''

    @property
    def has_default(self) -> bool:
        return self.default is not None


# =============================================================================
# Steps and workflow
# =============================================================================


class RiskFactors(BaseModel):
    """Free-form risk scores attached to a step by the approval-gate policy."""

    impact: int = 0
    reversibility: int = 0
    complexity: int = 0


class WorkflowStep(BaseModel):
    id: str
    name: str = ''
    step_type: StepType
    config: dict[str, Any] = Field(default_factory=dict)
    """JSON-like value tree; strings may contain ``${param}`` placeholders."""
    dependencies: list[str] = Field(default_factory=list)
    approval_required: bool = False
    on_error: ErrorAction = Field(default_factory=FailAction)
    risk_score: Annotated[int, Field(ge=0, le=100)] | None = None
    risk_factors: RiskFactors = Field(default_factory=RiskFactors)


class WorkflowConfig(BaseModel):
    timeout_ms: Annotated[int, Field(ge=0)] | None = None
    """Per-step timeout the driver enforces; the engine never times anything out."""
    max_parallel: Annotated[int, Field(ge=1)] | None = None
    """Upper bound on concurrently dispatched ready steps."""


class Workflow(BaseModel):
    """
    Parsed workflow definition.

    Dependency validation is not run on construction; call
    ``resolver.validate_dependencies`` before creating state so the caller
    decides when graph errors surface.
    """

    id: str
    name: str
    description: str = ''
    parameters: list[WorkflowParameter] = Field(default_factory=list)
    steps: list[WorkflowStep] = Field(default_factory=list)
    config: WorkflowConfig = Field(default_factory=WorkflowConfig)

    def step_map(self) -> dict[str, WorkflowStep]:
        # Last occurrence wins for duplicate ids; validate_dependencies reports them.
        return {step.id: step for step in self.steps}

    def get_step(self, step_id: str) -> WorkflowStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]
