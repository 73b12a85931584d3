"""Per-step ``on_error`` policies for drivers.

The state machine never turns a step failure into a workflow failure. These
helpers let a driver do it explicitly: look up the step's policy, record the
failure, and learn whether dispatch should go on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from stepflow.core.errors import ErrorCode, StepNotFoundError
from stepflow.core.logging import get_logger
from stepflow.core.models.state import WorkflowState, utc_now
from stepflow.core.models.workflow import (
    ContinueAction,
    ErrorAction,
    FailAction,
    RetryAction,
    RollbackAction,
    SkipAction,
    Workflow,
)
from stepflow.core.types.status import StepStatus
from stepflow.core.workflows import state as state_machine

logger = get_logger('workflow.errors')


@dataclass(slots=True, frozen=True)
class ErrorHistoryEntry:
    error: str
    attempt: int
    """1-indexed attempt that produced ``error``."""
    timestamp: datetime


@dataclass
class RetryState:
    """Attempt counter with exponential backoff for one step."""

    max_attempts: int
    delay_ms: int
    attempt: int = 1
    history: list[ErrorHistoryEntry] = field(default_factory=lambda: [])

    @classmethod
    def from_action(cls, action: RetryAction) -> RetryState:
        return cls(max_attempts=action.max_attempts, delay_ms=action.delay_ms)

    def can_retry(self) -> bool:
        return self.attempt < self.max_attempts

    def backoff_delay_ms(self) -> int:
        """``delay_ms * 2 ** (attempt - 1)``."""
        return self.delay_ms * 2 ** (self.attempt - 1)

    def record_error(self, error: str) -> None:
        """Record a failed attempt and advance the counter."""
        self.history.append(
            ErrorHistoryEntry(error=error, attempt=self.attempt, timestamp=utc_now())
        )
        self.attempt += 1


def get_error_action(workflow: Workflow, step_id: str) -> ErrorAction:
    step = workflow.get_step(step_id)
    if step is None:
        raise StepNotFoundError(
            message=f"step '{step_id}' not found",
            code=ErrorCode.STEP_NOT_FOUND,
            step_id=step_id,
        )
    return step.on_error


def should_retry(workflow: Workflow, step_id: str) -> bool:
    step = workflow.get_step(step_id)
    return step is not None and isinstance(step.on_error, RetryAction)


def get_retry_config(workflow: Workflow, step_id: str) -> tuple[int, int] | None:
    """``(max_attempts, delay_ms)`` for retrying steps, else None."""
    step = workflow.get_step(step_id)
    if step is None or not isinstance(step.on_error, RetryAction):
        return None
    return (step.on_error.max_attempts, step.on_error.delay_ms)


def should_skip_on_error(workflow: Workflow, step_id: str) -> bool:
    step = workflow.get_step(step_id)
    return step is not None and isinstance(step.on_error, SkipAction)


def should_rollback_on_error(workflow: Workflow, step_id: str) -> bool:
    step = workflow.get_step(step_id)
    return step is not None and isinstance(step.on_error, RollbackAction)


def handle_error(
    workflow: Workflow,
    state: WorkflowState,
    step_id: str,
    error: str,
    duration_ms: int = 0,
) -> bool:
    """
    Record a step failure according to its ``on_error`` policy.

    Returns True if dispatch should continue, False if the driver should stop
    (and typically call ``fail_workflow``). The workflow status is not changed
    here.

    - fail / rollback: step marked failed, stop
    - continue: step marked failed, continue (its dependents stay blocked)
    - retry: step marked failed, continue; the driver re-dispatches it
    - skip: step marked skipped, continue (its dependents are unblocked)
    """
    action = get_error_action(workflow, step_id)

    match action:
        case SkipAction():
            state_machine.skip_step(state, step_id)
            proceed = True
        case ContinueAction() | RetryAction():
            state_machine.fail_step(state, step_id, error, duration_ms)
            proceed = True
        case FailAction() | RollbackAction():
            state_machine.fail_step(state, step_id, error, duration_ms)
            proceed = False

    logger.info(
        f"Step '{step_id}' of workflow '{state.workflow_id}' failed; "
        f"on_error={action.action}, continue={proceed}"
    )
    return proceed


def capture_error(
    state: WorkflowState,
    step_id: str,
    error_type: str,
    error_message: str,
    stack_trace: str | None = None,
) -> None:
    """Store structured error details on an existing step result and mark it failed."""
    result = state.step_results.get(step_id)
    if result is None:
        return
    result.error = f'Type: {error_type}\nMessage: {error_message}\n{stack_trace or ""}'
    result.status = StepStatus.FAILED
    state.touch()


def get_error_details(state: WorkflowState, step_id: str) -> str | None:
    result = state.step_results.get(step_id)
    return result.error if result is not None else None


def has_error(state: WorkflowState, step_id: str) -> bool:
    return get_error_details(state, step_id) is not None


def get_all_errors(state: WorkflowState) -> list[tuple[str, str]]:
    return [
        (step_id, result.error)
        for step_id, result in state.step_results.items()
        if result.error is not None
    ]
