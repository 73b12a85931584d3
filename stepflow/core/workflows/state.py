"""Workflow lifecycle: status transitions and per-step results.

Every function mutates the given ``WorkflowState`` in place and refreshes
``updated_at``. Callers sharing a state across threads must serialize these
calls (``WorkflowRun`` does); none of them lock.

Transition table (anything else raises WorkflowStateError, state unchanged):

    PENDING          --start-->             RUNNING
    RUNNING          --wait_for_approval--> WAITING_APPROVAL
    WAITING_APPROVAL --approve-->           RUNNING
    RUNNING          --pause-->             PAUSED
    WAITING_APPROVAL --pause-->             PAUSED
    PAUSED           --resume-->            RUNNING
    RUNNING          --complete-->          COMPLETED
    RUNNING          --fail-->              FAILED
    any non-terminal --cancel-->            CANCELLED
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from stepflow.core.codec.serde import SerializationError, to_jsonable
from stepflow.core.errors import ErrorCode, WorkflowStateError
from stepflow.core.logging import get_logger
from stepflow.core.models.state import StepResult, WorkflowState
from stepflow.core.models.workflow import Workflow
from stepflow.core.types.status import (
    ApprovalStatus,
    StepStatus,
    WorkflowStatus,
    next_status,
)

logger = get_logger('workflow.state')


def create_state(workflow: Workflow) -> WorkflowState:
    """Initial PENDING state with no results."""
    return WorkflowState(workflow_id=workflow.id)


# =============================================================================
# Workflow status transitions
# =============================================================================


def _transition(state: WorkflowState, event: str) -> None:
    current = state.status
    target = next_status(current, event)
    if target is None:
        logger.warning(
            f"Rejected '{event}' for workflow '{state.workflow_id}' in status {current.value}"
        )
        raise WorkflowStateError(
            message=f'cannot {event.replace("_", " ")} workflow in {current.value} status',
            code=ErrorCode.STATE_ILLEGAL_TRANSITION,
            notes=[f"workflow_id: '{state.workflow_id}'"],
            help_text='inspect the current status before retrying the transition',
        )
    state.status = target
    state.touch()
    logger.info(
        f"Workflow '{state.workflow_id}': {current.value} -> {target.value} ({event})"
    )


def start_workflow(state: WorkflowState) -> None:
    _transition(state, 'start')
    state.started_at = state.updated_at


def wait_for_approval(state: WorkflowState) -> None:
    _transition(state, 'wait_for_approval')


def approve_workflow(state: WorkflowState) -> None:
    """Return a workflow waiting for approval to RUNNING."""
    _transition(state, 'approve')


def pause_workflow(state: WorkflowState) -> None:
    """Pause a RUNNING or WAITING_APPROVAL workflow."""
    _transition(state, 'pause')


def resume_workflow(state: WorkflowState) -> None:
    """Resume a PAUSED workflow."""
    _transition(state, 'resume')


def complete_workflow(state: WorkflowState) -> None:
    _transition(state, 'complete')
    state.current_step = None


def fail_workflow(state: WorkflowState) -> None:
    _transition(state, 'fail')


def cancel_workflow(state: WorkflowState) -> None:
    _transition(state, 'cancel')


# =============================================================================
# Step events
# =============================================================================


def _require_not_terminal(state: WorkflowState, step_id: str, event: str) -> None:
    if state.status.is_terminal:
        raise WorkflowStateError(
            message=f"cannot {event} step '{step_id}': workflow is {state.status.value}",
            code=ErrorCode.STATE_ILLEGAL_TRANSITION,
            notes=[f"workflow_id: '{state.workflow_id}'"],
        )


def _finish_step(state: WorkflowState, step_id: str) -> StepResult:
    """Fetch (or create) the step's result and release ``current_step``."""
    result = state.step_results.get(step_id)
    if result is None:
        # Finished without start_step (e.g. skipped before dispatch).
        result = StepResult(status=StepStatus.RUNNING)
        state.step_results[step_id] = result
    if state.current_step == step_id:
        state.current_step = None
    return result


def _mark_satisfied(state: WorkflowState, step_id: str) -> None:
    if step_id not in state.completed_steps:
        state.completed_steps.append(step_id)


def start_step(state: WorkflowState, step_id: str) -> None:
    """Record ``step_id`` as dispatched. Only legal while RUNNING."""
    if state.status != WorkflowStatus.RUNNING:
        raise WorkflowStateError(
            message=f"cannot start step '{step_id}' in {state.status.value} status",
            code=ErrorCode.STATE_ILLEGAL_TRANSITION,
            notes=[f"workflow_id: '{state.workflow_id}'"],
            help_text='steps are only dispatched while the workflow is running',
        )
    state.current_step = step_id
    state.step_results[step_id] = StepResult(status=StepStatus.RUNNING)
    state.touch()
    logger.debug(f"Workflow '{state.workflow_id}': step '{step_id}' started")


def complete_step(
    state: WorkflowState,
    step_id: str,
    output: Any = None,
    duration_ms: int = 0,
) -> None:
    """
    Mark a step Completed and append it to ``completed_steps``.

    Accepted in any non-terminal status: work that was in flight when the
    workflow paused still lands.
    """
    _require_not_terminal(state, step_id, 'complete')
    try:
        normalized = to_jsonable(output)
    except SerializationError as e:
        raise WorkflowStateError(
            message=f"output of step '{step_id}' cannot be stored",
            code=ErrorCode.STATE_ENCODE_FAILED,
            notes=[str(e)],
            help_text='return plain JSON-like values, pydantic models or dataclasses',
        ) from e
    result = _finish_step(state, step_id)
    result.status = StepStatus.COMPLETED
    result.output = normalized
    result.error = None
    result.duration_ms = duration_ms
    _mark_satisfied(state, step_id)
    state.touch()
    logger.debug(
        f"Workflow '{state.workflow_id}': step '{step_id}' completed in {duration_ms}ms"
    )


def fail_step(state: WorkflowState, step_id: str, error: str, duration_ms: int = 0) -> None:
    """
    Mark a step Failed.

    The step is not added to ``completed_steps`` (its dependents stay blocked)
    and the workflow status is untouched: the driver applies the step's
    ``on_error`` policy.
    """
    _require_not_terminal(state, step_id, 'fail')
    result = _finish_step(state, step_id)
    result.status = StepStatus.FAILED
    result.error = error
    result.duration_ms = duration_ms
    state.touch()
    logger.debug(f"Workflow '{state.workflow_id}': step '{step_id}' failed: {error}")


def skip_step(state: WorkflowState, step_id: str) -> None:
    """Mark a step Skipped; skipped steps satisfy their dependents."""
    _require_not_terminal(state, step_id, 'skip')
    result = _finish_step(state, step_id)
    result.status = StepStatus.SKIPPED
    _mark_satisfied(state, step_id)
    state.touch()
    logger.debug(f"Workflow '{state.workflow_id}': step '{step_id}' skipped")


# =============================================================================
# Step approvals
# =============================================================================


def _decide(state: WorkflowState, step_id: str, event: str, decision: ApprovalStatus) -> None:
    _require_not_terminal(state, step_id, event)
    current = state.step_approvals.get(step_id)
    if current != ApprovalStatus.PENDING:
        found = 'no request' if current is None else current.value
        raise WorkflowStateError(
            message=f"no pending approval for step '{step_id}'",
            code=ErrorCode.STATE_ILLEGAL_TRANSITION,
            notes=[f"workflow_id: '{state.workflow_id}'", f'approval: {found}'],
            help_text='call request_step_approval() first',
        )
    state.step_approvals[step_id] = decision
    state.touch()
    logger.info(f"Workflow '{state.workflow_id}': step '{step_id}' {decision.value}")


def request_step_approval(state: WorkflowState, step_id: str) -> None:
    """
    Open an approval request for ``step_id``.

    Re-requesting a pending step is a no-op; a decided step cannot be
    re-opened.
    """
    _require_not_terminal(state, step_id, 'request approval for')
    current = state.step_approvals.get(step_id)
    if current is not None and current.is_decided:
        raise WorkflowStateError(
            message=f"approval for step '{step_id}' was already {current.value}",
            code=ErrorCode.STATE_ILLEGAL_TRANSITION,
            notes=[f"workflow_id: '{state.workflow_id}'"],
        )
    if current == ApprovalStatus.PENDING:
        return
    state.step_approvals[step_id] = ApprovalStatus.PENDING
    state.touch()
    logger.info(f"Workflow '{state.workflow_id}': approval requested for step '{step_id}'")


def approve_step(state: WorkflowState, step_id: str) -> None:
    _decide(state, step_id, 'approve', ApprovalStatus.APPROVED)


def reject_step(state: WorkflowState, step_id: str) -> None:
    """Reject a pending request. The step itself is not failed or skipped."""
    _decide(state, step_id, 'reject', ApprovalStatus.REJECTED)


def get_approval_status(state: WorkflowState, step_id: str) -> ApprovalStatus | None:
    return state.step_approvals.get(step_id)


def is_step_approved(state: WorkflowState, step_id: str) -> bool:
    return state.step_approvals.get(step_id) == ApprovalStatus.APPROVED


def is_step_rejected(state: WorkflowState, step_id: str) -> bool:
    return state.step_approvals.get(step_id) == ApprovalStatus.REJECTED


def is_approval_pending(state: WorkflowState, step_id: str) -> bool:
    return state.step_approvals.get(step_id) == ApprovalStatus.PENDING


# =============================================================================
# Queries
# =============================================================================


def is_step_completed(state: WorkflowState, step_id: str) -> bool:
    return step_id in state.completed_steps


def get_next_step_to_execute(
    state: WorkflowState, candidate_ids: Sequence[str]
) -> str | None:
    """First candidate not already completed, or None."""
    for step_id in candidate_ids:
        if not is_step_completed(state, step_id):
            return step_id
    return None


def get_progress(state: WorkflowState, total_steps: int) -> int:
    """Percentage of ``total_steps`` completed, 0..100."""
    if total_steps <= 0:
        return 0
    return min(len(state.completed_steps) * 100 // total_steps, 100)


def validate_state(state: WorkflowState) -> None:
    """
    Check the state's structural invariants.

    Raises:
        WorkflowStateError: on the first violated invariant.
    """

    def violation(message: str) -> WorkflowStateError:
        return WorkflowStateError(
            message=message,
            code=ErrorCode.STATE_INVARIANT_VIOLATION,
            notes=[f"workflow_id: '{state.workflow_id}'"],
        )

    if not state.workflow_id:
        raise violation('workflow id cannot be empty')

    seen: set[str] = set()
    for step_id in state.completed_steps:
        if step_id not in state.step_results:
            raise violation(f"completed step '{step_id}' has no result")
        if step_id in seen:
            raise violation(f"step '{step_id}' appears twice in completed steps")
        seen.add(step_id)

    if state.current_step is not None and state.current_step not in state.step_results:
        raise violation(f"current step '{state.current_step}' has no result")


def snapshot(state: WorkflowState) -> WorkflowState:
    """Deep copy for readers that must not observe later mutations."""
    return state.model_copy(deep=True)


