# stepflow/core/types/status.py
"""
Status enums and the workflow transition table.
This module should not import from other application modules.
"""

from __future__ import annotations

from enum import Enum


class WorkflowStatus(str, Enum):
    """
    Status of a workflow instance.

    State machine:
        PENDING → RUNNING → COMPLETED
                          → FAILED
                          → WAITING_APPROVAL → RUNNING (approved)
                                             → PAUSED
                          → PAUSED → RUNNING (resumed)
        any non-terminal → CANCELLED
    """

    PENDING = 'pending'
    """Created but not yet started"""

    RUNNING = 'running'
    """Steps are being dispatched"""

    WAITING_APPROVAL = 'waiting_approval'
    """Dispatch suspended until an external approval signal"""

    PAUSED = 'paused'
    """Dispatch suspended until resume() or cancel()"""

    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state (no further transitions)."""
        return self in WORKFLOW_TERMINAL_STATES


WORKFLOW_TERMINAL_STATES: frozenset[WorkflowStatus] = frozenset({
    WorkflowStatus.COMPLETED,
    WorkflowStatus.FAILED,
    WorkflowStatus.CANCELLED,
})


class StepStatus(str, Enum):
    """Status recorded in a StepResult."""

    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    SKIPPED = 'skipped'

    @property
    def satisfies_dependents(self) -> bool:
        """Whether downstream steps may treat this step as done."""
        return self in STEP_SATISFIED_STATES


# A failed step never unblocks its dependents.
STEP_SATISFIED_STATES: frozenset[StepStatus] = frozenset({
    StepStatus.COMPLETED,
    StepStatus.SKIPPED,
})


class ApprovalStatus(str, Enum):
    """Decision recorded for a step with ``approval_required``."""

    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'

    @property
    def is_decided(self) -> bool:
        return self != ApprovalStatus.PENDING


# Legal (source, event) -> target transitions. Cancel is handled separately:
# it is legal from every non-terminal status.
WORKFLOW_TRANSITIONS: dict[tuple[WorkflowStatus, str], WorkflowStatus] = {
    (WorkflowStatus.PENDING, 'start'): WorkflowStatus.RUNNING,
    (WorkflowStatus.RUNNING, 'wait_for_approval'): WorkflowStatus.WAITING_APPROVAL,
    (WorkflowStatus.WAITING_APPROVAL, 'approve'): WorkflowStatus.RUNNING,
    (WorkflowStatus.RUNNING, 'pause'): WorkflowStatus.PAUSED,
    (WorkflowStatus.WAITING_APPROVAL, 'pause'): WorkflowStatus.PAUSED,
    (WorkflowStatus.PAUSED, 'resume'): WorkflowStatus.RUNNING,
    (WorkflowStatus.RUNNING, 'complete'): WorkflowStatus.COMPLETED,
    (WorkflowStatus.RUNNING, 'fail'): WorkflowStatus.FAILED,
}


def next_status(current: WorkflowStatus, event: str) -> WorkflowStatus | None:
    """Return the target status for ``event`` from ``current``, or None if illegal."""
    if event == 'cancel':
        return None if current.is_terminal else WorkflowStatus.CANCELLED
    return WORKFLOW_TRANSITIONS.get((current, event))
