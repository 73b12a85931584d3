# stepflow/core/models/state.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from stepflow.core.types.status import ApprovalStatus, StepStatus, WorkflowStatus

# Bumped whenever the persisted layout of WorkflowState changes.
STATE_SCHEMA_VERSION: int = 1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StepResult(BaseModel):
    status: StepStatus
    output: Any = None
    error: str | None = None
    duration_ms: int = 0


class WorkflowState(BaseModel):
    """
    Run-time record of one workflow instance.

    Owned by a single writer (see ``WorkflowRun``); mutate it only through
    ``stepflow.core.workflows.state``.
    """

    schema_version: int = STATE_SCHEMA_VERSION
    workflow_id: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_step: str | None = None
    completed_steps: list[str] = Field(default_factory=list)
    """Append-only; steps that ended Completed or Skipped."""
    step_results: dict[str, StepResult] = Field(default_factory=dict)
    step_approvals: dict[str, ApprovalStatus] = Field(default_factory=dict)
    """Per-step approval decisions, keyed by step id."""
    started_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def touch(self) -> None:
        self.updated_at = utc_now()

    @property
    def in_progress_steps(self) -> list[str]:
        return [
            step_id
            for step_id, result in self.step_results.items()
            if result.status == StepStatus.RUNNING
        ]

    @property
    def failed_steps(self) -> list[str]:
        return [
            step_id
            for step_id, result in self.step_results.items()
            if result.status == StepStatus.FAILED
        ]
