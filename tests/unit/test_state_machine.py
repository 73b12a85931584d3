"""Unit tests for workflow status transitions and step events."""

from __future__ import annotations

import dataclasses
import datetime as dt

import pytest

from stepflow.core.errors import ErrorCode, WorkflowStateError
from stepflow.core.models.state import StepResult, WorkflowState
from stepflow.core.models.workflow import CommandStep, Workflow, WorkflowStep
from stepflow.core.types.status import ApprovalStatus, StepStatus, WorkflowStatus
from stepflow.core.workflows import state as sm


pytestmark = pytest.mark.unit


def _workflow() -> Workflow:
    return Workflow(
        id='deploy',
        name='Deploy',
        steps=[
            WorkflowStep(id='build', step_type=CommandStep(command='make')),
            WorkflowStep(
                id='test',
                step_type=CommandStep(command='pytest'),
                dependencies=['build'],
            ),
        ],
    )


def _running() -> WorkflowState:
    state = sm.create_state(_workflow())
    sm.start_workflow(state)
    return state


class TestCreateState:
    def test_initial_state(self) -> None:
        state = sm.create_state(_workflow())
        assert state.workflow_id == 'deploy'
        assert state.status == WorkflowStatus.PENDING
        assert state.current_step is None
        assert state.completed_steps == []
        assert state.step_results == {}
        assert state.schema_version == 1

    def test_timestamps_are_utc(self) -> None:
        state = sm.create_state(_workflow())
        assert state.started_at.tzinfo is not None
        assert state.updated_at.utcoffset() == dt.timedelta(0)


class TestStatusTransitions:
    """Legal transitions follow the table; everything else is rejected."""

    def test_start(self) -> None:
        state = _running()
        assert state.status == WorkflowStatus.RUNNING

    def test_start_twice_rejected(self) -> None:
        state = _running()
        with pytest.raises(WorkflowStateError) as exc_info:
            sm.start_workflow(state)
        assert exc_info.value.code == ErrorCode.STATE_ILLEGAL_TRANSITION

    def test_pause_resume(self) -> None:
        state = _running()
        sm.pause_workflow(state)
        assert state.status == WorkflowStatus.PAUSED
        sm.resume_workflow(state)
        assert state.status == WorkflowStatus.RUNNING

    def test_resume_when_not_paused_rejected(self) -> None:
        with pytest.raises(WorkflowStateError):
            sm.resume_workflow(_running())

    def test_approval_round_trip(self) -> None:
        state = _running()
        sm.wait_for_approval(state)
        assert state.status == WorkflowStatus.WAITING_APPROVAL
        sm.approve_workflow(state)
        assert state.status == WorkflowStatus.RUNNING

    def test_pause_while_waiting_for_approval(self) -> None:
        state = _running()
        sm.wait_for_approval(state)
        sm.pause_workflow(state)
        assert state.status == WorkflowStatus.PAUSED

    def test_approve_when_running_rejected(self) -> None:
        with pytest.raises(WorkflowStateError):
            sm.approve_workflow(_running())

    def test_complete_only_from_running(self) -> None:
        state = _running()
        sm.pause_workflow(state)
        with pytest.raises(WorkflowStateError):
            sm.complete_workflow(state)
        sm.resume_workflow(state)
        sm.complete_workflow(state)
        assert state.status == WorkflowStatus.COMPLETED

    def test_fail_from_pending_rejected(self) -> None:
        state = sm.create_state(_workflow())
        with pytest.raises(WorkflowStateError):
            sm.fail_workflow(state)

    @pytest.mark.parametrize(
        'setup',
        [
            [],
            [sm.start_workflow],
            [sm.start_workflow, sm.pause_workflow],
            [sm.start_workflow, sm.wait_for_approval],
        ],
    )
    def test_cancel_from_any_non_terminal(self, setup: list) -> None:
        state = sm.create_state(_workflow())
        for op in setup:
            op(state)
        sm.cancel_workflow(state)
        assert state.status == WorkflowStatus.CANCELLED

    @pytest.mark.parametrize(
        'finish', [sm.complete_workflow, sm.fail_workflow, sm.cancel_workflow]
    )
    def test_terminal_states_reject_everything(self, finish) -> None:
        state = _running()
        finish(state)
        for op in (
            sm.start_workflow,
            sm.pause_workflow,
            sm.resume_workflow,
            sm.cancel_workflow,
            sm.complete_workflow,
            sm.fail_workflow,
            sm.wait_for_approval,
            sm.approve_workflow,
        ):
            with pytest.raises(WorkflowStateError):
                op(state)

    def test_rejected_transition_leaves_state_unchanged(self) -> None:
        state = _running()
        sm.complete_workflow(state)
        before = state.model_dump()
        with pytest.raises(WorkflowStateError):
            sm.start_workflow(state)
        assert state.model_dump() == before

    def test_transition_refreshes_updated_at(self) -> None:
        state = sm.create_state(_workflow())
        state.updated_at = dt.datetime(2000, 1, 1, tzinfo=dt.timezone.utc)
        sm.start_workflow(state)
        assert state.updated_at.year > 2000

    def test_complete_clears_current_step(self) -> None:
        state = _running()
        sm.start_step(state, 'build')
        sm.complete_workflow(state)
        assert state.current_step is None


class TestStepEvents:
    def test_start_step(self) -> None:
        state = _running()
        sm.start_step(state, 'build')
        assert state.current_step == 'build'
        assert state.step_results['build'].status == StepStatus.RUNNING

    def test_start_step_requires_running(self) -> None:
        state = _running()
        sm.pause_workflow(state)
        with pytest.raises(WorkflowStateError):
            sm.start_step(state, 'build')
        assert 'build' not in state.step_results

    def test_complete_step(self) -> None:
        state = _running()
        sm.start_step(state, 'build')
        sm.complete_step(state, 'build', {'artifact': 'app.tar'}, duration_ms=120)
        result = state.step_results['build']
        assert result.status == StepStatus.COMPLETED
        assert result.output == {'artifact': 'app.tar'}
        assert result.duration_ms == 120
        assert state.completed_steps == ['build']
        assert state.current_step is None

    def test_complete_step_twice_not_duplicated(self) -> None:
        state = _running()
        sm.complete_step(state, 'build')
        sm.complete_step(state, 'build')
        assert state.completed_steps == ['build']

    def test_complete_without_start_creates_result(self) -> None:
        state = _running()
        sm.complete_step(state, 'build', 'ok')
        assert state.step_results['build'].output == 'ok'
        sm.validate_state(state)

    def test_complete_step_normalizes_output(self) -> None:
        @dataclasses.dataclass
        class Report:
            passed: int
            when: dt.date

        state = _running()
        sm.complete_step(state, 'test', Report(passed=3, when=dt.date(2025, 1, 2)))
        assert state.step_results['test'].output == {'passed': 3, 'when': '2025-01-02'}

    def test_complete_step_with_unstorable_output(self) -> None:
        state = _running()
        with pytest.raises(WorkflowStateError) as exc_info:
            sm.complete_step(state, 'build', object())
        assert exc_info.value.code == ErrorCode.STATE_ENCODE_FAILED
        assert state.completed_steps == []

    @pytest.mark.parametrize('value', [float('nan'), float('inf'), float('-inf')])
    def test_complete_step_rejects_non_finite_output(self, value: float) -> None:
        state = _running()
        with pytest.raises(WorkflowStateError) as exc_info:
            sm.complete_step(state, 'build', {'score': [1.0, value]})
        assert exc_info.value.code == ErrorCode.STATE_ENCODE_FAILED
        assert 'build' not in state.step_results

    def test_fail_step_does_not_complete_or_fail_workflow(self) -> None:
        state = _running()
        sm.start_step(state, 'build')
        sm.fail_step(state, 'build', 'exit code 2', duration_ms=5)
        result = state.step_results['build']
        assert result.status == StepStatus.FAILED
        assert result.error == 'exit code 2'
        assert 'build' not in state.completed_steps
        assert state.status == WorkflowStatus.RUNNING

    def test_skip_step_satisfies_dependents(self) -> None:
        state = _running()
        sm.skip_step(state, 'build')
        assert state.step_results['build'].status == StepStatus.SKIPPED
        assert state.completed_steps == ['build']

    def test_result_events_accepted_while_paused(self) -> None:
        state = _running()
        sm.start_step(state, 'build')
        sm.pause_workflow(state)
        sm.complete_step(state, 'build')
        assert state.completed_steps == ['build']
        assert state.status == WorkflowStatus.PAUSED

    def test_result_events_rejected_when_terminal(self) -> None:
        state = _running()
        sm.cancel_workflow(state)
        with pytest.raises(WorkflowStateError):
            sm.complete_step(state, 'build')
        with pytest.raises(WorkflowStateError):
            sm.fail_step(state, 'build', 'late')
        with pytest.raises(WorkflowStateError):
            sm.skip_step(state, 'build')


class TestStepApprovals:
    def test_request_then_approve(self) -> None:
        state = _running()
        assert sm.get_approval_status(state, 'test') is None
        sm.request_step_approval(state, 'test')
        assert sm.is_approval_pending(state, 'test') is True
        assert sm.is_step_approved(state, 'test') is False
        sm.approve_step(state, 'test')
        assert sm.get_approval_status(state, 'test') == ApprovalStatus.APPROVED
        assert sm.is_step_approved(state, 'test') is True
        assert sm.is_approval_pending(state, 'test') is False

    def test_reject(self) -> None:
        state = _running()
        sm.request_step_approval(state, 'test')
        sm.reject_step(state, 'test')
        assert sm.is_step_rejected(state, 'test') is True
        assert sm.is_step_approved(state, 'test') is False
        # Rejection records the decision only.
        assert 'test' not in state.step_results

    def test_repeated_request_is_noop(self) -> None:
        state = _running()
        sm.request_step_approval(state, 'test')
        sm.request_step_approval(state, 'test')
        assert state.step_approvals == {'test': ApprovalStatus.PENDING}

    def test_decided_request_cannot_reopen(self) -> None:
        state = _running()
        sm.request_step_approval(state, 'test')
        sm.approve_step(state, 'test')
        with pytest.raises(WorkflowStateError, match='already approved'):
            sm.request_step_approval(state, 'test')

    def test_decision_requires_pending_request(self) -> None:
        state = _running()
        with pytest.raises(WorkflowStateError) as exc_info:
            sm.approve_step(state, 'test')
        assert exc_info.value.code == ErrorCode.STATE_ILLEGAL_TRANSITION
        assert state.step_approvals == {}

    def test_no_decisions_after_terminal_status(self) -> None:
        state = _running()
        sm.request_step_approval(state, 'test')
        sm.cancel_workflow(state)
        with pytest.raises(WorkflowStateError):
            sm.reject_step(state, 'test')
        assert sm.is_approval_pending(state, 'test') is True

    def test_approvals_survive_snapshot(self) -> None:
        state = _running()
        sm.request_step_approval(state, 'test')
        copy = sm.snapshot(state)
        sm.approve_step(state, 'test')
        assert copy.step_approvals == {'test': ApprovalStatus.PENDING}


class TestQueries:
    def test_is_step_completed(self) -> None:
        state = _running()
        assert sm.is_step_completed(state, 'build') is False
        sm.complete_step(state, 'build')
        assert sm.is_step_completed(state, 'build') is True

    def test_next_step_to_execute(self) -> None:
        state = _running()
        assert sm.get_next_step_to_execute(state, ['build', 'test']) == 'build'
        sm.complete_step(state, 'build')
        assert sm.get_next_step_to_execute(state, ['build', 'test']) == 'test'
        sm.complete_step(state, 'test')
        assert sm.get_next_step_to_execute(state, ['build', 'test']) is None

    def test_progress(self) -> None:
        state = _running()
        assert sm.get_progress(state, 3) == 0
        sm.complete_step(state, 'build')
        assert sm.get_progress(state, 3) == 33
        sm.skip_step(state, 'test')
        assert sm.get_progress(state, 3) == 66

    def test_progress_zero_total(self) -> None:
        assert sm.get_progress(_running(), 0) == 0

    def test_progress_capped_at_100(self) -> None:
        state = _running()
        sm.complete_step(state, 'build')
        sm.complete_step(state, 'test')
        assert sm.get_progress(state, 1) == 100


class TestValidateState:
    def test_valid_state(self) -> None:
        state = _running()
        sm.start_step(state, 'build')
        sm.validate_state(state)

    def test_empty_workflow_id(self) -> None:
        with pytest.raises(WorkflowStateError) as exc_info:
            sm.validate_state(WorkflowState(workflow_id=''))
        assert exc_info.value.code == ErrorCode.STATE_INVARIANT_VIOLATION

    def test_completed_step_without_result(self) -> None:
        state = WorkflowState(workflow_id='wf', completed_steps=['a'])
        with pytest.raises(WorkflowStateError, match="completed step 'a' has no result"):
            sm.validate_state(state)

    def test_duplicate_completed_step(self) -> None:
        state = WorkflowState(
            workflow_id='wf',
            completed_steps=['a', 'a'],
            step_results={'a': StepResult(status=StepStatus.COMPLETED)},
        )
        with pytest.raises(WorkflowStateError, match='appears twice'):
            sm.validate_state(state)

    def test_current_step_without_result(self) -> None:
        state = WorkflowState(workflow_id='wf', current_step='a')
        with pytest.raises(WorkflowStateError, match="current step 'a' has no result"):
            sm.validate_state(state)


class TestSnapshot:
    def test_snapshot_is_independent(self) -> None:
        state = _running()
        copy = sm.snapshot(state)
        sm.complete_step(state, 'build')
        assert copy.completed_steps == []
        assert copy.step_results == {}
