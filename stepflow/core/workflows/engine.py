"""Execution registry and the lock-guarded single writer for one WorkflowState."""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from stepflow.core.codec.serde import encode_state
from stepflow.core.errors import (
    ErrorCode,
    ExecutionNotFoundError,
    WorkflowStateError,
)
from stepflow.core.logging import apply_level, get_logger
from stepflow.core.models.config import EngineConfig, StateFormat
from stepflow.core.models.state import WorkflowState
from stepflow.core.models.workflow import Workflow
from stepflow.core.types.status import ApprovalStatus, WorkflowStatus
from stepflow.core.workflows import condition, error_handler, resolver
from stepflow.core.workflows import state as state_machine
from stepflow.core.workflows.parameters import substitute_in_workflow, validate_definitions
from stepflow.core.workflows.persistence import load_state_with_recovery, write_atomic

logger = get_logger('workflow.engine')


class WorkflowRun:
    """
    Single writer for one workflow instance.

    Every mutation runs on a copy of the state under ``_lock``; the copy is
    validated and swapped in only if the operation and validation both
    succeed, so a rejected call leaves the state untouched. When a state path
    is set, the encoded snapshot is written after the lock is released, under
    a separate write lock; a snapshot older than the last one written is
    dropped so the file only ever moves forward.
    """

    def __init__(
        self,
        workflow: Workflow,
        state: WorkflowState | None = None,
        *,
        execution_id: str | None = None,
        state_path: Path | None = None,
        state_format: StateFormat = StateFormat.JSON,
        default_max_parallel: int | None = None,
    ) -> None:
        self.workflow = workflow
        self.execution_id = execution_id or str(uuid.uuid4())
        self.state_path = state_path
        self.state_format = state_format
        self._default_max_parallel = default_max_parallel
        self._state = state if state is not None else state_machine.create_state(workflow)
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._revision = 0
        # Nothing written yet; revision 0 is the initial state.
        self._written_revision = -1

        if self._state.workflow_id != workflow.id:
            raise WorkflowStateError(
                message='state belongs to a different workflow',
                code=ErrorCode.STATE_INVARIANT_VIOLATION,
                notes=[
                    f"state workflow_id: '{self._state.workflow_id}'",
                    f"workflow id: '{workflow.id}'",
                ],
            )

    @classmethod
    def recover(
        cls,
        workflow: Workflow,
        state_path: Path,
        **kwargs: Any,
    ) -> WorkflowRun:
        """Rebuild a run from its state file. Invalid files raise, never repaired."""
        state = load_state_with_recovery(state_path)
        run = cls(workflow, state, state_path=state_path, **kwargs)
        logger.info(
            f"Recovered workflow '{workflow.id}' in status {state.status.value} "
            f'with {len(state.completed_steps)} completed step(s)'
        )
        return run

    # -------------------------------------------------------------------------
    # Mutation plumbing
    # -------------------------------------------------------------------------

    def _mutate(self, operation: Callable[[WorkflowState], Any]) -> Any:
        encoded: str | None = None
        with self._lock:
            candidate = state_machine.snapshot(self._state)
            result = operation(candidate)
            state_machine.validate_state(candidate)
            if self.state_path is not None:
                encoded = encode_state(candidate, self.state_format)
            self._state = candidate
            self._revision += 1
            revision = self._revision

        if encoded is not None:
            self._write(revision, encoded)
        return result

    def _write(self, revision: int, encoded: str) -> None:
        assert self.state_path is not None
        with self._write_lock:
            if revision <= self._written_revision:
                return
            write_atomic(self.state_path, encoded)
            self._written_revision = revision

    def persist(self) -> None:
        """Write the current state now (e.g. the initial PENDING state)."""
        if self.state_path is None:
            return
        with self._lock:
            state_machine.validate_state(self._state)
            encoded = encode_state(self._state, self.state_format)
            revision = self._revision
        self._write(revision, encoded)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        self._mutate(state_machine.start_workflow)

    def wait_for_approval(self) -> None:
        self._mutate(state_machine.wait_for_approval)

    def approve(self) -> None:
        self._mutate(state_machine.approve_workflow)

    def pause(self) -> None:
        self._mutate(state_machine.pause_workflow)

    def resume(self) -> None:
        self._mutate(state_machine.resume_workflow)

    def complete(self) -> None:
        self._mutate(state_machine.complete_workflow)

    def fail(self) -> None:
        self._mutate(state_machine.fail_workflow)

    def cancel(self) -> None:
        self._mutate(state_machine.cancel_workflow)

    # -------------------------------------------------------------------------
    # Step events
    # -------------------------------------------------------------------------

    def start_step(self, step_id: str) -> None:
        resolver.require_step(self.workflow, step_id)
        self._mutate(lambda s: state_machine.start_step(s, step_id))

    def complete_step(self, step_id: str, output: Any = None, duration_ms: int = 0) -> None:
        resolver.require_step(self.workflow, step_id)
        self._mutate(lambda s: state_machine.complete_step(s, step_id, output, duration_ms))

    def fail_step(self, step_id: str, error: str, duration_ms: int = 0) -> None:
        resolver.require_step(self.workflow, step_id)
        self._mutate(lambda s: state_machine.fail_step(s, step_id, error, duration_ms))

    def skip_step(self, step_id: str) -> None:
        resolver.require_step(self.workflow, step_id)
        self._mutate(lambda s: state_machine.skip_step(s, step_id))

    def handle_step_error(self, step_id: str, error: str, duration_ms: int = 0) -> bool:
        """Apply the step's ``on_error`` policy. See ``error_handler.handle_error``."""
        return self._mutate(
            lambda s: error_handler.handle_error(self.workflow, s, step_id, error, duration_ms)
        )

    # -------------------------------------------------------------------------
    # Step approvals
    # -------------------------------------------------------------------------

    def request_step_approval(self, step_id: str) -> None:
        if not resolver.requires_approval(self.workflow, step_id):
            raise WorkflowStateError(
                message=f"step '{step_id}' does not require approval",
                code=ErrorCode.STATE_ILLEGAL_TRANSITION,
                help_text='set approval_required on the step definition',
            )
        self._mutate(lambda s: state_machine.request_step_approval(s, step_id))

    def approve_step(self, step_id: str) -> None:
        resolver.require_step(self.workflow, step_id)
        self._mutate(lambda s: state_machine.approve_step(s, step_id))

    def reject_step(self, step_id: str) -> None:
        resolver.require_step(self.workflow, step_id)
        self._mutate(lambda s: state_machine.reject_step(s, step_id))

    def approval_status(self, step_id: str) -> ApprovalStatus | None:
        resolver.require_step(self.workflow, step_id)
        with self._lock:
            return state_machine.get_approval_status(self._state, step_id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def snapshot(self) -> WorkflowState:
        with self._lock:
            return state_machine.snapshot(self._state)

    @property
    def status(self) -> WorkflowStatus:
        with self._lock:
            return self._state.status

    @property
    def max_parallel(self) -> int | None:
        return self.workflow.config.max_parallel or self._default_max_parallel

    def ready_steps(self) -> list[str]:
        """Ready steps computed from one consistent snapshot."""
        with self._lock:
            completed = list(self._state.completed_steps)
            in_progress = self._state.in_progress_steps
            failed = self._state.failed_steps
        # A failed step is not ready again until the driver re-dispatches it.
        return resolver.get_ready_steps(self.workflow, completed, in_progress + failed)

    def dispatchable_steps(self) -> list[str]:
        """
        Ready steps trimmed to the free ``max_parallel`` slots.

        A step with ``approval_required`` is held back until it is approved.
        """
        with self._lock:
            completed = list(self._state.completed_steps)
            in_progress = self._state.in_progress_steps
            failed = self._state.failed_steps
            status = self._state.status
            approvals = dict(self._state.step_approvals)
        if status != WorkflowStatus.RUNNING:
            return []
        ready = [
            step_id
            for step_id in resolver.get_ready_steps(self.workflow, completed, in_progress + failed)
            if not resolver.requires_approval(self.workflow, step_id)
            or approvals.get(step_id) == ApprovalStatus.APPROVED
        ]
        limit = self.max_parallel
        if limit is None:
            return ready
        return ready[: max(limit - len(in_progress), 0)]

    def next_steps(self, step_id: str) -> list[str]:
        """Branch chosen by the condition step ``step_id``. See ``condition.get_next_steps``."""
        state = self.snapshot()
        return condition.get_next_steps(self.workflow, state, step_id)

    def progress(self) -> int:
        with self._lock:
            return state_machine.get_progress(self._state, len(self.workflow.steps))

    def is_finished(self) -> bool:
        """True once every step is completed or skipped."""
        with self._lock:
            done = set(self._state.completed_steps)
        return all(step_id in done for step_id in self.workflow.step_ids)


class WorkflowEngine:
    """
    In-process registry of active executions.

    Executions are keyed by a generated id. Each one owns a private deep copy
    of its workflow, so parameter substitution for one execution never leaks
    into the caller's definition or another execution.
    """

    def __init__(self, config: EngineConfig | None = None) -> None:
        self.config = config or EngineConfig()
        self._runs: dict[str, WorkflowRun] = {}
        self._lock = threading.Lock()
        apply_level(self.config.level)

    def _get(self, execution_id: str) -> WorkflowRun:
        with self._lock:
            run = self._runs.get(execution_id)
        if run is None:
            raise ExecutionNotFoundError(
                message=f"execution '{execution_id}' not found",
                code=ErrorCode.EXECUTION_NOT_FOUND,
                execution_id=execution_id,
            )
        return run

    def _register(self, run: WorkflowRun) -> str:
        with self._lock:
            self._runs[run.execution_id] = run
        return run.execution_id

    @staticmethod
    def _prepare(
        workflow: Workflow,
        param_values: Mapping[str, Any] | None,
    ) -> Workflow:
        """Private copy with parameters resolved and the graph validated."""
        definition = workflow.model_copy(deep=True)
        if param_values is None:
            validate_definitions(definition.parameters)
        else:
            substitute_in_workflow(definition, param_values)
        resolver.validate_dependencies(definition)
        return definition

    def create_execution(
        self,
        workflow: Workflow,
        param_values: Mapping[str, Any] | None = None,
    ) -> str:
        """
        Validate, resolve parameters, and register a PENDING execution.

        Order: parameter definitions, substitution, dependency graph. Nothing
        is registered or written if any step fails.
        """
        definition = self._prepare(workflow, param_values or {})

        execution_id = str(uuid.uuid4())
        run = WorkflowRun(
            definition,
            execution_id=execution_id,
            state_path=self.config.state_path(execution_id),
            state_format=self.config.state_format,
            default_max_parallel=self.config.default_max_parallel,
        )
        run.persist()
        self._register(run)
        logger.info(f"Created execution '{execution_id}' of workflow '{workflow.id}'")
        return execution_id

    def recover_execution(
        self,
        workflow: Workflow,
        execution_id: str,
        param_values: Mapping[str, Any] | None = None,
    ) -> str:
        """
        Re-register an execution from its state file after a restart.

        State files do not record parameter values: pass the ones used at
        creation to get the same step configs back. With None the configs
        keep their placeholders.
        """
        path = self.config.state_path(execution_id)
        if path is None:
            raise WorkflowStateError(
                message='cannot recover without a state directory',
                code=ErrorCode.STATE_DECODE_FAILED,
                help_text='set state_dir and persist_on_mutation in EngineConfig',
            )
        run = WorkflowRun.recover(
            self._prepare(workflow, param_values),
            path,
            execution_id=execution_id,
            state_format=self.config.state_format,
            default_max_parallel=self.config.default_max_parallel,
        )
        return self._register(run)

    def get_run(self, execution_id: str) -> WorkflowRun:
        return self._get(execution_id)

    def start_execution(self, execution_id: str) -> None:
        self._get(execution_id).start()

    def pause_execution(self, execution_id: str) -> None:
        self._get(execution_id).pause()

    def resume_execution(self, execution_id: str) -> None:
        self._get(execution_id).resume()

    def cancel_execution(self, execution_id: str) -> None:
        self._get(execution_id).cancel()

    def complete_execution(self, execution_id: str) -> None:
        self._get(execution_id).complete()

    def fail_execution(self, execution_id: str) -> None:
        self._get(execution_id).fail()

    def get_execution_state(self, execution_id: str) -> WorkflowState:
        return self._get(execution_id).snapshot()

    @staticmethod
    def get_execution_order(workflow: Workflow) -> list[str]:
        return resolver.resolve_execution_order(workflow)

    def get_next_step(self, execution_id: str) -> str | None:
        """First step in workflow order with no result yet and all dependencies done."""
        run = self._get(execution_id)
        state = run.snapshot()
        for step in run.workflow.steps:
            if (
                step.id not in state.completed_steps
                and step.id not in state.step_results
                and resolver.can_execute_step(run.workflow, state.completed_steps, step.id)
            ):
                return step.id
        return None

    def wait_for_dependencies(self, execution_id: str, step_id: str) -> None:
        """
        Raise unless every dependency of ``step_id`` is completed.

        Raises:
            StepNotFoundError: unknown step.
            WorkflowStateError: a dependency is not completed yet.
        """
        run = self._get(execution_id)
        state = run.snapshot()
        if not resolver.can_execute_step(run.workflow, state.completed_steps, step_id):
            step = run.workflow.get_step(step_id)
            assert step is not None
            pending = [d for d in step.dependencies if d not in state.completed_steps]
            raise WorkflowStateError(
                message=f"dependencies not completed for step '{step_id}'",
                code=ErrorCode.STATE_ILLEGAL_TRANSITION,
                notes=[f'pending: {pending}'],
            )

    def remove_execution(self, execution_id: str) -> WorkflowState:
        """Stop tracking an execution and return its final state."""
        run = self._get(execution_id)
        with self._lock:
            self._runs.pop(execution_id, None)
        logger.info(f"Removed execution '{execution_id}'")
        return run.snapshot()

    def get_active_executions(self) -> list[str]:
        with self._lock:
            return list(self._runs)

    def active_execution_count(self) -> int:
        with self._lock:
            return len(self._runs)
