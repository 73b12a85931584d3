"""Dependency graph queries over a Workflow definition.

Every function here is a pure, read-only query: no hidden state, no caching.
The driver uses ``get_ready_steps`` to dispatch concurrently and
``resolve_execution_order`` when it runs steps strictly one at a time.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Collection, Iterator

from stepflow.core.errors import (
    ErrorCode,
    InvalidWorkflowError,
    StepNotFoundError,
    ValidationReport,
    raise_collected,
)
from stepflow.core.logging import get_logger
from stepflow.core.models.workflow import Workflow, WorkflowStep

logger = get_logger('workflow.resolver')


def require_step(workflow: Workflow, step_id: str) -> WorkflowStep:
    step = workflow.get_step(step_id)
    if step is None:
        raise StepNotFoundError(
            message=f"step '{step_id}' not found",
            code=ErrorCode.STEP_NOT_FOUND,
            notes=[f"workflow '{workflow.id}' has steps: {workflow.step_ids}"],
            step_id=step_id,
        )
    return step


def resolve_execution_order(workflow: Workflow) -> list[str]:
    """
    Breadth-first topological sort.

    Seeds the queue with every step that has no dependencies, then pops steps
    one at a time: a step whose dependencies are all placed is appended to the
    order and its dependents are enqueued; otherwise it goes to the back of
    the queue. A full pass over the queue without placing anything means the
    remaining steps can never be placed, so the loop stops there.

    Raises:
        InvalidWorkflowError: the order does not cover every step (a cycle, or
            a group of steps only reachable through a dangling dependency).
    """
    step_map = workflow.step_map()
    dependents: dict[str, list[str]] = {step_id: [] for step_id in step_map}
    for step in workflow.steps:
        for dep in step.dependencies:
            if dep in dependents:
                dependents[dep].append(step.id)

    order: list[str] = []
    completed: set[str] = set()
    queue: deque[str] = deque(step.id for step in workflow.steps if not step.dependencies)
    # Pops since the last placement; reaching len(queue) means a stalled pass.
    stalled = 0

    while queue and stalled <= len(queue):
        step_id = queue.popleft()
        if step_id in completed:
            continue

        if all(dep in completed for dep in step_map[step_id].dependencies):
            order.append(step_id)
            completed.add(step_id)
            stalled = 0
            for dependent in dependents[step_id]:
                if dependent not in completed:
                    queue.append(dependent)
        else:
            queue.append(step_id)
            stalled += 1

    if len(order) != len(workflow.steps):
        unplaced = [step.id for step in workflow.steps if step.id not in completed]
        raise InvalidWorkflowError(
            message='could not determine execution order for all steps',
            code=ErrorCode.WORKFLOW_UNRESOLVABLE_ORDER,
            notes=[
                f'ordered {len(order)} of {len(workflow.steps)} steps',
                f'unplaced: {unplaced}',
            ],
            help_text='check for circular or missing dependencies with validate_dependencies()',
        )

    logger.debug(f"Resolved order for workflow '{workflow.id}': {order}")
    return order


def detect_circular_dependencies(workflow: Workflow) -> None:
    """
    Depth-first search from every step, tracking a recursion stack.

    Only "a cycle exists" is guaranteed; which edge gets reported depends on
    traversal order and is not stable across equivalent graphs.

    Raises:
        InvalidWorkflowError: ``circular dependency: A -> B``.
    """
    step_map = workflow.step_map()
    visited: set[str] = set()

    for start in workflow.steps:
        if start.id in visited:
            continue
        visited.add(start.id)
        rec_stack: set[str] = {start.id}
        # (step_id, iterator over its remaining dependencies)
        stack: list[tuple[str, Iterator[str]]] = [(start.id, iter(start.dependencies))]

        while stack:
            step_id, deps = stack[-1]
            dep = next(deps, None)
            if dep is None:
                rec_stack.discard(step_id)
                stack.pop()
                continue
            if dep in rec_stack:
                raise InvalidWorkflowError(
                    message=f'circular dependency: {step_id} -> {dep}',
                    code=ErrorCode.WORKFLOW_CYCLE_DETECTED,
                    notes=['workflows must be acyclic directed graphs (DAG)'],
                    help_text='remove one of the dependency edges in the cycle',
                )
            if dep in visited:
                continue
            visited.add(dep)
            dep_step = step_map.get(dep)
            if dep_step is not None:
                rec_stack.add(dep)
                stack.append((dep, iter(dep_step.dependencies)))


def get_all_dependencies(workflow: Workflow, step_id: str) -> set[str]:
    """Transitive closure of ``step_id``'s dependencies (breadth-first)."""
    step = require_step(workflow, step_id)
    step_map = workflow.step_map()

    all_deps: set[str] = set()
    queue: deque[str] = deque(step.dependencies)
    while queue:
        dep_id = queue.popleft()
        if dep_id in all_deps:
            continue
        all_deps.add(dep_id)
        dep_step = step_map.get(dep_id)
        if dep_step is not None:
            queue.extend(d for d in dep_step.dependencies if d not in all_deps)

    return all_deps


def get_dependent_steps(workflow: Workflow, step_id: str) -> set[str]:
    """Every step that lists ``step_id`` as a dependency, directly or indirectly."""
    dependents: set[str] = set()
    queue: deque[str] = deque([step_id])
    while queue:
        current = queue.popleft()
        for step in workflow.steps:
            if current in step.dependencies and step.id not in dependents:
                dependents.add(step.id)
                queue.append(step.id)
    return dependents


def can_execute_step(
    workflow: Workflow,
    completed_steps: Collection[str],
    step_id: str,
) -> bool:
    """True iff every dependency of ``step_id`` is in ``completed_steps``."""
    step = require_step(workflow, step_id)
    completed = set(completed_steps)
    return all(dep in completed for dep in step.dependencies)


def requires_approval(workflow: Workflow, step_id: str) -> bool:
    return require_step(workflow, step_id).approval_required


def get_ready_steps(
    workflow: Workflow,
    completed_steps: Collection[str],
    in_progress_steps: Collection[str],
) -> list[str]:
    """
    Steps that are neither completed nor in progress and whose dependencies
    are all completed, in workflow order.

    Pass a consistent snapshot: recompute after new completions land rather
    than reusing an earlier result.
    """
    completed = set(completed_steps)
    in_progress = set(in_progress_steps)
    return [
        step.id
        for step in workflow.steps
        if step.id not in completed
        and step.id not in in_progress
        and all(dep in completed for dep in step.dependencies)
    ]


def validate_dependencies(workflow: Workflow) -> None:
    """
    Validate the dependency graph before any state is created.

    Phase-gated: duplicate ids and dangling references are collected together;
    the cycle check only runs on a graph that passed both.

    Raises:
        InvalidWorkflowError: a single problem.
        MultipleValidationErrors: two or more duplicate/dangling problems.
    """
    report = ValidationReport('workflow')

    seen: set[str] = set()
    for step in workflow.steps:
        if step.id in seen:
            report.add(
                InvalidWorkflowError(
                    message=f"duplicate step id '{step.id}'",
                    code=ErrorCode.WORKFLOW_DUPLICATE_STEP_ID,
                    help_text='each step must have a unique id within the workflow',
                )
            )
        seen.add(step.id)

    for step in workflow.steps:
        for dep in step.dependencies:
            if dep not in seen:
                report.add(
                    InvalidWorkflowError(
                        message=f"step '{step.id}' depends on non-existent step '{dep}'",
                        code=ErrorCode.WORKFLOW_INVALID_DEPENDENCY,
                        help_text='ensure all dependencies are included in the workflow steps',
                    )
                )

    if report.has_errors():
        logger.warning(
            f"Workflow '{workflow.id}' failed dependency validation "
            f'with {len(report.errors)} error(s)'
        )
    raise_collected(report)

    detect_circular_dependencies(workflow)
