"""Dependency resolution, conditions, lifecycle state machine and parameter substitution."""

from stepflow.core.workflows.resolver import (
    resolve_execution_order,
    detect_circular_dependencies,
    get_all_dependencies,
    get_dependent_steps,
    can_execute_step,
    get_ready_steps,
    requires_approval,
    validate_dependencies,
)
from stepflow.core.workflows.condition import (
    evaluate_condition,
    evaluate_expression,
    get_next_steps,
)
from stepflow.core.workflows.parameters import (
    validate_definitions,
    validate_values,
    build_final_values,
    substitute,
    substitute_in_workflow,
)
from stepflow.core.workflows.persistence import (
    persist_state,
    load_state,
    load_state_validated,
    load_state_with_recovery,
)
from stepflow.core.workflows.engine import WorkflowEngine, WorkflowRun

__all__ = [
    # Resolver
    'resolve_execution_order',
    'detect_circular_dependencies',
    'get_all_dependencies',
    'get_dependent_steps',
    'can_execute_step',
    'get_ready_steps',
    'requires_approval',
    'validate_dependencies',
    # Conditions
    'evaluate_condition',
    'evaluate_expression',
    'get_next_steps',
    # Parameters
    'validate_definitions',
    'validate_values',
    'build_final_values',
    'substitute',
    'substitute_in_workflow',
    # Persistence
    'persist_state',
    'load_state',
    'load_state_validated',
    'load_state_with_recovery',
    # Engine
    'WorkflowEngine',
    'WorkflowRun',
]
