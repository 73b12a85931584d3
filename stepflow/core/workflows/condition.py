"""Evaluate ``ConditionStep`` expressions against recorded step results.

An expression compares one reference with one literal:

    build.output.coverage >= 80
    test.status == 'completed'
    scan.output.findings[0].severity != 'high'

The reference is ``<step_id>.<field>`` followed by optional ``.key`` or
``.key[index]`` segments, where ``<field>`` is one of ``output``, ``status``,
``error`` or ``duration_ms``. Missing keys and out-of-range indexes resolve to
null. The literal is a quoted string, ``true``, ``false``, ``null``, an
integer or a float; anything else is taken as a bare string.

Nothing here mutates state.
"""

from __future__ import annotations

import math
import operator
import re
from collections.abc import Callable
from typing import Any

from stepflow.core.errors import ErrorCode, InvalidWorkflowError, WorkflowStateError
from stepflow.core.logging import get_logger
from stepflow.core.models.state import WorkflowState
from stepflow.core.models.workflow import ConditionStep, Workflow
from stepflow.core.workflows.resolver import require_step

logger = get_logger('workflow.condition')

# Searched in this order; the first operator found splits the expression.
_OPERATORS: tuple[tuple[str, Callable[[Any, Any], bool]], ...] = (
    ('!=', operator.ne),
    ('==', operator.eq),
    ('>=', operator.ge),
    ('<=', operator.le),
    ('>', operator.gt),
    ('<', operator.lt),
)

_RESULT_FIELDS = frozenset({'output', 'status', 'error', 'duration_ms'})

_INDEXED_SEGMENT = re.compile(r'^([^\[\]]*)\[([^\[\]]*)\]$')


def _invalid(message: str, expression: str) -> InvalidWorkflowError:
    return InvalidWorkflowError(
        message=message,
        code=ErrorCode.WORKFLOW_INVALID_CONDITION,
        notes=[f'expression: {expression!r}'],
    )


def parse_literal(text: str) -> Any:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ('"', "'"):
        return text[1:-1]
    if text == 'true':
        return True
    if text == 'false':
        return False
    if text == 'null':
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return text
    return number if math.isfinite(number) else text


def _child(value: Any, key: str) -> Any:
    return value.get(key) if isinstance(value, dict) else None


def _item(value: Any, index: int) -> Any:
    if isinstance(value, list) and index < len(value):
        return value[index]
    return None


def resolve_reference(reference: str, state: WorkflowState) -> Any:
    """
    Look up ``<step_id>.<field>[.key|.key[index]]...`` in ``state``.

    Raises:
        WorkflowStateError: the step has no recorded result yet.
        InvalidWorkflowError: malformed reference.
    """
    step_id, _, path = reference.strip().partition('.')
    if not step_id or not path:
        raise _invalid(f'invalid value reference: {reference!r}', reference)

    result = state.step_results.get(step_id)
    if result is None:
        raise WorkflowStateError(
            message=f"step '{step_id}' has not been executed",
            code=ErrorCode.STATE_STEP_NOT_EXECUTED,
            notes=[f"workflow_id: '{state.workflow_id}'"],
            help_text='conditions may only reference steps the condition depends on',
        )

    field, *segments = path.split('.')
    if field not in _RESULT_FIELDS:
        raise _invalid(
            f"unknown result field '{field}' (expected one of {sorted(_RESULT_FIELDS)})",
            reference,
        )
    value: Any = result.status.value if field == 'status' else getattr(result, field)

    for segment in segments:
        if not segment:
            continue
        indexed = _INDEXED_SEGMENT.match(segment)
        if indexed is None:
            value = _child(value, segment)
            continue
        key, index = indexed.groups()
        if not index.isdigit():
            raise _invalid(f'invalid array index: {index!r}', reference)
        if key:
            value = _child(value, key)
        value = _item(value, int(index))

    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _json_equal(left: Any, right: Any) -> bool:
    # Booleans never equal numbers, unlike Python's True == 1.
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    return left == right


def evaluate_expression(expression: str, state: WorkflowState) -> bool:
    for token, compare in _OPERATORS:
        left, found, right = expression.partition(token)
        if not found:
            continue
        left_value = resolve_reference(left, state)
        right_value = parse_literal(right)
        if compare is operator.eq:
            return _json_equal(left_value, right_value)
        if compare is operator.ne:
            return not _json_equal(left_value, right_value)
        if not (_is_number(left_value) and _is_number(right_value)):
            raise InvalidWorkflowError(
                message=f'cannot compare non-numeric values with {token}',
                code=ErrorCode.WORKFLOW_INVALID_CONDITION,
                notes=[
                    f'expression: {expression!r}',
                    f'left: {left_value!r}',
                    f'right: {right_value!r}',
                ],
            )
        return compare(left_value, right_value)

    raise _invalid(f'unsupported condition expression: {expression.strip()!r}', expression)


def evaluate_condition(state: WorkflowState, condition: ConditionStep) -> list[str]:
    """``then_steps`` if the expression holds, else ``else_steps``."""
    taken = evaluate_expression(condition.condition, state)
    return list(condition.then_steps if taken else condition.else_steps)


def get_next_steps(workflow: Workflow, state: WorkflowState, step_id: str) -> list[str]:
    """
    Branch chosen by the condition step ``step_id``.

    Raises:
        StepNotFoundError: unknown step.
        InvalidWorkflowError: the step is not a condition step, or its
            expression is malformed.
        WorkflowStateError: the expression references a step with no result.
    """
    step = require_step(workflow, step_id)
    if not isinstance(step.step_type, ConditionStep):
        raise InvalidWorkflowError(
            message=f"step '{step_id}' is not a condition step",
            code=ErrorCode.WORKFLOW_INVALID_CONDITION,
            notes=[f'step kind: {step.step_type.kind}'],
        )
    branch = evaluate_condition(state, step.step_type)
    logger.debug(
        f"Workflow '{workflow.id}': condition '{step_id}' "
        f"({step.step_type.condition!r}) selected {branch}"
    )
    return branch
