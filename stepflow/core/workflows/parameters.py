"""Parameter validation and ``${name}`` substitution into step configs."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from typing import Any

from stepflow.core.errors import (
    ErrorCode,
    ParameterValidationError,
    ValidationReport,
    raise_collected,
)
from stepflow.core.logging import get_logger
from stepflow.core.models.workflow import Workflow, WorkflowParameter

logger = get_logger('workflow.params')

PARAM_NAME_PATTERN = re.compile(r'[\w-]+')
PLACEHOLDER_PATTERN = re.compile(r'\$\{([^}]*)\}')


def _type_name(value: Any) -> str:
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, str):
        return 'string'
    if isinstance(value, list):
        return 'array'
    if isinstance(value, dict):
        return 'object'
    return type(value).__name__


def validate_definitions(parameters: Sequence[WorkflowParameter]) -> None:
    """
    Validate parameter declarations. Collects every problem before raising.

    Ensures:
    - names are non-empty, unique, and made of letters, digits, '_' and '-'
    - defaults match the declared type
    - required parameters carry no default
    """
    report = ValidationReport('parameters')
    seen: set[str] = set()

    for param in parameters:
        if not PARAM_NAME_PATTERN.fullmatch(param.name):
            report.add(
                ParameterValidationError(
                    message=f"invalid parameter name '{param.name}'",
                    code=ErrorCode.PARAM_INVALID_DEFINITION,
                    help_text='use only letters, digits, underscores and hyphens',
                    parameter=param.name,
                )
            )
        if param.name in seen:
            report.add(
                ParameterValidationError(
                    message=f"duplicate parameter name '{param.name}'",
                    code=ErrorCode.PARAM_INVALID_DEFINITION,
                    parameter=param.name,
                )
            )
        seen.add(param.name)

        if param.has_default and not param.type.matches(param.default):
            report.add(
                ParameterValidationError(
                    message=f"default for parameter '{param.name}' does not match type {param.type.value}",
                    code=ErrorCode.PARAM_TYPE_MISMATCH,
                    notes=[f'default is {_type_name(param.default)}'],
                    parameter=param.name,
                )
            )
        if param.required and param.has_default:
            report.add(
                ParameterValidationError(
                    message=f"required parameter '{param.name}' cannot have a default value",
                    code=ErrorCode.PARAM_INVALID_DEFINITION,
                    help_text='drop the default or mark the parameter optional',
                    parameter=param.name,
                )
            )

    raise_collected(report)


def validate_values(
    parameters: Sequence[WorkflowParameter],
    values: Mapping[str, Any],
) -> None:
    """
    Validate provided values against declarations.

    Ensures:
    - no unknown keys
    - every required parameter without a default is provided
    - provided values match the declared type
    """
    known = {param.name for param in parameters}
    for name in values:
        if name not in known:
            raise ParameterValidationError(
                message=f"unknown parameter '{name}'",
                code=ErrorCode.PARAM_UNKNOWN,
                notes=[f'declared parameters: {sorted(known)}'],
                parameter=name,
            )

    for param in parameters:
        if param.name in values:
            value = values[param.name]
            if not param.type.matches(value):
                raise ParameterValidationError(
                    message=f"parameter '{param.name}' has incorrect type",
                    code=ErrorCode.PARAM_TYPE_MISMATCH,
                    notes=[f'expected {param.type.value}, got {_type_name(value)}'],
                    parameter=param.name,
                )
        elif param.required and not param.has_default:
            raise ParameterValidationError(
                message=f"required parameter '{param.name}' not provided",
                code=ErrorCode.PARAM_MISSING_REQUIRED,
                parameter=param.name,
            )


def build_final_values(
    parameters: Sequence[WorkflowParameter],
    values: Mapping[str, Any],
) -> dict[str, Any]:
    """
    Effective value per parameter: provided value, else default.

    Optional parameters with neither are absent from the result.
    """
    validate_values(parameters, values)

    final: dict[str, Any] = {}
    for param in parameters:
        if param.name in values:
            final[param.name] = values[param.name]
        elif param.has_default:
            final[param.name] = param.default
    return final


def stringify(value: Any) -> str:
    """Text inserted in place of a placeholder."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if value is None:
        return 'null'
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, separators=(',', ':'), ensure_ascii=False)


def substitute_string(
    text: str,
    values: Mapping[str, Any],
    declared: frozenset[str] = frozenset(),
) -> str:
    """
    Replace every ``${name}`` in a single pass.

    Replacement text is never rescanned, so a value containing ``${...}`` is
    inserted literally. An unterminated ``${`` is not a placeholder and is
    kept as text.

    Raises:
        ParameterValidationError: a placeholder whose name is malformed or has
            no entry in ``values``. ``declared`` only sharpens the message.
    """

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if not PARAM_NAME_PATTERN.fullmatch(name):
            raise ParameterValidationError(
                message=f'invalid parameter reference: {match.group(0)}',
                code=ErrorCode.PARAM_UNRESOLVED_REFERENCE,
                help_text='parameter names use only letters, digits, underscores and hyphens',
                parameter=name,
            )
        if name in values:
            return stringify(values[name])
        if name in declared:
            raise ParameterValidationError(
                message=f"parameter '{name}' is referenced but has no value",
                code=ErrorCode.PARAM_UNRESOLVED_REFERENCE,
                help_text=f"provide '{name}' or give it a default",
                parameter=name,
            )
        raise ParameterValidationError(
            message=f"parameter '{name}' is referenced but not declared",
            code=ErrorCode.PARAM_UNRESOLVED_REFERENCE,
            notes=[f'declared parameters: {sorted(declared)}'],
            help_text=f"declare '{name}' in the workflow parameters",
            parameter=name,
        )

    return PLACEHOLDER_PATTERN.sub(replace, text)


def substitute(
    value: Any,
    values: Mapping[str, Any],
    declared: frozenset[str] = frozenset(),
) -> Any:
    """Return a copy of a JSON-like tree with placeholders replaced at any depth."""
    match value:
        case str():
            return substitute_string(value, values, declared)
        case dict():
            return {key: substitute(item, values, declared) for key, item in value.items()}
        case list():
            return [substitute(item, values, declared) for item in value]
        case _:
            return value


def substitute_in_workflow(workflow: Workflow, param_values: Mapping[str, Any]) -> None:
    """
    Resolve the workflow's parameters and write them into every step config.

    All new configs are computed before any step is touched, so on error no
    step config has changed.

    Raises:
        ParameterValidationError: invalid declarations, missing required
            parameter, unknown parameter, type mismatch, or a placeholder
            that does not resolve to an effective value.
    """
    validate_definitions(workflow.parameters)
    final_values = build_final_values(workflow.parameters, param_values)
    declared = frozenset(param.name for param in workflow.parameters)

    new_configs = [
        substitute(step.config, final_values, declared) for step in workflow.steps
    ]
    for step, config in zip(workflow.steps, new_configs):
        step.config = config

    logger.debug(
        f"Substituted {len(final_values)} parameter(s) into "
        f"{len(workflow.steps)} step(s) of workflow '{workflow.id}'"
    )
