# stepflow/core/codec/serde.py
from __future__ import annotations

import dataclasses
import datetime as dt
import json
import math
from enum import Enum
from typing import Any, Dict, List, Mapping, Sequence, Union, cast

import yaml
from pydantic import BaseModel, ValidationError

from stepflow.core.errors import ErrorCode, WorkflowStateError
from stepflow.core.logging import get_logger
from stepflow.core.models.config import StateFormat
from stepflow.core.models.state import STATE_SCHEMA_VERSION, WorkflowState

logger = get_logger('serde')


Json = Union[None, bool, int, float, str, List['Json'], Dict[str, 'Json']]
"""
Union type for JSON-serializable values.
"""


class SerializationError(Exception):
    """
    Raised when a value cannot be converted to a JSON-like tree.
    """

    pass


def to_jsonable(value: Any) -> Json:
    """
    Convert a step output into a plain JSON-like tree.

    Step outputs are stored verbatim in state files, so anything that would not
    survive a JSON or YAML round trip is normalized here:
    - pydantic models -> ``model_dump(mode='json')``
    - dataclasses -> dict of their fields
    - datetime/date/time -> ISO-8601 string
    - enums -> their value
    - tuples/sets -> lists, mapping keys -> str

    Raises:
        SerializationError: for values with no JSON representation.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        if isinstance(value, float) and not math.isfinite(value):
            raise SerializationError(f'{value!r} is not representable in a state file')
        return value

    if isinstance(value, Enum):
        return to_jsonable(value.value)

    # datetime.datetime is a subclass of datetime.date; isoformat() covers both.
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()

    if isinstance(value, BaseModel):
        return cast(Json, value.model_dump(mode='json'))

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            field.name: to_jsonable(getattr(value, field.name))
            for field in dataclasses.fields(value)
        }

    if isinstance(value, Mapping):
        mapping = cast(Mapping[object, object], value)
        return {str(key): to_jsonable(item) for key, item in mapping.items()}

    if isinstance(value, (set, frozenset)):
        return [to_jsonable(item) for item in sorted(value, key=repr)]

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        seq = cast(Sequence[object], value)
        return [to_jsonable(item) for item in seq]

    raise SerializationError(f'Cannot serialize value of type {type(value).__name__}')


# =============================================================================
# WorkflowState documents
# =============================================================================


def encode_state(state: WorkflowState, fmt: StateFormat = StateFormat.JSON) -> str:
    """
    Encode a state as a human-readable document.

    Args:
        state: The state to encode.
        fmt: JSON (indented) or YAML (block style, keys in field order).

    Raises:
        WorkflowStateError: if a step output cannot be encoded.
    """
    try:
        data = state.model_dump(mode='json')
        if fmt == StateFormat.YAML:
            return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
        return json.dumps(data, indent=2, ensure_ascii=False, allow_nan=False)
    except (ValueError, TypeError, yaml.YAMLError) as e:
        raise WorkflowStateError(
            message='failed to serialize workflow state',
            code=ErrorCode.STATE_ENCODE_FAILED,
            notes=[f'workflow_id: {state.workflow_id}', str(e)],
        ) from e


def _parse_document(text: str) -> Any:
    """Trial-parse JSON, fall back to YAML."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        logger.debug('state document is not JSON, trying YAML')
    return yaml.safe_load(text)


def decode_state(text: str, *, source: str = '<string>') -> WorkflowState:
    """
    Decode a state document written by ``encode_state`` in either format.

    Raises:
        WorkflowStateError: the document is neither JSON nor YAML, or does not
            describe a WorkflowState.
    """
    try:
        data = _parse_document(text)
    except yaml.YAMLError as e:
        raise WorkflowStateError(
            message='failed to parse state document',
            code=ErrorCode.STATE_DECODE_FAILED,
            notes=[f'source: {source}', 'document is neither valid JSON nor valid YAML'],
        ) from e

    if not isinstance(data, dict):
        raise WorkflowStateError(
            message='state document must be a mapping',
            code=ErrorCode.STATE_DECODE_FAILED,
            notes=[f'source: {source}', f'got {type(data).__name__}'],
        )

    # Files written before versioning carry no field and load as version 1.
    version = data.get('schema_version', STATE_SCHEMA_VERSION)
    if not isinstance(version, int) or version > STATE_SCHEMA_VERSION:
        raise WorkflowStateError(
            message=f'unsupported state schema version {version!r}',
            code=ErrorCode.STATE_DECODE_FAILED,
            notes=[f'source: {source}', f'newest supported: {STATE_SCHEMA_VERSION}'],
            help_text='upgrade stepflow to read this state file',
        )

    try:
        return WorkflowState.model_validate(data)
    except ValidationError as e:
        raise WorkflowStateError(
            message='state document does not describe a workflow state',
            code=ErrorCode.STATE_DECODE_FAILED,
            notes=[f'source: {source}', str(e)],
        ) from e
