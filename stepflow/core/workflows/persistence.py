"""Crash-safe state files.

Write path: validate in memory, encode, write a temporary sibling, fsync,
then ``os.replace`` over the target. A crash at any point leaves either the
previous file or the new one, never a torn or invariant-violating file.

OSError from the filesystem propagates unchanged; nothing here retries.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from stepflow.core.codec.serde import decode_state, encode_state
from stepflow.core.logging import get_logger
from stepflow.core.models.config import StateFormat
from stepflow.core.models.state import WorkflowState
from stepflow.core.workflows.state import validate_state

logger = get_logger('persistence')


def write_atomic(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` atomically, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f'.{path.name}.', suffix='.tmp', dir=path.parent
    )
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        # Leave no temp file behind, then re-raise the original error.
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def persist_state(
    state: WorkflowState,
    path: str | Path,
    fmt: StateFormat = StateFormat.JSON,
) -> None:
    """
    Validate and write ``state`` to ``path``.

    Raises:
        WorkflowStateError: the state violates an invariant or cannot be encoded.
        OSError: the file could not be written.
    """
    validate_state(state)
    text = encode_state(state, fmt)
    write_atomic(Path(path), text)
    logger.debug(f"Persisted state of workflow '{state.workflow_id}' to {path} ({fmt.value})")


def persist_state_json(state: WorkflowState, path: str | Path) -> None:
    persist_state(state, path, StateFormat.JSON)


def persist_state_yaml(state: WorkflowState, path: str | Path) -> None:
    persist_state(state, path, StateFormat.YAML)


def load_state(path: str | Path) -> WorkflowState:
    """
    Read a state file in either encoding (JSON tried first, then YAML).

    Raises:
        FileNotFoundError: no file at ``path``.
        WorkflowStateError: the file does not decode to a WorkflowState.
    """
    path = Path(path)
    text = path.read_text(encoding='utf-8')
    return decode_state(text, source=str(path))


def load_state_validated(path: str | Path) -> WorkflowState:
    """``load_state`` followed by ``validate_state``."""
    state = load_state(path)
    validate_state(state)
    return state


def load_state_with_recovery(path: str | Path) -> WorkflowState:
    """
    Load for crash recovery.

    A corrupted or invalid file is logged and the error re-raised; the state
    is never repaired or guessed at.
    """
    try:
        return load_state_validated(path)
    except Exception as e:
        logger.warning(f'Failed to recover workflow state from {path}: {e}')
        raise
