"""Compiler-style error display for stepflow validation and state errors."""

from __future__ import annotations

import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Error codes for stepflow errors.

    Organized by category:
    - E001-E099: Workflow graph errors (Invalid)
    - E100-E199: Lookup errors (NotFound)
    - E200-E299: State machine and state file errors
    - E300-E399: Parameter errors
    - E400-E499: Configuration errors
    """

    # Workflow graph (E001-E099)
    WORKFLOW_DUPLICATE_STEP_ID = 'E001'
    WORKFLOW_INVALID_DEPENDENCY = 'E002'
    WORKFLOW_CYCLE_DETECTED = 'E003'
    WORKFLOW_UNRESOLVABLE_ORDER = 'E004'
    WORKFLOW_INVALID_CONDITION = 'E005'

    # Lookup (E100-E199)
    STEP_NOT_FOUND = 'E100'
    EXECUTION_NOT_FOUND = 'E101'

    # State (E200-E299)
    STATE_ILLEGAL_TRANSITION = 'E200'
    STATE_INVARIANT_VIOLATION = 'E201'
    STATE_DECODE_FAILED = 'E202'
    STATE_ENCODE_FAILED = 'E203'
    STATE_STEP_NOT_EXECUTED = 'E204'

    # Parameters (E300-E399)
    PARAM_MISSING_REQUIRED = 'E300'
    PARAM_UNKNOWN = 'E301'
    PARAM_TYPE_MISMATCH = 'E302'
    PARAM_INVALID_DEFINITION = 'E303'
    PARAM_UNRESOLVED_REFERENCE = 'E304'

    # Config (E400-E499)
    CONFIG_INVALID = 'E400'


class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    DIM = '\033[2m'


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    GREEN = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if _env_flag('STEPFLOW_FORCE_COLOR'):
        return True

    # https://no-color.org/
    if os.environ.get('NO_COLOR') is not None:
        return False

    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


@dataclass
class StepflowError(Exception):
    """Base exception for stepflow errors.

    Renders as:

        error[E003]: circular dependency: a -> b
           = note: workflows must be acyclic
           = help:
                remove one of the dependency edges
    """

    message: str
    code: ErrorCode | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def with_note(self, note: str) -> StepflowError:
        """Add a note to the error (fluent API)."""
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> StepflowError:
        """Set help text (fluent API)."""
        self.help_text = help_text
        return self

    def format_pretty(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        code_part = f'[{self.code.value}]' if self.code else ''
        lines = [f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}']

        for note in self.notes:
            note_lines = note.split('\n')
            lines.append(
                f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {note_lines[0]}'
            )
            for note_line in note_lines[1:]:
                lines.append(f'          {note_line}')

        if self.help_text:
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            for help_line in self.help_text.split('\n'):
                lines.append(f'        {help_line}')

        return '\n'.join(lines)

    def __str__(self) -> str:
        # Plain text so the message is safe for log records and state files.
        return self.format_pretty(use_colors=False)


@dataclass
class InvalidWorkflowError(StepflowError):
    """Raised when a workflow's dependency graph is invalid."""

    pass


@dataclass
class StepNotFoundError(StepflowError):
    """Raised when an operation references a step id absent from the workflow."""

    step_id: str = ''


@dataclass
class ExecutionNotFoundError(StepflowError):
    """Raised when the engine has no execution with the given id."""

    execution_id: str = ''


@dataclass
class WorkflowStateError(StepflowError):
    """Raised on an illegal transition or an invalid/corrupted state."""

    pass


@dataclass
class ParameterValidationError(StepflowError):
    """Raised when parameter definitions or values are invalid."""

    parameter: str | None = None


@dataclass
class ConfigurationError(StepflowError):
    """Raised when engine configuration is invalid."""

    pass


# =============================================================================
# Phase-Gated Error Collection
# =============================================================================


class ValidationReport:
    """Collects multiple StepflowError instances within a validation phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[StepflowError] = []

    def add(self, error: StepflowError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def format_pretty(self, use_colors: bool | None = None) -> str:
        """Format all collected errors, then append an aborting summary."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        parts = [error.format_pretty(use_colors=use_colors) for error in self.errors]
        parts.append(
            f'{c.BOLD}{c.RED}error{c.RESET}: {self.phase_name} validation aborted '
            f'due to {len(self.errors)} previous errors'
        )
        return '\n\n'.join(parts)

    def __str__(self) -> str:
        return self.format_pretty(use_colors=False)


@dataclass
class MultipleValidationErrors(StepflowError):
    """Wraps a ValidationReport containing 2+ errors.

    Single errors are raised as their original type so callers can keep
    catching the specific class.
    """

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        super().__post_init__()

    def format_pretty(self, use_colors: bool | None = None) -> str:
        return self.report.format_pretty(use_colors=use_colors)


def raise_collected(report: ValidationReport) -> None:
    """Raise collected errors.

    - 0 errors: no-op
    - 1 error: raises the original error
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


# =============================================================================
# Exception hook
# =============================================================================

_original_excepthook = sys.excepthook


def _stepflow_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    # STEPFLOW_PLAIN_ERRORS=1 bypasses custom formatting entirely
    if _env_flag('STEPFLOW_PLAIN_ERRORS') or not isinstance(exc_value, StepflowError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_pretty(), file=sys.stderr)
    if _env_flag('STEPFLOW_VERBOSE'):
        c = _Colors if _should_use_colors() else _NoColors
        print(f'\n{c.DIM}Full traceback (STEPFLOW_VERBOSE=1):{c.RESET}', file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Install the custom exception hook for formatted error display."""
    sys.excepthook = _stepflow_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook
