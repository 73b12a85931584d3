"""Unit tests for compiler-style error formatting."""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from io import StringIO
from unittest import mock

import pytest

from stepflow.core.errors import (
    ConfigurationError,
    ErrorCode,
    ExecutionNotFoundError,
    InvalidWorkflowError,
    MultipleValidationErrors,
    ParameterValidationError,
    StepflowError,
    StepNotFoundError,
    ValidationReport,
    WorkflowStateError,
    _should_use_colors,
    _stepflow_excepthook,
    install_error_handler,
    raise_collected,
    uninstall_error_handler,
)

pytestmark = pytest.mark.unit


# =============================================================================
# StepflowError Tests
# =============================================================================


class TestStepflowError:
    """Tests for the base StepflowError class."""

    def test_basic_creation(self) -> None:
        err = StepflowError(message='something broke')
        assert err.message == 'something broke'
        assert err.code is None
        assert err.notes == []
        assert err.help_text is None

    def test_is_exception(self) -> None:
        with pytest.raises(StepflowError):
            raise StepflowError(message='boom')

    def test_exception_args_contains_message(self) -> None:
        err = StepflowError(message='args test')
        assert err.args == ('args test',)

    def test_fluent_api(self) -> None:
        err = (
            StepflowError(message='fluent')
            .with_note('first note')
            .with_note('second note')
            .with_help('try this')
        )
        assert err.notes == ['first note', 'second note']
        assert err.help_text == 'try this'

    def test_format_basic(self) -> None:
        err = StepflowError(message='plain')
        assert err.format_pretty(use_colors=False) == 'error: plain'

    def test_format_with_code(self) -> None:
        err = InvalidWorkflowError(
            message="duplicate step id 'a'",
            code=ErrorCode.WORKFLOW_DUPLICATE_STEP_ID,
        )
        assert err.format_pretty(use_colors=False) == "error[E001]: duplicate step id 'a'"

    def test_format_with_notes_and_help(self) -> None:
        err = InvalidWorkflowError(
            message='circular dependency: a -> b',
            code=ErrorCode.WORKFLOW_CYCLE_DETECTED,
            notes=['workflows must be acyclic'],
            help_text='remove one of the dependency edges',
        )
        lines = err.format_pretty(use_colors=False).split('\n')
        assert lines[0] == 'error[E003]: circular dependency: a -> b'
        assert lines[1] == '   = note: workflows must be acyclic'
        assert lines[2] == '   = help:'
        assert lines[3] == '        remove one of the dependency edges'

    def test_format_multiline_note(self) -> None:
        err = StepflowError(message='m', notes=['line one\nline two'])
        output = err.format_pretty(use_colors=False)
        assert '   = note: line one' in output
        assert '          line two' in output

    def test_format_with_colors(self) -> None:
        err = StepflowError(message='colored')
        assert '\033[' in err.format_pretty(use_colors=True)

    def test_str_is_plain_text(self) -> None:
        with mock.patch.dict(os.environ, {'STEPFLOW_FORCE_COLOR': '1'}):
            err = StepflowError(message='no ansi', code=ErrorCode.CONFIG_INVALID)
            assert str(err) == 'error[E400]: no ansi'


class TestSubclasses:
    @pytest.mark.parametrize(
        'cls',
        [
            InvalidWorkflowError,
            StepNotFoundError,
            ExecutionNotFoundError,
            WorkflowStateError,
            ParameterValidationError,
            ConfigurationError,
            MultipleValidationErrors,
        ],
    )
    def test_inherits_from_stepflow_error(self, cls: type[StepflowError]) -> None:
        assert issubclass(cls, StepflowError)

    def test_step_not_found_carries_step_id(self) -> None:
        err = StepNotFoundError(
            message="step 'x' not found", code=ErrorCode.STEP_NOT_FOUND, step_id='x'
        )
        assert err.step_id == 'x'

    def test_parameter_error_carries_parameter(self) -> None:
        err = ParameterValidationError(message='bad', parameter='env')
        assert err.parameter == 'env'


# =============================================================================
# Multi-error collection
# =============================================================================


class TestRaiseCollected:
    def test_empty_report_is_noop(self) -> None:
        raise_collected(ValidationReport('empty'))

    def test_single_error_raised_as_itself(self) -> None:
        report = ValidationReport('workflow')
        report.add(InvalidWorkflowError(message='only one'))
        with pytest.raises(InvalidWorkflowError, match='only one'):
            raise_collected(report)

    def test_multiple_errors_wrapped(self) -> None:
        report = ValidationReport('parameters')
        report.add(ParameterValidationError(message='first'))
        report.add(ParameterValidationError(message='second'))
        with pytest.raises(MultipleValidationErrors) as exc_info:
            raise_collected(report)
        assert exc_info.value.report is report
        text = str(exc_info.value)
        assert 'first' in text
        assert 'second' in text
        assert 'parameters validation aborted due to 2 previous errors' in text

    def test_multiple_errors_message(self) -> None:
        report = ValidationReport('config')
        report.add(ConfigurationError(message='a'))
        report.add(ConfigurationError(message='b'))
        report.add(ConfigurationError(message='c'))
        with pytest.raises(MultipleValidationErrors) as exc_info:
            raise_collected(report)
        assert exc_info.value.message == 'aborting due to 3 previous errors'


# =============================================================================
# Environment Variables
# =============================================================================


class TestEnvironmentVariables:
    def test_force_color(self) -> None:
        with mock.patch.dict(os.environ, {'STEPFLOW_FORCE_COLOR': 'yes'}):
            assert _should_use_colors() is True

    def test_no_color_disables(self) -> None:
        with mock.patch.dict(os.environ, {'NO_COLOR': '1', 'STEPFLOW_FORCE_COLOR': ''}):
            assert _should_use_colors() is False

    def test_force_color_beats_no_color(self) -> None:
        with mock.patch.dict(os.environ, {'NO_COLOR': '1', 'STEPFLOW_FORCE_COLOR': 'true'}):
            assert _should_use_colors() is True

    def test_tty_fallback(self) -> None:
        cleaned_env = {
            k: v for k, v in os.environ.items() if k not in ('NO_COLOR', 'STEPFLOW_FORCE_COLOR')
        }
        with mock.patch.dict(os.environ, cleaned_env, clear=True):
            with mock.patch.object(sys.stderr, 'isatty', return_value=False):
                assert _should_use_colors() is False


# =============================================================================
# Exception hook
# =============================================================================


class TestExceptionHook:
    """Tests for custom exception hook."""

    @pytest.fixture(autouse=True)
    def _restore_excepthook(self) -> Iterator[None]:
        """Restore sys.excepthook after each test to prevent state leaks."""
        original = sys.excepthook
        yield
        sys.excepthook = original

    def test_install_and_uninstall(self) -> None:
        from stepflow.core.errors import _original_excepthook

        install_error_handler()
        assert sys.excepthook == _stepflow_excepthook

        uninstall_error_handler()
        assert sys.excepthook == _original_excepthook

    def test_stepflow_error_prints_to_stderr(self) -> None:
        err = StepflowError(message='hook test error')
        fake_stderr = StringIO()
        with mock.patch('sys.stderr', fake_stderr):
            with mock.patch.dict(os.environ, {
                'STEPFLOW_PLAIN_ERRORS': '',
                'STEPFLOW_VERBOSE': '',
                'STEPFLOW_FORCE_COLOR': '',
            }):
                _stepflow_excepthook(type(err), err, err.__traceback__)
        assert 'error: hook test error' in fake_stderr.getvalue()

    def test_other_error_delegates_to_original(self) -> None:
        err = ValueError('not a stepflow error')
        with mock.patch('stepflow.core.errors._original_excepthook') as mock_hook:
            with mock.patch.dict(os.environ, {'STEPFLOW_PLAIN_ERRORS': ''}):
                _stepflow_excepthook(type(err), err, err.__traceback__)
            mock_hook.assert_called_once_with(type(err), err, err.__traceback__)

    def test_plain_errors_bypasses_custom_formatting(self) -> None:
        err = StepflowError(message='plain mode')
        with mock.patch('stepflow.core.errors._original_excepthook') as mock_hook:
            with mock.patch.dict(os.environ, {'STEPFLOW_PLAIN_ERRORS': '1'}):
                _stepflow_excepthook(type(err), err, err.__traceback__)
            mock_hook.assert_called_once_with(type(err), err, err.__traceback__)

    def test_verbose_mode_shows_traceback(self) -> None:
        err = StepflowError(message='verbose test')
        fake_stderr = StringIO()
        with mock.patch('sys.stderr', fake_stderr):
            with mock.patch.dict(os.environ, {
                'STEPFLOW_VERBOSE': '1',
                'STEPFLOW_PLAIN_ERRORS': '',
                'STEPFLOW_FORCE_COLOR': '',
            }):
                _stepflow_excepthook(type(err), err, err.__traceback__)
        output = fake_stderr.getvalue()
        assert 'error: verbose test' in output
        assert 'Full traceback (STEPFLOW_VERBOSE=1):' in output


# =============================================================================
# Error Code Tests
# =============================================================================


class TestErrorCode:
    @pytest.mark.parametrize(
        'prefix, low, high',
        [
            ('WORKFLOW_', 1, 99),
            ('STEP_', 100, 199),
            ('EXECUTION_', 100, 199),
            ('STATE_', 200, 299),
            ('PARAM_', 300, 399),
            ('CONFIG_', 400, 499),
        ],
    )
    def test_codes_in_range(self, prefix: str, low: int, high: int) -> None:
        members = [m for m in ErrorCode if m.name.startswith(prefix)]
        assert members
        for member in members:
            assert low <= int(member.value[1:]) <= high

    def test_codes_unique(self) -> None:
        values = [m.value for m in ErrorCode]
        assert len(values) == len(set(values))

    def test_error_code_is_string_enum(self) -> None:
        assert isinstance(ErrorCode.STEP_NOT_FOUND, str)
        assert ErrorCode.STEP_NOT_FOUND == 'E100'
