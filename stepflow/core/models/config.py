# stepflow/core/models/config.py
from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Self

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from stepflow.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)


class StateFormat(str, Enum):
    """Encoding used when writing state files. Reads auto-detect either one."""

    JSON = 'json'
    YAML = 'yaml'


class EngineConfig(BaseModel):
    """
    Engine-wide settings.

    Fields:
    - state_dir: directory for per-execution state files; None disables persistence
    - state_format: encoding for writes
    - persist_on_mutation: write the state file after every mutation
    - default_max_parallel: fallback for workflows without config.max_parallel
    - log_level: level name applied to stepflow loggers
    """

    model_config = ConfigDict(frozen=True)

    state_dir: Optional[Path] = None
    state_format: StateFormat = StateFormat.JSON
    persist_on_mutation: bool = True
    default_max_parallel: Optional[int] = Field(
        default=None, description='None = unbounded'
    )
    log_level: str = 'INFO'

    @model_validator(mode='after')
    def validate_settings(self) -> Self:
        """Collect all independent errors and raise them together."""
        report = ValidationReport('config')

        if self.default_max_parallel is not None and self.default_max_parallel <= 0:
            report.add(
                ConfigurationError(
                    message='default_max_parallel must be positive',
                    code=ErrorCode.CONFIG_INVALID,
                    notes=[f'got default_max_parallel={self.default_max_parallel}'],
                    help_text='use a positive integer or None for unbounded',
                )
            )

        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            report.add(
                ConfigurationError(
                    message=f"unknown log level '{self.log_level}'",
                    code=ErrorCode.CONFIG_INVALID,
                    help_text='use one of DEBUG, INFO, WARNING, ERROR, CRITICAL',
                )
            )

        if self.persist_on_mutation and self.state_dir is not None and self.state_dir.is_file():
            report.add(
                ConfigurationError(
                    message='state_dir points to a file',
                    code=ErrorCode.CONFIG_INVALID,
                    notes=[f'state_dir={self.state_dir}'],
                )
            )

        raise_collected(report)
        return self

    @property
    def level(self) -> int:
        return logging.getLevelName(self.log_level.upper())

    def state_path(self, execution_id: str) -> Path | None:
        """Return the state file path for an execution, or None if persistence is off."""
        if self.state_dir is None or not self.persist_on_mutation:
            return None
        return self.state_dir / f'{execution_id}.{self.state_format.value}'

    @classmethod
    def from_env(cls, **overrides: Any) -> EngineConfig:
        """Build a config from STEPFLOW_* environment variables.

        Keyword overrides win over the environment.
        """
        return cls(**{**_env_values(), **overrides})


def _env_values() -> dict[str, Any]:
    data: dict[str, Any] = {}
    if state_dir := os.getenv('STEPFLOW_STATE_DIR'):
        data['state_dir'] = state_dir
    if state_format := os.getenv('STEPFLOW_STATE_FORMAT'):
        data['state_format'] = state_format.lower()
    if persist := os.getenv('STEPFLOW_PERSIST'):
        data['persist_on_mutation'] = persist.lower() in ('1', 'true', 'yes')
    if max_parallel := os.getenv('STEPFLOW_MAX_PARALLEL'):
        data['default_max_parallel'] = max_parallel
    if log_level := os.getenv('STEPFLOW_LOG_LEVEL'):
        data['log_level'] = log_level
    return data


def load_config(path: Optional[str | Path] = None) -> EngineConfig:
    """Load configuration from a YAML file, then overlay the environment.

    Args:
        path: Optional path to config file. Falls back to the STEPFLOW_CONFIG
            env variable or 'stepflow.yaml' in the current directory. A missing
            file yields the defaults.
    """
    config_path = Path(path or os.getenv('STEPFLOW_CONFIG', 'stepflow.yaml'))
    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                message='config file must contain a mapping',
                code=ErrorCode.CONFIG_INVALID,
                notes=[f'path: {config_path}'],
            )
    # Environment variables win over file values.
    return EngineConfig(**{**data, **_env_values()})
