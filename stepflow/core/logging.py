# stepflow/core/logging.py
import logging
import os
import sys
from datetime import datetime
from typing import Optional

_NAMESPACE = 'stepflow'

# Level applied to loggers created after the call; see set_default_level()
_default_level: int = logging.INFO


def _colors_enabled() -> bool:
    if os.environ.get('STEPFLOW_FORCE_COLOR', '').lower() in ('1', 'true', 'yes'):
        return True
    # https://no-color.org/
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()


class ColoredFormatter(logging.Formatter):
    """Column-aligned formatter: ``[time] [component] [LEVEL] message``."""

    RESET = '\033[0m'
    TIME = '\033[94m'
    TEXT = '\033[97m'

    LEVEL_COLORS = {
        logging.DEBUG: '\033[90m',
        logging.INFO: '\033[92m',
        logging.WARNING: '\033[93m',
        logging.ERROR: '\033[91m',
        logging.CRITICAL: '\033[1;91m',
    }

    # '[workflow.condition]' is the widest component
    COMPONENT_WIDTH = 21
    LEVEL_WIDTH = 11

    def __init__(self, use_colors: Optional[bool] = None) -> None:
        super().__init__()
        self.use_colors = _colors_enabled() if use_colors is None else use_colors

    def _paint(self, text: str, color: str) -> str:
        return f'{color}{text}{self.RESET}' if self.use_colors else text

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'stepflow.workflow.state' -> 'workflow.state'
        prefix = f'{_NAMESPACE}.'
        component = record.name[len(prefix):] if record.name.startswith(prefix) else record.name

        level_color = self.LEVEL_COLORS.get(record.levelno, self.TEXT)
        formatted = ' '.join((
            self._paint(f'[{time_str}]', self.TIME),
            self._paint(f'[{component}]'.ljust(self.COMPONENT_WIDTH), self.TEXT),
            self._paint(f'[{record.levelname}]'.ljust(self.LEVEL_WIDTH), level_color),
            self._paint(record.getMessage(), self.TEXT),
        ))

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def set_default_level(level: int) -> None:
    """Set the default log level for new loggers."""
    global _default_level
    _default_level = level


def _stepflow_loggers() -> list[logging.Logger]:
    prefix = f'{_NAMESPACE}.'
    return [
        logger
        for name, logger in list(logging.Logger.manager.loggerDict.items())
        if name.startswith(prefix) and isinstance(logger, logging.Logger)
    ]


def get_logger(component_name: str) -> logging.Logger:
    """Get a ``stepflow.<component_name>`` logger writing to stdout."""
    logger = logging.getLogger(f'{_NAMESPACE}.{component_name}')

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter())
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)

        # Prevent duplicate logs from parent loggers
        logger.propagate = False

    return logger


def apply_level(level: int) -> None:
    """Set the default level and re-level every stepflow logger already created."""
    set_default_level(level)
    for logger in _stepflow_loggers():
        logger.setLevel(level)
        for handler in logger.handlers:
            handler.setLevel(level)
