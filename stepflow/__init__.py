"""stepflow - DAG step scheduling with typed state transitions and crash-safe state files"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

__version__ = '0.1.0'

from .core.models.workflow import (
    Workflow,
    WorkflowStep,
    WorkflowParameter,
    WorkflowConfig,
    ParameterType,
    RiskFactors,
    AgentStep,
    CommandStep,
    ConditionStep,
    ParallelStep,
    ApprovalStep,
    StepType,
    FailAction,
    ContinueAction,
    RetryAction,
    SkipAction,
    RollbackAction,
    ErrorAction,
)
from .core.models.state import StepResult, WorkflowState, STATE_SCHEMA_VERSION
from .core.models.config import EngineConfig, StateFormat, load_config
from .core.types.status import (
    WorkflowStatus,
    StepStatus,
    ApprovalStatus,
    WORKFLOW_TERMINAL_STATES,
)
from .core.errors import (
    ErrorCode,
    StepflowError,
    InvalidWorkflowError,
    StepNotFoundError,
    ExecutionNotFoundError,
    WorkflowStateError,
    ParameterValidationError,
    ConfigurationError,
    ValidationReport,
    MultipleValidationErrors,
)
from .core.workflows.engine import WorkflowEngine, WorkflowRun
from .core.workflows.error_handler import RetryState

__all__ = [
    '__version__',
    # Definition
    'Workflow',
    'WorkflowStep',
    'WorkflowParameter',
    'WorkflowConfig',
    'ParameterType',
    'RiskFactors',
    'AgentStep',
    'CommandStep',
    'ConditionStep',
    'ParallelStep',
    'ApprovalStep',
    'StepType',
    'FailAction',
    'ContinueAction',
    'RetryAction',
    'SkipAction',
    'RollbackAction',
    'ErrorAction',
    # State
    'StepResult',
    'WorkflowState',
    'STATE_SCHEMA_VERSION',
    'WorkflowStatus',
    'StepStatus',
    'ApprovalStatus',
    'WORKFLOW_TERMINAL_STATES',
    # Config
    'EngineConfig',
    'StateFormat',
    'load_config',
    # Errors
    'ErrorCode',
    'StepflowError',
    'InvalidWorkflowError',
    'StepNotFoundError',
    'ExecutionNotFoundError',
    'WorkflowStateError',
    'ParameterValidationError',
    'ConfigurationError',
    'ValidationReport',
    'MultipleValidationErrors',
    # Engine
    'WorkflowEngine',
    'WorkflowRun',
    'RetryState',
]
