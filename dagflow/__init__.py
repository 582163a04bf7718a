"""
DAG Flow — asynchronous DAG workflow engine with retries and human gates.
"""

from dagflow.agent import INPUT_KEY, WorkflowAgent
from dagflow.config import EngineSettings, load_config, load_settings
from dagflow.context import CancellationToken, ExecutionContext
from dagflow.errors import (
    AbortError,
    CycleError,
    DuplicateNodeError,
    ExecutionError,
    IllegalStateTransition,
    InvariantError,
    OutputValidationError,
    ResumeError,
    StepDefinitionError,
    StepFailedError,
    StepTimeoutError,
    UnknownNodeError,
    UnknownRunError,
    ValidationError,
    WorkflowError,
)
from dagflow.executor import WorkflowResult
from dagflow.graph import Graph
from dagflow.human import (
    Checkpoint,
    HumanInputRequest,
    HumanInputResponse,
    InMemoryCheckpointStore,
    PendingWorkflow,
)
from dagflow.retry import RetryPolicy
from dagflow.states import RunStatus, StepStatus
from dagflow.step import RequestType, Step, StepEdgeConfig, StepType, create_step, human_step
from dagflow.workflow import Workflow

__version__ = "0.1.0"

__all__ = [
    "AbortError",
    "CancellationToken",
    "Checkpoint",
    "CycleError",
    "DuplicateNodeError",
    "EngineSettings",
    "ExecutionContext",
    "ExecutionError",
    "Graph",
    "HumanInputRequest",
    "HumanInputResponse",
    "IllegalStateTransition",
    "InMemoryCheckpointStore",
    "INPUT_KEY",
    "InvariantError",
    "OutputValidationError",
    "PendingWorkflow",
    "RequestType",
    "ResumeError",
    "RetryPolicy",
    "RunStatus",
    "Step",
    "StepDefinitionError",
    "StepEdgeConfig",
    "StepFailedError",
    "StepStatus",
    "StepTimeoutError",
    "StepType",
    "UnknownNodeError",
    "UnknownRunError",
    "ValidationError",
    "Workflow",
    "WorkflowAgent",
    "WorkflowError",
    "WorkflowResult",
    "create_step",
    "human_step",
    "load_config",
    "load_settings",
]
