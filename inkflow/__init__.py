"""Inkflow: durable, gated workflow orchestration for content pipelines."""

from .engine import Engine, build_engine
from .errors import (
    ConflictError,
    GateBlockedError,
    InkflowError,
    TerminalExecutionError,
    TransientError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from .fsm import TransitionExecutor, TransitionResult, WorkflowEvent, WorkflowState
from .persistence import WorkflowRepository, get_repository
from .steps import DocumentPlan, StepContext, StepHandler, StepOutput
from .transports import BaseTransport, InMemoryTransport, get_transport

__version__ = "0.1.0"

__all__ = [
    "BaseTransport",
    "ConflictError",
    "DocumentPlan",
    "Engine",
    "GateBlockedError",
    "InMemoryTransport",
    "InkflowError",
    "StepContext",
    "StepHandler",
    "StepOutput",
    "TerminalExecutionError",
    "TransientError",
    "TransitionExecutor",
    "TransitionResult",
    "WorkflowEvent",
    "WorkflowNotFoundError",
    "WorkflowRepository",
    "WorkflowState",
    "WorkflowValidationError",
    "build_engine",
    "get_repository",
    "get_transport",
    "__version__",
]
