"""Workflow finite-state machine."""

from .executor import TransitionExecutor, TransitionResult
from .states import (
    INITIAL_STATE,
    Phase,
    WorkflowEvent,
    WorkflowState,
    is_terminal,
    state_position,
)
from .transitions import PHASE_STATES, TRANSITIONS, event_topic, find_next_state, next_state, phase_event

__all__ = [
    "INITIAL_STATE",
    "PHASE_STATES",
    "Phase",
    "TRANSITIONS",
    "TransitionExecutor",
    "TransitionResult",
    "WorkflowEvent",
    "WorkflowState",
    "event_topic",
    "find_next_state",
    "is_terminal",
    "next_state",
    "phase_event",
    "state_position",
]
