"""Static transition table: ``(current_state, event) -> next_state``."""

from __future__ import annotations

from enum import Enum
from typing import Dict, NamedTuple, Optional, Tuple

from ..errors import InvalidTransitionError
from .states import Phase, WorkflowEvent, WorkflowState


class PhaseStates(NamedTuple):
    """States a single automated phase moves through."""

    entry: WorkflowState
    running: WorkflowState
    failed: WorkflowState
    successor: WorkflowState


PHASE_STATES: Dict[Phase, PhaseStates] = {
    Phase.ICP: PhaseStates(
        WorkflowState.ICP,
        WorkflowState.ICP_RUNNING,
        WorkflowState.ICP_FAILED,
        WorkflowState.COMPETITORS,
    ),
    Phase.COMPETITORS: PhaseStates(
        WorkflowState.COMPETITORS,
        WorkflowState.COMPETITORS_RUNNING,
        WorkflowState.COMPETITORS_FAILED,
        WorkflowState.SEEDS,
    ),
    Phase.LONGTAILS: PhaseStates(
        WorkflowState.SEEDS,
        WorkflowState.LONGTAILS_RUNNING,
        WorkflowState.LONGTAILS_FAILED,
        WorkflowState.FILTERING,
    ),
    Phase.FILTERING: PhaseStates(
        WorkflowState.FILTERING,
        WorkflowState.FILTERING_RUNNING,
        WorkflowState.FILTERING_FAILED,
        WorkflowState.CLUSTERING,
    ),
    Phase.CLUSTERING: PhaseStates(
        WorkflowState.CLUSTERING,
        WorkflowState.CLUSTERING_RUNNING,
        WorkflowState.CLUSTERING_FAILED,
        WorkflowState.VALIDATION,
    ),
    Phase.VALIDATION: PhaseStates(
        WorkflowState.VALIDATION,
        WorkflowState.VALIDATION_RUNNING,
        WorkflowState.VALIDATION_FAILED,
        WorkflowState.SUBTOPICS,
    ),
    Phase.SUBTOPICS: PhaseStates(
        WorkflowState.SUBTOPICS,
        WorkflowState.SUBTOPICS_RUNNING,
        WorkflowState.SUBTOPICS_FAILED,
        WorkflowState.SUBTOPIC_APPROVAL,
    ),
    Phase.ARTICLES: PhaseStates(
        WorkflowState.SUBTOPIC_APPROVAL,
        WorkflowState.ARTICLES_RUNNING,
        WorkflowState.ARTICLES_FAILED,
        WorkflowState.ARTICLES_QUEUED,
    ),
}


def phase_event(phase: Phase, kind: str) -> WorkflowEvent:
    """Return the event for ``phase`` of the given kind (START, SUCCESS, FAILED, RETRY)."""
    return WorkflowEvent(f"{phase.name}_{kind.upper()}")


def _build_table() -> Dict[Tuple[WorkflowState, WorkflowEvent], WorkflowState]:
    table: Dict[Tuple[WorkflowState, WorkflowEvent], WorkflowState] = {}
    for phase, states in PHASE_STATES.items():
        table[(states.entry, phase_event(phase, "start"))] = states.running
        table[(states.running, phase_event(phase, "success"))] = states.successor
        table[(states.running, phase_event(phase, "failed"))] = states.failed
        table[(states.failed, phase_event(phase, "retry"))] = states.running
    table[(WorkflowState.ARTICLES_QUEUED, WorkflowEvent.WORKFLOW_COMPLETED)] = (
        WorkflowState.COMPLETED
    )
    table[(WorkflowState.ARTICLES_QUEUED, WorkflowEvent.WORKFLOW_FAILED)] = (
        WorkflowState.FAILED
    )
    return table


TRANSITIONS: Dict[Tuple[WorkflowState, WorkflowEvent], WorkflowState] = _build_table()


def find_next_state(
    state: WorkflowState | str, event: WorkflowEvent | str
) -> Optional[WorkflowState]:
    """Return the successor state, or ``None`` when the transition is undefined."""
    try:
        key = (WorkflowState(state), WorkflowEvent(event))
    except ValueError:
        return None
    return TRANSITIONS.get(key)


def next_state(state: WorkflowState | str, event: WorkflowEvent | str) -> WorkflowState:
    """Return the successor state or raise ``InvalidTransitionError``."""
    target = find_next_state(state, event)
    if target is None:
        raise InvalidTransitionError(_value(state), _value(event))
    return target


def _value(member: Enum | str) -> str:
    return member.value if isinstance(member, Enum) else str(member)


def event_topic(event: WorkflowEvent | str) -> str:
    """Name of the automation event emitted when ``event`` is applied.

    ``LONGTAILS_START`` and ``LONGTAILS_RETRY`` both emit ``longtails.start``;
    ``LONGTAILS_SUCCESS`` emits ``longtails.success``.
    """
    event = WorkflowEvent(event)
    if event is WorkflowEvent.WORKFLOW_COMPLETED:
        return "workflow.completed"
    if event is WorkflowEvent.WORKFLOW_FAILED:
        return "workflow.failed"
    phase_name, _, kind = event.value.rpartition("_")
    if kind == "RETRY":
        kind = "START"
    return f"{Phase[phase_name].value}.{kind.lower()}"
