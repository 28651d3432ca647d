"""Workflow states, transition events and phase metadata."""

from __future__ import annotations

from enum import Enum


class WorkflowState(str, Enum):
    ICP = "step_1_icp"
    ICP_RUNNING = "step_1_icp_running"
    ICP_FAILED = "step_1_icp_failed"
    COMPETITORS = "step_2_competitors"
    COMPETITORS_RUNNING = "step_2_competitors_running"
    COMPETITORS_FAILED = "step_2_competitors_failed"
    SEEDS = "step_3_seeds"
    LONGTAILS_RUNNING = "step_4_longtails_running"
    LONGTAILS_FAILED = "step_4_longtails_failed"
    FILTERING = "step_5_filtering"
    FILTERING_RUNNING = "step_5_filtering_running"
    FILTERING_FAILED = "step_5_filtering_failed"
    CLUSTERING = "step_6_clustering"
    CLUSTERING_RUNNING = "step_6_clustering_running"
    CLUSTERING_FAILED = "step_6_clustering_failed"
    VALIDATION = "step_7_validation"
    VALIDATION_RUNNING = "step_7_validation_running"
    VALIDATION_FAILED = "step_7_validation_failed"
    SUBTOPICS = "step_8_subtopics"
    SUBTOPICS_RUNNING = "step_8_subtopics_running"
    SUBTOPICS_FAILED = "step_8_subtopics_failed"
    SUBTOPIC_APPROVAL = "step_8_approval"
    ARTICLES_RUNNING = "step_9_articles_running"
    ARTICLES_FAILED = "step_9_articles_failed"
    ARTICLES_QUEUED = "step_9_articles_queued"
    COMPLETED = "completed"
    FAILED = "failed"


INITIAL_STATE = WorkflowState.ICP


class Phase(str, Enum):
    """Automated phases of the pipeline, in execution order."""

    ICP = "icp"
    COMPETITORS = "competitors"
    LONGTAILS = "longtails"
    FILTERING = "filtering"
    CLUSTERING = "clustering"
    VALIDATION = "validation"
    SUBTOPICS = "subtopics"
    ARTICLES = "articles"


class WorkflowEvent(str, Enum):
    ICP_START = "ICP_START"
    ICP_SUCCESS = "ICP_SUCCESS"
    ICP_FAILED = "ICP_FAILED"
    ICP_RETRY = "ICP_RETRY"
    COMPETITORS_START = "COMPETITORS_START"
    COMPETITORS_SUCCESS = "COMPETITORS_SUCCESS"
    COMPETITORS_FAILED = "COMPETITORS_FAILED"
    COMPETITORS_RETRY = "COMPETITORS_RETRY"
    LONGTAILS_START = "LONGTAILS_START"
    LONGTAILS_SUCCESS = "LONGTAILS_SUCCESS"
    LONGTAILS_FAILED = "LONGTAILS_FAILED"
    LONGTAILS_RETRY = "LONGTAILS_RETRY"
    FILTERING_START = "FILTERING_START"
    FILTERING_SUCCESS = "FILTERING_SUCCESS"
    FILTERING_FAILED = "FILTERING_FAILED"
    FILTERING_RETRY = "FILTERING_RETRY"
    CLUSTERING_START = "CLUSTERING_START"
    CLUSTERING_SUCCESS = "CLUSTERING_SUCCESS"
    CLUSTERING_FAILED = "CLUSTERING_FAILED"
    CLUSTERING_RETRY = "CLUSTERING_RETRY"
    VALIDATION_START = "VALIDATION_START"
    VALIDATION_SUCCESS = "VALIDATION_SUCCESS"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    VALIDATION_RETRY = "VALIDATION_RETRY"
    SUBTOPICS_START = "SUBTOPICS_START"
    SUBTOPICS_SUCCESS = "SUBTOPICS_SUCCESS"
    SUBTOPICS_FAILED = "SUBTOPICS_FAILED"
    SUBTOPICS_RETRY = "SUBTOPICS_RETRY"
    ARTICLES_START = "ARTICLES_START"
    ARTICLES_SUCCESS = "ARTICLES_SUCCESS"
    ARTICLES_FAILED = "ARTICLES_FAILED"
    ARTICLES_RETRY = "ARTICLES_RETRY"
    WORKFLOW_COMPLETED = "WORKFLOW_COMPLETED"
    WORKFLOW_FAILED = "WORKFLOW_FAILED"


TERMINAL_STATES = frozenset({WorkflowState.COMPLETED, WorkflowState.FAILED})

# Linear position of each state, used by gates to decide whether a workflow
# is before, at, or beyond a gated phase. Running and failed variants share
# the position of the phase they belong to.
STATE_ORDER: dict[WorkflowState, int] = {
    WorkflowState.ICP: 10,
    WorkflowState.ICP_RUNNING: 11,
    WorkflowState.ICP_FAILED: 11,
    WorkflowState.COMPETITORS: 20,
    WorkflowState.COMPETITORS_RUNNING: 21,
    WorkflowState.COMPETITORS_FAILED: 21,
    WorkflowState.SEEDS: 30,
    WorkflowState.LONGTAILS_RUNNING: 41,
    WorkflowState.LONGTAILS_FAILED: 41,
    WorkflowState.FILTERING: 50,
    WorkflowState.FILTERING_RUNNING: 51,
    WorkflowState.FILTERING_FAILED: 51,
    WorkflowState.CLUSTERING: 60,
    WorkflowState.CLUSTERING_RUNNING: 61,
    WorkflowState.CLUSTERING_FAILED: 61,
    WorkflowState.VALIDATION: 70,
    WorkflowState.VALIDATION_RUNNING: 71,
    WorkflowState.VALIDATION_FAILED: 71,
    WorkflowState.SUBTOPICS: 80,
    WorkflowState.SUBTOPICS_RUNNING: 81,
    WorkflowState.SUBTOPICS_FAILED: 81,
    WorkflowState.SUBTOPIC_APPROVAL: 85,
    WorkflowState.ARTICLES_RUNNING: 91,
    WorkflowState.ARTICLES_FAILED: 91,
    WorkflowState.ARTICLES_QUEUED: 95,
    WorkflowState.COMPLETED: 100,
    WorkflowState.FAILED: 100,
}


def state_position(state: WorkflowState | str) -> int:
    """Return the linear position of ``state``; raises ``ValueError`` if unknown."""
    return STATE_ORDER[WorkflowState(state)]


def is_terminal(state: WorkflowState | str) -> bool:
    return WorkflowState(state) in TERMINAL_STATES
