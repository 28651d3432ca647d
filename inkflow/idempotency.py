"""Exactly-once guard for step completions."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .fsm.executor import TransitionExecutor
from .fsm.states import WorkflowEvent, WorkflowState
from .persistence.models import ApplyOutcome, StepEffects
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


def step_key(workflow_id: str, step_name: str) -> str:
    return f"{workflow_id}:{step_name}"


class IdempotencyLedger:
    """Apply a step's completion at most once per key.

    The key, the step's records, the state change and its outbox event are
    committed by a single repository transaction. A completion is either
    fully applied or leaves nothing behind, so a retried step never finds a
    half-written predecessor and never meters the same key twice.
    """

    def __init__(self, repository: WorkflowRepository, executor: TransitionExecutor) -> None:
        self._repository = repository
        self._executor = executor

    async def apply_once(
        self,
        key: str,
        workflow_id: str,
        expected_state: WorkflowState,
        event: WorkflowEvent,
        effects: StepEffects,
        data: Optional[Dict[str, Any]] = None,
    ) -> ApplyOutcome:
        target, outbox_event = self._executor.build_event(
            workflow_id, expected_state, event, data
        )
        outcome = await self._repository.apply_completion(
            key, workflow_id, WorkflowState(expected_state), target, outbox_event, effects
        )

        if outcome is ApplyOutcome.APPLIED:
            logger.info(f"Completion {key} applied; workflow {workflow_id} -> {target.value}")
            await self._executor.publish(outbox_event)
        elif outcome is ApplyOutcome.ALREADY_APPLIED:
            logger.info(f"Completion {key} already applied; skipping")
        else:
            logger.warning(
                f"Completion {key} not applied: workflow {workflow_id} is no longer "
                f"{WorkflowState(expected_state).value}"
            )
        return outcome
