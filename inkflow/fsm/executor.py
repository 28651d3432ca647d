"""Atomic transition executor: the only writer of workflow state."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from pydantic import BaseModel

from ..errors import WorkflowNotFoundError
from ..events import AutomationEvent
from .states import WorkflowEvent, WorkflowState
from .transitions import event_topic, next_state

if TYPE_CHECKING:
    from ..persistence.repository import WorkflowRepository
    from ..transports.base import BaseTransport

logger = logging.getLogger(__name__)

NOT_APPLIED = "not_applied"


class TransitionResult(BaseModel):
    """Outcome of a single compare-and-swap transition attempt."""

    success: bool
    new_state: Optional[WorkflowState] = None
    current_state: Optional[WorkflowState] = None
    reason: Optional[str] = None


class TransitionExecutor:
    """Apply FSM transitions with a single conditional write.

    Under any number of concurrent callers presenting the same
    ``(expected_state, event)`` exactly one observes ``success=True``. The
    automation event for the transition is written to the outbox in the same
    store operation and published afterwards.
    """

    def __init__(
        self,
        repository: "WorkflowRepository",
        transport: "BaseTransport | None" = None,
    ) -> None:
        self._repository = repository
        self._transport = transport

    async def current_state(self, workflow_id: str) -> WorkflowState:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow.state

    async def transition(
        self,
        workflow_id: str,
        expected_state: WorkflowState,
        event: WorkflowEvent,
        data: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """Move ``workflow_id`` from ``expected_state`` along ``event``.

        Raises ``InvalidTransitionError`` when the table defines no successor.
        A lost race is reported as ``success=False, reason="not_applied"``
        and is never retried here.
        """
        target, outbox_event = self.build_event(workflow_id, expected_state, event, data)
        expected_state = WorkflowState(expected_state)
        event = WorkflowEvent(event)

        applied = await self._repository.compare_and_set_state(
            workflow_id, expected_state, target, outbox_event
        )
        if not applied:
            current = await self.current_state(workflow_id)
            logger.warning(
                f"Transition {event.value} not applied for workflow {workflow_id}: "
                f"expected {expected_state.value}, found {current.value}"
            )
            return TransitionResult(
                success=False, current_state=current, reason=NOT_APPLIED
            )

        logger.info(
            f"Workflow {workflow_id} transitioned {expected_state.value} -> {target.value} ({event.value})"
        )
        await self.publish(outbox_event)
        return TransitionResult(success=True, new_state=target, current_state=target)

    def build_event(
        self,
        workflow_id: str,
        expected_state: WorkflowState,
        event: WorkflowEvent,
        data: Optional[Dict[str, Any]] = None,
    ) -> Tuple[WorkflowState, AutomationEvent]:
        """Resolve the target state and the outbox event for a transition."""
        target = next_state(expected_state, event)
        expected_state = WorkflowState(expected_state)
        event = WorkflowEvent(event)

        payload: Dict[str, Any] = dict(data or {})
        payload.update(
            {
                "previousState": expected_state.value,
                "state": target.value,
                "transition": event.value,
            }
        )
        return target, AutomationEvent(
            name=event_topic(event), workflow_id=workflow_id, data=payload
        )

    async def relay_pending_events(self, limit: int = 100) -> int:
        """Publish outbox events whose earlier dispatch did not complete."""
        pending = await self._repository.list_pending_events(limit=limit)
        relayed = 0
        for event in pending:
            if await self.publish(event):
                relayed += 1
        if relayed:
            logger.info(f"Relayed {relayed} pending automation events")
        return relayed

    async def publish(self, event: AutomationEvent) -> bool:
        if self._transport is None:
            return False
        try:
            await self._transport.publish(event.name, event)
        except Exception as e:
            # The outbox row stays pending and is picked up by the relay.
            logger.error(
                f"Failed to publish {event.name} for workflow {event.workflow_id}: {e}"
            )
            return False
        await self._repository.mark_event_dispatched(event.event_id)
        return True
