"""Background worker that reacts to automation events."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Dict, List, Optional

from .errors import ConflictError, GateBlockedError, InkflowError
from .events import DOCUMENT_GENERATE, AutomationEvent
from .pipeline.completion import DocumentScheduler
from .pipeline.sections import SectionPipeline
from .steps import STEP_DEFINITIONS, StepHandler, StepMode
from .transports.base import BaseTransport

logger = logging.getLogger(__name__)

ARTICLES_SUCCESS = "articles.success"


class AutomationWorker:
    """Consume automation events and run the matching step or document.

    Events for one workflow are handled one at a time. That only saves
    wasted work; correctness comes from the compare-and-swap transitions,
    the atomic step completions and the document leases.
    """

    def __init__(
        self,
        transport: BaseTransport,
        handler: StepHandler,
        *,
        scheduler: Optional[DocumentScheduler] = None,
        pipeline: Optional[SectionPipeline] = None,
    ) -> None:
        self._transport = transport
        self._handler = handler
        self._scheduler = scheduler
        self._pipeline = pipeline
        # A workflow's lock lives only while some event for it is in flight.
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()

    @property
    def topics(self) -> List[str]:
        topics: List[str] = []
        for step in STEP_DEFINITIONS.values():
            if step.mode is StepMode.BACKGROUND:
                topics.append(f"{step.phase.value}.start")
            if step.trigger_on:
                topics.append(step.trigger_on)
        if self._scheduler is not None:
            topics.append(ARTICLES_SUCCESS)
        if self._pipeline is not None:
            topics.append(DOCUMENT_GENERATE)
        return list(dict.fromkeys(topics))

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Listen on every handled topic until ``lifespan`` elapses (forever if None)."""
        logger.info(f"Worker listening on {', '.join(self.topics)}")
        try:
            await asyncio.gather(
                *(self._consume(topic, lifespan) for topic in self.topics)
            )
        finally:
            await self._transport.disconnect()

    async def _consume(self, topic: str, lifespan: Optional[float]) -> None:
        async for raw_message, event in self._transport.subscribe(
            topic, lifespan=lifespan
        ):
            try:
                await self.handle(topic, event)
            except (ConflictError, GateBlockedError) as e:
                logger.warning(f"{topic} for workflow {event.workflow_id} not applied: {e}")
            except InkflowError as e:
                logger.error(f"{topic} for workflow {event.workflow_id} failed: {e}")
            except Exception:
                logger.exception(f"Unexpected error handling {topic} for workflow {event.workflow_id}")
            await self._transport.ack(raw_message)

    async def handle(self, topic: str, event: AutomationEvent) -> None:
        """Route one event; runs under the workflow's lock."""
        workflow_id = event.workflow_id
        lock = self._locks.setdefault(workflow_id, asyncio.Lock())
        self._lock_users[workflow_id] += 1
        try:
            async with lock:
                await self._route(topic, event)
        finally:
            self._lock_users[workflow_id] -= 1
            if not self._lock_users[workflow_id]:
                del self._lock_users[workflow_id]
                del self._locks[workflow_id]

    async def _route(self, topic: str, event: AutomationEvent) -> None:
        workflow_id = event.workflow_id

        if topic == DOCUMENT_GENERATE and self._pipeline is not None:
            await self._pipeline.run(event.data["documentId"])
            return

        if topic == ARTICLES_SUCCESS and self._scheduler is not None:
            await self._scheduler.dispatch(workflow_id)
            return

        for step in STEP_DEFINITIONS.values():
            if step.mode is StepMode.BACKGROUND and topic == f"{step.phase.value}.start":
                logger.info(f"Executing {step.name} for workflow {workflow_id}")
                await self._handler.execute(step.name, workflow_id)
                return
        for step in STEP_DEFINITIONS.values():
            if step.trigger_on == topic:
                logger.info(f"Chaining {step.name} after {topic} for workflow {workflow_id}")
                await self._handler.trigger(step.name, workflow_id)
                return

        logger.warning(f"No route for {topic}; ignoring event {event.event_id}")
