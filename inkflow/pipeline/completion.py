"""Document fan-out and the workflow-level completion check."""

from __future__ import annotations

import logging
from typing import Optional

from ..errors import WorkflowNotFoundError
from ..events import DOCUMENT_GENERATE, AutomationEvent
from ..fsm.executor import TransitionExecutor, TransitionResult
from ..fsm.states import WorkflowEvent, WorkflowState
from ..persistence.models import DocumentStatus
from ..persistence.repository import WorkflowRepository
from ..transports.base import BaseTransport

logger = logging.getLogger(__name__)


class WorkflowCompletionChecker:
    """Move a queued workflow to ``completed`` or ``failed`` once its documents finish.

    Safe to call any number of times and from concurrent document runs: only
    the caller whose transition applies moves the workflow, everyone else
    observes a no-op.
    """

    def __init__(self, repository: WorkflowRepository, executor: TransitionExecutor) -> None:
        self._repository = repository
        self._executor = executor

    async def check(self, workflow_id: str) -> Optional[TransitionResult]:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        if workflow.state is not WorkflowState.ARTICLES_QUEUED:
            logger.debug(
                f"Completion check skipped for workflow {workflow_id} in state {workflow.state.value}"
            )
            return None

        documents = await self._repository.list_documents(workflow_id)
        if any(not doc.is_finished for doc in documents):
            return None

        failed = [doc.id for doc in documents if doc.status is DocumentStatus.FAILED]
        event = WorkflowEvent.WORKFLOW_FAILED if failed else WorkflowEvent.WORKFLOW_COMPLETED
        result = await self._executor.transition(
            workflow_id,
            WorkflowState.ARTICLES_QUEUED,
            event,
            data={"documents": len(documents), "failedDocuments": failed},
        )
        if result.success:
            logger.info(f"Workflow {workflow_id} finished as {result.new_state.value}")
        return result


class DocumentScheduler:
    """Publish one ``document.generate`` event per queued document."""

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: BaseTransport,
        completion_checker: Optional[WorkflowCompletionChecker] = None,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._completion_checker = completion_checker

    async def dispatch(self, workflow_id: str) -> int:
        documents = await self._repository.list_documents(workflow_id)
        queued = [doc for doc in documents if doc.status is DocumentStatus.QUEUED]
        for doc in queued:
            await self._transport.publish(
                DOCUMENT_GENERATE,
                AutomationEvent(
                    name=DOCUMENT_GENERATE,
                    workflow_id=workflow_id,
                    data={"documentId": doc.id},
                ),
            )
        logger.info(f"Scheduled {len(queued)} documents for workflow {workflow_id}")

        if not queued and self._completion_checker is not None:
            await self._completion_checker.check(workflow_id)
        return len(queued)
