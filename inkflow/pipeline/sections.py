"""Sequential, resumable research-then-write pipeline over document sections."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel

from ..errors import DocumentNotFoundError, SectionGenerationError, TerminalExecutionError
from ..persistence.models import (
    Document,
    DocumentStatus,
    Section,
    SectionStatus,
    utcnow,
)
from ..persistence.repository import WorkflowRepository
from ..retry import RetryPolicy, classify_error_type, run_with_retry
from .completion import WorkflowCompletionChecker

logger = logging.getLogger(__name__)

Researcher = Callable[[Section, List[Section], Document], Awaitable[Dict[str, Any]]]
Writer = Callable[[Section, Dict[str, Any], List[Section], Document], Awaitable[str]]


class DocumentResult(BaseModel):
    document_id: str
    status: DocumentStatus
    completed_sections: int
    total_sections: int


class SectionPipeline:
    """Generate a document one section at a time, strictly in order.

    Section *n* is researched with the completed sections before it as
    context, then written from its own research and that same context.
    Progress is persisted after every stage, so a rerun skips completed
    sections and resumes a researched section at the writing stage. The
    first failure halts the document; later sections are left untouched.

    A run holds a lease on the document, renewed after every section. A
    second run is refused while the lease is live and takes over once it
    has expired, which is how a document abandoned by a crashed worker
    resumes on redelivery.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        researcher: Researcher,
        writer: Writer,
        *,
        policy: Optional[RetryPolicy] = None,
        completion_checker: Optional[WorkflowCompletionChecker] = None,
        lease_seconds: float = 600.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._researcher = researcher
        self._writer = writer
        self._policy = policy
        self._completion_checker = completion_checker
        self._lease_seconds = lease_seconds
        self._sleep = sleep

    async def run(self, document_id: str) -> DocumentResult:
        document = await self._repository.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        sections = await self._repository.list_sections(document_id)

        if document.status is DocumentStatus.COMPLETED:
            return self._result(document, sections, len(sections))

        now = utcnow()
        if not await self._repository.acquire_document(document_id, self._lease_until(now), now):
            logger.info(f"Document {document_id} is being generated elsewhere; skipping")
            current = await self._repository.get_document(document_id) or document
            done = sum(1 for s in sections if s.status is SectionStatus.COMPLETED)
            return self._result(current, sections, done)

        document = await self._repository.get_document(document_id)
        logger.info(f"Generating document {document.id} ({len(sections)} sections)")

        context: List[Section] = []
        for section in sections:
            if section.status is SectionStatus.COMPLETED:
                context.append(section)
                continue
            try:
                await self._process_section(document, section, context)
            except Exception as e:
                await self._fail(document, section, e)
                raise SectionGenerationError(document.id, section.order, e) from e
            context.append(section)
            await self._repository.renew_document_lease(document.id, self._lease_until(utcnow()))

        document.status = DocumentStatus.COMPLETED
        document.completed_at = utcnow()
        document.lease_expires_at = None
        await self._repository.update_document(document)
        logger.info(f"Document {document.id} completed")
        await self._notify(document.workflow_id)
        return self._result(document, sections, len(context))

    def _lease_until(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self._lease_seconds)

    @staticmethod
    def _result(document: Document, sections: List[Section], completed: int) -> DocumentResult:
        return DocumentResult(
            document_id=document.id,
            status=document.status,
            completed_sections=completed,
            total_sections=len(sections),
        )

    async def _process_section(
        self, document: Document, section: Section, context: List[Section]
    ) -> None:
        # Snapshot so later appends don't leak into a retried call.
        prior = list(context)

        if section.research_payload is not None and section.status in (
            SectionStatus.RESEARCHED,
            SectionStatus.WRITING,
            SectionStatus.FAILED,
        ):
            research = section.research_payload
            logger.info(f"Resuming section {section.order} of {document.id} at writing stage")
        else:
            section.status = SectionStatus.RESEARCHING
            section.error_details = None
            await self._repository.update_section(section)
            outcome = await run_with_retry(
                lambda: self._researcher(section, prior, document),
                self._policy,
                sleep=self._sleep,
            )
            research = outcome.value or {}
            section.research_payload = research
            section.status = SectionStatus.RESEARCHED
            await self._repository.update_section(section)

        section.status = SectionStatus.WRITING
        section.error_details = None
        await self._repository.update_section(section)

        async def write() -> str:
            content = await self._writer(section, research, prior, document)
            if not isinstance(content, str) or not content.strip():
                raise TerminalExecutionError(
                    f"Writer returned no content for section {section.order}"
                )
            return content

        outcome = await run_with_retry(write, self._policy, sleep=self._sleep)
        section.content = outcome.value
        section.status = SectionStatus.COMPLETED
        section.completed_at = utcnow()
        await self._repository.update_section(section)
        logger.info(f"Section {section.order} of document {document.id} completed")

    async def _fail(self, document: Document, section: Section, error: Exception) -> None:
        stage = "writing" if section.status is SectionStatus.WRITING else "research"
        failed_at = utcnow().isoformat()
        section.status = SectionStatus.FAILED
        section.error_details = {
            "error_message": str(error),
            "error_type": classify_error_type(error),
            "stage": stage,
            "failed_at": failed_at,
            "retry_count": getattr(error, "retry_count", 0),
        }
        await self._repository.update_section(section)

        document.status = DocumentStatus.FAILED
        document.lease_expires_at = None
        document.error_details = {
            "error_message": str(error),
            "failed_section": section.order,
            "stage": stage,
            "failed_at": failed_at,
        }
        await self._repository.update_document(document)
        logger.error(
            f"Document {document.id} failed at section {section.order} ({stage}): {error}"
        )
        await self._notify(document.workflow_id)

    async def _notify(self, workflow_id: str) -> None:
        if self._completion_checker is not None:
            await self._completion_checker.check(workflow_id)
