"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..events import AutomationEvent
from ..fsm.states import WorkflowState
from .models import (
    ApplyOutcome,
    ApprovalRecord,
    ApprovalType,
    Document,
    Section,
    StepArtifact,
    StepEffects,
    UsageRecord,
    WorkflowInstance,
)


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends."""

    async def create_workflow(self, workflow: WorkflowInstance) -> WorkflowInstance:
        """Persist a new workflow in its initial state."""

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        """Retrieve the workflow instance by id."""

    async def list_workflows(
        self, organization_id: Optional[str] = None
    ) -> list[WorkflowInstance]:
        """Return persisted workflows, optionally for one organization."""

    async def compare_and_set_state(
        self,
        workflow_id: str,
        expected: WorkflowState,
        new: WorkflowState,
        event: AutomationEvent | None = None,
    ) -> bool:
        """Set ``state`` to ``new`` only if it still equals ``expected``.

        When ``event`` is given it is written to the outbox in the same
        atomic operation. Returns ``True`` when the update was applied.
        """

    async def list_pending_events(self, limit: int = 100) -> list[AutomationEvent]:
        """Return outbox events that have not been dispatched yet."""

    async def mark_event_dispatched(self, event_id: str) -> None:
        """Flag an outbox event as published."""

    async def upsert_approval(self, record: ApprovalRecord) -> None:
        """Create or replace the approval for ``(workflow_id, approval_type)``."""

    async def get_approval(
        self, workflow_id: str, approval_type: ApprovalType
    ) -> ApprovalRecord | None:
        """Return the current approval decision, if any."""

    async def list_approvals(self, workflow_id: str) -> list[ApprovalRecord]:
        """Return all approvals recorded for a workflow."""

    async def save_artifacts(
        self, workflow_id: str, step_name: str, payloads: list[dict]
    ) -> None:
        """Persist artifacts produced by a completed step."""

    async def list_artifacts(
        self, workflow_id: str, step_name: Optional[str] = None
    ) -> list[StepArtifact]:
        """Return artifacts for a workflow, optionally for one step."""

    async def record_usage(self, record: UsageRecord) -> None:
        """Persist a metered usage record."""

    async def list_usage(self, workflow_id: str) -> list[UsageRecord]:
        """Return usage records for a workflow."""

    async def apply_completion(
        self,
        key: str,
        workflow_id: str,
        expected: WorkflowState,
        new: WorkflowState,
        event: AutomationEvent,
        effects: StepEffects,
    ) -> ApplyOutcome:
        """Commit a step completion in one transaction.

        Inserts ``key``, writes the artifacts, usage, documents and sections
        in ``effects``, moves the workflow from ``expected`` to ``new`` and
        writes ``event`` to the outbox. Returns ``ALREADY_APPLIED`` when the
        key exists and ``NOT_APPLIED`` when the state no longer matches; in
        both cases nothing is written.
        """

    async def create_document(self, document: Document, sections: list[Section]) -> None:
        """Persist a document together with its ordered sections."""

    async def get_document(self, document_id: str) -> Document | None:
        """Retrieve a document by id."""

    async def list_documents(self, workflow_id: str) -> list[Document]:
        """Return documents belonging to a workflow."""

    async def update_document(self, document: Document) -> None:
        """Persist document status and error details."""

    async def acquire_document(
        self, document_id: str, lease_expires_at: datetime, now: datetime
    ) -> bool:
        """Move a document to ``generating`` and take its lease.

        Succeeds only from ``queued`` or ``failed``, or from ``generating``
        when the previous lease is missing or expired before ``now``.
        """

    async def renew_document_lease(
        self, document_id: str, lease_expires_at: datetime
    ) -> None:
        """Push the lease of a generating document forward."""

    async def list_sections(self, document_id: str) -> list[Section]:
        """Return sections of a document ordered by ``order``."""

    async def update_section(self, section: Section) -> None:
        """Persist a section after a stage change."""
