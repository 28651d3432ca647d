"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Optional, Set, Tuple

from ..events import AutomationEvent
from ..fsm.states import WorkflowState
from .models import (
    ApplyOutcome,
    ApprovalRecord,
    ApprovalType,
    Document,
    DocumentStatus,
    Section,
    StepArtifact,
    StepEffects,
    UsageRecord,
    WorkflowInstance,
    utcnow,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Returned models are copies; mutating
    them does not change stored state.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowInstance] = {}
        self._outbox: Dict[str, AutomationEvent] = {}
        self._approvals: Dict[Tuple[str, ApprovalType], ApprovalRecord] = {}
        self._artifacts: list[StepArtifact] = []
        self._usage: list[UsageRecord] = []
        self._idempotency_keys: Set[str] = set()
        self._documents: Dict[str, Document] = {}
        self._sections: Dict[str, Section] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: WorkflowInstance) -> WorkflowInstance:
        async with self._lock:
            if workflow.id in self._workflows:
                raise ValueError(f"Workflow {workflow.id} already exists")
            self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self, organization_id: Optional[str] = None
    ) -> list[WorkflowInstance]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if organization_id is None or wf.organization_id == organization_id
        ]

    async def compare_and_set_state(
        self,
        workflow_id: str,
        expected: WorkflowState,
        new: WorkflowState,
        event: AutomationEvent | None = None,
    ) -> bool:
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if wf is None or wf.state != expected:
                return False
            wf.state = WorkflowState(new)
            wf.updated_at = utcnow()
            if event is not None:
                self._outbox[event.event_id] = event.model_copy(deep=True)
            return True

    async def list_pending_events(self, limit: int = 100) -> list[AutomationEvent]:
        pending = [e for e in self._outbox.values() if e.dispatched_at is None]
        pending.sort(key=lambda e: e.created_at)
        return [e.model_copy(deep=True) for e in pending[:limit]]

    async def mark_event_dispatched(self, event_id: str) -> None:
        event = self._outbox.get(event_id)
        if event and event.dispatched_at is None:
            event.dispatched_at = utcnow()

    # ------------------------------------------------------------------
    async def upsert_approval(self, record: ApprovalRecord) -> None:
        self._approvals[(record.workflow_id, ApprovalType(record.approval_type))] = (
            record.model_copy(deep=True)
        )

    async def get_approval(
        self, workflow_id: str, approval_type: ApprovalType
    ) -> ApprovalRecord | None:
        record = self._approvals.get((workflow_id, ApprovalType(approval_type)))
        return record.model_copy(deep=True) if record else None

    async def list_approvals(self, workflow_id: str) -> list[ApprovalRecord]:
        return [
            r.model_copy(deep=True)
            for (wf_id, _), r in self._approvals.items()
            if wf_id == workflow_id
        ]

    async def save_artifacts(
        self, workflow_id: str, step_name: str, payloads: list[dict]
    ) -> None:
        for payload in payloads:
            self._artifacts.append(
                StepArtifact(
                    workflow_id=workflow_id, step_name=step_name, payload=dict(payload)
                )
            )

    async def list_artifacts(
        self, workflow_id: str, step_name: Optional[str] = None
    ) -> list[StepArtifact]:
        return [
            a.model_copy(deep=True)
            for a in self._artifacts
            if a.workflow_id == workflow_id
            and (step_name is None or a.step_name == step_name)
        ]

    async def record_usage(self, record: UsageRecord) -> None:
        if any(u.idempotency_key == record.idempotency_key for u in self._usage):
            raise ValueError(f"Usage for {record.idempotency_key} already recorded")
        self._usage.append(record.model_copy(deep=True))

    async def list_usage(self, workflow_id: str) -> list[UsageRecord]:
        return [u.model_copy(deep=True) for u in self._usage if u.workflow_id == workflow_id]

    # ------------------------------------------------------------------
    async def apply_completion(
        self,
        key: str,
        workflow_id: str,
        expected: WorkflowState,
        new: WorkflowState,
        event: AutomationEvent,
        effects: StepEffects,
    ) -> ApplyOutcome:
        async with self._lock:
            if key in self._idempotency_keys:
                return ApplyOutcome.ALREADY_APPLIED
            wf = self._workflows.get(workflow_id)
            if wf is None or wf.state != expected:
                return ApplyOutcome.NOT_APPLIED

            self._idempotency_keys.add(key)
            for payload in effects.artifacts:
                self._artifacts.append(
                    StepArtifact(
                        workflow_id=workflow_id,
                        step_name=effects.step_name,
                        payload=dict(payload),
                    )
                )
            if effects.usage_units > 0:
                self._usage.append(
                    UsageRecord(
                        workflow_id=workflow_id,
                        organization_id=effects.organization_id,
                        step_name=effects.step_name,
                        units=effects.usage_units,
                        idempotency_key=key,
                    )
                )
            for document in effects.documents:
                self._documents[document.id] = document.model_copy(deep=True)
            for section in effects.sections:
                self._sections[section.id] = section.model_copy(deep=True)
            wf.state = WorkflowState(new)
            wf.updated_at = utcnow()
            self._outbox[event.event_id] = event.model_copy(deep=True)
            return ApplyOutcome.APPLIED

    # ------------------------------------------------------------------
    async def create_document(self, document: Document, sections: list[Section]) -> None:
        self._documents[document.id] = document.model_copy(deep=True)
        for section in sections:
            self._sections[section.id] = section.model_copy(deep=True)

    async def get_document(self, document_id: str) -> Document | None:
        doc = self._documents.get(document_id)
        return doc.model_copy(deep=True) if doc else None

    async def list_documents(self, workflow_id: str) -> list[Document]:
        docs = [d for d in self._documents.values() if d.workflow_id == workflow_id]
        docs.sort(key=lambda d: d.created_at)
        return [d.model_copy(deep=True) for d in docs]

    async def update_document(self, document: Document) -> None:
        if document.id not in self._documents:
            raise KeyError(f"Document {document.id} not found")
        stored = document.model_copy(deep=True)
        stored.updated_at = utcnow()
        self._documents[document.id] = stored

    async def acquire_document(
        self, document_id: str, lease_expires_at: datetime, now: datetime
    ) -> bool:
        async with self._lock:
            doc = self._documents.get(document_id)
            if doc is None:
                return False
            stale = doc.status is DocumentStatus.GENERATING and (
                doc.lease_expires_at is None or doc.lease_expires_at < now
            )
            if doc.status not in (DocumentStatus.QUEUED, DocumentStatus.FAILED) and not stale:
                return False
            doc.status = DocumentStatus.GENERATING
            doc.error_details = None
            doc.lease_expires_at = lease_expires_at
            doc.updated_at = now
            return True

    async def renew_document_lease(
        self, document_id: str, lease_expires_at: datetime
    ) -> None:
        async with self._lock:
            doc = self._documents.get(document_id)
            if doc is not None and doc.status is DocumentStatus.GENERATING:
                doc.lease_expires_at = lease_expires_at

    async def list_sections(self, document_id: str) -> list[Section]:
        sections = [s for s in self._sections.values() if s.document_id == document_id]
        sections.sort(key=lambda s: s.order)
        return [s.model_copy(deep=True) for s in sections]

    async def update_section(self, section: Section) -> None:
        if section.id not in self._sections:
            raise KeyError(f"Section {section.id} not found")
        stored = section.model_copy(deep=True)
        stored.updated_at = utcnow()
        self._sections[section.id] = stored
