"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..fsm.states import INITIAL_STATE, WorkflowState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class WorkflowInstance(BaseModel):
    """One execution of the multi-phase pipeline for one tenant.

    ``state`` is written only by the transition executor.
    """

    id: str = Field(default_factory=new_id)
    organization_id: str
    state: WorkflowState = INITIAL_STATE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ApprovalType(str, Enum):
    SEED_KEYWORDS = "seed_keywords"
    SUBTOPICS = "subtopics"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalRecord(BaseModel):
    """Human decision consumed by gates; read-only to the engine."""

    workflow_id: str
    approval_type: ApprovalType
    decision: ApprovalDecision
    approver_id: Optional[str] = None
    feedback: Optional[str] = None
    approved_items: Optional[list[str]] = None
    created_at: datetime = Field(default_factory=utcnow)


class StepArtifact(BaseModel):
    """Sub-record generated by a step (keywords, clusters, subtopics...)."""

    workflow_id: str
    step_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class UsageRecord(BaseModel):
    """Metered effect of a completed step."""

    workflow_id: str
    organization_id: str
    step_name: str
    units: int = 1
    idempotency_key: str
    created_at: datetime = Field(default_factory=utcnow)


class DocumentStatus(str, Enum):
    QUEUED = "queued"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class Document(BaseModel):
    """An article generated section by section."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    organization_id: str
    title: str
    keyword: Optional[str] = None
    status: DocumentStatus = DocumentStatus.QUEUED
    error_details: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (DocumentStatus.COMPLETED, DocumentStatus.FAILED)


class SectionStatus(str, Enum):
    PENDING = "pending"
    RESEARCHING = "researching"
    RESEARCHED = "researched"
    WRITING = "writing"
    COMPLETED = "completed"
    FAILED = "failed"


class Section(BaseModel):
    """Ordered sub-unit of a document."""

    id: str = Field(default_factory=new_id)
    document_id: str
    order: int
    header: str
    status: SectionStatus = SectionStatus.PENDING
    research_payload: Optional[dict[str, Any]] = None
    content: Optional[str] = None
    error_details: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    NOT_APPLIED = "not_applied"


class StepEffects(BaseModel):
    """Records written together with a step's completing transition.

    Either all of them land with the state change and the idempotency key,
    or none of them do.
    """

    step_name: str
    organization_id: str
    artifacts: list[dict[str, Any]] = Field(default_factory=list)
    usage_units: int = 0
    documents: list[Document] = Field(default_factory=list)
    sections: list[Section] = Field(default_factory=list)
