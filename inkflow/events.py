"""Automation event envelope exchanged over transports."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

DOCUMENT_GENERATE = "document.generate"
WORKFLOW_COMPLETED = "workflow.completed"
WORKFLOW_FAILED = "workflow.failed"


class AutomationEvent(BaseModel):
    """
    Named signal consumed by the automation layer. ``data`` always carries
    ``workflowId``.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    workflow_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    dispatched_at: Optional[datetime] = None

    def model_post_init(self, __context: Any) -> None:
        self.data.setdefault("workflowId", self.workflow_id)

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "AutomationEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)
