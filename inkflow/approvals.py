"""Human approval decisions consumed by the approval gates."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .errors import WorkflowNotFoundError, WorkflowValidationError
from .fsm.states import WorkflowState
from .persistence.models import (
    ApprovalDecision,
    ApprovalRecord,
    ApprovalType,
    DocumentStatus,
)
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)

APPROVAL_STATES: Dict[ApprovalType, WorkflowState] = {
    ApprovalType.SEED_KEYWORDS: WorkflowState.SEEDS,
    ApprovalType.SUBTOPICS: WorkflowState.SUBTOPIC_APPROVAL,
}


class ApprovalProcessor:
    """Record approve/reject decisions.

    Approvals never move the workflow; the matching gate reads them when the
    next step is triggered.
    """

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    async def submit(
        self,
        workflow_id: str,
        approval_type: str,
        decision: str,
        approver_id: Optional[str] = None,
        feedback: Optional[str] = None,
        approved_items: Optional[List[str]] = None,
    ) -> ApprovalRecord:
        try:
            kind = ApprovalType(approval_type)
        except ValueError:
            raise WorkflowValidationError(
                f"Unknown approval type: {approval_type}"
            ) from None
        try:
            verdict = ApprovalDecision(decision)
        except ValueError:
            raise WorkflowValidationError(
                "Decision must be either 'approved' or 'rejected'"
            ) from None

        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        required = APPROVAL_STATES[kind]
        if workflow.state is not required:
            raise WorkflowValidationError(
                f"Workflow must be at {required.value} to submit {kind.value} approval "
                f"(current state: {workflow.state.value})"
            )

        record = ApprovalRecord(
            workflow_id=workflow_id,
            approval_type=kind,
            decision=verdict,
            approver_id=approver_id,
            feedback=feedback,
            approved_items=approved_items,
        )
        await self._repository.upsert_approval(record)
        logger.info(
            f"Recorded {verdict.value} {kind.value} approval for workflow {workflow_id}"
        )
        return record


async def approval_summary(
    repository: WorkflowRepository, workflow_id: str
) -> Dict[str, Any]:
    """Everything a reviewer needs before approving: artifacts, decisions, documents."""
    workflow = await repository.get_workflow(workflow_id)
    if workflow is None:
        raise WorkflowNotFoundError(workflow_id)

    artifacts: Dict[str, int] = {}
    for artifact in await repository.list_artifacts(workflow_id):
        artifacts[artifact.step_name] = artifacts.get(artifact.step_name, 0) + 1

    approvals = {
        record.approval_type.value: {
            "decision": record.decision.value,
            "approverId": record.approver_id,
            "feedback": record.feedback,
            "approvedItems": record.approved_items,
            "createdAt": record.created_at.isoformat(),
        }
        for record in await repository.list_approvals(workflow_id)
    }

    documents = await repository.list_documents(workflow_id)
    document_counts: Dict[str, int] = {"total": len(documents)}
    for status in DocumentStatus:
        document_counts[status.value] = sum(
            1 for doc in documents if doc.status is status
        )

    usage = await repository.list_usage(workflow_id)
    return {
        "workflowId": workflow.id,
        "organizationId": workflow.organization_id,
        "state": workflow.state.value,
        "artifacts": artifacts,
        "approvals": approvals,
        "documents": document_counts,
        "usageUnits": sum(record.units for record in usage),
    }
