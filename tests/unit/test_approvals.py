"""Tests for approval submission and the approval summary."""

import pytest

from inkflow.approvals import ApprovalProcessor, approval_summary
from inkflow.errors import WorkflowNotFoundError, WorkflowValidationError
from inkflow.fsm import WorkflowState
from inkflow.persistence import ApprovalDecision, ApprovalType, Document, DocumentStatus


@pytest.mark.asyncio
async def test_submit_seed_approval(repository, make_workflow):
    wf = await make_workflow(WorkflowState.SEEDS)
    processor = ApprovalProcessor(repository)

    record = await processor.submit(
        wf.id, "seed_keywords", "approved", approver_id="user-1", approved_items=["crm"]
    )

    assert record.decision is ApprovalDecision.APPROVED
    stored = await repository.get_approval(wf.id, ApprovalType.SEED_KEYWORDS)
    assert stored.approved_items == ["crm"]
    assert (await repository.get_workflow(wf.id)).state is WorkflowState.SEEDS


@pytest.mark.asyncio
async def test_resubmission_replaces_decision(repository, make_workflow):
    wf = await make_workflow(WorkflowState.SUBTOPIC_APPROVAL)
    processor = ApprovalProcessor(repository)

    await processor.submit(wf.id, "subtopics", "rejected", feedback="too generic")
    await processor.submit(wf.id, "subtopics", "approved")

    approvals = await repository.list_approvals(wf.id)
    assert len(approvals) == 1
    assert approvals[0].decision is ApprovalDecision.APPROVED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "approval_type,decision,state",
    [
        ("seed_keywords", "maybe", WorkflowState.SEEDS),
        ("outline", "approved", WorkflowState.SEEDS),
        ("subtopics", "approved", WorkflowState.SEEDS),
    ],
)
async def test_invalid_submissions(repository, make_workflow, approval_type, decision, state):
    wf = await make_workflow(state)
    with pytest.raises(WorkflowValidationError):
        await ApprovalProcessor(repository).submit(wf.id, approval_type, decision)


@pytest.mark.asyncio
async def test_unknown_workflow(repository):
    with pytest.raises(WorkflowNotFoundError):
        await ApprovalProcessor(repository).submit("missing", "subtopics", "approved")


@pytest.mark.asyncio
async def test_approval_summary(repository, make_workflow):
    wf = await make_workflow(WorkflowState.SUBTOPIC_APPROVAL)
    await repository.save_artifacts(wf.id, "subtopics", [{"t": 1}, {"t": 2}])
    await repository.save_artifacts(wf.id, "clustering", [{"c": 1}])
    await ApprovalProcessor(repository).submit(wf.id, "subtopics", "approved")
    await repository.create_document(
        Document(workflow_id=wf.id, organization_id="org-1", title="A", status=DocumentStatus.COMPLETED),
        [],
    )

    summary = await approval_summary(repository, wf.id)

    assert summary["state"] == "step_8_approval"
    assert summary["artifacts"] == {"subtopics": 2, "clustering": 1}
    assert summary["approvals"]["subtopics"]["decision"] == "approved"
    assert summary["documents"]["total"] == 1
    assert summary["documents"]["completed"] == 1
    assert summary["usageUnits"] == 0
