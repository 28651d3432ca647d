"""Prerequisite gates guarding the automated phases."""

from __future__ import annotations

from ..fsm.states import WorkflowState, state_position
from ..persistence.models import ApprovalDecision, ApprovalType, WorkflowInstance
from .base import Gate, GateResult


class CompetitorGate(Gate):
    """Competitor analysis must be complete before seeds are expanded."""

    name = "competitor"
    status_key = "competitorStatus"

    async def evaluate(self, workflow: WorkflowInstance) -> GateResult:
        position = state_position(workflow.state)
        seeds = state_position(WorkflowState.SEEDS)
        if position > seeds:
            return self.not_applicable(workflow)
        if position == seeds:
            return self.allow(workflow, "competitor_analysis_complete")

        if workflow.state is WorkflowState.COMPETITORS_RUNNING:
            competitor_status = "running"
        elif workflow.state is WorkflowState.COMPETITORS_FAILED:
            competitor_status = "failed"
        else:
            competitor_status = "not_started"
        return self.block(
            workflow,
            "competitor_analysis_incomplete",
            "Competitor analysis must complete before keyword expansion",
            competitor_status,
            "Complete competitor analysis (step 2) before continuing",
        )


class SeedApprovalGate(Gate):
    """Seed keywords must be approved by a human before long-tail expansion."""

    name = "seed_approval"
    status_key = "seedApprovalStatus"

    async def evaluate(self, workflow: WorkflowInstance) -> GateResult:
        position = state_position(workflow.state)
        seeds = state_position(WorkflowState.SEEDS)
        if position > seeds:
            return self.not_applicable(workflow)
        if position < seeds:
            return self.block(
                workflow,
                "seeds_not_ready",
                "Seed keywords not yet extracted for approval",
                "not_ready",
                "Complete competitor analysis (step 2) to extract seed keywords",
            )

        approval = await self._repository.get_approval(
            workflow.id, ApprovalType.SEED_KEYWORDS
        )
        if approval is None:
            return self.block(
                workflow,
                "seeds_not_approved",
                "Seed keywords must be approved before long-tail expansion",
                "not_approved",
                "Approve seed keywords",
            )
        if approval.decision is ApprovalDecision.REJECTED:
            return self.block(
                workflow,
                "seeds_rejected",
                "Seed keywords rejected - revision required",
                "rejected",
                "Revise seed keywords and submit them for approval again",
                feedback=approval.feedback,
            )
        return self.allow(workflow, "seeds_approved")


class LongtailClusteringGate(Gate):
    """Long-tail expansion and topic clustering must finish before subtopics."""

    name = "longtail_clustering"
    status_key = "longtailStatus"

    async def evaluate(self, workflow: WorkflowInstance) -> GateResult:
        position = state_position(workflow.state)
        if position > state_position(WorkflowState.SUBTOPICS_FAILED):
            return self.not_applicable(workflow)
        if position >= state_position(WorkflowState.VALIDATION):
            return self.allow(workflow, "longtails_and_clustering_complete")

        longtails_done = position >= state_position(WorkflowState.FILTERING)
        if longtails_done:
            required_action = "Complete topic clustering (step 6)"
        else:
            required_action = (
                "Complete long-tail expansion (step 4) and topic clustering (step 6)"
            )
        return self.block(
            workflow,
            "clustering_incomplete" if longtails_done else "longtails_incomplete",
            "Longtail expansion and clustering required",
            "complete" if longtails_done else "not_complete",
            required_action,
            clusteringStatus="not_complete",
        )


class SubtopicApprovalGate(Gate):
    """Subtopics must be approved before articles are queued."""

    name = "subtopic_approval"
    status_key = "subtopicApprovalStatus"

    async def evaluate(self, workflow: WorkflowInstance) -> GateResult:
        position = state_position(workflow.state)
        approval_state = state_position(WorkflowState.SUBTOPIC_APPROVAL)
        if position > approval_state:
            return self.not_applicable(workflow)
        if position < approval_state:
            return self.block(
                workflow,
                "subtopics_not_ready",
                "Subtopics not yet generated for approval",
                "not_ready",
                "Generate subtopics (step 8) before requesting article generation",
            )

        approval = await self._repository.get_approval(
            workflow.id, ApprovalType.SUBTOPICS
        )
        if approval is None:
            return self.block(
                workflow,
                "subtopics_not_approved",
                "Subtopics must be approved before article generation",
                "not_approved",
                "Approve subtopics",
            )
        if approval.decision is ApprovalDecision.REJECTED:
            return self.block(
                workflow,
                "subtopics_rejected",
                "Subtopics rejected - revision required",
                "rejected",
                "Revise subtopics and submit them for approval again",
                feedback=approval.feedback,
            )
        return self.allow(workflow, "subtopics_approved")
