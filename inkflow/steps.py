"""Step definitions and the handler that runs one step of a workflow.

A step is triggered (gates, then the ``<phase>_START`` or ``<phase>_RETRY``
transition) and executed (the injected work under retry and timeout, then
the idempotent completion effect). Inline steps execute inside the trigger
call; background steps are executed by the worker when the
``<phase>.start`` event arrives.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import (
    ConflictError,
    GateBlockedError,
    TerminalExecutionError,
    UnknownStepError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from .fsm.executor import TransitionExecutor
from .fsm.states import Phase, WorkflowState, state_position
from .fsm.transitions import PHASE_STATES, PhaseStates, phase_event
from .gates.base import Gate, GateStatus, validate_all
from .idempotency import ApplyOutcome, IdempotencyLedger, step_key
from .persistence.models import (
    ApprovalRecord,
    Document,
    Section,
    StepEffects,
    WorkflowInstance,
)
from .persistence.repository import WorkflowRepository
from .retry import RetryPolicy, classify_error_type, run_with_retry, with_timeout

logger = logging.getLogger(__name__)


class StepMode(str, Enum):
    INLINE = "inline"
    BACKGROUND = "background"


class StepDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    phase: Phase
    mode: StepMode = StepMode.BACKGROUND
    gates: Tuple[str, ...] = ()
    trigger_on: Optional[str] = None

    @property
    def states(self) -> PhaseStates:
        return PHASE_STATES[self.phase]


STEP_DEFINITIONS: Dict[str, StepDefinition] = {
    step.name: step
    for step in (
        StepDefinition(name="icp", phase=Phase.ICP, mode=StepMode.INLINE),
        StepDefinition(
            name="competitors", phase=Phase.COMPETITORS, mode=StepMode.INLINE
        ),
        StepDefinition(
            name="longtails",
            phase=Phase.LONGTAILS,
            gates=("competitor", "seed_approval"),
        ),
        StepDefinition(
            name="filtering", phase=Phase.FILTERING, trigger_on="longtails.success"
        ),
        StepDefinition(
            name="clustering", phase=Phase.CLUSTERING, trigger_on="filtering.success"
        ),
        StepDefinition(
            name="validation", phase=Phase.VALIDATION, trigger_on="clustering.success"
        ),
        StepDefinition(
            name="subtopics",
            phase=Phase.SUBTOPICS,
            gates=("longtail_clustering",),
            trigger_on="validation.success",
        ),
        StepDefinition(
            name="articles", phase=Phase.ARTICLES, gates=("subtopic_approval",)
        ),
    )
}


def get_step(step_name: str) -> StepDefinition:
    try:
        return STEP_DEFINITIONS[step_name]
    except KeyError:
        raise UnknownStepError(step_name) from None


def step_for_phase(phase: Phase | str) -> StepDefinition:
    phase = Phase(phase)
    return next(step for step in STEP_DEFINITIONS.values() if step.phase is phase)


class DocumentPlan(BaseModel):
    """An article to queue, with its section headers in order."""

    title: str
    keyword: Optional[str] = None
    sections: List[str] = Field(default_factory=list)


class StepContext(BaseModel):
    """Input handed to a step's work function."""

    workflow_id: str
    organization_id: str
    step_name: str
    prior_artifacts: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    approvals: List[ApprovalRecord] = Field(default_factory=list)


class StepOutput(BaseModel):
    """Result of a step's work; persisted only when the step completes."""

    artifacts: List[Dict[str, Any]] = Field(default_factory=list)
    usage_units: int = Field(default=1, ge=0)
    documents: List[DocumentPlan] = Field(default_factory=list)


StepWork = Callable[[StepContext], Awaitable[Any]]


class StepHandler:
    """Trigger and execute workflow steps."""

    def __init__(
        self,
        repository: WorkflowRepository,
        executor: TransitionExecutor,
        ledger: IdempotencyLedger,
        *,
        gates: Optional[Mapping[str, Gate]] = None,
        work: Optional[Mapping[str, StepWork]] = None,
        policy: Optional[RetryPolicy] = None,
        timeout_seconds: float = 120.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._ledger = ledger
        self._gates = dict(gates or {})
        self._work = dict(work or {})
        self._policy = policy
        self._timeout_seconds = timeout_seconds
        self._sleep = sleep

    def register_work(self, step_name: str, work: StepWork) -> None:
        get_step(step_name)
        self._work[step_name] = work

    async def _load(self, workflow_id: str) -> WorkflowInstance:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def trigger(self, step_name: str, workflow_id: str) -> Dict[str, Any]:
        """Start ``step_name`` for a workflow.

        Raises ``WorkflowNotFoundError``, ``GateBlockedError``,
        ``ConflictError`` (another caller already started the step, or the
        workflow is past it) or ``WorkflowValidationError`` (the workflow
        has not reached the step yet).
        """
        step = get_step(step_name)
        workflow = await self._load(workflow_id)

        gates = [self._gates[name] for name in step.gates if name in self._gates]
        gate_result = await validate_all(gates, workflow_id)
        if not gate_result.allowed:
            if gate_result.status is GateStatus.NOT_FOUND:
                raise WorkflowNotFoundError(workflow_id)
            logger.warning(
                f"Step {step.name} blocked for workflow {workflow_id} by gate {gate_result.gate}: {gate_result.reason_code}"
            )
            raise GateBlockedError(gate_result)

        states = step.states
        if workflow.state is states.entry:
            expected, event = states.entry, phase_event(step.phase, "start")
        elif workflow.state is states.failed:
            expected, event = states.failed, phase_event(step.phase, "retry")
        elif state_position(workflow.state) >= state_position(states.running):
            raise ConflictError(workflow_id, states.entry.value, workflow.state.value)
        else:
            raise WorkflowValidationError(
                f"Step {step.name} cannot start from state {workflow.state.value}"
            )

        result = await self._executor.transition(workflow_id, expected, event)
        if not result.success:
            current = result.current_state.value if result.current_state else None
            raise ConflictError(workflow_id, expected.value, current)

        if step.mode is StepMode.INLINE:
            return await self.execute(step.name, workflow_id)
        return {
            "success": True,
            "workflowId": workflow_id,
            "step": step.name,
            "state": states.running.value,
            "queued": True,
        }

    async def execute(self, step_name: str, workflow_id: str) -> Dict[str, Any]:
        """Run the work for a step whose workflow is in the running state.

        Success commits artifacts, usage, documents and ``<phase>_SUCCESS`` in
        one transaction, at most once per step. Failure applies
        ``<phase>_FAILED`` before re-raising. A run that finishes after the
        workflow already left the running state raises ``ConflictError``.
        """
        step = get_step(step_name)
        states = step.states
        workflow = await self._load(workflow_id)
        if workflow.state is not states.running:
            logger.warning(
                f"Skipping {step.name} for workflow {workflow_id}: state is {workflow.state.value}, "
                f"expected {states.running.value}"
            )
            return {
                "success": False,
                "skipped": True,
                "workflowId": workflow_id,
                "step": step.name,
                "state": workflow.state.value,
            }

        key = step_key(workflow_id, step.name)
        try:
            work = self._work.get(step.name)
            if work is None:
                raise TerminalExecutionError(f"No work registered for step {step.name}")
            context = await self._context(step, workflow)
            outcome = await run_with_retry(
                lambda: with_timeout(work(context), self._timeout_seconds),
                self._policy,
                sleep=self._sleep,
            )
            output = self._coerce_output(outcome.value)
            applied = await self._ledger.apply_once(
                key,
                workflow_id,
                states.running,
                phase_event(step.phase, "success"),
                self._effects(step, workflow, output),
                data={"step": step.name, "artifacts": len(output.artifacts)},
            )
        except Exception as e:
            await self._fail(step, workflow_id, e)
            raise

        if applied is ApplyOutcome.NOT_APPLIED:
            # The workflow left the running state before this run finished; nothing was written.
            current = await self._executor.current_state(workflow_id)
            raise ConflictError(workflow_id, states.running.value, current.value)

        if applied is ApplyOutcome.ALREADY_APPLIED:
            current = await self._executor.current_state(workflow_id)
            return {
                "success": True,
                "workflowId": workflow_id,
                "step": step.name,
                "state": current.value,
                "alreadyApplied": True,
            }

        logger.info(
            f"Step {step.name} completed for workflow {workflow_id} after {outcome.attempts} attempt(s)"
        )
        return {
            "success": True,
            "workflowId": workflow_id,
            "step": step.name,
            "state": states.successor.value,
            "retryCount": outcome.retry_count,
            "artifacts": len(output.artifacts),
            "documents": len(output.documents),
        }

    async def _context(self, step: StepDefinition, workflow: WorkflowInstance) -> StepContext:
        prior: Dict[str, List[Dict[str, Any]]] = {}
        for artifact in await self._repository.list_artifacts(workflow.id):
            prior.setdefault(artifact.step_name, []).append(artifact.payload)
        return StepContext(
            workflow_id=workflow.id,
            organization_id=workflow.organization_id,
            step_name=step.name,
            prior_artifacts=prior,
            approvals=await self._repository.list_approvals(workflow.id),
        )

    @staticmethod
    def _coerce_output(value: Any) -> StepOutput:
        if isinstance(value, StepOutput):
            return value
        if value is None:
            return StepOutput()
        if isinstance(value, list):
            return StepOutput(artifacts=value)
        try:
            return StepOutput.model_validate(value)
        except ValueError as e:
            raise TerminalExecutionError(f"Malformed step output: {e}") from e

    @staticmethod
    def _effects(
        step: StepDefinition, workflow: WorkflowInstance, output: StepOutput
    ) -> StepEffects:
        documents: List[Document] = []
        sections: List[Section] = []
        for plan in output.documents:
            document = Document(
                workflow_id=workflow.id,
                organization_id=workflow.organization_id,
                title=plan.title,
                keyword=plan.keyword,
            )
            documents.append(document)
            sections.extend(
                Section(document_id=document.id, order=order, header=header)
                for order, header in enumerate(plan.sections, start=1)
            )
        return StepEffects(
            step_name=step.name,
            organization_id=workflow.organization_id,
            artifacts=output.artifacts,
            usage_units=output.usage_units,
            documents=documents,
            sections=sections,
        )

    async def _fail(self, step: StepDefinition, workflow_id: str, error: Exception) -> None:
        logger.error(f"Step {step.name} failed for workflow {workflow_id}: {error}")
        try:
            result = await self._executor.transition(
                workflow_id,
                step.states.running,
                phase_event(step.phase, "failed"),
                data={
                    "step": step.name,
                    "error": str(error),
                    "errorType": classify_error_type(error),
                    "retryCount": getattr(error, "retry_count", 0),
                },
            )
        except Exception as transition_error:
            logger.error(
                f"Could not mark {step.name} failed for workflow {workflow_id}: {transition_error}"
            )
            return
        if not result.success:
            logger.warning(
                f"Workflow {workflow_id} left {step.states.running.value} before failure was recorded"
            )


__all__ = [
    "DocumentPlan",
    "STEP_DEFINITIONS",
    "StepContext",
    "StepDefinition",
    "StepHandler",
    "StepMode",
    "StepOutput",
    "StepWork",
    "get_step",
    "step_for_phase",
]
