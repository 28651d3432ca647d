"""Gate validator base class and result model."""

from __future__ import annotations

import abc
import logging
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Protocol

from pydantic import BaseModel

from ..fsm.states import WorkflowState
from ..persistence.models import WorkflowInstance, utcnow
from ..persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


class GateStatus(str, Enum):
    ALLOWED = "allowed"
    BLOCKED = "blocked"
    NOT_APPLICABLE = "not_applicable"
    NOT_FOUND = "not_found"
    ERROR = "error"


class GateResult(BaseModel):
    """Outcome of one prerequisite check. Computed per call, never stored."""

    allowed: bool
    status: GateStatus
    reason_code: str
    gate: str
    workflow_state: Optional[WorkflowState] = None
    error: Optional[str] = None
    blocking_details: Optional[Dict[str, Any]] = None


class GateAuditSink(Protocol):
    async def record(self, workflow_id: str, result: GateResult) -> None:
        """Persist or forward a gate decision."""


class LoggingGateAuditSink:
    """Write gate decisions to the application log."""

    async def record(self, workflow_id: str, result: GateResult) -> None:
        state = result.workflow_state.value if result.workflow_state else None
        logger.info(
            f"Gate {result.gate} for workflow {workflow_id}: {result.status.value} "
            f"({result.reason_code}, state={state})"
        )


class Gate(abc.ABC):
    """Template for a prerequisite check guarding one step.

    Subclasses implement :meth:`evaluate` against a loaded workflow. Loading,
    auditing and the fail-open policy live here: any exception raised while
    evaluating resolves to ``allowed=True`` with status ``error`` unless
    ``fail_open`` is disabled.
    """

    name: str = "gate"
    status_key: str = "gateStatus"

    def __init__(
        self,
        repository: WorkflowRepository,
        *,
        fail_open: bool = True,
        audit: Optional[GateAuditSink] = None,
    ) -> None:
        self._repository = repository
        self.fail_open = fail_open
        self._audit = audit or LoggingGateAuditSink()

    @abc.abstractmethod
    async def evaluate(self, workflow: WorkflowInstance) -> GateResult:
        raise NotImplementedError

    async def validate(self, workflow_id: str) -> GateResult:
        try:
            workflow = await self._repository.get_workflow(workflow_id)
            if workflow is None:
                result = GateResult(
                    allowed=False,
                    status=GateStatus.NOT_FOUND,
                    reason_code="workflow_not_found",
                    gate=self.name,
                    error=f"Workflow {workflow_id} not found",
                )
            else:
                result = await self.evaluate(workflow)
        except Exception as e:
            logger.error(f"Gate {self.name} failed for workflow {workflow_id}: {e}")
            result = self._failure(e)

        try:
            await self._audit.record(workflow_id, result)
        except Exception as e:
            logger.warning(f"Gate audit failed for workflow {workflow_id}: {e}")
        return result

    def _failure(self, error: Exception) -> GateResult:
        if self.fail_open:
            return GateResult(
                allowed=True,
                status=GateStatus.ERROR,
                reason_code="gate_error",
                gate=self.name,
                error=f"{type(error).__name__}: {error} - failing open for availability",
            )
        return GateResult(
            allowed=False,
            status=GateStatus.ERROR,
            reason_code="gate_error",
            gate=self.name,
            error=f"{type(error).__name__}: {error}",
            blocking_details={
                "error": "Prerequisite check unavailable",
                self.status_key: "error",
                "requiredAction": "Retry once the workflow store is reachable",
                "blockedAt": utcnow().isoformat(),
            },
        )

    # helpers for subclasses -------------------------------------------
    def allow(self, workflow: WorkflowInstance, reason_code: str) -> GateResult:
        return GateResult(
            allowed=True,
            status=GateStatus.ALLOWED,
            reason_code=reason_code,
            gate=self.name,
            workflow_state=workflow.state,
        )

    def not_applicable(self, workflow: WorkflowInstance) -> GateResult:
        return GateResult(
            allowed=True,
            status=GateStatus.NOT_APPLICABLE,
            reason_code="gate_window_passed",
            gate=self.name,
            workflow_state=workflow.state,
        )

    def block(
        self,
        workflow: WorkflowInstance,
        reason_code: str,
        error: str,
        gate_status: str,
        required_action: str,
        **extra: Any,
    ) -> GateResult:
        details: Dict[str, Any] = {
            "error": error,
            "workflowStatus": workflow.state.value,
            self.status_key: gate_status,
            "requiredAction": required_action,
            "currentStep": workflow.state.value,
            "blockedAt": utcnow().isoformat(),
        }
        details.update(extra)
        return GateResult(
            allowed=False,
            status=GateStatus.BLOCKED,
            reason_code=reason_code,
            gate=self.name,
            workflow_state=workflow.state,
            error=error,
            blocking_details=details,
        )


async def validate_all(gates: Iterable[Gate], workflow_id: str) -> GateResult:
    """Run ``gates`` in order; the first result that does not allow wins."""
    last: Optional[GateResult] = None
    for gate in gates:
        result = await gate.validate(workflow_id)
        if not result.allowed:
            return result
        last = result
    if last is None:
        return GateResult(
            allowed=True,
            status=GateStatus.ALLOWED,
            reason_code="no_gates",
            gate="none",
        )
    return last
