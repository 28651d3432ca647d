"""Error taxonomy for the orchestration engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .gates.base import GateResult


class InkflowError(Exception):
    """Base class for all inkflow errors."""

    status_code: int = 500

    def to_response(self) -> dict[str, Any]:
        return {"error": str(self)}


class WorkflowValidationError(InkflowError):
    """Malformed input or an illegal request. Never retried."""

    status_code = 400


class InvalidTransitionError(WorkflowValidationError):
    """The transition table has no successor for ``(state, event)``."""

    def __init__(self, state: str, event: str) -> None:
        super().__init__(f"No transition defined for event {event} in state {state}")
        self.state = state
        self.event = event


class WorkflowNotFoundError(InkflowError):
    status_code = 404

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} not found")
        self.workflow_id = workflow_id


class DocumentNotFoundError(InkflowError):
    status_code = 404

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class UnknownStepError(InkflowError):
    status_code = 404

    def __init__(self, step_name: str) -> None:
        super().__init__(f"Unknown step: {step_name}")
        self.step_name = step_name


class ConflictError(InkflowError):
    """A compare-and-swap transition was not applied.

    This is the expected outcome for every racer but one and must not be
    retried by the caller.
    """

    status_code = 409

    def __init__(
        self, workflow_id: str, expected_state: str, current_state: Optional[str] = None
    ) -> None:
        super().__init__(
            f"Workflow {workflow_id} is no longer in state {expected_state}"
        )
        self.workflow_id = workflow_id
        self.expected_state = expected_state
        self.current_state = current_state

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "error": str(self),
            "expectedState": self.expected_state,
        }
        if self.current_state is not None:
            body["workflowStatus"] = self.current_state
        return body


class GateBlockedError(InkflowError):
    """A prerequisite gate refused the step."""

    status_code = 423

    def __init__(self, result: "GateResult") -> None:
        super().__init__(result.error or f"Blocked by gate {result.gate}")
        self.result = result

    def to_response(self) -> dict[str, Any]:
        return dict(self.result.blocking_details or {"error": str(self)})


class TransientError(InkflowError):
    """Network, timeout or 5xx-class failure. Retried per policy."""


class StepTimeoutError(TransientError):
    status_code = 408

    def __init__(self, seconds: float) -> None:
        super().__init__(f"Request timeout: exceeded {seconds:g}s limit")
        self.seconds = seconds


class TerminalExecutionError(InkflowError):
    """Non-retryable failure inside a unit of work."""


class SectionGenerationError(TerminalExecutionError):
    def __init__(self, document_id: str, section_order: int, cause: BaseException) -> None:
        super().__init__(
            f"Section {section_order} of document {document_id} failed: {cause}"
        )
        self.document_id = document_id
        self.section_order = section_order
        self.cause = cause


class RateLimitedError(InkflowError):
    status_code = 429

    def __init__(self, retry_after: float) -> None:
        super().__init__("Rate limit exceeded")
        self.retry_after = retry_after

    def to_response(self) -> dict[str, Any]:
        return {"error": "Rate limit exceeded", "retryAfter": self.retry_after}


class AuthenticationError(InkflowError):
    status_code = 401


class AuthorizationError(InkflowError):
    status_code = 403
