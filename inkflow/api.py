"""HTTP shell for creating workflows and triggering steps."""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from fastapi import APIRouter, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .approvals import approval_summary
from .engine import Engine, build_engine
from .errors import (
    AuthenticationError,
    AuthorizationError,
    InkflowError,
    RateLimitedError,
    WorkflowNotFoundError,
)
from .persistence.models import WorkflowInstance
from .steps import get_step

logger = logging.getLogger(__name__)


class Authenticator(Protocol):
    def authorize(
        self, organization_id: Optional[str], workflow: Optional[WorkflowInstance] = None
    ) -> None:
        """Raise ``AuthenticationError`` or ``AuthorizationError`` to refuse a request."""


class HeaderAuthenticator:
    """Tenant check based on the ``X-Organization-Id`` header.

    A missing header is refused only when ``required`` is set. A header that
    names another tenant than the workflow's owner is always refused.
    """

    def __init__(self, required: bool = False) -> None:
        self.required = required

    def authorize(
        self, organization_id: Optional[str], workflow: Optional[WorkflowInstance] = None
    ) -> None:
        if not organization_id:
            if self.required:
                raise AuthenticationError("Authentication required")
            return
        if workflow is not None and workflow.organization_id != organization_id:
            raise AuthorizationError("Workflow belongs to another organization")


class RateLimiter(Protocol):
    def check(self, key: str) -> None:
        """Raise ``RateLimitedError`` when ``key`` exceeded its budget."""


class FixedWindowRateLimiter:
    """Allow ``requests`` calls per ``window_seconds`` for each key.

    Expired windows are dropped at most once per window length, so keys that
    stop calling do not accumulate.
    """

    def __init__(
        self,
        requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.requests = requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._next_prune = 0.0

    def check(self, key: str) -> None:
        now = self._clock()
        if now >= self._next_prune:
            self._prune(now)
        started, count = self._windows.get(key, (now, 0))
        if now - started >= self.window_seconds:
            started, count = now, 0
        if count >= self.requests:
            retry_after = max(1, math.ceil(self.window_seconds - (now - started)))
            raise RateLimitedError(retry_after)
        self._windows[key] = (started, count + 1)

    def _prune(self, now: float) -> None:
        expired = [
            key
            for key, (started, _) in self._windows.items()
            if now - started >= self.window_seconds
        ]
        for key in expired:
            del self._windows[key]
        self._next_prune = now + self.window_seconds


class CreateWorkflowRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    organization_id: str = Field(alias="organizationId", min_length=1)


class ApprovalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    decision: str
    approver_id: Optional[str] = Field(default=None, alias="approverId")
    feedback: Optional[str] = None
    approved_items: Optional[List[str]] = Field(default=None, alias="approvedItems")


def workflow_payload(workflow: WorkflowInstance) -> Dict[str, Any]:
    return {
        "id": workflow.id,
        "organizationId": workflow.organization_id,
        "state": workflow.state.value,
        "createdAt": workflow.created_at.isoformat(),
        "updatedAt": workflow.updated_at.isoformat(),
    }


def build_router(
    engine: Engine, authenticator: Authenticator, rate_limiter: Optional[RateLimiter]
) -> APIRouter:
    router = APIRouter(prefix="/workflows", tags=["workflows"])

    async def load(workflow_id: str, organization_id: Optional[str]) -> WorkflowInstance:
        authenticator.authorize(organization_id)
        workflow = await engine.repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        authenticator.authorize(organization_id, workflow)
        return workflow

    @router.post("", status_code=201)
    async def create_workflow(
        payload: CreateWorkflowRequest,
        x_organization_id: Optional[str] = Header(default=None),
    ) -> dict:
        authenticator.authorize(x_organization_id)
        if x_organization_id and x_organization_id != payload.organization_id:
            raise AuthorizationError("Cannot create workflows for another organization")
        workflow = await engine.create_workflow(payload.organization_id)
        return workflow_payload(workflow)

    @router.get("/{workflow_id}")
    async def get_workflow(
        workflow_id: str, x_organization_id: Optional[str] = Header(default=None)
    ) -> dict:
        workflow = await load(workflow_id, x_organization_id)
        return workflow_payload(workflow)

    @router.post("/{workflow_id}/steps/{step_name}")
    async def trigger_step(
        workflow_id: str,
        step_name: str,
        x_organization_id: Optional[str] = Header(default=None),
    ) -> dict:
        get_step(step_name)
        workflow = await load(workflow_id, x_organization_id)
        if rate_limiter is not None:
            rate_limiter.check(workflow.organization_id)
        return await engine.steps.trigger(step_name, workflow_id)

    @router.post("/{workflow_id}/approvals/{approval_type}")
    async def submit_approval(
        workflow_id: str,
        approval_type: str,
        payload: ApprovalRequest,
        x_organization_id: Optional[str] = Header(default=None),
    ) -> dict:
        await load(workflow_id, x_organization_id)
        record = await engine.approvals.submit(
            workflow_id,
            approval_type,
            payload.decision,
            approver_id=payload.approver_id or x_organization_id,
            feedback=payload.feedback,
            approved_items=payload.approved_items,
        )
        return {
            "success": True,
            "workflowId": workflow_id,
            "approvalType": record.approval_type.value,
            "decision": record.decision.value,
        }

    @router.get("/{workflow_id}/approval-summary")
    async def get_approval_summary(
        workflow_id: str, x_organization_id: Optional[str] = Header(default=None)
    ) -> dict:
        await load(workflow_id, x_organization_id)
        return await approval_summary(engine.repository, workflow_id)

    return router


def create_app(
    engine: Optional[Engine] = None,
    *,
    authenticator: Optional[Authenticator] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    engine = engine or build_engine()
    config = engine.config
    authenticator = authenticator or HeaderAuthenticator(config.api.auth_required)
    if rate_limiter is None and config.rate_limit.enabled:
        rate_limiter = FixedWindowRateLimiter(
            config.rate_limit.requests, config.rate_limit.window_seconds
        )

    app = FastAPI(title="Inkflow Workflow API", version="0.1.0")
    app.state.engine = engine

    @app.exception_handler(InkflowError)
    async def handle_inkflow_error(request: Request, exc: InkflowError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(int(exc.retry_after))}
        return JSONResponse(
            status_code=exc.status_code, content=exc.to_response(), headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": jsonable_errors(exc)},
        )

    app.include_router(build_router(engine, authenticator, rate_limiter))
    return app


def jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
