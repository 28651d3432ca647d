"""Wire repository, transport, gates and handlers into one engine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .approvals import ApprovalProcessor
from .config import InkflowConfig, load_config
from .fsm.executor import TransitionExecutor
from .gates import GATE_CLASSES, Gate, GateAuditSink
from .idempotency import IdempotencyLedger
from .persistence import get_repository
from .persistence.models import WorkflowInstance
from .persistence.repository import WorkflowRepository
from .pipeline.completion import DocumentScheduler, WorkflowCompletionChecker
from .pipeline.sections import Researcher, SectionPipeline, Writer
from .retry import RetryPolicy
from .steps import StepHandler, StepWork
from .transports import get_transport
from .transports.base import BaseTransport
from .worker import AutomationWorker

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    config: InkflowConfig
    repository: WorkflowRepository
    transport: BaseTransport
    executor: TransitionExecutor
    ledger: IdempotencyLedger
    gates: Dict[str, Gate]
    steps: StepHandler
    approvals: ApprovalProcessor
    completion: WorkflowCompletionChecker
    scheduler: DocumentScheduler
    pipeline: Optional[SectionPipeline] = None

    async def create_workflow(self, organization_id: str) -> WorkflowInstance:
        workflow = await self.repository.create_workflow(
            WorkflowInstance(organization_id=organization_id)
        )
        logger.info(f"Created workflow {workflow.id} for organization {organization_id}")
        return workflow

    def worker(self) -> AutomationWorker:
        return AutomationWorker(
            self.transport,
            self.steps,
            scheduler=self.scheduler,
            pipeline=self.pipeline,
        )


def build_engine(
    config: Optional[InkflowConfig] = None,
    *,
    repository: Optional[WorkflowRepository] = None,
    transport: Optional[BaseTransport] = None,
    work: Optional[Mapping[str, StepWork]] = None,
    researcher: Optional[Researcher] = None,
    writer: Optional[Writer] = None,
    audit: Optional[GateAuditSink] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Engine:
    """Build an engine from configuration, overriding collaborators as given.

    The section pipeline is only available when both ``researcher`` and
    ``writer`` are supplied.
    """
    config = config or load_config()
    repository = repository or get_repository(config.database_url)
    transport = transport or get_transport(config=config)
    policy = RetryPolicy.from_config(config.retry)

    executor = TransitionExecutor(repository, transport)
    ledger = IdempotencyLedger(repository, executor)
    gates: Dict[str, Gate] = {
        name: gate_cls(
            repository, fail_open=config.gate_fails_open(name), audit=audit
        )
        for name, gate_cls in GATE_CLASSES.items()
    }
    steps = StepHandler(
        repository,
        executor,
        ledger,
        gates=gates,
        work=work,
        policy=policy,
        timeout_seconds=config.steps.timeout_seconds,
        sleep=sleep,
    )
    completion = WorkflowCompletionChecker(repository, executor)
    scheduler = DocumentScheduler(repository, transport, completion)
    pipeline = None
    if researcher is not None and writer is not None:
        pipeline = SectionPipeline(
            repository,
            researcher,
            writer,
            policy=policy,
            completion_checker=completion,
            lease_seconds=config.pipeline.lease_seconds,
            sleep=sleep,
        )

    return Engine(
        config=config,
        repository=repository,
        transport=transport,
        executor=executor,
        ledger=ledger,
        gates=gates,
        steps=steps,
        approvals=ApprovalProcessor(repository),
        completion=completion,
        scheduler=scheduler,
        pipeline=pipeline,
    )
