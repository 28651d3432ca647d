"""Tests for triggering and executing workflow steps."""

import asyncio

import pytest

from inkflow.config import InkflowConfig, RetryConfig, StepsConfig
from inkflow.errors import (
    ConflictError,
    GateBlockedError,
    StepTimeoutError,
    TerminalExecutionError,
    TransientError,
    UnknownStepError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from inkflow.fsm import WorkflowState
from inkflow.persistence import ApprovalDecision, ApprovalRecord, ApprovalType, DocumentStatus
from inkflow.steps import STEP_DEFINITIONS, DocumentPlan, StepMode, StepOutput, get_step


class ObservingWork:
    """Step work that records the workflow state it observes while running."""

    def __init__(self, repository, output=None, failures=0, error=None):
        self.repository = repository
        self.output = output or StepOutput(artifacts=[{"keyword": "a"}, {"keyword": "b"}])
        self.failures = failures
        self.error = error or TransientError("HTTP 503 Service Unavailable")
        self.calls = 0
        self.observed = []
        self.contexts = []

    async def __call__(self, context):
        self.calls += 1
        self.contexts.append(context)
        workflow = await self.repository.get_workflow(context.workflow_id)
        self.observed.append(workflow.state)
        if self.calls <= self.failures:
            raise self.error
        return self.output


async def approve(repository, workflow_id, approval_type):
    await repository.upsert_approval(
        ApprovalRecord(
            workflow_id=workflow_id,
            approval_type=approval_type,
            decision=ApprovalDecision.APPROVED,
        )
    )


def test_step_registry():
    assert list(STEP_DEFINITIONS) == [
        "icp",
        "competitors",
        "longtails",
        "filtering",
        "clustering",
        "validation",
        "subtopics",
        "articles",
    ]
    assert get_step("icp").mode is StepMode.INLINE
    assert get_step("longtails").gates == ("competitor", "seed_approval")
    assert get_step("clustering").trigger_on == "filtering.success"
    with pytest.raises(UnknownStepError):
        get_step("publish")


@pytest.mark.asyncio
async def test_inline_step_runs_in_running_state_and_advances(repository, engine_factory, make_workflow):
    work = ObservingWork(repository)
    engine = engine_factory(work={"icp": work})
    wf = await make_workflow()

    result = await engine.steps.trigger("icp", wf.id)

    assert result["success"]
    assert result["state"] == "step_2_competitors"
    assert result["retryCount"] == 0
    assert work.observed == [WorkflowState.ICP_RUNNING]
    assert (await repository.get_workflow(wf.id)).state is WorkflowState.COMPETITORS
    artifacts = await repository.list_artifacts(wf.id, "icp")
    assert [a.payload for a in artifacts] == [{"keyword": "a"}, {"keyword": "b"}]
    usage = await repository.list_usage(wf.id)
    assert len(usage) == 1
    assert usage[0].idempotency_key == f"{wf.id}:icp"


@pytest.mark.asyncio
async def test_transient_failures_are_retried(repository, engine_factory, sleeper, make_workflow):
    work = ObservingWork(repository, failures=2)
    engine = engine_factory(work={"icp": work})
    wf = await make_workflow()

    result = await engine.steps.trigger("icp", wf.id)

    assert work.calls == 3
    assert result["retryCount"] == 2
    assert len(sleeper.delays) == 2


@pytest.mark.asyncio
async def test_failure_marks_failed_without_artifacts(repository, engine_factory, transport, make_workflow):
    work = ObservingWork(repository, failures=10, error=TerminalExecutionError("unsafe output"))
    engine = engine_factory(work={"icp": work})
    wf = await make_workflow()

    with pytest.raises(TerminalExecutionError):
        await engine.steps.trigger("icp", wf.id)

    assert work.calls == 1
    assert (await repository.get_workflow(wf.id)).state is WorkflowState.ICP_FAILED
    assert await repository.list_artifacts(wf.id) == []
    assert await repository.list_usage(wf.id) == []
    failed = transport.pending("icp.failed")
    assert failed[0].data["error"] == "unsafe output"


@pytest.mark.asyncio
async def test_failed_step_can_be_retried(repository, engine_factory, make_workflow):
    work = ObservingWork(repository, failures=3)
    engine = engine_factory(work={"icp": work})
    wf = await make_workflow()

    with pytest.raises(TransientError):
        await engine.steps.trigger("icp", wf.id)
    assert (await repository.get_workflow(wf.id)).state is WorkflowState.ICP_FAILED

    result = await engine.steps.trigger("icp", wf.id)
    assert result["state"] == "step_2_competitors"


@pytest.mark.asyncio
async def test_step_timeout_fails_step(repository, engine_factory, make_workflow):
    async def slow(context):
        await asyncio.sleep(1)

    config = InkflowConfig(
        steps=StepsConfig(timeout_seconds=0.01), retry=RetryConfig(max_attempts=1)
    )
    engine = engine_factory(work={"icp": slow}, config=config)
    wf = await make_workflow()

    with pytest.raises(StepTimeoutError):
        await engine.steps.trigger("icp", wf.id)
    assert (await repository.get_workflow(wf.id)).state is WorkflowState.ICP_FAILED


@pytest.mark.asyncio
async def test_missing_work_fails_step(repository, engine_factory, make_workflow):
    engine = engine_factory()
    wf = await make_workflow()

    with pytest.raises(TerminalExecutionError):
        await engine.steps.trigger("icp", wf.id)
    assert (await repository.get_workflow(wf.id)).state is WorkflowState.ICP_FAILED


@pytest.mark.asyncio
@pytest.mark.parametrize("callers", [3, 20])
async def test_concurrent_triggers_one_success_rest_conflict(repository, engine_factory, make_workflow, callers):
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_work(context):
        started.set()
        await release.wait()
        return StepOutput()

    engine = engine_factory(work={"icp": slow_work})
    wf = await make_workflow()

    async def trigger():
        try:
            return await engine.steps.trigger("icp", wf.id)
        except ConflictError as e:
            return e

    tasks = [asyncio.create_task(trigger()) for _ in range(callers)]
    await started.wait()
    release.set()
    results = await asyncio.gather(*tasks)

    successes = [r for r in results if isinstance(r, dict)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(successes) == 1
    assert len(conflicts) == callers - 1
    assert all(c.status_code == 409 for c in conflicts)


@pytest.mark.asyncio
async def test_background_step_is_queued_for_worker(repository, engine_factory, transport, make_workflow):
    engine = engine_factory()
    wf = await make_workflow(WorkflowState.SEEDS)
    await approve(repository, wf.id, ApprovalType.SEED_KEYWORDS)

    result = await engine.steps.trigger("longtails", wf.id)

    assert result == {
        "success": True,
        "workflowId": wf.id,
        "step": "longtails",
        "state": "step_4_longtails_running",
        "queued": True,
    }
    assert len(transport.pending("longtails.start")) == 1


@pytest.mark.asyncio
async def test_gate_block_raises_with_details(repository, engine_factory, make_workflow):
    engine = engine_factory()
    wf = await make_workflow(WorkflowState.SEEDS)

    with pytest.raises(GateBlockedError) as exc:
        await engine.steps.trigger("longtails", wf.id)

    assert exc.value.status_code == 423
    body = exc.value.to_response()
    assert body["seedApprovalStatus"] == "not_approved"
    assert body["workflowStatus"] == "step_3_seeds"
    assert (await repository.get_workflow(wf.id)).state is WorkflowState.SEEDS


@pytest.mark.asyncio
async def test_step_before_its_phase_is_rejected(repository, engine_factory, make_workflow):
    engine = engine_factory()
    wf = await make_workflow(WorkflowState.FILTERING)

    with pytest.raises(WorkflowValidationError):
        await engine.steps.trigger("clustering", wf.id)


@pytest.mark.asyncio
async def test_step_already_past_is_conflict(repository, engine_factory, make_workflow):
    engine = engine_factory()
    wf = await make_workflow(WorkflowState.CLUSTERING)

    with pytest.raises(ConflictError):
        await engine.steps.trigger("filtering", wf.id)


@pytest.mark.asyncio
async def test_unknown_workflow_and_step(engine_factory):
    engine = engine_factory()
    with pytest.raises(WorkflowNotFoundError):
        await engine.steps.trigger("icp", "missing")
    with pytest.raises(UnknownStepError):
        await engine.steps.trigger("publish", "missing")


@pytest.mark.asyncio
async def test_execute_skips_when_not_running(repository, engine_factory, make_workflow):
    work = ObservingWork(repository)
    engine = engine_factory(work={"filtering": work})
    wf = await make_workflow(WorkflowState.FILTERING)

    result = await engine.steps.execute("filtering", wf.id)

    assert result["skipped"]
    assert work.calls == 0


@pytest.mark.asyncio
async def test_overlapping_executions_complete_once(repository, engine_factory, make_workflow):
    entered = []
    both_running = asyncio.Event()

    async def work(context):
        entered.append(context)
        if len(entered) == 2:
            both_running.set()
        await both_running.wait()
        return StepOutput(artifacts=[{"keyword": "a"}])

    engine = engine_factory(work={"filtering": work})
    wf = await make_workflow(WorkflowState.FILTERING_RUNNING)

    results = await asyncio.gather(
        engine.steps.execute("filtering", wf.id),
        engine.steps.execute("filtering", wf.id),
    )

    successor = get_step("filtering").states.successor
    assert [bool(r.get("alreadyApplied")) for r in results].count(True) == 1
    assert all(r["state"] == successor.value for r in results)
    assert (await repository.get_workflow(wf.id)).state is successor
    assert len(await repository.list_artifacts(wf.id, "filtering")) == 1
    assert len(await repository.list_usage(wf.id)) == 1


@pytest.mark.asyncio
async def test_late_success_after_failure_writes_nothing(repository, engine_factory, make_workflow):
    calls = []
    slow_started = asyncio.Event()
    release_slow = asyncio.Event()

    async def work(context):
        calls.append(context)
        if len(calls) == 1:
            slow_started.set()
            await release_slow.wait()
            return StepOutput(artifacts=[{"keyword": "late"}])
        if len(calls) == 2:
            raise TerminalExecutionError("rejected by validator")
        return StepOutput(artifacts=[{"keyword": "retried"}])

    engine = engine_factory(work={"filtering": work})
    wf = await make_workflow(WorkflowState.FILTERING_RUNNING)

    slow = asyncio.create_task(engine.steps.execute("filtering", wf.id))
    await slow_started.wait()
    with pytest.raises(TerminalExecutionError):
        await engine.steps.execute("filtering", wf.id)
    release_slow.set()
    with pytest.raises(ConflictError):
        await slow

    assert (await repository.get_workflow(wf.id)).state is WorkflowState.FILTERING_FAILED
    assert await repository.list_artifacts(wf.id) == []
    assert await repository.list_usage(wf.id) == []

    await engine.steps.trigger("filtering", wf.id)
    result = await engine.steps.execute("filtering", wf.id)

    assert result["state"] == get_step("filtering").states.successor.value
    assert [a.payload for a in await repository.list_artifacts(wf.id)] == [{"keyword": "retried"}]
    usage = await repository.list_usage(wf.id)
    assert [(u.units, u.idempotency_key) for u in usage] == [(1, f"{wf.id}:filtering")]


@pytest.mark.asyncio
async def test_context_carries_prior_artifacts_and_approvals(repository, engine_factory, make_workflow):
    work = ObservingWork(repository)
    engine = engine_factory(work={"longtails": work})
    wf = await make_workflow(WorkflowState.LONGTAILS_RUNNING)
    await repository.save_artifacts(wf.id, "competitors", [{"seed": "crm"}])
    await approve(repository, wf.id, ApprovalType.SEED_KEYWORDS)

    await engine.steps.execute("longtails", wf.id)

    context = work.contexts[0]
    assert context.prior_artifacts == {"competitors": [{"seed": "crm"}]}
    assert context.approvals[0].approval_type is ApprovalType.SEED_KEYWORDS


@pytest.mark.asyncio
async def test_articles_step_queues_documents(repository, engine_factory, transport, make_workflow):
    output = StepOutput(
        documents=[
            DocumentPlan(title="CRM basics", keyword="crm", sections=["Intro", "Setup"]),
            DocumentPlan(title="CRM pricing", sections=["Plans"]),
        ]
    )
    engine = engine_factory(work={"articles": ObservingWork(repository, output=output)})
    wf = await make_workflow(WorkflowState.ARTICLES_RUNNING)

    result = await engine.steps.execute("articles", wf.id)

    assert result["state"] == "step_9_articles_queued"
    assert result["documents"] == 2
    documents = await repository.list_documents(wf.id)
    assert {d.title for d in documents} == {"CRM basics", "CRM pricing"}
    assert all(d.status is DocumentStatus.QUEUED for d in documents)
    basics = next(d for d in documents if d.title == "CRM basics")
    sections = await repository.list_sections(basics.id)
    assert [(s.order, s.header) for s in sections] == [(1, "Intro"), (2, "Setup")]
    assert len(transport.pending("articles.success")) == 1


@pytest.mark.asyncio
async def test_plain_list_output_is_treated_as_artifacts(repository, engine_factory, make_workflow):
    async def work(context):
        return [{"cluster": "pricing"}]

    engine = engine_factory(work={"clustering": work})
    wf = await make_workflow(WorkflowState.CLUSTERING_RUNNING)

    await engine.steps.execute("clustering", wf.id)

    artifacts = await repository.list_artifacts(wf.id, "clustering")
    assert artifacts[0].payload == {"cluster": "pricing"}
