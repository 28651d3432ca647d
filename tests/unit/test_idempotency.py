"""Tests for the idempotency ledger."""

import asyncio

import pytest

from inkflow.fsm import TransitionExecutor, WorkflowEvent, WorkflowState
from inkflow.idempotency import ApplyOutcome, IdempotencyLedger, step_key
from inkflow.persistence import SQLiteWorkflowRepository, StepEffects, WorkflowInstance


def effects(**overrides):
    values = {
        "step_name": "filtering",
        "organization_id": "org-1",
        "artifacts": [{"keyword": "crm"}],
        "usage_units": 2,
    }
    values.update(overrides)
    return StepEffects(**values)


def test_key_convention():
    assert step_key("wf-1", "longtails") == "wf-1:longtails"


@pytest.mark.asyncio
async def test_completion_applies_once(repository, transport, make_workflow):
    ledger = IdempotencyLedger(repository, TransitionExecutor(repository, transport))
    wf = await make_workflow(WorkflowState.FILTERING_RUNNING)
    key = step_key(wf.id, "filtering")

    first = await ledger.apply_once(
        key, wf.id, WorkflowState.FILTERING_RUNNING, WorkflowEvent.FILTERING_SUCCESS, effects()
    )
    second = await ledger.apply_once(
        key, wf.id, WorkflowState.FILTERING_RUNNING, WorkflowEvent.FILTERING_SUCCESS, effects()
    )

    assert first is ApplyOutcome.APPLIED
    assert second is ApplyOutcome.ALREADY_APPLIED
    assert (await repository.get_workflow(wf.id)).state is WorkflowState.CLUSTERING
    assert len(await repository.list_artifacts(wf.id)) == 1
    assert [u.units for u in await repository.list_usage(wf.id)] == [2]
    published = transport.pending("filtering.success")
    assert len(published) == 1
    assert published[0].data["state"] == WorkflowState.CLUSTERING.value
    assert await repository.list_pending_events() == []


@pytest.mark.asyncio
async def test_moved_workflow_is_not_applied_and_keeps_key_free(repository, transport, make_workflow):
    ledger = IdempotencyLedger(repository, TransitionExecutor(repository, transport))
    wf = await make_workflow(WorkflowState.FILTERING_FAILED)
    key = step_key(wf.id, "filtering")

    outcome = await ledger.apply_once(
        key, wf.id, WorkflowState.FILTERING_RUNNING, WorkflowEvent.FILTERING_SUCCESS, effects()
    )

    assert outcome is ApplyOutcome.NOT_APPLIED
    assert await repository.list_artifacts(wf.id) == []
    assert await repository.list_usage(wf.id) == []
    assert transport.pending("filtering.success") == []

    await repository.compare_and_set_state(
        wf.id, WorkflowState.FILTERING_FAILED, WorkflowState.FILTERING_RUNNING
    )
    retried = await ledger.apply_once(
        key, wf.id, WorkflowState.FILTERING_RUNNING, WorkflowEvent.FILTERING_SUCCESS, effects()
    )
    assert retried is ApplyOutcome.APPLIED
    assert len(await repository.list_usage(wf.id)) == 1


@pytest.mark.asyncio
async def test_concurrent_completions_apply_once(tmp_path, transport):
    repo = SQLiteWorkflowRepository(tmp_path / "ledger.db")
    ledger = IdempotencyLedger(repo, TransitionExecutor(repo, transport))
    wf = await repo.create_workflow(
        WorkflowInstance(organization_id="org-1", state=WorkflowState.FILTERING_RUNNING)
    )
    key = step_key(wf.id, "filtering")

    outcomes = await asyncio.gather(
        *(
            ledger.apply_once(
                key,
                wf.id,
                WorkflowState.FILTERING_RUNNING,
                WorkflowEvent.FILTERING_SUCCESS,
                effects(),
            )
            for _ in range(10)
        )
    )

    assert outcomes.count(ApplyOutcome.APPLIED) == 1
    assert outcomes.count(ApplyOutcome.ALREADY_APPLIED) == 9
    assert len(await repo.list_artifacts(wf.id)) == 1
    assert len(await repo.list_usage(wf.id)) == 1
