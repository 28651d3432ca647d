"""Tests for the compare-and-swap transition executor."""

import asyncio

import pytest

from inkflow.errors import InvalidTransitionError, WorkflowNotFoundError
from inkflow.fsm import TransitionExecutor, WorkflowEvent, WorkflowState
from inkflow.persistence import SQLiteWorkflowRepository
from inkflow.transports.inmemory import InMemoryTransport


class BrokenTransport(InMemoryTransport):
    def __init__(self):
        super().__init__()
        self.fail = True

    async def publish(self, topic, event):
        if self.fail:
            raise ConnectionError("broker unavailable")
        await super().publish(topic, event)


@pytest.mark.asyncio
async def test_transition_applies_and_emits_event(repository, transport, make_workflow):
    wf = await make_workflow()
    executor = TransitionExecutor(repository, transport)

    result = await executor.transition(wf.id, WorkflowState.ICP, WorkflowEvent.ICP_START)

    assert result.success
    assert result.new_state is WorkflowState.ICP_RUNNING
    assert await executor.current_state(wf.id) is WorkflowState.ICP_RUNNING

    events = transport.pending("icp.start")
    assert len(events) == 1
    assert events[0].data["workflowId"] == wf.id
    assert events[0].data["state"] == "step_1_icp_running"
    assert await repository.list_pending_events() == []


@pytest.mark.asyncio
async def test_stale_expected_state_is_not_applied(repository, make_workflow):
    wf = await make_workflow(WorkflowState.COMPETITORS)
    executor = TransitionExecutor(repository)

    result = await executor.transition(wf.id, WorkflowState.ICP, WorkflowEvent.ICP_START)

    assert not result.success
    assert result.reason == "not_applied"
    assert result.current_state is WorkflowState.COMPETITORS


@pytest.mark.asyncio
async def test_invalid_transition_raises_before_touching_store(repository, make_workflow):
    wf = await make_workflow()
    executor = TransitionExecutor(repository)

    with pytest.raises(InvalidTransitionError):
        await executor.transition(wf.id, WorkflowState.ICP, WorkflowEvent.ARTICLES_START)
    assert await executor.current_state(wf.id) is WorkflowState.ICP


@pytest.mark.asyncio
async def test_unknown_workflow(repository):
    executor = TransitionExecutor(repository)
    with pytest.raises(WorkflowNotFoundError):
        await executor.transition("missing", WorkflowState.ICP, WorkflowEvent.ICP_START)


@pytest.mark.asyncio
@pytest.mark.parametrize("racers", [3, 20])
async def test_exactly_one_concurrent_transition_wins(repository, transport, make_workflow, racers):
    wf = await make_workflow(WorkflowState.SEEDS)
    executor = TransitionExecutor(repository, transport)

    results = await asyncio.gather(
        *(
            executor.transition(wf.id, WorkflowState.SEEDS, WorkflowEvent.LONGTAILS_START)
            for _ in range(racers)
        )
    )

    assert sum(r.success for r in results) == 1
    assert sum(r.reason == "not_applied" for r in results) == racers - 1
    assert len(transport.pending("longtails.start")) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("racers", [3, 20])
async def test_exactly_one_concurrent_transition_wins_sqlite(tmp_path, make_workflow, racers):
    repo = SQLiteWorkflowRepository(tmp_path / "wf.db")
    wf = await make_workflow(WorkflowState.SEEDS, repo=repo)
    executor = TransitionExecutor(repo)

    results = await asyncio.gather(
        *(
            executor.transition(wf.id, WorkflowState.SEEDS, WorkflowEvent.LONGTAILS_START)
            for _ in range(racers)
        )
    )

    assert sum(r.success for r in results) == 1
    assert len(await repo.list_pending_events()) == 1


@pytest.mark.asyncio
async def test_failed_publish_is_relayed_later(repository, make_workflow):
    transport = BrokenTransport()
    wf = await make_workflow()
    executor = TransitionExecutor(repository, transport)

    result = await executor.transition(wf.id, WorkflowState.ICP, WorkflowEvent.ICP_START)
    assert result.success
    pending = await repository.list_pending_events()
    assert [e.name for e in pending] == ["icp.start"]

    transport.fail = False
    assert await executor.relay_pending_events() == 1
    assert await repository.list_pending_events() == []
    assert len(transport.pending("icp.start")) == 1
