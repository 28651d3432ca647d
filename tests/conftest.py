import pytest

from inkflow.config import InkflowConfig, RetryConfig
from inkflow.engine import build_engine
from inkflow.fsm.states import WorkflowState
from inkflow.persistence import InMemoryWorkflowRepository, WorkflowInstance
from inkflow.transports.inmemory import InMemoryTransport


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def config():
    return InkflowConfig(retry=RetryConfig(initial_delay=0.01, max_delay=0.05))


@pytest.fixture
def engine_factory(repository, transport, sleeper, config):
    def factory(**kwargs):
        kwargs.setdefault("repository", repository)
        kwargs.setdefault("transport", transport)
        kwargs.setdefault("sleep", sleeper)
        return build_engine(kwargs.pop("config", config), **kwargs)

    return factory


@pytest.fixture
def make_workflow(repository):
    async def create(state=WorkflowState.ICP, organization_id="org-1", repo=None):
        return await (repo or repository).create_workflow(
            WorkflowInstance(organization_id=organization_id, state=state)
        )

    return create
