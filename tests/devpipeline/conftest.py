"""Shared fixtures for dev pipeline tests."""

from datetime import datetime, timezone

import pytest

from src.devpipeline.agents.orchestrator import AgentRunOrchestrator
from src.devpipeline.state.store import CollectionProjectStore
from src.devpipeline.workflow.service import WorkflowService
from tests.devpipeline.fakes import (
    FakeAgentRunner,
    FakeClock,
    FakeGateway,
    InMemoryArtifactStore,
    InMemoryIntakeRepository,
    InMemoryWorkItemRepository,
    RecordingEventEmitter,
    RecordingNotifier,
)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def work_items():
    return InMemoryWorkItemRepository()


@pytest.fixture
def intake():
    return InMemoryIntakeRepository()


@pytest.fixture
def artifacts():
    return InMemoryArtifactStore()


@pytest.fixture
def store(work_items, gateway):
    return CollectionProjectStore(work_items, gateway)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def emitter():
    return RecordingEventEmitter()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def service(store, work_items, intake, gateway, artifacts, notifier, emitter, clock):
    return WorkflowService(
        store,
        work_items,
        intake,
        gateway,
        artifacts,
        notifier=notifier,
        emitter=emitter,
        clock=clock,
    )


@pytest.fixture
def runner():
    return FakeAgentRunner()


@pytest.fixture
def orchestrator(service, runner, store, work_items, gateway, artifacts, notifier, emitter):
    return AgentRunOrchestrator(
        service=service,
        runner=runner,
        store=store,
        work_items=work_items,
        gateway=gateway,
        artifacts=artifacts,
        notifier=notifier,
        emitter=emitter,
    )
