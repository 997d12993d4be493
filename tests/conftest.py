"""Shared fixtures: a deterministic clock and a small three-step workflow."""

from typing import Callable, List, Optional

import pytest

import custodian.persistence as persistence
from custodian.clock import ManualClock
from custodian.collaborators import RecordingNotifier
from custodian.config import CustodianConfig
from custodian.contracts import (
    ActionType,
    AutomatedStep,
    NotificationStep,
    RequestReason,
    RollbackConfig,
    StepAction,
    WorkflowDefinition,
)
from custodian.engine import WorkflowEngine
from custodian.events import InMemoryEventSink
from custodian.models import WorkflowRequest
from custodian.persistence import InMemoryRequestRepository
from custodian.registry import DefinitionRegistry
from custodian.registry.builder import (
    build_approvals,
    build_dependencies,
    build_rollback_plan,
    build_timeline,
    instantiate,
)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path):
    """Keep tests away from any real config, database or cached repository."""
    monkeypatch.setattr(persistence, "_repository_instance", None)
    for var in ("CUSTODIAN_CONFIG", "CUSTODIAN_DATABASE_URL", "CUSTODIAN_EVENTS"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


def simple_steps() -> List:
    return [
        AutomatedStep(
            id="prepare",
            name="Prepare",
            actions=[StepAction(id="prepare-call", type=ActionType.API_CALL)],
        ),
        AutomatedStep(
            id="execute",
            name="Execute",
            dependencies=["prepare"],
            actions=[StepAction(id="execute-write", type=ActionType.DATABASE_OPERATION)],
        ),
        NotificationStep(
            id="confirm",
            name="Confirm",
            template="process_complete",
            dependencies=["execute"],
        ),
    ]


@pytest.fixture
def make_definition() -> Callable[..., WorkflowDefinition]:
    def _make(key: str = "default", steps: Optional[List] = None, **kwargs) -> WorkflowDefinition:
        kwargs.setdefault("rollback", RollbackConfig(point_of_no_return="execute"))
        return WorkflowDefinition(
            key=key,
            name=key.replace("_", " ").title(),
            steps=steps if steps is not None else simple_steps(),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_request(make_definition) -> Callable[..., WorkflowRequest]:
    def _make(
        subject_id: str = "subject-1",
        tenant_id: str = "tenant-a",
        definition: Optional[WorkflowDefinition] = None,
        clock: Optional[ManualClock] = None,
    ) -> WorkflowRequest:
        workflow = instantiate(definition or make_definition())
        now = (clock or ManualClock()).now()
        return WorkflowRequest(
            subject_id=subject_id,
            tenant_id=tenant_id,
            process_type="account_closure",
            reason=RequestReason.USER_REQUEST,
            current_step_id=workflow.steps[0].id,
            workflow=workflow,
            timeline=build_timeline(workflow, now),
            dependencies=build_dependencies(workflow),
            approvals=build_approvals(workflow, RequestReason.USER_REQUEST, False),
            rollback_plan=build_rollback_plan(workflow, "account_closure"),
        )

    return _make


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def events() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def repository() -> InMemoryRequestRepository:
    return InMemoryRequestRepository()


@pytest.fixture
def make_engine(
    make_definition, clock, notifier, events, repository
) -> Callable[..., WorkflowEngine]:
    def _make(*definitions: WorkflowDefinition, config: Optional[CustodianConfig] = None, **kwargs):
        registry = DefinitionRegistry(definitions or [make_definition()])
        kwargs.setdefault("events", events)
        kwargs.setdefault("notifier", notifier)
        kwargs.setdefault("clock", clock)
        return WorkflowEngine(repository, registry, config=config, **kwargs)

    return _make


@pytest.fixture
def engine(make_engine) -> WorkflowEngine:
    return make_engine()


@pytest.fixture
def make_steps() -> Callable[[], List]:
    return simple_steps
