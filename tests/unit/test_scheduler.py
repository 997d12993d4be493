import asyncio

import pytest

from custodian.audit import entries_for
from custodian.config import CustodianConfig, SchedulerConfig
from custodian.contracts import (
    ActionType,
    ApprovalGate,
    BackoffStrategy,
    DependencyTemplate,
    DependencyType,
    RetryPolicy,
    StepStatus,
)
from custodian.events import EventType
from custodian.execution import ActionRegistry
from custodian.models import ApprovalStatus, AuditAction, RequestStatus
from custodian.scheduler import Scheduler, is_runnable


def _config(**scheduler):
    return CustodianConfig(scheduler=SchedulerConfig(**scheduler))


@pytest.mark.asyncio
async def test_tick_prefers_priority_then_submission_order(make_engine, clock):
    engine = make_engine(config=_config(concurrency=2))
    submitted = {}
    for subject, urgency in [
        ("routine-1", "routine"),
        ("emergency", "emergency"),
        ("routine-2", "routine"),
        ("urgent", "urgent"),
    ]:
        request = await engine.submit(subject, "tenant-a", "x", "user_request", urgency)
        submitted[request.request_id] = subject
        clock.advance(1)
    scheduler = Scheduler(engine)

    first = await scheduler.tick()
    second = await scheduler.tick()

    assert [submitted[r] for r in first] == ["emergency", "urgent"]
    assert [submitted[r] for r in second] == ["routine-1", "routine-2"]
    for request_id in submitted:
        assert (await engine.get(request_id)).status == RequestStatus.COMPLETED
    assert len(engine.queue) == 0
    assert await scheduler.tick() == []


@pytest.mark.asyncio
async def test_tick_skips_requests_waiting_for_retry(make_definition, make_engine, clock):
    calls = []

    async def flaky(request, step, action, key):
        calls.append(key)
        if len(calls) == 1:
            raise ConnectionError("service unavailable")
        return {"status": "ok"}

    engine = make_engine(
        make_definition(retry_policy=RetryPolicy(strategy=BackoffStrategy.FIXED, base_delay=30)),
        actions=ActionRegistry({ActionType.API_CALL: flaky}),
    )
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")
    scheduler = Scheduler(engine)

    assert await scheduler.tick() == [request.request_id]
    stored = await engine.get(request.request_id)
    assert stored.step("prepare").status == StepStatus.PENDING
    assert not is_runnable(stored, clock.now())
    assert await scheduler.tick() == []

    clock.advance(30)
    assert await scheduler.tick() == [request.request_id]
    assert (await engine.get(request.request_id)).status == RequestStatus.COMPLETED
    assert calls[0] == calls[1]


@pytest.mark.asyncio
async def test_gated_requests_are_not_runnable(make_definition, make_engine):
    definition = make_definition(
        dependencies=[DependencyTemplate(id="ack", type=DependencyType.EXTERNAL)]
    )
    definition.steps[0].dependencies.append("ack")
    engine = make_engine(definition)
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")

    assert request.status == RequestStatus.REQUESTED
    assert request.request_id in engine.queue
    assert await Scheduler(engine).tick() == []


@pytest.mark.asyncio
async def test_blocked_step_timeout_escalates_once(make_definition, make_engine, clock, notifier):
    definition = make_definition(
        dependencies=[
            DependencyTemplate(
                id="ack",
                type=DependencyType.EXTERNAL,
                escalation_path=["support_lead"],
            )
        ]
    )
    definition.steps[0].dependencies.append("ack")
    definition.steps[0].timeout_minutes = 30
    engine = make_engine(definition)
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")
    scheduler = Scheduler(engine)

    clock.advance(minutes=29)
    await scheduler.tick()
    assert "step_timed_out" not in notifier.templates()

    clock.advance(minutes=2)
    await scheduler.tick()
    await scheduler.tick()

    stored = await engine.get(request.request_id)
    [entry] = entries_for(stored, AuditAction.STEP_TIMED_OUT)
    assert entry.step_id == "prepare"
    assert stored.step("prepare").status == StepStatus.BLOCKED
    escalations = [n for n in notifier.sent if n.template == "step_timed_out"]
    assert [n.recipient for n in escalations] == ["support_lead"]
    assert len(engine.events.of_type(EventType.STEP_TIMED_OUT)) == 1


@pytest.mark.asyncio
async def test_expired_approval_escalates_and_can_still_be_granted(
    make_definition, make_engine, clock, notifier
):
    engine = make_engine(
        make_definition(
            approval_gates=[
                ApprovalGate(
                    step_id="prepare",
                    approver_role="legal",
                    expires_after_hours=24,
                    escalate_to=["head_of_legal"],
                )
            ]
        )
    )
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")
    [approval] = request.approvals

    clock.advance(hours=25)
    await Scheduler(engine).tick()

    stored = await engine.get(request.request_id)
    assert stored.approvals[0].status == ApprovalStatus.EXPIRED
    assert len(entries_for(stored, AuditAction.APPROVAL_EXPIRED)) == 1
    expired = [n for n in notifier.sent if n.template == "approval_expired"]
    assert [n.recipient for n in expired] == ["head_of_legal"]

    final = await engine.approve(request.request_id, approval.id, "legal-1")
    assert final.status == RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_purge_removes_old_terminal_requests(make_engine, clock):
    engine = make_engine()
    old = await engine.submit("subject-1", "tenant-a", "x", "user_request")
    await engine.advance(old.request_id)

    clock.advance(days=91)
    recent = await engine.submit("subject-2", "tenant-a", "x", "user_request")
    await engine.advance(recent.request_id)
    active = await engine.submit("subject-3", "tenant-a", "x", "user_request")

    assert await Scheduler(engine).purge() == 1
    assert await engine.repository.get(old.request_id) is None
    assert await engine.repository.get(recent.request_id) is not None
    assert await engine.repository.get(active.request_id) is not None


@pytest.mark.asyncio
async def test_run_ticks_and_purges_on_interval(make_engine, clock):
    engine = make_engine(
        config=_config(tick_interval=60, purge_interval=120, retention_days=0)
    )
    done = await engine.submit("subject-1", "tenant-a", "x", "user_request")
    await engine.advance(done.request_id)
    started = clock.now()

    ticks = await Scheduler(engine).run(max_ticks=3)

    assert ticks == 3
    assert (clock.now() - started).total_seconds() == 120
    assert await engine.repository.get(done.request_id) is None


@pytest.mark.asyncio
async def test_stop_ends_run_loop(make_engine):
    scheduler = Scheduler(make_engine())
    task = asyncio.create_task(scheduler.run())
    for _ in range(3):
        await asyncio.sleep(0)

    scheduler.stop()
    ticks = await asyncio.wait_for(task, timeout=1)

    assert ticks >= 1
