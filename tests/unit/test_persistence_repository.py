from datetime import timedelta

import pytest

from custodian.audit import AuditLog
from custodian.clock import ManualClock
from custodian.contracts import StepStatus
from custodian.errors import AuditIntegrityError, ConcurrencyViolationError
from custodian.models import AuditAction, RequestFilter, RequestStatus
from custodian.persistence import (
    InMemoryRequestRepository,
    SQLiteRequestRepository,
    get_repository,
)
from custodian.registry import builtin_definitions


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryRequestRepository()
    return SQLiteRequestRepository(tmp_path / "custodian.db")


@pytest.mark.asyncio
async def test_repository_crud(repo, make_request):
    request = make_request()
    AuditLog().record(request, AuditAction.SUBMITTED)
    await repo.create(request)

    stored = await repo.get(request.request_id)
    assert stored is not None
    assert stored.request_id == request.request_id
    assert stored.version == 0
    assert stored.workflow.step_ids() == ["prepare", "execute", "confirm"]

    stored.workflow.steps[0].status = StepStatus.COMPLETED
    stored.status = RequestStatus.IN_PROGRESS
    AuditLog().record(stored, AuditAction.STATUS_CHANGED)
    updated = await repo.update(stored)
    assert updated.version == 1

    reloaded = await repo.get(request.request_id)
    assert reloaded.version == 1
    assert reloaded.status == RequestStatus.IN_PROGRESS
    assert reloaded.workflow.steps[0].status == StepStatus.COMPLETED
    assert [e.action for e in reloaded.audit_trail] == [
        AuditAction.SUBMITTED,
        AuditAction.STATUS_CHANGED,
    ]

    await repo.delete(request.request_id)
    assert await repo.get(request.request_id) is None


@pytest.mark.asyncio
async def test_get_returns_independent_copies(repo, make_request):
    request = make_request()
    await repo.create(request)

    first = await repo.get(request.request_id)
    first.workflow.steps[0].status = StepStatus.FAILED

    second = await repo.get(request.request_id)
    assert second.workflow.steps[0].status == StepStatus.PENDING


@pytest.mark.asyncio
async def test_stale_update_is_rejected(repo, make_request):
    request = make_request()
    await repo.create(request)

    first = await repo.get(request.request_id)
    second = await repo.get(request.request_id)
    await repo.update(first)

    with pytest.raises(ConcurrencyViolationError):
        await repo.update(second)


@pytest.mark.asyncio
async def test_audit_history_cannot_be_rewritten(repo, make_request):
    request = make_request()
    AuditLog().record(request, AuditAction.SUBMITTED)
    await repo.create(request)

    stored = await repo.get(request.request_id)
    stored.audit_trail.clear()
    with pytest.raises(AuditIntegrityError):
        await repo.update(stored)


@pytest.mark.asyncio
async def test_list_filters(repo, make_request):
    clock = ManualClock()
    first = make_request(subject_id="alice", clock=clock)
    second = make_request(subject_id="bob", tenant_id="tenant-b", clock=clock)
    second.timeline.submitted_at += timedelta(hours=1)
    second.status = RequestStatus.COMPLETED
    second.timeline.actual_completion = second.submitted_at
    for request in (first, second):
        await repo.create(request)

    everything = await repo.list()
    assert [r.subject_id for r in everything] == ["bob", "alice"]

    by_subject = await repo.list(RequestFilter(subject_id="alice"))
    assert [r.request_id for r in by_subject] == [first.request_id]

    by_tenant = await repo.list(RequestFilter(tenant_id="tenant-b"))
    assert [r.request_id for r in by_tenant] == [second.request_id]

    open_only = await repo.list(RequestFilter(statuses=[RequestStatus.REQUESTED]))
    assert [r.request_id for r in open_only] == [first.request_id]

    finished = await repo.list(
        RequestFilter(completed_before=second.submitted_at + timedelta(seconds=1))
    )
    assert [r.request_id for r in finished] == [second.request_id]

    assert len(await repo.list(RequestFilter(limit=1))) == 1


@pytest.mark.asyncio
async def test_definitions_round_trip(repo):
    for definition in builtin_definitions():
        await repo.save_definition(definition)

    stored = await repo.get_definition("data_erasure")
    assert stored is not None
    assert stored.rollback.point_of_no_return == "data_deletion"
    assert stored.steps[1].type == "approval"
    assert await repo.get_definition("missing") is None
    assert {d.key for d in await repo.list_definitions()} == {
        d.key for d in builtin_definitions()
    }


@pytest.mark.asyncio
async def test_sqlite_keeps_audit_after_delete(tmp_path, make_request):
    repo = SQLiteRequestRepository(tmp_path / "custodian.db")
    request = make_request()
    AuditLog().record(request, AuditAction.SUBMITTED)
    await repo.create(request)

    await repo.delete(request.request_id)

    history = await repo.audit_history(request.request_id)
    assert [e.action for e in history] == [AuditAction.SUBMITTED]


@pytest.mark.asyncio
async def test_sqlite_persists_across_connections(tmp_path, make_request):
    path = tmp_path / "custodian.db"
    request = make_request()
    await SQLiteRequestRepository(path).create(request)

    reopened = SQLiteRequestRepository(path)
    stored = await reopened.get(request.request_id)
    assert stored is not None
    assert stored.subject_id == request.subject_id


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    assert isinstance(get_repository(), InMemoryRequestRepository)
    assert get_repository() is get_repository()

    sqlite_repo = get_repository(database_url=f"sqlite://{tmp_path / 'x.db'}")
    assert isinstance(sqlite_repo, SQLiteRequestRepository)
    assert get_repository() is sqlite_repo

    with pytest.raises(ValueError):
        get_repository(database_url="postgresql://localhost/custodian")


def test_get_repository_reads_database_url_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("CUSTODIAN_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    repo = get_repository()
    assert isinstance(repo, SQLiteRequestRepository)
    assert repo.db_path == str(tmp_path / "env.db")
