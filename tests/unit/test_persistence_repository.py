"""Repository contract tests run against the in-memory and SQLite backends."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

import rentflow.persistence as persistence
from rentflow.config import RentflowConfig
from rentflow.contracts import (
    ActionResult,
    ActionStatus,
    Execution,
    ExecutionStatus,
    FiringKey,
    Workflow,
    WorkflowFilter,
    WorkflowStatus,
)
from rentflow.errors import ExecutionAlreadyCompletedError
from rentflow.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    get_repository,
    open_repository,
    resolve_database_url,
)

T0 = datetime(2024, 3, 12, 9, 0, tzinfo=timezone.utc)


def _workflow(**overrides):
    data = {
        "name": "Inspection reminder",
        "owner": "manager-1",
        "status": "active",
        "trigger": {"type": "event", "eventName": "inspection.scheduled"},
        "conditions": [{"field": "unit.floor", "operator": "greaterThan", "value": 2}],
        "actions": [{"type": "sendSMS", "to": "{{tenant.phone}}", "message": "Inspection soon"}],
    }
    data.update(overrides)
    return Workflow.model_validate(data)


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "memory":
        yield InMemoryWorkflowRepository()
    else:
        repo = SQLiteWorkflowRepository(tmp_path / "rentflow.db")
        yield repo
        repo.close()


@pytest.mark.asyncio
async def test_workflow_crud_and_filters(repository):
    active = _workflow()
    draft = _workflow(status="draft", owner="manager-2", trigger={"type": "manual"})
    archived = _workflow(archived_at=T0, status="inactive")
    for wf in (active, draft, archived):
        await repository.save_workflow(wf)

    fetched = await repository.get_workflow(active.id)
    assert fetched == active
    assert await repository.get_workflow("missing") is None

    listed = await repository.list_workflows()
    assert {w.id for w in listed} == {active.id, draft.id}
    assert [w.id for w in await repository.list_workflows(WorkflowFilter(status=WorkflowStatus.ACTIVE))] == [active.id]
    assert [w.id for w in await repository.list_workflows(WorkflowFilter(owner="manager-2"))] == [draft.id]
    assert [w.id for w in await repository.list_workflows(WorkflowFilter(trigger_type="manual"))] == [draft.id]
    assert len(await repository.list_workflows(WorkflowFilter(include_archived=True))) == 3

    renamed = active.model_copy(update={"name": "Renamed"})
    await repository.save_workflow(renamed)
    assert (await repository.get_workflow(active.id)).name == "Renamed"


@pytest.mark.asyncio
async def test_template_filters(repository):
    regular = _workflow()
    template = _workflow(status="draft", isTemplate=True, templateCategory="leasing")
    other = _workflow(status="draft", is_template=True, template_category="maintenance")
    for wf in (regular, template, other):
        await repository.save_workflow(wf)

    assert (await repository.get_workflow(template.id)).template_category == "leasing"
    templates = await repository.list_workflows(WorkflowFilter(is_template=True))
    assert {w.id for w in templates} == {template.id, other.id}
    assert [w.id for w in await repository.list_workflows(WorkflowFilter(is_template=False))] == [regular.id]
    leasing = await repository.list_workflows(
        WorkflowFilter(is_template=True, template_category="leasing")
    )
    assert [w.id for w in leasing] == [template.id]
    assert len(await repository.list_workflows()) == 3


@pytest.mark.asyncio
async def test_stats_updates_are_atomic(repository):
    wf = _workflow()
    await repository.save_workflow(wf)

    outcomes = [ExecutionStatus.SUCCEEDED] * 6 + [ExecutionStatus.FAILED] * 3 + [ExecutionStatus.PARTIAL]
    await asyncio.gather(
        *(
            repository.update_workflow_stats(wf.id, status, 100 * (i + 1), T0 + timedelta(seconds=i))
            for i, status in enumerate(outcomes)
        )
    )

    stats = (await repository.get_workflow(wf.id)).stats
    assert stats.total_runs == 10
    assert (stats.succeeded, stats.failed, stats.partial) == (6, 4, 1)
    assert stats.avg_duration_ms == pytest.approx(550.0)

    # saving the definition again keeps the stats
    await repository.save_workflow(wf.model_copy(update={"name": "Edited"}))
    assert (await repository.get_workflow(wf.id)).stats.total_runs == 10


@pytest.mark.asyncio
async def test_execution_lifecycle(repository):
    wf = _workflow()
    await repository.save_workflow(wf)
    execution = Execution(
        workflow_id=wf.id,
        trigger_kind="event",
        entity_id="unit-3",
        context_snapshot={"unit": {"floor": 3}},
        started_at=T0,
    )
    await repository.create_execution(execution)
    await repository.append_action_result(
        execution.id,
        ActionResult(
            index=0,
            action_type="sendSMS",
            status=ActionStatus.SUCCEEDED,
            attempts=2,
            output={"sid": "SM1"},
        ),
    )

    completed = await repository.complete_execution(
        execution.id, ExecutionStatus.SUCCEEDED, T0 + timedelta(seconds=2), 2000
    )
    assert completed.status is ExecutionStatus.SUCCEEDED
    assert completed.duration_ms == 2000
    assert completed.per_action[0].attempts == 2
    assert completed.per_action[0].output == {"sid": "SM1"}
    assert completed.context_snapshot == {"unit": {"floor": 3}}

    with pytest.raises(ExecutionAlreadyCompletedError):
        await repository.complete_execution(execution.id, ExecutionStatus.FAILED, T0, 1)
    assert (await repository.get_execution(execution.id)).status is ExecutionStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_list_executions_newest_first(repository):
    wf = _workflow()
    ids = []
    for i in range(3):
        execution = Execution(workflow_id=wf.id, trigger_kind="event", started_at=T0 + timedelta(minutes=i))
        await repository.create_execution(execution)
        ids.append(execution.id)

    assert [e.id for e in await repository.list_executions(wf.id)] == ids[::-1]
    assert [e.id for e in await repository.list_executions(wf.id, limit=1)] == [ids[-1]]
    assert await repository.list_executions("other") == []


@pytest.mark.asyncio
async def test_firing_ledger_insert_if_absent(repository):
    key = FiringKey(workflow_id="w1", entity_id="L1", window_key="2024-03-12")
    results = await asyncio.gather(*(repository.record_firing(key, T0) for _ in range(5)))

    assert results.count(True) == 1
    assert await repository.has_fired(key)
    assert not await repository.has_fired(key.model_copy(update={"window_key": "2024-03-13"}))


@pytest.mark.asyncio
async def test_lock_exclusive_until_released_or_expired(repository):
    assert await repository.acquire_lock("w1", "a", 60, T0)
    assert not await repository.acquire_lock("w1", "b", 60, T0 + timedelta(seconds=30))

    # release by a non-owner is ignored
    await repository.release_lock("w1", "b")
    assert not await repository.acquire_lock("w1", "b", 60, T0 + timedelta(seconds=30))

    await repository.release_lock("w1", "a")
    assert await repository.acquire_lock("w1", "b", 60, T0 + timedelta(seconds=31))

    # expired locks can be taken over
    assert await repository.acquire_lock("w1", "c", 60, T0 + timedelta(seconds=200))


@pytest.mark.asyncio
async def test_sqlite_data_survives_reopen(tmp_path):
    path = tmp_path / "rentflow.db"
    repo = SQLiteWorkflowRepository(path)
    wf = _workflow()
    await repo.save_workflow(wf)
    await repo.record_firing(FiringKey(workflow_id=wf.id, entity_id="*", window_key="2024"), T0)
    repo.close()

    reopened = SQLiteWorkflowRepository(path)
    assert (await reopened.get_workflow(wf.id)).name == wf.name
    assert await reopened.has_fired(FiringKey(workflow_id=wf.id, entity_id="*", window_key="2024"))
    reopened.close()


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.delenv("RENTFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)
    monkeypatch.setattr(persistence, "_repository_url", None)

    url = f"sqlite://{tmp_path / 'factory.db'}"
    repo = get_repository(url)
    assert isinstance(repo, SQLiteWorkflowRepository)
    # the same URL reuses the shared instance
    assert get_repository(url) is repo
    repo.close()

    assert isinstance(open_repository("memory://"), InMemoryWorkflowRepository)
    with pytest.raises(ValueError):
        get_repository("mysql://localhost/rentflow")


def test_get_repository_honours_config_database_url(tmp_path, monkeypatch):
    monkeypatch.delenv("RENTFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", InMemoryWorkflowRepository())
    monkeypatch.setattr(persistence, "_repository_url", None)

    config = RentflowConfig(database_url=f"sqlite://{tmp_path / 'configured.db'}")
    repo = get_repository(config=config)
    assert isinstance(repo, SQLiteWorkflowRepository)
    assert (tmp_path / "configured.db").exists()
    repo.close()

    monkeypatch.setenv("RENTFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    assert resolve_database_url(config=config) == f"sqlite://{tmp_path / 'env.db'}"
