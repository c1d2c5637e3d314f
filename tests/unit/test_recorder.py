"""Execution recorder tests."""

from datetime import timedelta

import pytest

from rentflow.contracts import ActionResult, ActionStatus, ExecutionStatus
from rentflow.errors import ExecutionAlreadyCompletedError
from rentflow.recorder import ExecutionRecorder

SPEC = {
    "name": "Move-in checklist",
    "status": "active",
    "trigger": {"type": "manual"},
    "actions": [{"type": "createTask", "assignee": "manager-1", "title": "Keys"}],
}


@pytest.mark.asyncio
async def test_complete_updates_rolling_stats(repo, store, clock):
    workflow = await store.create(SPEC, owner="manager-1")
    recorder = ExecutionRecorder(repo, clock)

    for duration, status in [(100, ExecutionStatus.SUCCEEDED), (300, ExecutionStatus.PARTIAL)]:
        execution_id = await recorder.begin(workflow.id, "manual", "user-1", {"id": "unit-4"})
        clock.advance(milliseconds=duration)
        completed = await recorder.complete(execution_id, status)
        assert completed.duration_ms == duration
        assert completed.completed_at == clock.now

    stats = (await store.get(workflow.id)).stats
    assert stats.total_runs == 2
    assert stats.succeeded == 1
    assert stats.partial == 1
    # partial runs are failures, broken down by the partial counter
    assert stats.failed == 1
    assert stats.succeeded + stats.failed == stats.total_runs
    assert stats.avg_duration_ms == pytest.approx(200.0)
    assert (await store.get(workflow.id)).last_run_at == clock.now


@pytest.mark.asyncio
async def test_completed_execution_is_append_only(repo, store, clock):
    workflow = await store.create(SPEC, owner="manager-1")
    recorder = ExecutionRecorder(repo, clock)
    execution_id = await recorder.begin(workflow.id, "manual", "user-1", {})
    await recorder.record_action(
        execution_id,
        ActionResult(index=0, action_type="createTask", status=ActionStatus.SUCCEEDED, attempts=1),
    )
    await recorder.complete(execution_id, ExecutionStatus.SUCCEEDED)

    with pytest.raises(ExecutionAlreadyCompletedError):
        await recorder.complete(execution_id, ExecutionStatus.FAILED, "again")
    with pytest.raises(ExecutionAlreadyCompletedError):
        await recorder.record_action(
            execution_id,
            ActionResult(index=1, action_type="createTask", status=ActionStatus.FAILED),
        )

    execution = await repo.get_execution(execution_id)
    assert execution.status is ExecutionStatus.SUCCEEDED
    assert len(execution.per_action) == 1
    assert (await store.get(workflow.id)).stats.total_runs == 1


@pytest.mark.asyncio
async def test_history_is_newest_first(repo, store, clock):
    workflow = await store.create(SPEC, owner="manager-1")
    recorder = ExecutionRecorder(repo, clock)
    ids = []
    for _ in range(3):
        execution_id = await recorder.begin(workflow.id, "manual", "user-1", {})
        await recorder.complete(execution_id, ExecutionStatus.SUCCEEDED)
        ids.append(execution_id)
        clock.advance(seconds=1)

    history = await recorder.history(workflow.id)
    assert [e.id for e in history] == list(reversed(ids))
    assert [e.id for e in await recorder.history(workflow.id, limit=2)] == list(reversed(ids))[:2]
    assert history[0].started_at - history[1].started_at == timedelta(seconds=1)
