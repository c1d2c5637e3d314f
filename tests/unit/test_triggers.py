"""Trigger evaluator tests: date-based scans, schedule windows, ledger and shards."""

import asyncio
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from rentflow.config import SchedulerConfig
from rentflow.contracts import ExecutionStatus, FiringKey, ScheduleTrigger
from rentflow.entities import InMemoryEntitySource
from rentflow.errors import SchedulerRestartError
from rentflow.triggers import TriggerEvaluator, schedule_due, scheduled_at, shard_of, window_key

NOW = datetime(2024, 3, 12, 9, 0, tzinfo=timezone.utc)
TODAY = NOW.date()

RENT_REMINDER = {
    "name": "Rent Reminder",
    "status": "active",
    "trigger": {
        "type": "dateBased",
        "entityType": "lease",
        "field": "rentDueDate",
        "daysOffset": 3,
        "direction": "before",
    },
    "actions": [{"type": "sendSMS", "to": "{{tenant.phone}}", "message": "Rent due {{rentDueDate}}"}],
}


def _leases(*due_dates):
    return InMemoryEntitySource(
        {
            "lease": [
                {"id": f"L{i + 1}", "rentDueDate": due.isoformat(), "tenant": {"phone": f"+1555000{i}"}}
                for i, due in enumerate(due_dates)
            ]
        }
    )


@pytest.mark.asyncio
async def test_rent_reminder_fires_once_per_day(repo, store, engine, collaborators):
    workflow = await store.create(RENT_REMINDER, owner="manager-1")
    entities = _leases(TODAY + timedelta(days=3), TODAY + timedelta(days=10))
    evaluator = TriggerEvaluator(repo, engine, entities)

    first = await evaluator.tick(NOW)
    await evaluator.drain()

    assert [(r.workflow_id, r.entity_id) for r in first] == [(workflow.id, "L1")]
    assert await repo.has_fired(
        FiringKey(workflow_id=workflow.id, entity_id="L1", window_key=TODAY.isoformat())
    )
    assert collaborators.sms.calls == [("+15550000", f"Rent due {(TODAY + timedelta(days=3)).isoformat()}")]

    second = await evaluator.tick(NOW + timedelta(hours=5))
    await evaluator.drain()
    assert second == []
    assert len(collaborators.sms.calls) == 1

    executions = await repo.list_executions(workflow.id)
    assert len(executions) == 1
    assert executions[0].status is ExecutionStatus.SUCCEEDED
    assert executions[0].trigger_kind == "dateBased"


@pytest.mark.asyncio
async def test_restarted_evaluator_does_not_refire(repo, store, engine, collaborators):
    await store.create(RENT_REMINDER, owner="manager-1")
    entities = _leases(TODAY, TODAY + timedelta(days=1))

    fired = []
    for hour in (0, 6, 12):
        evaluator = TriggerEvaluator(repo, engine, entities)
        fired.extend(await evaluator.tick(NOW + timedelta(hours=hour)))
        await evaluator.drain()

    assert sorted(r.entity_id for r in fired) == ["L1", "L2"]
    assert len(collaborators.sms.calls) == 2


@pytest.mark.asyncio
async def test_after_direction_and_range_bounds(repo, store, engine):
    spec = dict(RENT_REMINDER)
    spec["trigger"] = dict(RENT_REMINDER["trigger"], direction="after", daysOffset=2)
    await store.create(spec, owner="manager-1")
    entities = _leases(
        TODAY - timedelta(days=3), TODAY - timedelta(days=2), TODAY, TODAY + timedelta(days=1)
    )
    evaluator = TriggerEvaluator(repo, engine, entities)

    fired = await evaluator.tick(NOW)
    await evaluator.drain()
    assert sorted(r.entity_id for r in fired) == ["L2", "L3"]


@pytest.mark.asyncio
async def test_inactive_and_event_workflows_are_not_scanned(repo, store, engine):
    await store.create(dict(RENT_REMINDER, status="inactive"), owner="manager-1")
    await store.create(
        dict(RENT_REMINDER, trigger={"type": "event", "eventName": "lease.signed"}),
        owner="manager-1",
    )
    evaluator = TriggerEvaluator(repo, engine, _leases(TODAY))
    assert await evaluator.tick(NOW) == []


@pytest.mark.asyncio
async def test_daily_schedule_fires_within_window_only(repo, store, engine, collaborators):
    spec = {
        "name": "Daily digest",
        "status": "active",
        "trigger": {"type": "schedule", "recurrence": "daily", "atTime": "09:00"},
        "actions": [{"type": "sendEmail", "to": "ops@example.com", "template": "digest"}],
    }
    workflow = await store.create(spec, owner="manager-1")
    evaluator = TriggerEvaluator(repo, engine, InMemoryEntitySource(), SchedulerConfig(tick_seconds=60))

    assert await evaluator.tick(NOW - timedelta(minutes=1)) == []
    fired = await evaluator.tick(NOW + timedelta(seconds=30))
    await evaluator.drain()
    assert [(r.workflow_id, r.entity_id) for r in fired] == [(workflow.id, None)]
    assert fired[0].trigger["windowKey"] == "2024-03-12"
    # second tick inside the window is absorbed by the ledger
    assert await evaluator.tick(NOW + timedelta(seconds=90)) == []
    # outside the window
    assert await evaluator.tick(NOW + timedelta(minutes=5)) == []
    # next day
    assert len(await evaluator.tick(NOW + timedelta(days=1))) == 1
    await evaluator.drain()
    assert len(collaborators.email.calls) == 2


@pytest.mark.asyncio
async def test_schedule_with_entity_type_fans_out(repo, store, engine):
    spec = {
        "name": "Monthly statement",
        "status": "active",
        "trigger": {
            "type": "schedule",
            "recurrence": "monthly",
            "dayOfMonth": 12,
            "atTime": "09:00",
            "entityType": "lease",
        },
        "actions": [{"type": "generateDocument", "template": "statement"}],
    }
    await store.create(spec, owner="manager-1")
    evaluator = TriggerEvaluator(repo, engine, _leases(TODAY, TODAY))

    fired = await evaluator.tick(NOW)
    await evaluator.drain()
    assert sorted(r.entity_id for r in fired) == ["L1", "L2"]
    assert {r.trigger["windowKey"] for r in fired} == {"2024-03"}


def test_window_keys():
    local = datetime(2024, 3, 12, 9, 0, tzinfo=timezone.utc)
    assert window_key(ScheduleTrigger(recurrence="daily"), local) == "2024-03-12"
    assert window_key(ScheduleTrigger(recurrence="weekly"), local) == "2024-W11"
    assert window_key(ScheduleTrigger(recurrence="monthly"), local) == "2024-03"
    assert window_key(ScheduleTrigger(recurrence="yearly"), local) == "2024"


def test_scheduled_at_clamps_day_of_month():
    local = datetime(2024, 2, 10, tzinfo=timezone.utc)
    trigger = ScheduleTrigger(recurrence="monthly", day_of_month=31, at_time="07:15")
    assert scheduled_at(trigger, local) == datetime(2024, 2, 29, 7, 15, tzinfo=timezone.utc)

    weekly = ScheduleTrigger(recurrence="weekly", day_of_week=4, at_time="18:00")
    assert scheduled_at(weekly, local).date() == date(2024, 2, 9)

    yearly = ScheduleTrigger(recurrence="yearly", month=6, day_of_month=1)
    assert not schedule_due(yearly, local, 120)
    assert schedule_due(yearly, datetime(2024, 6, 1, 0, 1, tzinfo=timezone.utc), 120)


def test_schedule_uses_configured_timezone():
    trigger = ScheduleTrigger(recurrence="daily", at_time="09:00")
    config = SchedulerConfig(timezone="America/New_York")
    # 13:00 UTC is 09:00 in New York during daylight saving time
    local = datetime(2024, 7, 1, 13, 0, 30, tzinfo=timezone.utc).astimezone(
        ZoneInfo(config.timezone)
    )
    assert schedule_due(trigger, local, config.fire_window)


def test_sharding_partitions_workflows():
    ids = [f"wf-{i}" for i in range(50)]
    shards = [shard_of(i, 3) for i in ids]
    assert set(shards) <= {0, 1, 2}
    assert shards == [shard_of(i, 3) for i in ids]


@pytest.mark.asyncio
async def test_evaluator_skips_workflows_of_other_shards(repo, store, engine):
    workflow = await store.create(RENT_REMINDER, owner="manager-1")
    owner = shard_of(workflow.id, 2)
    entities = _leases(TODAY)

    other = TriggerEvaluator(repo, engine, entities, SchedulerConfig(shard_index=1 - owner, shard_count=2))
    assert await other.tick(NOW) == []

    mine = TriggerEvaluator(repo, engine, entities, SchedulerConfig(shard_index=owner, shard_count=2))
    assert len(await mine.tick(NOW)) == 1
    await mine.drain()


@pytest.mark.asyncio
async def test_run_loop_refuses_concurrent_start(repo, engine):
    evaluator = TriggerEvaluator(
        repo, engine, InMemoryEntitySource(), SchedulerConfig(tick_seconds=0.01)
    )
    task = asyncio.create_task(evaluator.run(lifespan=0.2))
    await asyncio.sleep(0.05)
    with pytest.raises(SchedulerRestartError):
        await evaluator.run(lifespan=0.1)
    await task

    # a stopped evaluator can simply be started again
    await evaluator.run(lifespan=0.02)


class FlakyLedger:
    """Delegates to a repository but fails the n-th ``record_firing`` call."""

    def __init__(self, repo, fail_on):
        self._repo = repo
        self._fail_on = fail_on
        self.firings = 0

    def __getattr__(self, name):
        return getattr(self._repo, name)

    async def record_firing(self, key, now):
        self.firings += 1
        if self.firings == self._fail_on:
            raise ConnectionError("ledger unavailable")
        return await self._repo.record_firing(key, now)


@pytest.mark.asyncio
async def test_ledger_failure_mid_scan_still_dispatches_recorded_pairs(repo, store, engine, collaborators):
    workflow = await store.create(RENT_REMINDER, owner="manager-1")
    entities = _leases(TODAY + timedelta(days=3), TODAY + timedelta(days=3))
    evaluator = TriggerEvaluator(FlakyLedger(repo, fail_on=2), engine, entities)

    fired = await evaluator.tick(NOW)
    await evaluator.drain()

    assert [r.entity_id for r in fired] == ["L1"]
    assert await repo.has_fired(
        FiringKey(workflow_id=workflow.id, entity_id="L1", window_key=TODAY.isoformat())
    )
    executions = await repo.list_executions(workflow.id)
    assert [e.entity_id for e in executions] == ["L1"]
    assert collaborators.sms.calls == [("+15550000", f"Rent due {(TODAY + timedelta(days=3)).isoformat()}")]

    # the pair that failed is picked up by the next tick
    retried = await evaluator.tick(NOW + timedelta(hours=1))
    await evaluator.drain()
    assert [r.entity_id for r in retried] == ["L2"]
