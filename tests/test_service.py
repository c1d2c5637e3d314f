"""End-to-end scenarios through the automation service."""

from datetime import datetime, timezone

import pytest

from rentflow.config import RentflowConfig
from rentflow.contracts import ExecutionStatus, WorkflowStatus
from rentflow.entities import InMemoryEntitySource
from rentflow.errors import ConcurrencyConflict, ValidationError, WorkflowNotFoundError
from rentflow.persistence import InMemoryWorkflowRepository
from rentflow.service import AutomationService

RENT_REMINDER = {
    "name": "Rent Reminder",
    "trigger": {
        "type": "dateBased",
        "entityType": "lease",
        "field": "nextPaymentDate",
        "daysOffset": 3,
        "direction": "before",
    },
    "conditions": [{"field": "status", "operator": "equals", "value": "active"}],
    "actions": [
        {"type": "sendEmail", "to": "{{tenant.email}}", "template": "rent-reminder"},
        {"type": "sendSMS", "to": "{{tenant.phone}}", "message": "Rent due {{nextPaymentDate}}"},
    ],
}


@pytest.fixture
def service(collaborators, clock):
    entities = InMemoryEntitySource(
        {
            "lease": [
                {
                    "id": "L1",
                    "status": "active",
                    "nextPaymentDate": "2024-03-15",
                    "tenant": {"email": "t1@example.com", "phone": "+15550101"},
                },
                {
                    "id": "L2",
                    "status": "terminated",
                    "nextPaymentDate": "2024-03-15",
                    "tenant": {"email": "t2@example.com", "phone": "+15550102"},
                },
            ]
        }
    )
    return AutomationService(
        RentflowConfig(),
        repository=InMemoryWorkflowRepository(),
        collaborators=collaborators,
        entities=entities,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_rent_reminder_end_to_end(service, collaborators):
    workflow = await service.create_workflow(RENT_REMINDER, "manager-1")
    assert workflow.status is WorkflowStatus.DRAFT

    # draft workflows never fire
    assert await service.evaluator.tick() == []

    await service.set_status(workflow.id, WorkflowStatus.ACTIVE)
    requests = await service.evaluator.tick()
    await service.drain()

    assert sorted(r.entity_id for r in requests) == ["L1", "L2"]
    executions = await service.list_executions(workflow.id)
    by_entity = {e.entity_id: e for e in executions}
    assert by_entity["L1"].status is ExecutionStatus.SUCCEEDED
    assert len(by_entity["L1"].per_action) == 2
    # condition mismatch still completes, without actions
    assert by_entity["L2"].status is ExecutionStatus.SUCCEEDED
    assert by_entity["L2"].per_action == []

    assert collaborators.email.calls == [("t1@example.com", "rent-reminder", {})]
    assert collaborators.sms.calls == [("+15550101", "Rent due 2024-03-15")]

    # the same window does not fire twice
    assert await service.evaluator.tick() == []

    stats = (await service.get_workflow(workflow.id)).stats
    assert stats.total_runs == 2 and stats.succeeded == 2


@pytest.mark.asyncio
async def test_authoring_errors(service):
    with pytest.raises(ValidationError) as exc_info:
        await service.create_workflow({"name": "No trigger", "actions": []}, "manager-1")
    assert any(e["field"] == "trigger" for e in exc_info.value.errors)

    with pytest.raises(WorkflowNotFoundError):
        await service.get_workflow("missing")
    with pytest.raises(WorkflowNotFoundError):
        await service.list_executions("missing")


@pytest.mark.asyncio
async def test_manual_execution_conflict(service, collaborators):
    collaborators.email.delay = 0.05
    workflow = await service.create_workflow(
        {
            "name": "Welcome pack",
            "trigger": {"type": "manual"},
            "actions": [{"type": "sendEmail", "to": "{{tenant.email}}", "template": "welcome"}],
        },
        "manager-1",
    )
    context = {"id": "L1", "tenant": {"email": "t1@example.com"}}

    started = await service.execute_workflow(workflow.id, context, "manager-1")
    assert started.status is ExecutionStatus.RUNNING
    with pytest.raises(ConcurrencyConflict):
        await service.execute_workflow(workflow.id, context, "manager-2")

    await service.drain()
    history = await service.list_executions(workflow.id)
    assert [e.status for e in history] == [ExecutionStatus.SUCCEEDED]
    assert history[0].triggered_by == "manager-1"


@pytest.mark.asyncio
async def test_archived_workflows_are_hidden_but_keep_history(service):
    workflow = await service.create_workflow(
        {
            "name": "Move-out checklist",
            "trigger": {"type": "manual"},
            "actions": [{"type": "createTask", "assignee": "ops", "title": "Inspect unit"}],
        },
        "manager-1",
    )
    await service.execute_workflow(workflow.id, {"id": "L1"}, "manager-1")
    await service.drain()

    archived = await service.archive(workflow.id)
    assert archived.archived_at == datetime(2024, 3, 12, 9, 0, tzinfo=timezone.utc)
    assert await service.list_workflows() == []
    assert [w.id for w in await service.list_workflows(include_archived=True)] == [workflow.id]
    assert len(await service.list_executions(workflow.id)) == 1

    with pytest.raises(WorkflowNotFoundError):
        await service.execute_workflow(workflow.id)
