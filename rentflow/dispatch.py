"""Event dispatcher for rentflow: route domain events to matching workflows."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from .constants import DEFAULT_EVENTS_TOPIC, SYSTEM_TRIGGERED_BY
from .contracts import (
    DispatchRequest,
    DomainEvent,
    EventTrigger,
    StatusChangeTrigger,
    Workflow,
    WorkflowFilter,
    WorkflowStatus,
)
from .engine import WorkflowEngine
from .persistence import WorkflowRepository
from .transports import BaseTransport

logger = logging.getLogger(__name__)


def _entity_id(snapshot: Mapping[str, Any], entity_id: Optional[str] = None) -> Optional[str]:
    if entity_id is not None:
        return str(entity_id)
    if snapshot.get("id") is not None:
        return str(snapshot["id"])
    return None


class EventDispatcher:
    """Resolves the active workflows an event or status change triggers.

    Each match is handed to the engine as an independent background unit of
    work, so one slow or failing workflow never delays the others.
    """

    def __init__(self, repository: WorkflowRepository, engine: WorkflowEngine) -> None:
        self._repository = repository
        self._engine = engine

    async def publish(
        self, event_name: str, snapshot: Optional[Mapping[str, Any]] = None
    ) -> list[DispatchRequest]:
        """Dispatch every active ``event`` workflow listening for ``event_name``.

        Returns:
            The submitted dispatch requests, one per matching workflow.
        """
        snapshot = dict(snapshot or {})
        workflows = await self._active("event")
        requests = [
            DispatchRequest(
                workflow_id=wf.id,
                trigger_kind="event",
                triggered_by=SYSTEM_TRIGGERED_BY,
                entity_id=_entity_id(snapshot),
                context=snapshot,
                trigger={"type": "event", "eventName": event_name},
            )
            for wf in workflows
            if isinstance(wf.trigger, EventTrigger) and wf.trigger.event_name == event_name
        ]
        return self._submit(requests, f"event '{event_name}'")

    async def publish_status_change(
        self,
        entity_type: str,
        entity_id: Optional[str],
        from_status: Optional[str],
        to_status: str,
        snapshot: Optional[Mapping[str, Any]] = None,
    ) -> list[DispatchRequest]:
        """Dispatch every active ``statusChange`` workflow matching the transition."""
        snapshot = dict(snapshot or {})
        workflows = await self._active("statusChange")
        requests = [
            DispatchRequest(
                workflow_id=wf.id,
                trigger_kind="statusChange",
                triggered_by=SYSTEM_TRIGGERED_BY,
                entity_id=_entity_id(snapshot, entity_id),
                context=snapshot,
                trigger={
                    "type": "statusChange",
                    "entityType": entity_type,
                    "fromStatus": from_status,
                    "toStatus": to_status,
                },
            )
            for wf in workflows
            if _status_change_matches(wf, entity_type, from_status, to_status)
        ]
        return self._submit(
            requests, f"{entity_type} {from_status or '*'} -> {to_status}"
        )

    async def handle(self, event: DomainEvent) -> list[DispatchRequest]:
        """Route a transport envelope to the matching publish call."""
        if event.is_status_change:
            return await self.publish_status_change(
                event.entity_type,
                event.entity_id,
                event.from_status,
                event.to_status,
                event.snapshot,
            )
        return await self.publish(event.event_name, event.snapshot)

    async def consume(
        self,
        transport: BaseTransport,
        topic: str = DEFAULT_EVENTS_TOPIC,
        lifespan: Optional[float] = None,
    ) -> int:
        """Handle events from ``transport`` until ``lifespan`` elapses.

        Events whose routing fails are nacked without requeue. Returns the
        number of events handled.
        """
        handled = 0
        async for raw_message, event in transport.subscribe(topic, lifespan=lifespan):
            try:
                await self.handle(event)
            except Exception:
                logger.exception(f"Failed to route event {event.event_id} ({event.event_name})")
                await transport.nack(raw_message, requeue=False)
                continue
            await transport.ack(raw_message)
            handled += 1
        return handled

    # ------------------------------------------------------------------
    async def _active(self, trigger_type: str) -> list[Workflow]:
        return await self._repository.list_workflows(
            WorkflowFilter(
                status=WorkflowStatus.ACTIVE, trigger_type=trigger_type, is_template=False
            )
        )

    def _submit(self, requests: list[DispatchRequest], label: str) -> list[DispatchRequest]:
        for request in requests:
            self._engine.submit(request)
        if requests:
            logger.info(f"{label} triggered {len(requests)} workflow(s)")
        else:
            logger.debug(f"{label} matched no active workflow")
        return requests


def _status_change_matches(
    workflow: Workflow, entity_type: str, from_status: Optional[str], to_status: str
) -> bool:
    trigger = workflow.trigger
    if not isinstance(trigger, StatusChangeTrigger):
        return False
    if trigger.entity_type != entity_type or trigger.to_status != to_status:
        return False
    return trigger.from_status is None or trigger.from_status == from_status
