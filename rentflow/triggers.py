"""Time-based trigger evaluation: schedule windows and date-based scans.

Every candidate (workflow, entity, window) pair passes through the firing
ledger before it is dispatched, so re-running a tick for the same window,
for example after a restart, never fires a pair twice.
"""

from __future__ import annotations

import asyncio
import calendar
import hashlib
import logging
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from .config import SchedulerConfig
from .constants import SYSTEM_TRIGGERED_BY, WORKFLOW_LEVEL_ENTITY
from .contracts import (
    DateBasedTrigger,
    DispatchRequest,
    FiringKey,
    ScheduleTrigger,
    Workflow,
    WorkflowFilter,
    WorkflowStatus,
)
from .engine import WorkflowEngine
from .entities import EntitySource
from .errors import SchedulerRestartError
from .persistence import WorkflowRepository
from .utils.clock import Clock, utc_now
from .utils.retry import Sleep

logger = logging.getLogger(__name__)

_TIMED_TRIGGERS = ("schedule", "dateBased")


def shard_of(workflow_id: str, shard_count: int) -> int:
    digest = hashlib.sha256(workflow_id.encode("utf-8")).hexdigest()
    return int(digest, 16) % shard_count


def window_key(trigger: ScheduleTrigger, local_now: datetime) -> str:
    """Identify the recurrence period ``local_now`` falls in."""
    if trigger.recurrence == "daily":
        return local_now.date().isoformat()
    if trigger.recurrence == "weekly":
        iso = local_now.isocalendar()
        return f"{iso[0]}-W{iso[1]:02d}"
    if trigger.recurrence == "monthly":
        return f"{local_now.year}-{local_now.month:02d}"
    return f"{local_now.year}"


def scheduled_at(trigger: ScheduleTrigger, local_now: datetime) -> datetime:
    """Return when ``trigger`` is scheduled within the period of ``local_now``.

    ``dayOfWeek`` defaults to Monday and ``dayOfMonth``/``month`` to the first;
    a day of month past the month's end is clamped to its last day.
    """
    hour, minute = (int(part) for part in trigger.at_time.split(":"))
    today = local_now.date()
    if trigger.recurrence == "daily":
        day = today
    elif trigger.recurrence == "weekly":
        day = today - timedelta(days=today.weekday()) + timedelta(days=trigger.day_of_week or 0)
    elif trigger.recurrence == "monthly":
        day = _clamped(today.year, today.month, trigger.day_of_month or 1)
    else:
        day = _clamped(today.year, trigger.month or 1, trigger.day_of_month or 1)
    return datetime.combine(day, time(hour, minute), tzinfo=local_now.tzinfo)


def schedule_due(trigger: ScheduleTrigger, local_now: datetime, window_seconds: float) -> bool:
    start = scheduled_at(trigger, local_now)
    return start <= local_now < start + timedelta(seconds=window_seconds)


def date_range(trigger: DateBasedTrigger, today: date) -> tuple[date, date]:
    offset = timedelta(days=trigger.days_offset)
    if trigger.direction == "before":
        return today, today + offset
    return today - offset, today


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


class TriggerEvaluator:
    """Periodically scans schedule and date-based workflows owned by this shard.

    Requests for the same workflow are dispatched one after another, across
    ticks as well, so a scan never competes with itself for the workflow
    lock. Different workflows are dispatched concurrently.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        engine: WorkflowEngine,
        entities: EntitySource,
        config: SchedulerConfig | None = None,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._engine = engine
        self._entities = entities
        self._config = config or SchedulerConfig()
        self._tz = ZoneInfo(self._config.timezone)
        self._clock = clock
        self._sleep = sleep
        self._chains: dict[str, asyncio.Task] = {}
        self._running = False

    def owns(self, workflow_id: str) -> bool:
        return shard_of(workflow_id, self._config.shard_count) == self._config.shard_index

    async def tick(self, now: Optional[datetime] = None) -> list[DispatchRequest]:
        """Run one scan and return the dispatch requests it emitted.

        Dispatch happens in the background; ``drain()`` waits for it.
        """
        now = now or self._clock()
        local_now = now.astimezone(self._tz)
        workflows = await self._repository.list_workflows(
            WorkflowFilter(status=WorkflowStatus.ACTIVE, is_template=False)
        )
        emitted: list[DispatchRequest] = []
        for workflow in workflows:
            if workflow.trigger_kind not in _TIMED_TRIGGERS or not self.owns(workflow.id):
                continue
            try:
                await self._fire(workflow, now, local_now, emitted)
            except Exception:
                logger.exception(f"Trigger evaluation failed for workflow {workflow.id}")
        logger.debug(f"Tick at {local_now.isoformat()} emitted {len(emitted)} request(s)")
        return emitted

    async def drain(self) -> None:
        while self._chains:
            await asyncio.gather(*list(self._chains.values()), return_exceptions=True)

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Tick every ``tick_seconds`` until cancelled or ``lifespan`` elapses.

        Raises:
            SchedulerRestartError: if this evaluator is already running.
        """
        if self._running:
            raise SchedulerRestartError("Trigger evaluator is already running")
        self._running = True
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None
        logger.info(
            f"Trigger evaluator started (shard {self._config.shard_index}/"
            f"{self._config.shard_count}, tick {self._config.tick_seconds}s)"
        )
        try:
            while True:
                try:
                    await self.tick()
                except Exception:
                    logger.exception("Trigger evaluator tick failed")
                delay = self._config.tick_seconds
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        break
                    delay = min(delay, remaining)
                await self._sleep(delay)
        finally:
            self._running = False
            await self.drain()
            logger.info("Trigger evaluator stopped")

    # ------------------------------------------------------------------
    async def _fire(
        self,
        workflow: Workflow,
        now: datetime,
        local_now: datetime,
        emitted: list[DispatchRequest],
    ) -> None:
        """Record each due pair in the ledger and enqueue it right away.

        A pair is dispatched as soon as its ledger insert succeeds, so a later
        failure in the same scan never strands pairs already recorded.
        """
        trigger = workflow.trigger
        if isinstance(trigger, ScheduleTrigger):
            if not schedule_due(trigger, local_now, self._config.fire_window):
                return
            key = window_key(trigger, local_now)
            if trigger.entity_type:
                entities = await self._entities.list_entities(trigger.entity_type)
                pairs = [(str(e["id"]), e) for e in entities]
            else:
                pairs = [(WORKFLOW_LEVEL_ENTITY, {})]
        else:
            today = local_now.date()
            start, end = date_range(trigger, today)
            entities = await self._entities.find_by_date_range(
                trigger.entity_type, trigger.field, start, end
            )
            key = today.isoformat()
            pairs = [(str(e["id"]), e) for e in entities]

        fired_count = 0
        try:
            for entity_id, snapshot in pairs:
                fired = await self._repository.record_firing(
                    FiringKey(workflow_id=workflow.id, entity_id=entity_id, window_key=key), now
                )
                if not fired:
                    continue
                request = DispatchRequest(
                    workflow_id=workflow.id,
                    trigger_kind=workflow.trigger_kind,
                    triggered_by=SYSTEM_TRIGGERED_BY,
                    entity_id=None if entity_id == WORKFLOW_LEVEL_ENTITY else entity_id,
                    context=snapshot,
                    trigger={"type": workflow.trigger_kind, "windowKey": key, "firedAt": now.isoformat()},
                )
                self._enqueue(workflow.id, [request])
                emitted.append(request)
                fired_count += 1
        finally:
            if fired_count:
                logger.info(
                    f"Workflow {workflow.id} fired for {fired_count} entity(ies) in window {key}"
                )

    def _enqueue(self, workflow_id: str, requests: list[DispatchRequest]) -> None:
        previous = self._chains.get(workflow_id)
        task = asyncio.create_task(self._dispatch_chain(previous, requests))
        self._chains[workflow_id] = task

        def _done(t: asyncio.Task) -> None:
            if self._chains.get(workflow_id) is t:
                del self._chains[workflow_id]

        task.add_done_callback(_done)

    async def _dispatch_chain(
        self, previous: Optional[asyncio.Task], requests: list[DispatchRequest]
    ) -> None:
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        for request in requests:
            try:
                await self._engine.dispatch(request)
            except Exception:
                logger.exception(
                    f"Dispatch of workflow {request.workflow_id} for entity "
                    f"{request.entity_id} failed"
                )


__all__ = [
    "TriggerEvaluator",
    "date_range",
    "schedule_due",
    "scheduled_at",
    "shard_of",
    "window_key",
]
