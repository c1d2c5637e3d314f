"""Wiring of the automation components behind the authoring surface."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from .collaborators import Collaborators, HttpWebhookCaller, dry_run_collaborators
from .config import RentflowConfig, load_config
from .contracts import Execution, Workflow, WorkflowFilter, WorkflowStatus
from .dispatch import EventDispatcher
from .engine import WorkflowEngine
from .entities import EntitySource, InMemoryEntitySource
from .execute import ActionExecutor
from .persistence import WorkflowRepository, get_repository
from .recorder import ExecutionRecorder
from .store import SpecInput, WorkflowStore
from .triggers import TriggerEvaluator
from .utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


class AutomationService:
    """Single entry point assembling store, engine, dispatcher and evaluator.

    Callers only ever see ``ValidationError``, ``WorkflowNotFoundError`` and
    ``ConcurrencyConflict``; action failures end up in the execution history.
    """

    def __init__(
        self,
        config: Optional[RentflowConfig] = None,
        repository: Optional[WorkflowRepository] = None,
        collaborators: Optional[Collaborators] = None,
        entities: Optional[EntitySource] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        if collaborators is None:
            collaborators = dry_run_collaborators(
                webhooks=HttpWebhookCaller(
                    connect_timeout=self.config.webhook.connect_timeout,
                    read_timeout=self.config.webhook.read_timeout,
                )
            )
        self.store = WorkflowStore(self.repository, clock)
        self.recorder = ExecutionRecorder(self.repository, clock)
        self.executor = ActionExecutor(
            collaborators,
            timeout=self.config.engine.action_timeout,
            retry=self.config.retry,
            clock=clock,
        )
        self.engine = WorkflowEngine(
            self.repository, self.executor, self.recorder, self.config.engine, clock
        )
        self.dispatcher = EventDispatcher(self.repository, self.engine)
        self.evaluator = TriggerEvaluator(
            self.repository,
            self.engine,
            entities or InMemoryEntitySource(),
            self.config.scheduler,
            clock,
        )

    async def create_workflow(self, spec: SpecInput, owner: str) -> Workflow:
        return await self.store.create(spec, owner)

    async def update_workflow(self, workflow_id: str, spec: SpecInput) -> Workflow:
        return await self.store.update(workflow_id, spec)

    async def get_workflow(self, workflow_id: str) -> Workflow:
        return await self.store.get(workflow_id)

    async def list_workflows(
        self,
        status: Optional[WorkflowStatus] = None,
        owner: Optional[str] = None,
        trigger_type: Optional[str] = None,
        include_archived: bool = False,
        is_template: Optional[bool] = None,
        template_category: Optional[str] = None,
    ) -> list[Workflow]:
        return await self.store.list(
            WorkflowFilter(
                status=status,
                owner=owner,
                trigger_type=trigger_type,
                is_template=is_template,
                template_category=template_category,
                include_archived=include_archived,
            )
        )

    async def set_status(self, workflow_id: str, status: WorkflowStatus) -> Workflow:
        return await self.store.set_status(workflow_id, status)

    async def archive(self, workflow_id: str) -> Workflow:
        return await self.store.archive(workflow_id)

    async def execute_workflow(
        self,
        workflow_id: str,
        context: Optional[Mapping[str, Any]] = None,
        user_id: str = "anonymous",
    ) -> Execution:
        """Start a manual run; raises ``ConcurrencyConflict`` if one is running."""
        return await self.engine.execute_manual(workflow_id, context, user_id)

    async def list_executions(self, workflow_id: str, limit: Optional[int] = None) -> list[Execution]:
        await self.store.get(workflow_id)
        return await self.recorder.history(workflow_id, limit)

    async def drain(self) -> None:
        """Wait for background dispatches to finish."""
        await self.evaluator.drain()
        await self.engine.drain()
