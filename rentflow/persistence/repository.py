"""Repository abstraction for workflows, executions, firing ledger and locks."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ..contracts import (
    ActionResult,
    Execution,
    ExecutionStatus,
    FiringKey,
    Workflow,
    WorkflowFilter,
)


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Every write is keyed so it can be repeated safely: workflows are upserted
    by id, ledger entries are inserted only if absent.
    """

    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def list_workflows(
        self, workflow_filter: WorkflowFilter | None = None
    ) -> list[Workflow]:
        """Return workflows accepted by ``workflow_filter``."""

    async def update_workflow_stats(
        self,
        workflow_id: str,
        status: ExecutionStatus,
        duration_ms: int,
        completed_at: datetime,
    ) -> None:
        """Atomically fold one completed execution into the workflow stats."""

    async def create_execution(self, execution: Execution) -> None:
        """Persist a new execution record."""

    async def append_action_result(
        self, execution_id: str, result: ActionResult
    ) -> None:
        """Append a per-action entry to a running execution."""

    async def complete_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        completed_at: datetime,
        duration_ms: int,
        error: str | None = None,
    ) -> Execution:
        """Finalize an execution; raises if it was already completed."""

    async def get_execution(self, execution_id: str) -> Execution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self, workflow_id: str, limit: int | None = None
    ) -> list[Execution]:
        """Return executions of a workflow, newest first."""

    async def record_firing(self, key: FiringKey, fired_at: datetime) -> bool:
        """Insert ``key`` if absent. Returns ``True`` when this call inserted it."""

    async def has_fired(self, key: FiringKey) -> bool:
        """Return whether ``key`` is present in the firing ledger."""

    async def acquire_lock(
        self, name: str, owner: str, ttl_seconds: float, now: datetime
    ) -> bool:
        """Take the named lock unless another owner holds an unexpired one."""

    async def release_lock(self, name: str, owner: str) -> None:
        """Release the named lock if still held by ``owner``."""
