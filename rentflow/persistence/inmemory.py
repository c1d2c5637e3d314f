"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Dict, Tuple

from ..contracts import (
    ActionResult,
    Execution,
    ExecutionStatus,
    FiringKey,
    Workflow,
    WorkflowFilter,
)
from ..errors import ExecutionAlreadyCompletedError
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._executions: Dict[str, Execution] = {}
        self._ledger: Dict[FiringKey, datetime] = {}
        self._locks: Dict[str, Tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        async with self._lock:
            self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self, workflow_filter: WorkflowFilter | None = None
    ) -> list[Workflow]:
        workflow_filter = workflow_filter or WorkflowFilter()
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if workflow_filter.accepts(wf)
        ]

    async def update_workflow_stats(
        self,
        workflow_id: str,
        status: ExecutionStatus,
        duration_ms: int,
        completed_at: datetime,
    ) -> None:
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if not wf:
                return
            stats = wf.stats
            stats.total_runs += 1
            if status == ExecutionStatus.SUCCEEDED:
                stats.succeeded += 1
            else:
                stats.failed += 1
                if status == ExecutionStatus.PARTIAL:
                    stats.partial += 1
            stats.avg_duration_ms += (duration_ms - stats.avg_duration_ms) / stats.total_runs
            wf.last_run_at = completed_at

    # ------------------------------------------------------------------
    async def create_execution(self, execution: Execution) -> None:
        async with self._lock:
            self._executions[execution.id] = execution.model_copy(deep=True)

    async def append_action_result(
        self, execution_id: str, result: ActionResult
    ) -> None:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if not execution:
                return
            if execution.is_completed:
                raise ExecutionAlreadyCompletedError(execution_id)
            execution.per_action.append(result.model_copy(deep=True))

    async def complete_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        completed_at: datetime,
        duration_ms: int,
        error: str | None = None,
    ) -> Execution:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                raise KeyError(execution_id)
            if execution.is_completed:
                raise ExecutionAlreadyCompletedError(execution_id)
            execution.status = status
            execution.completed_at = completed_at
            execution.duration_ms = duration_ms
            execution.error = error
            return execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self, workflow_id: str, limit: int | None = None
    ) -> list[Execution]:
        matching = sorted(
            (e for e in self._executions.values() if e.workflow_id == workflow_id),
            key=lambda e: e.started_at,
            reverse=True,
        )
        if limit is not None:
            matching = matching[:limit]
        return [e.model_copy(deep=True) for e in matching]

    # ------------------------------------------------------------------
    async def record_firing(self, key: FiringKey, fired_at: datetime) -> bool:
        async with self._lock:
            if key in self._ledger:
                return False
            self._ledger[key] = fired_at
            return True

    async def has_fired(self, key: FiringKey) -> bool:
        return key in self._ledger

    async def acquire_lock(
        self, name: str, owner: str, ttl_seconds: float, now: datetime
    ) -> bool:
        async with self._lock:
            held = self._locks.get(name)
            if held is not None and held[0] != owner and held[1] > now:
                return False
            self._locks[name] = (owner, now + timedelta(seconds=ttl_seconds))
            return True

    async def release_lock(self, name: str, owner: str) -> None:
        async with self._lock:
            held = self._locks.get(name)
            if held is not None and held[0] == owner:
                del self._locks[name]
