"""Execution audit records and rolling workflow statistics."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from .constants import SYSTEM_TRIGGERED_BY
from .contracts import ActionResult, Execution, ExecutionStatus
from .persistence import WorkflowRepository
from .utils.clock import Clock, duration_ms, utc_now

logger = logging.getLogger(__name__)


class ExecutionRecorder:
    """Creates and finalizes execution records.

    Completing an execution also folds its duration and status into the
    parent workflow's stats in a single atomic repository update.
    """

    def __init__(self, repository: WorkflowRepository, clock: Clock = utc_now) -> None:
        self._repository = repository
        self._clock = clock

    async def begin(
        self,
        workflow_id: str,
        trigger_kind: str,
        triggered_by: str = SYSTEM_TRIGGERED_BY,
        context: Optional[Mapping[str, Any]] = None,
        entity_id: Optional[str] = None,
    ) -> str:
        execution = Execution(
            workflow_id=workflow_id,
            trigger_kind=trigger_kind,
            triggered_by=triggered_by,
            entity_id=entity_id,
            context_snapshot=dict(context or {}),
            started_at=self._clock(),
        )
        await self._repository.create_execution(execution)
        logger.debug(f"Execution {execution.id} started for workflow {workflow_id}")
        return execution.id

    async def record_action(self, execution_id: str, result: ActionResult) -> None:
        await self._repository.append_action_result(execution_id, result)

    async def complete(
        self,
        execution_id: str,
        final_status: ExecutionStatus,
        error: Optional[str] = None,
    ) -> Execution:
        """Finalize the execution and update the workflow stats.

        Raises:
            ExecutionAlreadyCompletedError: if the execution was completed before.
        """
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise KeyError(execution_id)
        completed_at = self._clock()
        elapsed = duration_ms(execution.started_at, completed_at)
        completed = await self._repository.complete_execution(
            execution_id, final_status, completed_at, elapsed, error
        )
        await self._repository.update_workflow_stats(
            completed.workflow_id, final_status, elapsed, completed_at
        )
        logger.info(
            f"Execution {execution_id} of workflow {completed.workflow_id} "
            f"{final_status.value} in {elapsed}ms"
        )
        return completed

    async def history(self, workflow_id: str, limit: Optional[int] = None) -> list[Execution]:
        return await self._repository.list_executions(workflow_id, limit)
