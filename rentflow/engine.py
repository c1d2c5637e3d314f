"""Workflow engine: lock, evaluate, execute and record one workflow run."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence

from .conditions import matches
from .config import EngineConfig
from .contracts import (
    ActionResult,
    ActionStatus,
    Condition,
    DispatchRequest,
    ErrorKind,
    Execution,
    ExecutionStatus,
    Workflow,
    WorkflowStatus,
)
from .errors import ConcurrencyConflict, WorkflowNotFoundError
from .execute import ActionExecutor
from .persistence import WorkflowRepository
from .recorder import ExecutionRecorder
from .utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

Matcher = Callable[[Sequence[Condition], Mapping[str, Any]], bool]


class DispatchState(str, Enum):
    PENDING = "pending"
    LOCKED = "locked"
    EVALUATING = "evaluating"
    EXECUTING = "executing"
    RECORDING = "recording"
    DONE = "done"
    REJECTED = "rejected"


@dataclass
class _Run:
    """Bookkeeping for one accepted dispatch."""

    workflow: Workflow
    request: DispatchRequest
    execution_id: str
    lock_token: str
    state: DispatchState = DispatchState.LOCKED
    recorded: set[int] = field(default_factory=set)
    in_flight: set[int] = field(default_factory=set)
    critical_failure: bool = False


class WorkflowEngine:
    """Runs dispatch requests against workflow definitions.

    At most one execution per workflow is running at any time: a TTL lock
    keyed by workflow id is taken before the execution record is created and
    released only after it is completed. Action failures are captured in the
    execution record and never raised to the caller.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        executor: ActionExecutor,
        recorder: ExecutionRecorder | None = None,
        config: EngineConfig | None = None,
        clock: Clock = utc_now,
        matcher: Matcher = matches,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._recorder = recorder or ExecutionRecorder(repository, clock)
        self._config = config or EngineConfig()
        self._clock = clock
        self._matcher = matcher
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    async def dispatch(self, request: DispatchRequest) -> Optional[Execution]:
        """Run ``request`` to completion.

        Returns the completed execution, or ``None`` when a non-manual request
        was dropped (inactive workflow or lock held elsewhere).

        Raises:
            WorkflowNotFoundError: the workflow does not exist.
            ConcurrencyConflict: a manual request found the workflow running.
        """
        run = await self._accept(request)
        if run is None:
            return None
        return await self._run(run)

    def submit(self, request: DispatchRequest) -> asyncio.Task:
        """Schedule ``dispatch(request)`` as an independent background task."""
        task = asyncio.create_task(self.dispatch(request))
        self._track(task, request.workflow_id)
        return task

    async def drain(self) -> None:
        """Wait for every submitted dispatch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def execute_manual(
        self,
        workflow_id: str,
        context: Optional[Mapping[str, Any]] = None,
        user_id: str = "anonymous",
    ) -> Execution:
        """Start a manual run and return its ``running`` execution.

        The lock is taken and the record created before this returns; the
        actions run in the background.
        """
        request = DispatchRequest(
            workflow_id=workflow_id,
            trigger_kind="manual",
            triggered_by=user_id,
            entity_id=_entity_id(context),
            context=dict(context or {}),
        )
        run = await self._accept(request)
        if run is None:
            raise RuntimeError(f"Manual dispatch of workflow {workflow_id} was dropped")
        execution = await self._repository.get_execution(run.execution_id)
        task = asyncio.create_task(self._run(run))
        self._track(task, workflow_id)
        return execution

    # ------------------------------------------------------------------
    def _track(self, task: asyncio.Task, workflow_id: str) -> None:
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                logger.warning(f"Dispatch of workflow {workflow_id} was cancelled")
            elif t.exception() is not None:
                logger.error(
                    f"Dispatch of workflow {workflow_id} failed: {t.exception()!r}"
                )

        task.add_done_callback(_done)

    def _transition(self, request: DispatchRequest, state: DispatchState, detail: str = "") -> None:
        suffix = f": {detail}" if detail else ""
        logger.debug(
            f"Workflow {request.workflow_id} [{request.trigger_kind}] -> {state.value}{suffix}"
        )

    async def _accept(self, request: DispatchRequest) -> Optional[_Run]:
        self._transition(request, DispatchState.PENDING)
        workflow = await self._repository.get_workflow(request.workflow_id)
        if workflow is None or (request.is_manual and workflow.is_archived):
            raise WorkflowNotFoundError(request.workflow_id)

        if not request.is_manual and (
            workflow.status != WorkflowStatus.ACTIVE or workflow.is_archived or workflow.is_template
        ):
            reason = "a template" if workflow.is_template else workflow.status.value
            self._transition(request, DispatchState.REJECTED, f"workflow is {reason}")
            return None

        token = uuid.uuid4().hex
        acquired = await self._repository.acquire_lock(
            workflow.id, token, self._config.lock_ttl, self._clock()
        )
        if not acquired:
            if request.is_manual:
                self._transition(request, DispatchState.REJECTED, "already running")
                raise ConcurrencyConflict(workflow.id)
            logger.info(
                f"Dropped {request.trigger_kind} dispatch of workflow {workflow.id}: "
                "an execution is already running"
            )
            self._transition(request, DispatchState.REJECTED, "already running")
            return None
        self._transition(request, DispatchState.LOCKED)

        try:
            execution_id = await self._recorder.begin(
                workflow.id,
                request.trigger_kind,
                request.triggered_by,
                request.context,
                request.entity_id,
            )
        except BaseException:
            await self._repository.release_lock(workflow.id, token)
            raise
        return _Run(workflow, request, execution_id, token)

    async def _run(self, run: _Run) -> Execution:
        workflow = run.workflow
        try:
            status, error = await asyncio.wait_for(
                self._evaluate_and_execute(run),
                timeout=self._config.execution_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Execution {run.execution_id} of workflow {workflow.id} timed out "
                f"after {self._config.execution_timeout}s"
            )
            return await self._finish(run, ExecutionStatus.FAILED, "timeout", interrupted=True)
        except asyncio.CancelledError:
            logger.warning(f"Execution {run.execution_id} of workflow {workflow.id} was cancelled")
            # the record must not stay running once the lock is gone
            await asyncio.shield(
                self._finish(run, ExecutionStatus.FAILED, "cancelled", interrupted=True)
            )
            raise
        except Exception as exc:
            logger.exception(f"Execution {run.execution_id} of workflow {workflow.id} crashed")
            status, error = ExecutionStatus.FAILED, str(exc) or type(exc).__name__
        return await self._finish(run, status, error)

    async def _finish(
        self,
        run: _Run,
        status: ExecutionStatus,
        error: Optional[str],
        interrupted: bool = False,
    ) -> Execution:
        """Complete the execution record, then release the workflow lock."""
        try:
            if interrupted:
                await self._abandon_remaining(run, error or "interrupted")
            run.state = DispatchState.RECORDING
            self._transition(run.request, run.state, status.value)
            execution = await self._recorder.complete(run.execution_id, status, error)
        finally:
            await self._repository.release_lock(run.workflow.id, run.lock_token)
        run.state = DispatchState.DONE
        self._transition(run.request, run.state)
        return execution

    async def _evaluate_and_execute(self, run: _Run) -> tuple[ExecutionStatus, Optional[str]]:
        run.state = DispatchState.EVALUATING
        self._transition(run.request, run.state)
        try:
            matched = self._matcher(run.workflow.conditions, run.request.context)
        except Exception as exc:
            logger.warning(f"Condition evaluation failed for workflow {run.workflow.id}: {exc}")
            return ExecutionStatus.FAILED, f"condition evaluation failed: {exc}"
        if not matched:
            logger.info(f"Workflow {run.workflow.id}: conditions not met, no actions run")
            return ExecutionStatus.SUCCEEDED, None

        run.state = DispatchState.EXECUTING
        self._transition(run.request, run.state)
        results = await self._execute_actions(run)

        if run.critical_failure:
            return ExecutionStatus.FAILED, "critical action failed"
        if any(r.status is ActionStatus.FAILED for r in results):
            return ExecutionStatus.PARTIAL, None
        return ExecutionStatus.SUCCEEDED, None

    async def _execute_actions(self, run: _Run) -> list[ActionResult]:
        actions = run.workflow.actions
        context = self._render_context(run)
        semaphore = asyncio.Semaphore(self._config.max_parallel_actions)
        results: list[ActionResult] = []

        async def _bounded(index: int) -> ActionResult:
            async with semaphore:
                return await self._executor.execute(actions[index], context, index)

        index = 0
        while index < len(actions):
            end = index + 1
            if _concurrent(actions[index]):
                while end < len(actions) and _concurrent(actions[end]):
                    end += 1
            run.in_flight.update(range(index, end))
            if end - index > 1:
                batch = await asyncio.gather(*(_bounded(i) for i in range(index, end)))
            else:
                batch = [await self._executor.execute(actions[index], context, index)]

            for result in batch:
                await self._record(run, result)
                results.append(result)
            index = end

            last = actions[end - 1]
            if last.critical and batch[-1].status is ActionStatus.FAILED:
                run.critical_failure = True
                logger.warning(
                    f"Critical action {end - 1} of workflow {run.workflow.id} failed; "
                    f"skipping {len(actions) - end} remaining action(s)"
                )
                results.extend(await self._skip_remaining(run, end))
                break
        return results

    async def _record(self, run: _Run, result: ActionResult) -> None:
        await self._recorder.record_action(run.execution_id, result)
        run.recorded.add(result.index)
        run.in_flight.discard(result.index)

    async def _skip_remaining(self, run: _Run, start: int) -> list[ActionResult]:
        skipped = []
        for index in range(start, len(run.workflow.actions)):
            if index in run.recorded:
                continue
            result = ActionResult(
                index=index,
                action_type=run.workflow.actions[index].type,
                status=ActionStatus.SKIPPED,
            )
            await self._record(run, result)
            skipped.append(result)
        return skipped

    async def _abandon_remaining(self, run: _Run, reason: str) -> None:
        """Record the actions cut off by a timeout or cancellation.

        Actions that were running fail with ``reason``; the rest are skipped.
        """
        for index in sorted(run.in_flight - run.recorded):
            await self._record(
                run,
                ActionResult(
                    index=index,
                    action_type=run.workflow.actions[index].type,
                    status=ActionStatus.FAILED,
                    attempts=1,
                    error_kind=ErrorKind.TRANSIENT,
                    last_error=reason,
                ),
            )
        await self._skip_remaining(run, 0)

    def _render_context(self, run: _Run) -> dict[str, Any]:
        return {
            "workflow": {"id": run.workflow.id, "name": run.workflow.name},
            "trigger": dict(run.request.trigger),
            "execution": {
                "id": run.execution_id,
                "triggeredBy": run.request.triggered_by,
            },
            **run.request.context,
        }


def _concurrent(action: Any) -> bool:
    return bool(action.parallel) and not action.critical


def _entity_id(context: Optional[Mapping[str, Any]]) -> Optional[str]:
    if context and context.get("id") is not None:
        return str(context["id"])
    return None


__all__ = ["DispatchState", "WorkflowEngine"]
