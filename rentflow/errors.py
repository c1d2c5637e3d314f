"""Error taxonomy for the automation engine."""

from __future__ import annotations

from typing import Any


class RentflowError(Exception):
    """Base class for all engine errors."""


class ValidationError(RentflowError):
    """A workflow definition does not match its trigger/action schema.

    Raised at authoring time only; invalid definitions never reach the engine.
    """

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


class WorkflowNotFoundError(RentflowError):
    """No workflow exists with the requested id."""

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class ActionError(RentflowError):
    """Failure reported by an external collaborator."""

    kind = "permanent"


class TransientActionError(ActionError):
    """Timeout, 5xx or network failure; retried with backoff."""

    kind = "transient"


class PermanentActionError(ActionError):
    """4xx, not-found or validation failure; never retried."""

    kind = "permanent"


class ConcurrencyConflict(RentflowError):
    """Another execution of the same workflow holds the execution lock."""

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow {workflow_id} is already running")
        self.workflow_id = workflow_id


class ExecutionAlreadyCompletedError(RentflowError):
    """Completed executions are append-only and cannot be rewritten."""

    def __init__(self, execution_id: str):
        super().__init__(f"Execution {execution_id} is already completed")
        self.execution_id = execution_id


class SchedulerRestartError(RentflowError):
    """The trigger evaluator loop was started while already running.

    Restarting a stopped evaluator needs no recovery: the firing ledger makes
    a re-scan of the current window safe.
    """
