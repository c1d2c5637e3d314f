"""Workflow definition CRUD with authoring-time validation."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .contracts import Workflow, WorkflowFilter, WorkflowSpec, WorkflowStatus
from .errors import ValidationError, WorkflowNotFoundError
from .persistence import WorkflowRepository
from .utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

SpecInput = Union[WorkflowSpec, Mapping[str, Any]]


def validate_spec(spec: SpecInput) -> WorkflowSpec:
    """Validate an authoring payload against the trigger/action schemas.

    Raises:
        ValidationError: with one entry per offending field.
    """
    try:
        if isinstance(spec, WorkflowSpec):
            return WorkflowSpec.model_validate(spec.model_dump())
        return WorkflowSpec.model_validate(dict(spec))
    except PydanticValidationError as exc:
        errors = [
            {
                "field": ".".join(str(part) for part in err["loc"]),
                "message": err["msg"],
                "type": err["type"],
            }
            for err in exc.errors(include_url=False)
        ]
        raise ValidationError(
            f"Invalid workflow definition ({len(errors)} error(s))", errors
        ) from exc


class WorkflowStore:
    """Create, read, update and archive workflow definitions.

    Definitions are validated in full before anything is written, so an
    invalid payload never leaves a partial record behind.
    """

    def __init__(self, repository: WorkflowRepository, clock: Clock = utc_now) -> None:
        self._repository = repository
        self._clock = clock

    async def create(self, spec: SpecInput, owner: str) -> Workflow:
        definition = validate_spec(spec)
        now = self._clock()
        workflow = Workflow(
            **definition.model_dump(), owner=owner, created_at=now, updated_at=now
        )
        await self._repository.save_workflow(workflow)
        logger.info(
            f"Created workflow {workflow.id} ({workflow.name!r}, "
            f"{workflow.trigger_kind}) for {owner}"
        )
        return workflow

    async def update(self, workflow_id: str, spec: SpecInput) -> Workflow:
        """Replace the definition, keeping identity, stats and timestamps."""
        current = await self.get(workflow_id)
        definition = validate_spec(spec)
        workflow = current.model_copy(
            update={**dict(definition), "updated_at": self._clock()}
        )
        await self._repository.save_workflow(workflow)
        logger.info(f"Updated workflow {workflow_id}")
        return workflow

    async def get(self, workflow_id: str) -> Workflow:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def list(self, workflow_filter: Optional[WorkflowFilter] = None) -> list[Workflow]:
        return await self._repository.list_workflows(workflow_filter or WorkflowFilter())

    async def set_status(self, workflow_id: str, status: WorkflowStatus) -> Workflow:
        current = await self.get(workflow_id)
        status = WorkflowStatus(status)
        if status is WorkflowStatus.ACTIVE:
            if current.is_archived:
                raise ValidationError(
                    "Archived workflows cannot be activated",
                    [{"field": "status", "message": "workflow is archived", "type": "archived"}],
                )
            if not current.actions:
                raise ValidationError(
                    "Active workflows require at least one action",
                    [{"field": "actions", "message": "at least one action required", "type": "too_short"}],
                )
        workflow = current.model_copy(update={"status": status, "updated_at": self._clock()})
        await self._repository.save_workflow(workflow)
        logger.info(f"Workflow {workflow_id} is now {status.value}")
        return workflow

    async def archive(self, workflow_id: str) -> Workflow:
        """Soft delete: mark archived and inactive. History is kept."""
        current = await self.get(workflow_id)
        if current.is_archived:
            return current
        now = self._clock()
        workflow = current.model_copy(
            update={
                "status": WorkflowStatus.INACTIVE,
                "archived_at": now,
                "updated_at": now,
            }
        )
        await self._repository.save_workflow(workflow)
        logger.info(f"Archived workflow {workflow_id}")
        return workflow
