"""Core contracts for the rentflow automation engine.

Triggers and actions are closed tagged unions discriminated on ``type``; a
definition whose payload does not match its declared type fails validation.
Attributes are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .constants import SYSTEM_TRIGGERED_BY
from .utils.clock import utc_now

_AT_TIME = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class RentflowModel(BaseModel):
    """Base model: camelCase aliases, populated by either name."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIAL = "partial"


class ActionStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    IN = "in"
    NOT_IN = "notIn"
    EXISTS = "exists"


# ---------------------------------------------------------------------------
# Triggers


class ScheduleTrigger(RentflowModel):
    """Fires once per recurrence window at ``at_time`` (scheduler timezone)."""

    type: Literal["schedule"] = "schedule"
    recurrence: Literal["daily", "weekly", "monthly", "yearly"]
    at_time: str = "00:00"
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    entity_type: Optional[str] = None

    @field_validator("at_time")
    @classmethod
    def _check_at_time(cls, v: str) -> str:
        if not _AT_TIME.match(v):
            raise ValueError("atTime must be HH:MM (24h)")
        return v


class EventTrigger(RentflowModel):
    type: Literal["event"] = "event"
    event_name: str = Field(min_length=1)


class StatusChangeTrigger(RentflowModel):
    type: Literal["statusChange"] = "statusChange"
    entity_type: str = Field(min_length=1)
    from_status: Optional[str] = None
    to_status: str = Field(min_length=1)


class DateBasedTrigger(RentflowModel):
    """Fires for entities whose ``field`` date is within ``days_offset`` of today."""

    type: Literal["dateBased"] = "dateBased"
    entity_type: str = Field(min_length=1)
    field: str = Field(min_length=1)
    days_offset: int = Field(ge=0)
    direction: Literal["before", "after"]


class ManualTrigger(RentflowModel):
    type: Literal["manual"] = "manual"


Trigger = Annotated[
    Union[ScheduleTrigger, EventTrigger, StatusChangeTrigger, DateBasedTrigger, ManualTrigger],
    Field(discriminator="type"),
]

TriggerKind = Literal["schedule", "event", "statusChange", "dateBased", "manual"]
TRIGGER_KINDS: tuple[str, ...] = ("schedule", "event", "statusChange", "dateBased", "manual")


# ---------------------------------------------------------------------------
# Actions


class BaseAction(RentflowModel):
    """Fields shared by every action variant."""

    critical: bool = False
    parallel: bool = False
    delay_seconds: float = Field(default=0.0, ge=0)


class SendEmailAction(BaseAction):
    type: Literal["sendEmail"] = "sendEmail"
    to: str = Field(min_length=1)
    template: str = Field(min_length=1)
    vars: Dict[str, Any] = Field(default_factory=dict)


class SendSMSAction(BaseAction):
    type: Literal["sendSMS"] = "sendSMS"
    to: str = Field(min_length=1)
    message: str = Field(min_length=1)


class CreateTaskAction(BaseAction):
    type: Literal["createTask"] = "createTask"
    assignee: str = Field(min_length=1)
    title: Optional[str] = None
    description: Optional[str] = None
    due_in_days: int = Field(default=0, ge=0)


class UpdateRecordAction(BaseAction):
    type: Literal["updateRecord"] = "updateRecord"
    entity_type: str = Field(min_length=1)
    id: str = Field(min_length=1)
    patch: Dict[str, Any] = Field(min_length=1)


class GenerateDocumentAction(BaseAction):
    type: Literal["generateDocument"] = "generateDocument"
    template: str = Field(min_length=1)
    vars: Dict[str, Any] = Field(default_factory=dict)


class SendNotificationAction(BaseAction):
    type: Literal["sendNotification"] = "sendNotification"
    recipient_id: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


class CallWebhookAction(BaseAction):
    type: Literal["callWebhook"] = "callWebhook"
    url: str = Field(min_length=1)
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        if not (v.startswith("http://") or v.startswith("https://") or v.startswith("{{")):
            raise ValueError("url must be an http(s) URL")
        return v


class UpdateStatusAction(BaseAction):
    type: Literal["updateStatus"] = "updateStatus"
    entity_type: str = Field(min_length=1)
    id: str = Field(min_length=1)
    status: str = Field(min_length=1)


Action = Annotated[
    Union[
        SendEmailAction,
        SendSMSAction,
        CreateTaskAction,
        UpdateRecordAction,
        GenerateDocumentAction,
        SendNotificationAction,
        CallWebhookAction,
        UpdateStatusAction,
    ],
    Field(discriminator="type"),
]

ACTION_TYPES: tuple[str, ...] = (
    "sendEmail",
    "sendSMS",
    "createTask",
    "updateRecord",
    "generateDocument",
    "sendNotification",
    "callWebhook",
    "updateStatus",
)


# ---------------------------------------------------------------------------
# Conditions


class Condition(RentflowModel):
    """Predicate over an entity snapshot.

    Conditions sharing a ``group`` are AND'ed; groups are OR'ed. Conditions
    without a group all belong to the same default group.
    """

    field: str = Field(min_length=1)
    operator: Operator
    value: Any = None
    group: Optional[Union[int, str]] = None

    @model_validator(mode="after")
    def _check_value_shape(self) -> "Condition":
        if self.operator in (Operator.IN, Operator.NOT_IN) and not isinstance(
            self.value, (list, tuple)
        ):
            raise ValueError(f"operator '{self.operator.value}' requires a list value")
        if self.operator is Operator.EXISTS:
            if self.value is None:
                self.value = True
            elif not isinstance(self.value, bool):
                raise ValueError("operator 'exists' requires a boolean value")
        return self


# ---------------------------------------------------------------------------
# Workflows


class WorkflowStats(RentflowModel):
    total_runs: int = 0
    succeeded: int = 0
    failed: int = 0
    partial: int = 0
    avg_duration_ms: float = 0.0


class WorkflowSpec(RentflowModel):
    """Authoring payload for creating or replacing a workflow definition."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )

    name: str = Field(min_length=1)
    description: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.DRAFT
    trigger: Trigger
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)
    is_template: bool = False
    template_category: Optional[str] = None

    @model_validator(mode="after")
    def _active_needs_actions(self) -> "WorkflowSpec":
        if self.status is WorkflowStatus.ACTIVE and not self.actions:
            raise ValueError("active workflows require at least one action")
        return self


class Workflow(WorkflowSpec):
    """Persisted workflow definition with identity, stats and timestamps."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner: str
    stats: WorkflowStats = Field(default_factory=WorkflowStats)
    last_run_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    archived_at: Optional[datetime] = None

    @property
    def trigger_kind(self) -> str:
        return self.trigger.type

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def definition(self) -> WorkflowSpec:
        """Return the authoring view of this workflow."""
        return WorkflowSpec.model_validate(
            self.model_dump(include=set(WorkflowSpec.model_fields))
        )


class WorkflowFilter(RentflowModel):
    status: Optional[WorkflowStatus] = None
    owner: Optional[str] = None
    trigger_type: Optional[TriggerKind] = None
    is_template: Optional[bool] = None
    template_category: Optional[str] = None
    include_archived: bool = False

    def accepts(self, workflow: Workflow) -> bool:
        if self.status is not None and workflow.status != self.status:
            return False
        if self.owner is not None and workflow.owner != self.owner:
            return False
        if self.trigger_type is not None and workflow.trigger.type != self.trigger_type:
            return False
        if self.is_template is not None and workflow.is_template != self.is_template:
            return False
        if (
            self.template_category is not None
            and workflow.template_category != self.template_category
        ):
            return False
        if workflow.is_archived and not self.include_archived:
            return False
        return True


# ---------------------------------------------------------------------------
# Executions


class ActionResult(RentflowModel):
    """Outcome of one action within an execution."""

    index: int
    action_type: str
    status: ActionStatus
    attempts: int = 0
    error_kind: Optional[ErrorKind] = None
    last_error: Optional[str] = None
    output: Optional[Any] = None


class Execution(RentflowModel):
    """Audit record of one workflow run."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    trigger_kind: TriggerKind
    triggered_by: str = SYSTEM_TRIGGERED_BY
    entity_id: Optional[str] = None
    context_snapshot: Dict[str, Any] = Field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    per_action: List[ActionResult] = Field(default_factory=list)
    duration_ms: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None


class FiringKey(RentflowModel):
    """Firing ledger key: one fire per (workflow, entity, window)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    workflow_id: str
    entity_id: str
    window_key: str

    def __str__(self) -> str:
        return f"{self.workflow_id}:{self.entity_id}:{self.window_key}"


class DispatchRequest(RentflowModel):
    """Request for the engine to run a workflow against an entity snapshot."""

    workflow_id: str
    trigger_kind: TriggerKind
    triggered_by: str = SYSTEM_TRIGGERED_BY
    entity_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    trigger: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_manual(self) -> bool:
        return self.trigger_kind == "manual"


class DomainEvent(RentflowModel):
    """Envelope for domain events delivered over a transport."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_name: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    snapshot: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utc_now)

    @property
    def is_status_change(self) -> bool:
        return self.to_status is not None and self.entity_type is not None

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str | bytes) -> "DomainEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)
