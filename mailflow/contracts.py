"""Core data contracts for mailflow workflows and executions."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .constants import DELAY_UNIT_SECONDS
from .errors import IllegalTransitionError


KNOWN_TRIGGER_TYPES = (
    "welcome",
    "abandoned_cart",
    "birthday",
    "tag_added",
    "custom_date",
    "api_trigger",
    "behavior",
    "purchase",
)

ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "less_than",
    "exists",
    "not_exists",
]
DelayUnit = Literal["minutes", "hours", "days", "weeks"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TriggerCondition(BaseModel):
    """One ``field operator value`` test, joined to the previous one by ``logical_operator``."""

    field: str
    operator: ConditionOperator
    value: Any = None
    logical_operator: Literal["AND", "OR"] = "AND"


class Trigger(BaseModel):
    """Event type plus the conditions that must hold for an execution to start."""

    type: str = "api_trigger"
    name: str = ""
    description: str = ""
    conditions: List[TriggerCondition] = Field(default_factory=list)


class Delay(BaseModel):
    amount: float = Field(ge=0)
    unit: DelayUnit = "minutes"

    def to_timedelta(self) -> timedelta:
        return timedelta(seconds=self.amount * DELAY_UNIT_SECONDS[self.unit])


# ----------------------------------------------------------------------
# Steps


class StepBase(BaseModel):
    """Fields shared by every step variant."""

    id: str
    name: str = ""
    position: int = 0
    next_steps: List[str] = Field(default_factory=list)

    def first_successor(self) -> Optional[str]:
        return self.next_steps[0] if self.next_steps else None

    def outgoing_refs(self) -> List[str]:
        """All step ids this step may hand control to."""
        return list(self.next_steps)


class EmailStep(StepBase):
    type: Literal["email"] = "email"
    template_id: str = ""
    subject: Optional[str] = None
    from_name: Optional[str] = None
    from_email: Optional[str] = None


class DelayStep(StepBase):
    type: Literal["delay"] = "delay"
    delay: Delay


class ConditionStep(StepBase):
    type: Literal["condition"] = "condition"
    conditions: List[TriggerCondition] = Field(default_factory=list)
    true_step_id: Optional[str] = None
    false_step_id: Optional[str] = None

    def outgoing_refs(self) -> List[str]:
        refs = list(self.next_steps)
        refs.extend(r for r in (self.true_step_id, self.false_step_id) if r)
        return refs


class TagActionStep(StepBase):
    type: Literal["tag_action"] = "tag_action"
    action: Literal["add", "remove"] = "add"
    tags: List[str] = Field(default_factory=list)


class WebhookStep(StepBase):
    type: Literal["webhook"] = "webhook"
    url: str
    method: Literal["GET", "POST", "PUT"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)


class SplitTestStep(StepBase):
    type: Literal["split_test"] = "split_test"
    percentage: float = Field(ge=0, le=100)
    variant_a_step_id: str
    variant_b_step_id: str

    def outgoing_refs(self) -> List[str]:
        return list(self.next_steps) + [self.variant_a_step_id, self.variant_b_step_id]


Step = Annotated[
    Union[EmailStep, DelayStep, ConditionStep, TagActionStep, WebhookStep, SplitTestStep],
    Field(discriminator="type"),
]
STEP_TYPES = (EmailStep, DelayStep, ConditionStep, TagActionStep, WebhookStep, SplitTestStep)


# ----------------------------------------------------------------------
# Workflows


class WorkflowStats(BaseModel):
    triggered: int = 0
    completed: int = 0
    failed: int = 0


class WorkflowDraft(BaseModel):
    """Operator-supplied workflow content, before the store assigns identity."""

    name: str = ""
    description: str = ""
    trigger: Optional[Trigger] = None
    steps: List[Step] = Field(default_factory=list)
    is_active: bool = True


class WorkflowDefinition(WorkflowDraft):
    """A stored workflow template."""

    id: str = Field(default_factory=new_id)
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    stats: WorkflowStats = Field(default_factory=WorkflowStats)

    def get_step(self, step_id: Optional[str]) -> Optional[StepBase]:
        if not step_id:
            return None
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def first_step_id(self) -> Optional[str]:
        return self.steps[0].id if self.steps else None


STRUCTURAL_FIELDS = ("trigger", "steps")


# ----------------------------------------------------------------------
# Executions


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED})

ALLOWED_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.PENDING: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.PAUSED,
        ExecutionStatus.FAILED,
    },
    ExecutionStatus.RUNNING: {
        ExecutionStatus.PENDING,
        ExecutionStatus.PAUSED,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
    },
    ExecutionStatus.PAUSED: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.PENDING,
        ExecutionStatus.FAILED,
    },
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
}


class ExecutionLogEntry(BaseModel):
    step_id: str
    step_name: str = ""
    status: Literal["started", "completed", "failed", "skipped", "retrying"]
    timestamp: datetime = Field(default_factory=utcnow)
    duration_ms: Optional[float] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class WorkflowExecution(BaseModel):
    """One subscriber's traversal of a workflow definition."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    workflow_version: int = 1
    subscriber_id: str
    subscriber_data: Dict[str, Any] = Field(default_factory=dict)
    current_step_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    execution_log: List[ExecutionLogEntry] = Field(default_factory=list)
    scheduled_at: Optional[datetime] = None
    resume_at: Optional[datetime] = None
    awaiting_retry: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def recipient(self) -> str:
        email = self.subscriber_data.get("email")
        return email if isinstance(email, str) and email else self.subscriber_id

    def transition(
        self,
        status: ExecutionStatus,
        now: Optional[datetime] = None,
        *,
        scheduled_at: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> None:
        """Move to ``status``, enforcing the allowed transition table.

        Re-entering the current non-terminal status is permitted so a pending
        execution can be rescheduled.
        """
        if self.status != status or self.is_terminal:
            if status not in ALLOWED_TRANSITIONS[self.status]:
                raise IllegalTransitionError(
                    f"Execution {self.id}: {self.status.value} -> {status.value} is not allowed"
                )
        self.status = status
        self.updated_at = now or utcnow()
        self.scheduled_at = scheduled_at if status == ExecutionStatus.PENDING else None
        if status in TERMINAL_STATUSES:
            self.completed_at = self.updated_at
            self.awaiting_retry = None
            self.resume_at = None
            if error is not None:
                self.error = error

    def log(
        self,
        step: StepBase,
        status: str,
        now: Optional[datetime] = None,
        duration_ms: Optional[float] = None,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> ExecutionLogEntry:
        entry = ExecutionLogEntry(
            step_id=step.id,
            step_name=step.name,
            status=status,
            timestamp=now or utcnow(),
            duration_ms=duration_ms,
            data=data or {},
            error=error,
        )
        self.execution_log.append(entry)
        self.updated_at = entry.timestamp
        return entry


class TriggerEvent(BaseModel):
    """External event that may start executions of matching workflows."""

    event_id: str = Field(default_factory=new_id)
    event_type: str
    subscriber_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "TriggerEvent":
        return cls.model_validate_json(data)


# ----------------------------------------------------------------------
# Analytics


class WorkflowSummary(BaseModel):
    id: str
    name: str
    is_active: bool


class AnalyticsStats(WorkflowStats):
    avg_completion_minutes: int = 0


class WorkflowAnalytics(BaseModel):
    workflow: WorkflowSummary
    stats: AnalyticsStats
    recent_executions: List[WorkflowExecution] = Field(default_factory=list)
