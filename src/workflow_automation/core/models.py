"""Domain models: rules, trigger conditions, contexts and executions."""

import hashlib
import json
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


class TriggerEvent(Enum):
    """Event kinds a rule can be attached to."""
    CONTRACT_DATE_OFFSET = "contract_date_offset"
    CLOSING_DATE_OFFSET = "closing_date_offset"
    STATUS_CHANGE = "status_change"
    TASK_COMPLETED = "task_completed"
    DOCUMENT_UPLOADED = "document_uploaded"
    TIME_BASED = "time_based"


class ExecutionStatus(Enum):
    """Workflow execution status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class AuditStatus(Enum):
    """Outcome recorded on an audit entry."""
    SUCCESS = "success"
    FAILED = "failed"


# ==================== Trigger Conditions ====================

class StatusChangeCondition(BaseModel):
    """Transaction moved between statuses. Absent fields are wildcards."""
    type: Literal["status_change"] = "status_change"
    from_status: Optional[str] = None
    to_status: Optional[str] = None


class _DateOffsetCondition(BaseModel):
    offset_days: int = Field(default=0)
    offset_type: Literal["before", "after"] = "after"


class ContractDateOffsetCondition(_DateOffsetCondition):
    """N days before/after the transaction was created."""
    type: Literal["contract_date_offset"] = "contract_date_offset"


class ClosingDateOffsetCondition(_DateOffsetCondition):
    """N days before/after the closing date."""
    type: Literal["closing_date_offset"] = "closing_date_offset"


class TaskCompletedCondition(BaseModel):
    """A task on the transaction was completed."""
    type: Literal["task_completed"] = "task_completed"
    task_title_contains: Optional[str] = None
    task_priority: Optional[str] = None


class DocumentUploadedCondition(BaseModel):
    """A document was uploaded to the transaction."""
    type: Literal["document_uploaded"] = "document_uploaded"
    document_type: Optional[str] = None


class TimeBasedCondition(BaseModel):
    """Day-of-week and/or time-of-day window. Sunday = 0."""
    type: Literal["time_based"] = "time_based"
    days_of_week: Optional[list[Annotated[int, Field(ge=0, le=6)]]] = None
    time_of_day: Optional[str] = None

    @field_validator("time_of_day")
    @classmethod
    def _check_time_of_day(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        hours, sep, minutes = value.partition(":")
        if not sep or not hours.isdigit() or not minutes.isdigit():
            raise ValueError(f"time_of_day must be HH:MM, got {value!r}")
        if not (0 <= int(hours) <= 23 and 0 <= int(minutes) <= 59):
            raise ValueError(f"time_of_day out of range: {value!r}")
        return value

    def target_time(self) -> Optional[tuple[int, int]]:
        if self.time_of_day is None:
            return None
        hours, _, minutes = self.time_of_day.partition(":")
        return int(hours), int(minutes)


TriggerCondition = Annotated[
    Union[
        StatusChangeCondition,
        ContractDateOffsetCondition,
        ClosingDateOffsetCondition,
        TaskCompletedCondition,
        DocumentUploadedCondition,
        TimeBasedCondition,
    ],
    Field(discriminator="type"),
]

CONDITION_MODELS = (
    StatusChangeCondition,
    ContractDateOffsetCondition,
    ClosingDateOffsetCondition,
    TaskCompletedCondition,
    DocumentUploadedCondition,
    TimeBasedCondition,
)

_condition_adapter: TypeAdapter = TypeAdapter(TriggerCondition)


def _summarize(exc: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'value'}: {err['msg']}"
        for err in exc.errors()
    )


def parse_condition(raw: Any, rule_id: Optional[str] = None) -> Any:
    """
    Parse a stored trigger condition into its typed model.

    Accepts a model instance, a mapping, or a JSON string.
    Raises ValidationError for anything else.
    """
    if isinstance(raw, CONDITION_MODELS):
        return raw

    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Malformed trigger_condition JSON: {e}", rule_id=rule_id)

    if not isinstance(raw, Mapping):
        raise ValidationError(
            f"trigger_condition must be an object, got {type(raw).__name__}",
            rule_id=rule_id,
        )

    try:
        return _condition_adapter.validate_python(dict(raw))
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid trigger_condition: {_summarize(e)}", rule_id=rule_id)


# ==================== Rules & Templates ====================

class WorkflowTemplate(BaseModel):
    """Predefined set of tasks instantiated on a transaction."""
    id: str
    name: str
    description: str = ""
    tasks: list[dict[str, Any]] = Field(default_factory=list)


class AutomationRule(BaseModel):
    """A stored (condition -> template) mapping."""
    id: str
    name: str
    trigger_event: TriggerEvent
    trigger_condition: TriggerCondition
    template_id: str
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("trigger_condition", mode="before")
    @classmethod
    def _decode_condition(cls, value: Any) -> Any:
        # Rows written by older clients store the condition as a JSON string
        if isinstance(value, (str, bytes)):
            return json.loads(value)
        return value

    @model_validator(mode="after")
    def _event_matches_condition(self) -> "AutomationRule":
        if self.trigger_event.value != self.trigger_condition.type:
            raise ValueError(
                f"trigger_event {self.trigger_event.value!r} does not match "
                f"condition type {self.trigger_condition.type!r}"
            )
        return self

    @classmethod
    def from_record(cls, record: Any) -> "AutomationRule":
        """Normalize a rule store row. Raises ValidationError on malformed rows."""
        if isinstance(record, cls):
            return record

        rule_id = record.get("id") if isinstance(record, Mapping) else None
        try:
            return cls.model_validate(record)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid automation rule {rule_id}: {_summarize(e)}",
                rule_id=rule_id,
            )


# ==================== Trigger Context ====================

# Keys that change on every sweep and must not affect the dedup fingerprint
VOLATILE_TRIGGER_KEYS = frozenset({"current_time"})


def _json_safe(data: Any) -> Any:
    return json.loads(json.dumps(data, default=str))


@dataclass
class TriggerContext:
    """Event snapshot passed into rule evaluation."""
    transaction_id: str
    transaction: dict[str, Any]
    trigger_data: dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=datetime.now)

    @property
    def trigger_type(self) -> Optional[str]:
        return self.trigger_data.get("trigger_type")

    def fingerprint(self) -> str:
        """
        Stable hash of the logical occurrence.

        With an upstream `event_id` the event itself is the occurrence, so
        redeliveries collapse on any day. Without one, the payload is bucketed
        by calendar day and identical transitions on the same day are treated
        as one.
        """
        payload = {
            key: value
            for key, value in self.trigger_data.items()
            if key not in VOLATILE_TRIGGER_KEYS
        }
        occurrence: dict[str, Any] = {"trigger_data": payload}
        if not payload.get("event_id"):
            occurrence["occurred_on"] = self.occurred_at.date().isoformat()
        content = json.dumps(occurrence, sort_keys=True, default=str)
        return hashlib.sha256(content.encode()).hexdigest()[:16]

    def to_metadata(self) -> dict[str, Any]:
        """Serialize for execution metadata (the transaction is reloaded on retry)."""
        return {
            "transaction_id": self.transaction_id,
            "trigger_data": _json_safe(self.trigger_data),
            "user_id": self.user_id,
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_metadata(
        cls,
        data: Optional[Mapping[str, Any]],
        transaction: dict[str, Any],
        transaction_id: str,
    ) -> "TriggerContext":
        data = data or {}
        if "trigger_data" in data:
            trigger_data = dict(data.get("trigger_data") or {})
            user_id = data.get("user_id")
            occurred_at = data.get("occurred_at")
        else:
            # Legacy rows stored the bare trigger payload
            trigger_data = dict(data)
            user_id = None
            occurred_at = None

        return cls(
            transaction_id=transaction_id,
            transaction=transaction,
            trigger_data=trigger_data,
            user_id=user_id,
            occurred_at=datetime.fromisoformat(occurred_at) if occurred_at else datetime.now(),
        )


# ==================== Execution Records ====================

@dataclass
class WorkflowExecution:
    """Tracked attempt-and-retry record for one rule on one transaction."""
    id: str
    rule_id: str
    transaction_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    retry_count: int = 0
    error_message: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    dedup_key: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    @classmethod
    def for_rule(
        cls,
        rule: AutomationRule,
        context: TriggerContext,
        dedup: bool = True,
    ) -> "WorkflowExecution":
        dedup_key = None
        if dedup:
            dedup_key = f"{rule.id}:{context.transaction_id}:{context.fingerprint()}"

        return cls(
            id=f"exec_{uuid.uuid4().hex[:12]}",
            rule_id=rule.id,
            transaction_id=context.transaction_id,
            metadata={
                "rule_name": rule.name,
                "trigger_context": context.to_metadata(),
            },
            dedup_key=dedup_key,
        )

    @classmethod
    def placeholder(cls, execution_id: str) -> "WorkflowExecution":
        """Stand-in for a vanished execution so errors route through one path."""
        return cls(
            id=execution_id,
            rule_id="",
            transaction_id="",
            status=ExecutionStatus.RUNNING,
        )


@dataclass
class AuditEntry:
    """Audit trail record."""
    id: int
    execution_id: str
    action: str
    status: str
    details: dict[str, Any]
    error_message: Optional[str]
    created_at: float


@dataclass
class Notification:
    """In-app notification row."""
    id: int
    user_id: str
    transaction_id: str
    message: str
    is_read: bool
    created_at: float


@dataclass
class RetryJob:
    """Persisted retry request."""
    job_id: str
    execution_id: str
    rule_id: str
    run_at: float
    attempt: int
    created_at: float = field(default_factory=time.time)
