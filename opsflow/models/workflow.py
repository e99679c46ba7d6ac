"""Workflow enums and the value structs embedded in templates and instances.

Templates store a list of ``StepDefinition`` and instances a list of
``StepState``; both live in JSON columns and are only mutated by the state
machine in ``opsflow.services.workflow_service``.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class TemplateCategory(str, Enum):
    APPROVAL = "approval"
    ONBOARDING = "onboarding"
    OFFBOARDING = "offboarding"
    PROCUREMENT = "procurement"
    REVIEW = "review"
    CUSTOM = "custom"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class AssignedRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"
    DEPARTMENT_HEAD = "department_head"
    SPECIFIC_USER = "specific_user"


class StepActionKind(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CHANGES = "request_changes"
    DELEGATE = "delegate"
    COMMENT = "comment"


class FormFieldType(str, Enum):
    TEXT = "text"
    TEXTAREA = "textarea"
    SELECT = "select"
    CHECKBOX = "checkbox"
    RADIO = "radio"
    DATE = "date"
    FILE = "file"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED.value, WorkflowStatus.CANCELLED.value, WorkflowStatus.REJECTED.value}
)


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    REJECTED = "rejected"


class HistoryAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    STEP_COMPLETED = "step_completed"
    STEP_REJECTED = "step_rejected"
    REASSIGNED = "reassigned"
    CANCELLED = "cancelled"
    REACTIVATED = "reactivated"
    COMPLETED = "completed"
    REJECTED = "rejected"


class RelatedEntityType(str, Enum):
    TASK = "task"
    DOCUMENT = "document"
    USER = "user"
    DEPARTMENT = "department"
    GRIEVANCE = "grievance"
    NONE = "none"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are treated as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dt_to_json(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return None if value is None else value.isoformat()


def _dt_from_json(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value)))


@dataclass
class FormField:
    label: str
    type: str = FormFieldType.TEXT.value
    options: List[str] = field(default_factory=list)
    required: bool = False
    placeholder: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FormField":
        return cls(
            label=str(data.get("label") or ""),
            type=str(data.get("type") or FormFieldType.TEXT.value),
            options=[str(o) for o in (data.get("options") or [])],
            required=bool(data.get("required", False)),
            placeholder=data.get("placeholder"),
        )


@dataclass
class StepDefinition:
    step_number: int
    name: str
    description: Optional[str] = None
    assigned_role: str = AssignedRole.MANAGER.value
    assigned_user: Optional[str] = None
    assigned_department: Optional[str] = None
    required_approvals: int = 1
    duration_in_days: int = 1
    is_optional: bool = False
    actions: List[str] = field(default_factory=list)
    notify_on_complete: List[str] = field(default_factory=list)
    form_fields: List[FormField] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepDefinition":
        return cls(
            step_number=int(data["step_number"]),
            name=str(data["name"]),
            description=data.get("description"),
            assigned_role=str(data.get("assigned_role") or AssignedRole.MANAGER.value),
            assigned_user=data.get("assigned_user"),
            assigned_department=data.get("assigned_department"),
            required_approvals=int(data.get("required_approvals", 1)),
            duration_in_days=int(data.get("duration_in_days", 1)),
            is_optional=bool(data.get("is_optional", False)),
            actions=[str(a) for a in (data.get("actions") or [])],
            notify_on_complete=[str(u) for u in (data.get("notify_on_complete") or [])],
            form_fields=[FormField.from_dict(f) for f in (data.get("form_fields") or [])],
        )


@dataclass
class Attachment:
    name: str
    path: str
    mime_type: Optional[str] = None
    size: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        size = data.get("size")
        return cls(
            name=str(data.get("name") or ""),
            path=str(data.get("path") or ""),
            mime_type=data.get("mime_type"),
            size=None if size is None else int(size),
        )


@dataclass
class StepAction:
    action: str
    user_id: str
    timestamp: datetime
    comment: str = ""
    attachments: List[Attachment] = field(default_factory=list)
    delegated_to: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = _dt_to_json(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepAction":
        return cls(
            action=str(data["action"]),
            user_id=str(data["user_id"]),
            timestamp=_dt_from_json(data.get("timestamp")),
            comment=str(data.get("comment") or ""),
            attachments=[Attachment.from_dict(a) for a in (data.get("attachments") or [])],
            delegated_to=data.get("delegated_to"),
        )


@dataclass
class StepState:
    """Per-instance snapshot of one template step."""

    step_number: int
    name: str
    description: Optional[str] = None
    status: str = StepStatus.PENDING.value
    assigned_to: Optional[str] = None
    assigned_role: str = AssignedRole.MANAGER.value
    assigned_department: Optional[str] = None
    required_approvals: int = 1
    duration_in_days: int = 1
    is_optional: bool = False
    allowed_actions: List[str] = field(default_factory=list)
    notify_on_complete: List[str] = field(default_factory=list)
    form_fields: List[FormField] = field(default_factory=list)
    start_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    actions: List[StepAction] = field(default_factory=list)
    form_data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_definition(cls, definition: StepDefinition) -> "StepState":
        return cls(
            step_number=definition.step_number,
            name=definition.name,
            description=definition.description,
            assigned_to=definition.assigned_user,
            assigned_role=definition.assigned_role,
            assigned_department=definition.assigned_department,
            required_approvals=definition.required_approvals,
            duration_in_days=definition.duration_in_days,
            is_optional=definition.is_optional,
            allowed_actions=list(definition.actions),
            notify_on_complete=list(definition.notify_on_complete),
            form_fields=[FormField(**asdict(f)) for f in definition.form_fields],
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["start_date"] = _dt_to_json(self.start_date)
        data["completed_date"] = _dt_to_json(self.completed_date)
        data["due_date"] = _dt_to_json(self.due_date)
        data["actions"] = [a.to_dict() for a in self.actions]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepState":
        return cls(
            step_number=int(data["step_number"]),
            name=str(data["name"]),
            description=data.get("description"),
            status=str(data.get("status") or StepStatus.PENDING.value),
            assigned_to=data.get("assigned_to"),
            assigned_role=str(data.get("assigned_role") or AssignedRole.MANAGER.value),
            assigned_department=data.get("assigned_department"),
            required_approvals=int(data.get("required_approvals", 1)),
            duration_in_days=int(data.get("duration_in_days", 1)),
            is_optional=bool(data.get("is_optional", False)),
            allowed_actions=[str(a) for a in (data.get("allowed_actions") or [])],
            notify_on_complete=[str(u) for u in (data.get("notify_on_complete") or [])],
            form_fields=[FormField.from_dict(f) for f in (data.get("form_fields") or [])],
            start_date=_dt_from_json(data.get("start_date")),
            completed_date=_dt_from_json(data.get("completed_date")),
            due_date=_dt_from_json(data.get("due_date")),
            actions=[StepAction.from_dict(a) for a in (data.get("actions") or [])],
            form_data=dict(data.get("form_data") or {}),
        )


@dataclass
class InstanceComment:
    user_id: str
    comment: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "comment": self.comment,
            "timestamp": _dt_to_json(self.timestamp),
        }
