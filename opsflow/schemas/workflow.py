from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class FormFieldIn(BaseModel):
    label: str
    type: str = "text"
    options: List[str] = Field(default_factory=list)
    required: bool = False
    placeholder: Optional[str] = None


class StepDefinitionIn(BaseModel):
    step_number: Optional[int] = None
    name: str
    description: Optional[str] = None
    assigned_role: str = "manager"
    assigned_user: Optional[str] = None
    assigned_department: Optional[str] = None
    required_approvals: int = 1
    duration_in_days: int = 1
    is_optional: bool = False
    actions: List[str] = Field(default_factory=list)
    notify_on_complete: List[str] = Field(default_factory=list)
    form_fields: List[FormFieldIn] = Field(default_factory=list)


class TemplateCreate(BaseModel):
    name: str
    description: Optional[str] = None
    category: str = "custom"
    priority: str = "medium"
    department_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    steps: List[StepDefinitionIn]


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    department_id: Optional[str] = None
    is_active: Optional[bool] = None
    tags: Optional[List[str]] = None


class TemplateStepsRevision(BaseModel):
    steps: List[StepDefinitionIn]


class TemplateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str]
    creator_id: str
    department_id: Optional[str]
    category: str
    priority: str
    is_active: bool
    version: int
    previous_version_id: Optional[str]
    steps: List[Dict[str, Any]]
    tags: List[str]
    created_at: datetime
    updated_at: datetime


class RelatedEntityIn(BaseModel):
    entity_type: str = "none"
    entity_id: Optional[str] = None


class InstanceCreate(BaseModel):
    template_id: str
    name: Optional[str] = None
    related_entity: Optional[RelatedEntityIn] = None
    due_date: Optional[datetime] = None
    priority: Optional[str] = None
    department_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    start: bool = False


class VersionedRequest(BaseModel):
    expected_version: Optional[int] = None


class ReasonRequest(VersionedRequest):
    reason: Optional[str] = None


class AdvanceRequest(VersionedRequest):
    comment: Optional[str] = None
    expected_step: Optional[int] = None


class RejectRequest(VersionedRequest):
    reason: str
    expected_step: Optional[int] = None


class AttachmentIn(BaseModel):
    name: str
    path: str
    mime_type: Optional[str] = None
    size: Optional[int] = None


class ProcessStepRequest(VersionedRequest):
    action: str
    comment: Optional[str] = None
    form_data: Dict[str, Any] = Field(default_factory=dict)
    attachments: List[AttachmentIn] = Field(default_factory=list)
    delegate_to: Optional[str] = None
    expected_step: Optional[int] = None


class CommentRequest(BaseModel):
    comment: str


class HistoryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    user_id: str
    step_number: Optional[int]
    details: str
    timestamp: datetime


class InstanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    template_id: Optional[str]
    name: str
    initiator_id: str
    department_id: Optional[str]
    status: str
    priority: str
    current_step: int
    start_date: Optional[datetime]
    completed_date: Optional[datetime]
    due_date: Optional[datetime]
    related_entity_type: str
    related_entity_id: Optional[str]
    steps_data: List[Dict[str, Any]]
    comments: List[Dict[str, Any]]
    tags: List[str]
    is_archived: bool
    version: int
    created_at: datetime
    updated_at: datetime
    history: List[HistoryEntryResponse]

    progress: int
    time_elapsed: int
    time_remaining: Optional[int]
    is_overdue: bool
    current_step_is_overdue: bool


class InstanceListResponse(BaseModel):
    limit: int
    offset: int
    rows: List[InstanceResponse]
