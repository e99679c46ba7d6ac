import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from opsflow.core.authorization import Role, actor_role, can_act_on_step, require_role
from opsflow.core.errors import PersistenceError
from opsflow.deps.auth import Actor, require_auth
from opsflow.models.workflow import (
    AssignedRole,
    FormFieldType,
    HistoryAction,
    Priority,
    RelatedEntityType,
    StepActionKind,
    StepStatus,
    TemplateCategory,
    WorkflowStatus,
)
from opsflow.models.workflow_instance import WorkflowInstance
from opsflow.schemas.workflow import (
    AdvanceRequest,
    CommentRequest,
    InstanceCreate,
    InstanceListResponse,
    InstanceResponse,
    ProcessStepRequest,
    ReasonRequest,
    RejectRequest,
    TemplateCreate,
    TemplateResponse,
    TemplateStepsRevision,
    TemplateUpdate,
    VersionedRequest,
)
from opsflow.services import projections, template_store, workflow_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["Workflows"])


def _persistence_retries() -> int:
    v = os.getenv("WORKFLOW_PERSISTENCE_RETRIES")
    if v is None or v == "":
        return 2
    try:
        return max(0, int(v))
    except ValueError:
        return 2


def _run(command: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a service command, retrying storage failures a bounded number of times."""
    attempts = _persistence_retries() + 1
    for attempt in range(1, attempts + 1):
        try:
            return command(*args, **kwargs)
        except PersistenceError:
            if attempt >= attempts:
                raise
            logger.warning(
                "Retrying workflow command after persistence failure",
                extra={"command": command.__name__, "attempt": attempt},
            )


def _viewer(actor: Actor) -> Dict[str, Optional[str]]:
    return {"user_id": actor.user_id, "role": actor.role, "department_id": actor.department_id}


def _is_manager(actor: Actor) -> bool:
    return actor_role(actor) in {Role.ADMIN, Role.MANAGER, Role.DEPARTMENT_HEAD}


def _instance_response(instance: WorkflowInstance, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    data = {
        "id": instance.id,
        "template_id": instance.template_id,
        "name": instance.name,
        "initiator_id": instance.initiator_id,
        "department_id": instance.department_id,
        "status": instance.status,
        "priority": instance.priority,
        "current_step": instance.current_step,
        "start_date": instance.start_date,
        "completed_date": instance.completed_date,
        "due_date": instance.due_date,
        "related_entity_type": instance.related_entity_type,
        "related_entity_id": instance.related_entity_id,
        "steps_data": list(instance.steps_data or []),
        "comments": list(instance.comments or []),
        "tags": list(instance.tags or []),
        "is_archived": instance.is_archived,
        "version": instance.version,
        "created_at": instance.created_at,
        "updated_at": instance.updated_at,
        "history": [
            {
                "id": h.id,
                "action": h.action,
                "user_id": h.user_id,
                "step_number": h.step_number,
                "details": h.details,
                "timestamp": h.timestamp,
            }
            for h in instance.history
        ],
    }
    data.update(projections.snapshot(instance, now))
    return data


def _load_visible(instance_id: str, actor: Actor) -> WorkflowInstance:
    instance = workflow_service.get_instance(instance_id)
    if not workflow_service.is_visible_to(instance, _viewer(actor)):
        raise HTTPException(status_code=403, detail="Forbidden for this workflow")
    return instance


def _authorize_step_action(instance_id: str, actor: Actor) -> WorkflowInstance:
    instance = workflow_service.get_instance(instance_id)
    current = next(
        (s for s in instance.step_states() if s.step_number == instance.current_step),
        None,
    )
    # Non-active instances fall through so the state machine reports the status error.
    if instance.status == WorkflowStatus.ACTIVE.value and not can_act_on_step(actor, current):
        raise HTTPException(status_code=403, detail="Not assigned to the current step")
    return instance


def _authorize_admin_action(instance_id: str, actor: Actor) -> WorkflowInstance:
    instance = workflow_service.get_instance(instance_id)
    if instance.initiator_id != actor.user_id and not _is_manager(actor):
        raise HTTPException(status_code=403, detail="Only the initiator or a manager can do this")
    return instance


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


@router.get("/templates", response_model=list[TemplateResponse])
def list_templates(
    category: Optional[str] = None,
    department_id: Optional[str] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=1_000_000),
    actor: Actor = Depends(require_auth),
):
    return template_store.list_templates(
        category=category,
        department_id=department_id,
        is_active=is_active,
        search=search,
        visible_to=None if _is_manager(actor) else _viewer(actor),
        limit=limit,
        offset=offset,
    )


@router.get("/templates/{template_id}", response_model=TemplateResponse)
def get_template(template_id: str, actor: Actor = Depends(require_auth)):
    template = template_store.get_template(template_id)
    if not _is_manager(actor) and not template_store.is_visible_to(template, _viewer(actor)):
        raise HTTPException(status_code=403, detail="Forbidden for this template")
    return template


@router.post("/templates", response_model=TemplateResponse, status_code=201)
def create_template(payload: TemplateCreate, actor: Actor = Depends(require_role(Role.MANAGER))):
    return _run(
        template_store.create_template,
        name=payload.name,
        creator_id=actor.user_id,
        steps=payload.steps,
        description=payload.description,
        category=payload.category,
        priority=payload.priority,
        department_id=payload.department_id if payload.department_id is not None else actor.department_id,
        tags=payload.tags,
    )


@router.patch("/templates/{template_id}", response_model=TemplateResponse)
def update_template(
    template_id: str,
    payload: TemplateUpdate,
    _actor: Actor = Depends(require_role(Role.MANAGER)),
):
    return _run(template_store.update_template, template_id, payload.model_dump(exclude_unset=True))


@router.put("/templates/{template_id}/steps", response_model=TemplateResponse)
def revise_template_steps(
    template_id: str,
    payload: TemplateStepsRevision,
    actor: Actor = Depends(require_role(Role.MANAGER)),
):
    return _run(template_store.revise_template_steps, template_id, payload.steps, actor_id=actor.user_id)


@router.delete("/templates/{template_id}", status_code=204)
def delete_template(template_id: str, _actor: Actor = Depends(require_role(Role.MANAGER))):
    _run(template_store.delete_template, template_id)


# ---------------------------------------------------------------------------
# Instances
# ---------------------------------------------------------------------------


@router.post("/instances", response_model=InstanceResponse, status_code=201)
def create_instance(payload: InstanceCreate, actor: Actor = Depends(require_auth)):
    instance = _run(
        workflow_service.create_instance,
        payload.template_id,
        actor.user_id,
        name=payload.name,
        related_entity=None if payload.related_entity is None else payload.related_entity.model_dump(),
        due_date=payload.due_date,
        priority=payload.priority,
        department_id=payload.department_id if payload.department_id is not None else actor.department_id,
        tags=payload.tags,
    )
    if payload.start:
        instance = _run(
            workflow_service.start_instance,
            instance.id,
            actor.user_id,
            expected_version=instance.version,
        )
    return _instance_response(instance)


@router.get("/instances", response_model=InstanceListResponse)
def list_instances(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    entity_type: Optional[str] = None,
    search: Optional[str] = None,
    assigned_to: Optional[str] = None,
    department_id: Optional[str] = None,
    template_id: Optional[str] = None,
    initiator_id: Optional[str] = None,
    include_archived: bool = False,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=1_000_000),
    actor: Actor = Depends(require_auth),
):
    rows = workflow_service.list_instances(
        status=status,
        priority=priority,
        entity_type=entity_type,
        search=search,
        assigned_to=assigned_to,
        department_id=department_id,
        template_id=template_id,
        initiator_id=initiator_id,
        include_archived=include_archived,
        visible_to=None if actor_role(actor) is Role.ADMIN else _viewer(actor),
        limit=limit,
        offset=offset,
    )
    now = datetime.now(timezone.utc)
    return {
        "limit": int(limit),
        "offset": int(offset),
        "rows": [_instance_response(r, now) for r in rows],
    }


@router.get("/instances/{instance_id}", response_model=InstanceResponse)
def get_instance(instance_id: str, actor: Actor = Depends(require_auth)):
    return _instance_response(_load_visible(instance_id, actor))


@router.post("/instances/{instance_id}/start", response_model=InstanceResponse)
def start_instance(
    instance_id: str,
    payload: Optional[VersionedRequest] = None,
    actor: Actor = Depends(require_auth),
):
    _authorize_admin_action(instance_id, actor)
    instance = _run(
        workflow_service.start_instance,
        instance_id,
        actor.user_id,
        expected_version=None if payload is None else payload.expected_version,
    )
    return _instance_response(instance)


@router.post("/instances/{instance_id}/advance", response_model=InstanceResponse)
def advance_step(
    instance_id: str,
    payload: Optional[AdvanceRequest] = None,
    actor: Actor = Depends(require_auth),
):
    payload = payload or AdvanceRequest()
    loaded = _authorize_step_action(instance_id, actor)
    # Pin the step that was authorized so a retried request cannot advance twice.
    expected_step = payload.expected_step if payload.expected_step is not None else loaded.current_step
    instance = _run(
        workflow_service.advance_step,
        instance_id,
        actor.user_id,
        payload.comment,
        expected_step=expected_step,
        expected_version=payload.expected_version,
    )
    return _instance_response(instance)


@router.post("/instances/{instance_id}/reject", response_model=InstanceResponse)
def reject_step(instance_id: str, payload: RejectRequest, actor: Actor = Depends(require_auth)):
    loaded = _authorize_step_action(instance_id, actor)
    expected_step = payload.expected_step if payload.expected_step is not None else loaded.current_step
    instance = _run(
        workflow_service.reject_step,
        instance_id,
        actor.user_id,
        payload.reason,
        expected_step=expected_step,
        expected_version=payload.expected_version,
    )
    return _instance_response(instance)


@router.post("/instances/{instance_id}/process", response_model=InstanceResponse)
def process_step_action(instance_id: str, payload: ProcessStepRequest, actor: Actor = Depends(require_auth)):
    loaded = _authorize_step_action(instance_id, actor)
    expected_step = payload.expected_step if payload.expected_step is not None else loaded.current_step
    instance = _run(
        workflow_service.process_step_action,
        instance_id,
        actor.user_id,
        payload.action,
        comment=payload.comment,
        form_data=payload.form_data,
        attachments=[a.model_dump() for a in payload.attachments],
        delegate_to=payload.delegate_to,
        expected_step=expected_step,
        expected_version=payload.expected_version,
    )
    return _instance_response(instance)


@router.post("/instances/{instance_id}/pause", response_model=InstanceResponse)
def pause_instance(
    instance_id: str,
    payload: Optional[ReasonRequest] = None,
    actor: Actor = Depends(require_auth),
):
    payload = payload or ReasonRequest()
    _authorize_admin_action(instance_id, actor)
    instance = _run(
        workflow_service.pause_instance,
        instance_id,
        actor.user_id,
        payload.reason,
        expected_version=payload.expected_version,
    )
    return _instance_response(instance)


@router.post("/instances/{instance_id}/resume", response_model=InstanceResponse)
def resume_instance(
    instance_id: str,
    payload: Optional[VersionedRequest] = None,
    actor: Actor = Depends(require_auth),
):
    _authorize_admin_action(instance_id, actor)
    instance = _run(
        workflow_service.resume_instance,
        instance_id,
        actor.user_id,
        expected_version=None if payload is None else payload.expected_version,
    )
    return _instance_response(instance)


@router.post("/instances/{instance_id}/cancel", response_model=InstanceResponse)
def cancel_instance(
    instance_id: str,
    payload: Optional[ReasonRequest] = None,
    actor: Actor = Depends(require_auth),
):
    payload = payload or ReasonRequest()
    _authorize_admin_action(instance_id, actor)
    instance = _run(
        workflow_service.cancel_instance,
        instance_id,
        actor.user_id,
        payload.reason,
        expected_version=payload.expected_version,
    )
    return _instance_response(instance)


@router.post("/instances/{instance_id}/comments", response_model=InstanceResponse)
def add_comment(instance_id: str, payload: CommentRequest, actor: Actor = Depends(require_auth)):
    _load_visible(instance_id, actor)
    instance = _run(workflow_service.add_comment, instance_id, actor.user_id, payload.comment)
    return _instance_response(instance)


@router.get("/info")
def workflow_info(_actor: Actor = Depends(require_auth)):
    return {
        "categories": [c.value for c in TemplateCategory],
        "priorities": [p.value for p in Priority],
        "assigned_roles": [r.value for r in AssignedRole],
        "step_actions": [a.value for a in StepActionKind],
        "form_field_types": [t.value for t in FormFieldType],
        "workflow_statuses": [s.value for s in WorkflowStatus],
        "step_statuses": [s.value for s in StepStatus],
        "history_actions": [h.value for h in HistoryAction],
        "related_entity_types": [e.value for e in RelatedEntityType],
    }
