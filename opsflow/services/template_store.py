import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from opsflow.core.errors import NotFoundError, PersistenceError, TemplateInUseError, ValidationError
from opsflow.database import SessionLocal
from opsflow.models.workflow import (
    TERMINAL_STATUSES,
    AssignedRole,
    FormField,
    FormFieldType,
    Priority,
    StepActionKind,
    StepDefinition,
    TemplateCategory,
)
from opsflow.models.workflow_instance import WorkflowInstance
from opsflow.models.workflow_template import WorkflowTemplate

logger = logging.getLogger(__name__)

_CATEGORIES = {c.value for c in TemplateCategory}
_PRIORITIES = {p.value for p in Priority}
_ROLES = {r.value for r in AssignedRole}
_ACTIONS = {a.value for a in StepActionKind}
_FIELD_TYPES = {t.value for t in FormFieldType}

_METADATA_FIELDS = ("name", "description", "category", "priority", "department_id", "is_active", "tags")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate_name(name: Any) -> str:
    name = str(name or "").strip()
    if len(name) < 3:
        raise ValidationError("Name must be at least 3 characters")
    if len(name) > 100:
        raise ValidationError("Name cannot exceed 100 characters")
    return name


def _validate_description(description: Any) -> Optional[str]:
    if description is None:
        return None
    description = str(description).strip()
    if len(description) > 500:
        raise ValidationError("Description cannot exceed 500 characters")
    return description or None


def _validate_choice(value: Any, allowed: set, label: str) -> str:
    value = str(value)
    if value not in allowed:
        raise ValidationError(f"Invalid {label}: {value}")
    return value


def _as_dict(step: Any) -> Dict[str, Any]:
    if isinstance(step, StepDefinition):
        return step.to_dict()
    if hasattr(step, "model_dump"):
        return step.model_dump()
    return dict(step)


def build_steps(raw_steps: Iterable[Any]) -> List[StepDefinition]:
    """Validate raw step payloads and return definitions in traversal order.

    Steps without a step_number are numbered by position (1-based).
    """
    raw = [_as_dict(s) for s in (raw_steps or [])]
    if not raw:
        raise ValidationError("A workflow template needs at least one step")

    steps: List[StepDefinition] = []
    seen = set()

    for index, data in enumerate(raw):
        label = f"Step {index + 1}"

        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError(f"{label} is missing a name")

        number = data.get("step_number")
        number = index + 1 if number is None else int(number)
        if number < 1:
            raise ValidationError(f"{label} has invalid step_number {number}")
        if number in seen:
            raise ValidationError(f"Duplicate step_number {number}")
        seen.add(number)

        role = _validate_choice(
            data.get("assigned_role") or AssignedRole.MANAGER.value, _ROLES, f"{label} assigned_role"
        )
        if role == AssignedRole.SPECIFIC_USER.value and not data.get("assigned_user"):
            raise ValidationError(f"{label} is assigned to a specific user but names none")

        required_approvals = data.get("required_approvals")
        required_approvals = 1 if required_approvals is None else int(required_approvals)
        if required_approvals < 1:
            raise ValidationError(f"{label} required_approvals must be at least 1")

        duration = data.get("duration_in_days", 1)
        duration = 1 if duration is None else int(duration)
        if duration < 0:
            raise ValidationError(f"{label} duration_in_days cannot be negative")

        actions = []
        for action in data.get("actions") or []:
            action = _validate_choice(action, _ACTIONS, f"{label} action")
            if action not in actions:
                actions.append(action)

        form_fields = []
        for f in data.get("form_fields") or []:
            field = FormField.from_dict(_as_dict(f))
            if not field.label:
                raise ValidationError(f"{label} has a form field without a label")
            _validate_choice(field.type, _FIELD_TYPES, f"{label} form field type")
            form_fields.append(field)

        steps.append(
            StepDefinition(
                step_number=number,
                name=name,
                description=data.get("description"),
                assigned_role=role,
                assigned_user=None if data.get("assigned_user") is None else str(data["assigned_user"]),
                assigned_department=(
                    None if data.get("assigned_department") is None else str(data["assigned_department"])
                ),
                required_approvals=required_approvals,
                duration_in_days=duration,
                is_optional=bool(data.get("is_optional", False)),
                actions=actions,
                notify_on_complete=[str(u) for u in (data.get("notify_on_complete") or [])],
                form_fields=form_fields,
            )
        )

    steps.sort(key=lambda s: s.step_number)
    return steps


def _get_template(db: Session, template_id: str) -> WorkflowTemplate:
    template = db.query(WorkflowTemplate).filter_by(id=str(template_id)).first()
    if template is None:
        raise NotFoundError("Workflow template", str(template_id))
    return template


def _count_instances(db: Session, template_id: str, *, open_only: bool) -> int:
    q = db.query(WorkflowInstance).filter(WorkflowInstance.template_id == str(template_id))
    if open_only:
        q = q.filter(WorkflowInstance.status.notin_(sorted(TERMINAL_STATUSES)))
    return q.count()


def _finish(db: Session, owns_db: bool) -> None:
    try:
        db.flush()
        if owns_db:
            db.commit()
    except SQLAlchemyError as exc:
        logger.exception("Workflow template write failed")
        raise PersistenceError("Failed to persist workflow template") from exc


def create_template(
    *,
    name: str,
    creator_id: str,
    steps: Iterable[Any],
    description: Optional[str] = None,
    category: str = TemplateCategory.CUSTOM.value,
    priority: str = Priority.MEDIUM.value,
    department_id: Optional[str] = None,
    tags: Optional[List[str]] = None,
    db: Optional[Session] = None,
) -> WorkflowTemplate:
    """
    If db is provided, this function will NOT commit/close. Caller owns the transaction.
    If db is None, this function manages its own session + commit.
    """
    template = WorkflowTemplate(
        name=_validate_name(name),
        description=_validate_description(description),
        creator_id=str(creator_id),
        department_id=None if department_id is None else str(department_id),
        category=_validate_choice(category or TemplateCategory.CUSTOM.value, _CATEGORIES, "category"),
        priority=_validate_choice(priority or Priority.MEDIUM.value, _PRIORITIES, "priority"),
        is_active=True,
        version=1,
        steps=[s.to_dict() for s in build_steps(steps)],
        tags=list(tags or []),
    )

    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        db.add(template)
        _finish(db, owns_db)
        logger.info(
            "Workflow template created",
            extra={"template_id": template.id, "step_count": len(template.steps)},
        )
        return template
    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def get_template(template_id: str, *, db: Optional[Session] = None) -> WorkflowTemplate:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    try:
        return _get_template(db, template_id)
    finally:
        if owns_db:
            db.close()


def is_visible_to(template: WorkflowTemplate, viewer: Dict[str, Optional[str]]) -> bool:
    if template.creator_id == str(viewer.get("user_id")):
        return True
    department_id = viewer.get("department_id")
    return department_id is not None and template.department_id == str(department_id)


def list_templates(
    *,
    category: Optional[str] = None,
    department_id: Optional[str] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    visible_to: Optional[Dict[str, Optional[str]]] = None,
    limit: int = 50,
    offset: int = 0,
    db: Optional[Session] = None,
) -> List[WorkflowTemplate]:
    """visible_to={"user_id", "department_id"} restricts to own or own-department templates."""
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    try:
        q = db.query(WorkflowTemplate)

        if category is not None:
            q = q.filter(WorkflowTemplate.category == str(category))
        if department_id is not None:
            q = q.filter(WorkflowTemplate.department_id == str(department_id))
        if is_active is not None:
            q = q.filter(WorkflowTemplate.is_active.is_(bool(is_active)))
        if search:
            pattern = f"%{search.strip()}%"
            q = q.filter(WorkflowTemplate.name.ilike(pattern) | WorkflowTemplate.description.ilike(pattern))

        if visible_to is not None:
            own = WorkflowTemplate.creator_id == str(visible_to.get("user_id"))
            dept = visible_to.get("department_id")
            if dept is not None:
                q = q.filter(own | (WorkflowTemplate.department_id == str(dept)))
            else:
                q = q.filter(own)

        return (
            q.order_by(WorkflowTemplate.created_at.desc(), WorkflowTemplate.id.asc())
            .limit(int(limit))
            .offset(int(offset))
            .all()
        )
    finally:
        if owns_db:
            db.close()


def update_template(
    template_id: str,
    changes: Dict[str, Any],
    *,
    db: Optional[Session] = None,
) -> WorkflowTemplate:
    """Metadata-only update. Steps change through revise_template_steps."""
    unknown = set(changes) - set(_METADATA_FIELDS)
    if unknown:
        raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        template = _get_template(db, template_id)

        if "name" in changes and changes["name"] is not None:
            template.name = _validate_name(changes["name"])
        if "description" in changes:
            template.description = _validate_description(changes["description"])
        if "category" in changes and changes["category"] is not None:
            template.category = _validate_choice(changes["category"], _CATEGORIES, "category")
        if "priority" in changes and changes["priority"] is not None:
            template.priority = _validate_choice(changes["priority"], _PRIORITIES, "priority")
        if "department_id" in changes:
            dept = changes["department_id"]
            template.department_id = None if dept is None else str(dept)
        if "is_active" in changes and changes["is_active"] is not None:
            template.is_active = bool(changes["is_active"])
        if "tags" in changes and changes["tags"] is not None:
            template.tags = [str(t) for t in changes["tags"]]

        template.updated_at = _utcnow()
        _finish(db, owns_db)
        return template
    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def revise_template_steps(
    template_id: str,
    steps: Iterable[Any],
    *,
    actor_id: str,
    db: Optional[Session] = None,
) -> WorkflowTemplate:
    """
    Replace a template's steps.

    A template referenced by any instance is never mutated structurally: the
    revision becomes a new template (version + 1) and the old one is deactivated.
    Returns the template that now carries the new steps.
    """
    new_steps = [s.to_dict() for s in build_steps(steps)]

    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        template = _get_template(db, template_id)
        now = _utcnow()

        if _count_instances(db, template.id, open_only=False) == 0:
            template.steps = new_steps
            template.updated_at = now
            _finish(db, owns_db)
            return template

        revision = WorkflowTemplate(
            name=template.name,
            description=template.description,
            creator_id=str(actor_id),
            department_id=template.department_id,
            category=template.category,
            priority=template.priority,
            is_active=True,
            version=int(template.version or 1) + 1,
            previous_version_id=template.id,
            steps=new_steps,
            tags=list(template.tags or []),
            created_at=now,
            updated_at=now,
        )
        template.is_active = False
        template.updated_at = now
        db.add(revision)
        _finish(db, owns_db)

        logger.info(
            "Workflow template revised",
            extra={
                "template_id": template.id,
                "revision_id": revision.id,
                "version": revision.version,
            },
        )
        return revision
    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def delete_template(template_id: str, *, db: Optional[Session] = None) -> None:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        template = _get_template(db, template_id)

        open_instances = _count_instances(db, template.id, open_only=True)
        if open_instances:
            raise TemplateInUseError(template.id, open_instances)

        db.delete(template)
        _finish(db, owns_db)
        logger.info("Workflow template deleted", extra={"template_id": str(template_id)})
    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()
