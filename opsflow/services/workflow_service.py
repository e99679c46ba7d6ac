"""Workflow instance state machine.

    draft --start--> active --advance--> active | completed
                     active --reject---> rejected
                     active <--pause/resume--> paused
    any non-terminal --cancel--> cancelled

Every command loads the instance, validates completely, mutates the step
snapshot and appends history, then flushes under the instance version check.
A transition either fully succeeds or fails before anything is written.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from opsflow.core.errors import (
    ConcurrentModificationError,
    CorruptInstanceError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from opsflow.database import SessionLocal
from opsflow.models.workflow import (
    TERMINAL_STATUSES,
    Attachment,
    HistoryAction,
    InstanceComment,
    Priority,
    RelatedEntityType,
    StepActionKind,
    StepState,
    StepStatus,
    WorkflowStatus,
    as_utc,
)
from opsflow.models.workflow_instance import WorkflowInstance
from opsflow.models.workflow_template import WorkflowTemplate
from opsflow.services.action_recorder import record_history, record_step_action
from opsflow.services.outbox_processor import enqueue_event

logger = logging.getLogger(__name__)

STEP_CHANGED_EVENT = "WORKFLOW_STEP_CHANGED"

_ACTIONS = {a.value for a in StepActionKind}
_ENTITY_TYPES = {e.value for e in RelatedEntityType}
_PRIORITIES = {p.value for p in Priority}

# Rows fetched per round trip when a listing filters inside step snapshots.
_SCAN_BATCH = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_now(now: Optional[datetime]) -> datetime:
    return as_utc(now) or _utcnow()


@contextmanager
def _unit_of_work(db: Optional[Session]) -> Iterator[Tuple[Session, bool]]:
    """
    If db is provided, the caller owns the transaction (no commit/close here).
    If db is None, a session is opened, committed by the command, and closed.
    """
    owns_db = db is None
    session = SessionLocal() if owns_db else db
    try:
        yield session, owns_db
    except Exception:
        if owns_db:
            session.rollback()
        raise
    finally:
        if owns_db:
            session.close()


def _load_instance(db: Session, instance_id: str) -> WorkflowInstance:
    instance = db.query(WorkflowInstance).filter_by(id=str(instance_id)).first()
    if instance is None:
        raise NotFoundError("Workflow instance", str(instance_id))
    return instance


def _check_version(instance: WorkflowInstance, expected_version: Optional[int]) -> None:
    if expected_version is not None and int(expected_version) != int(instance.version):
        raise ConcurrentModificationError(instance.id, expected_version=int(expected_version))


def _require_status(instance: WorkflowInstance, expected: WorkflowStatus, verb: str) -> None:
    if instance.status != expected.value:
        raise InvalidStateError(
            f"Cannot {verb} workflow: workflow is {instance.status} (expected {expected.value})",
            current_status=instance.status,
            expected_status=expected.value,
        )


def _require_open(instance: WorkflowInstance, verb: str) -> None:
    if instance.status in TERMINAL_STATUSES:
        raise InvalidStateError(
            f"Cannot {verb} workflow: workflow is {instance.status}",
            current_status=instance.status,
        )


def _check_expected_step(instance: WorkflowInstance, expected_step: Optional[int]) -> None:
    if expected_step is not None and int(expected_step) != int(instance.current_step):
        raise InvalidStateError(
            f"Step {int(expected_step)} is not the current step (current step is {instance.current_step})",
            current_status=instance.status,
            expected_status=instance.status,
        )


def _current_index(instance: WorkflowInstance, steps: List[StepState]) -> int:
    for index, step in enumerate(steps):
        if step.step_number == instance.current_step:
            if step.status != StepStatus.IN_PROGRESS.value:
                raise _corrupt(instance, steps, f"current step {step.step_number} is {step.status}")
            return index

    raise _corrupt(instance, steps, f"current step {instance.current_step} not found in step data")


def _corrupt(instance: WorkflowInstance, steps: List[StepState], detail: str) -> CorruptInstanceError:
    logger.error(
        "Workflow instance invariant violated",
        extra={
            "instance_id": instance.id,
            "status": instance.status,
            "current_step": instance.current_step,
            "step_numbers": [s.step_number for s in steps],
            "step_statuses": [s.status for s in steps],
            "detail": detail,
        },
    )
    return CorruptInstanceError(instance.id, detail)


def _store_steps(instance: WorkflowInstance, steps: List[StepState], now: datetime) -> None:
    instance.steps_data = [s.to_dict() for s in steps]
    instance.updated_at = now


def _start_step(step: StepState, now: datetime) -> None:
    step.status = StepStatus.IN_PROGRESS.value
    step.start_date = now
    # Calendar days; a zero-day step is due immediately.
    step.due_date = now + timedelta(days=int(step.duration_in_days or 0))


def _recipients(*groups: Iterable[Optional[str]]) -> List[str]:
    out: List[str] = []
    for group in groups:
        for user_id in group:
            if user_id and str(user_id) not in out:
                out.append(str(user_id))
    return out


def _fact(
    instance: WorkflowInstance,
    *,
    event_kind: str,
    step_number: Optional[int],
    recipients: List[str],
) -> Dict[str, Any]:
    revision = int(instance.version or 0)
    return {
        "idempotency_key": f"{instance.id}:{revision}:{event_kind}:{step_number}",
        "payload": {
            "instance_id": instance.id,
            "step_number": step_number,
            "event_kind": event_kind,
            "recipients": recipients,
        },
    }


def _persist(
    db: Session,
    instance: WorkflowInstance,
    facts: List[Dict[str, Any]],
    *,
    owns_db: bool,
    now: datetime,
) -> None:
    try:
        # Instance first: the version check must fail before any fact is queued.
        db.flush()
        for fact in facts:
            enqueue_event(
                db,
                event_type=STEP_CHANGED_EVENT,
                idempotency_key=fact["idempotency_key"],
                aggregate_id=instance.id,
                payload=fact["payload"],
                now=now,
            )
        db.flush()
        if owns_db:
            db.commit()
    except StaleDataError as exc:
        logger.info(
            "Workflow instance write lost a version race",
            extra={"instance_id": instance.id},
        )
        raise ConcurrentModificationError(instance.id) from exc
    except SQLAlchemyError as exc:
        logger.exception(
            "Workflow instance write failed",
            extra={"instance_id": instance.id, "status": instance.status},
        )
        raise PersistenceError("Failed to persist workflow instance") from exc


def _log_transition(instance: WorkflowInstance, transition: str, actor_id: str) -> None:
    logger.info(
        "Workflow transition",
        extra={
            "instance_id": instance.id,
            "transition": transition,
            "status": instance.status,
            "current_step": instance.current_step,
            "actor_id": str(actor_id),
        },
    )


# ---------------------------------------------------------------------------
# Transitions on a loaded instance (shared by the public commands)
# ---------------------------------------------------------------------------


def _apply_advance(
    db: Session,
    instance: WorkflowInstance,
    actor_id: str,
    comment: Optional[str],
    now: datetime,
) -> List[Dict[str, Any]]:
    steps = instance.step_states()
    index = _current_index(instance, steps)
    step = steps[index]

    step.status = StepStatus.COMPLETED.value
    step.completed_date = now

    record_history(
        db,
        instance,
        action=HistoryAction.STEP_COMPLETED.value,
        actor_id=actor_id,
        at=now,
        step_number=step.step_number,
        details=f"Step {step.step_number} ({step.name}) completed",
    )

    if comment:
        instance.comments.append(InstanceComment(str(actor_id), comment, now).to_dict())

    facts = [
        _fact(
            instance,
            event_kind="step_completed",
            step_number=step.step_number,
            recipients=_recipients(step.notify_on_complete),
        )
    ]

    if index == len(steps) - 1:
        instance.status = WorkflowStatus.COMPLETED.value
        instance.completed_date = now
        record_history(
            db,
            instance,
            action=HistoryAction.COMPLETED.value,
            actor_id=actor_id,
            at=now,
            details="Workflow completed successfully",
        )
        facts.append(
            _fact(
                instance,
                event_kind="completed",
                step_number=step.step_number,
                recipients=_recipients([instance.initiator_id]),
            )
        )
    else:
        nxt = steps[index + 1]
        instance.current_step = nxt.step_number
        _start_step(nxt, now)
        record_history(
            db,
            instance,
            action=HistoryAction.UPDATED.value,
            actor_id=actor_id,
            at=now,
            step_number=nxt.step_number,
            details=f"Moved to step {nxt.step_number} ({nxt.name})",
        )
        facts.append(
            _fact(
                instance,
                event_kind="step_started",
                step_number=nxt.step_number,
                recipients=_recipients([nxt.assigned_to]),
            )
        )

    _store_steps(instance, steps, now)
    return facts


def _apply_reject(
    db: Session,
    instance: WorkflowInstance,
    actor_id: str,
    reason: str,
    now: datetime,
    attachments: Optional[List[Attachment]] = None,
) -> List[Dict[str, Any]]:
    steps = instance.step_states()
    index = _current_index(instance, steps)
    step = steps[index]

    step.status = StepStatus.REJECTED.value
    step.completed_date = now
    record_step_action(
        step,
        action=StepActionKind.REJECT.value,
        actor_id=actor_id,
        at=now,
        comment=reason,
        attachments=attachments,
    )

    instance.status = WorkflowStatus.REJECTED.value
    instance.completed_date = now

    record_history(
        db,
        instance,
        action=HistoryAction.STEP_REJECTED.value,
        actor_id=actor_id,
        at=now,
        step_number=step.step_number,
        details=f"Step {step.step_number} ({step.name}) rejected: {reason}",
    )
    record_history(
        db,
        instance,
        action=HistoryAction.REJECTED.value,
        actor_id=actor_id,
        at=now,
        details=f"Workflow rejected at step {step.step_number}",
    )

    _store_steps(instance, steps, now)
    return [
        _fact(
            instance,
            event_kind="rejected",
            step_number=step.step_number,
            recipients=_recipients([instance.initiator_id]),
        )
    ]


def _require_reason(reason: Optional[str], message: str) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError(message)
    return reason


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def create_instance(
    template_id: str,
    initiator_id: str,
    *,
    name: Optional[str] = None,
    related_entity: Optional[Dict[str, Any]] = None,
    due_date: Optional[datetime] = None,
    priority: Optional[str] = None,
    department_id: Optional[str] = None,
    tags: Optional[List[str]] = None,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> WorkflowInstance:
    now = _resolve_now(now)

    entity_type = RelatedEntityType.NONE.value
    entity_id = None
    if related_entity:
        entity_type = str(related_entity.get("entity_type") or RelatedEntityType.NONE.value)
        if entity_type not in _ENTITY_TYPES:
            raise ValidationError(f"Invalid related entity type: {entity_type}")
        entity_id = related_entity.get("entity_id")
        entity_id = None if entity_id is None else str(entity_id)

    if priority is not None and priority not in _PRIORITIES:
        raise ValidationError(f"Invalid priority: {priority}")

    with _unit_of_work(db) as (session, owns_db):
        template = session.query(WorkflowTemplate).filter_by(id=str(template_id)).first()
        if template is None:
            raise NotFoundError("Workflow template", str(template_id))
        if not template.is_active:
            raise ValidationError("This workflow template is not active and cannot be used")

        definitions = template.step_definitions()
        if not definitions:
            raise ValidationError("A workflow template with no steps cannot be instantiated")

        instance_name = (name or template.name or "").strip()
        if not instance_name:
            raise ValidationError("Workflow instance name is required")

        instance = WorkflowInstance(
            template_id=template.id,
            name=instance_name,
            initiator_id=str(initiator_id),
            department_id=str(department_id) if department_id is not None else template.department_id,
            status=WorkflowStatus.DRAFT.value,
            priority=priority or template.priority or Priority.MEDIUM.value,
            current_step=0,
            due_date=as_utc(due_date),
            related_entity_type=entity_type,
            related_entity_id=entity_id,
            steps_data=[StepState.from_definition(d).to_dict() for d in definitions],
            comments=[],
            tags=list(tags or []),
            is_archived=False,
            created_at=now,
            updated_at=now,
        )
        session.add(instance)

        record_history(
            session,
            instance,
            action=HistoryAction.CREATED.value,
            actor_id=initiator_id,
            at=now,
            details=f"Workflow created from template {template.name} (v{template.version})",
        )

        _persist(session, instance, [], owns_db=owns_db, now=now)
        _log_transition(instance, "create", initiator_id)
        return instance


def start_instance(
    instance_id: str,
    actor_id: str,
    *,
    expected_version: Optional[int] = None,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> WorkflowInstance:
    now = _resolve_now(now)

    with _unit_of_work(db) as (session, owns_db):
        instance = _load_instance(session, instance_id)
        _check_version(instance, expected_version)
        _require_status(instance, WorkflowStatus.DRAFT, "start")

        steps = instance.step_states()
        if not steps:
            raise _corrupt(instance, steps, "instance has no steps")

        first = steps[0]
        _start_step(first, now)
        instance.status = WorkflowStatus.ACTIVE.value
        instance.start_date = now
        instance.current_step = first.step_number
        _store_steps(instance, steps, now)

        record_history(
            session,
            instance,
            action=HistoryAction.UPDATED.value,
            actor_id=actor_id,
            at=now,
            step_number=first.step_number,
            details=f"Workflow started at step {first.step_number} ({first.name})",
        )

        facts = [
            _fact(
                instance,
                event_kind="step_started",
                step_number=first.step_number,
                recipients=_recipients([first.assigned_to]),
            )
        ]
        _persist(session, instance, facts, owns_db=owns_db, now=now)
        _log_transition(instance, "start", actor_id)
        return instance


def advance_step(
    instance_id: str,
    actor_id: str,
    comment: Optional[str] = None,
    *,
    expected_step: Optional[int] = None,
    expected_version: Optional[int] = None,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> WorkflowInstance:
    now = _resolve_now(now)

    with _unit_of_work(db) as (session, owns_db):
        instance = _load_instance(session, instance_id)
        _check_version(instance, expected_version)
        _require_status(instance, WorkflowStatus.ACTIVE, "advance")
        _check_expected_step(instance, expected_step)

        facts = _apply_advance(session, instance, actor_id, (comment or "").strip() or None, now)
        _persist(session, instance, facts, owns_db=owns_db, now=now)
        _log_transition(instance, "advance", actor_id)
        return instance


def reject_step(
    instance_id: str,
    actor_id: str,
    reason: str,
    *,
    expected_step: Optional[int] = None,
    expected_version: Optional[int] = None,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> WorkflowInstance:
    now = _resolve_now(now)

    with _unit_of_work(db) as (session, owns_db):
        instance = _load_instance(session, instance_id)
        _check_version(instance, expected_version)
        _require_status(instance, WorkflowStatus.ACTIVE, "reject step of")
        _check_expected_step(instance, expected_step)
        reason = _require_reason(reason, "A reason is required when rejecting a step")

        facts = _apply_reject(session, instance, actor_id, reason, now)
        _persist(session, instance, facts, owns_db=owns_db, now=now)
        _log_transition(instance, "reject", actor_id)
        return instance


def process_step_action(
    instance_id: str,
    actor_id: str,
    action: str,
    *,
    comment: Optional[str] = None,
    form_data: Optional[Dict[str, Any]] = None,
    attachments: Optional[List[Dict[str, Any]]] = None,
    delegate_to: Optional[str] = None,
    expected_step: Optional[int] = None,
    expected_version: Optional[int] = None,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> WorkflowInstance:
    """Record an actor's action on the current step and apply its outcome."""
    now = _resolve_now(now)
    action = str(action)
    if action not in _ACTIONS:
        raise ValidationError(f"Valid action is required, got: {action}")
    comment = (comment or "").strip()
    files = [Attachment.from_dict(a) for a in (attachments or [])]

    with _unit_of_work(db) as (session, owns_db):
        instance = _load_instance(session, instance_id)
        _check_version(instance, expected_version)
        _require_status(instance, WorkflowStatus.ACTIVE, "process step of")
        _check_expected_step(instance, expected_step)

        steps = instance.step_states()
        step = steps[_current_index(instance, steps)]

        if step.allowed_actions and action not in step.allowed_actions:
            raise ValidationError(f"Action {action} is not permitted on step {step.step_number}")

        merged_form = dict(step.form_data)
        merged_form.update(form_data or {})

        if action == StepActionKind.APPROVE.value:
            missing = [
                f.label
                for f in step.form_fields
                if f.required and merged_form.get(f.label) in (None, "", [])
            ]
            if missing:
                raise ValidationError(f"Missing required form fields: {', '.join(missing)}")
        elif action == StepActionKind.REJECT.value:
            _require_reason(comment, "A comment is required when rejecting a step")
        elif action == StepActionKind.REQUEST_CHANGES.value:
            _require_reason(comment, "A comment is required when requesting changes")
        elif action == StepActionKind.DELEGATE.value:
            if not delegate_to:
                raise ValidationError("delegate_to is required when delegating a step")
            if str(delegate_to) == str(step.assigned_to):
                raise ValidationError("Step is already assigned to that user")
        else:
            _require_reason(comment, "Comment text is required")

        # Validation done; mutate.
        step.form_data = merged_form

        if action == StepActionKind.REJECT.value:
            _store_steps(instance, steps, now)
            facts = _apply_reject(session, instance, actor_id, comment, now, attachments=files)

        elif action == StepActionKind.APPROVE.value:
            record_step_action(step, action=action, actor_id=actor_id, at=now, comment=comment, attachments=files)
            _store_steps(instance, steps, now)
            facts = _apply_advance(session, instance, actor_id, comment or None, now)

        elif action == StepActionKind.REQUEST_CHANGES.value:
            record_step_action(step, action=action, actor_id=actor_id, at=now, comment=comment, attachments=files)
            _store_steps(instance, steps, now)
            record_history(
                session,
                instance,
                action=HistoryAction.UPDATED.value,
                actor_id=actor_id,
                at=now,
                step_number=step.step_number,
                details=f"Changes requested for step {step.step_number}: {comment}",
            )
            facts = [
                _fact(
                    instance,
                    event_kind="changes_requested",
                    step_number=step.step_number,
                    recipients=_recipients([instance.initiator_id]),
                )
            ]

        elif action == StepActionKind.DELEGATE.value:
            previous = step.assigned_to
            record_step_action(
                step,
                action=action,
                actor_id=actor_id,
                at=now,
                comment=comment,
                attachments=files,
                delegated_to=str(delegate_to),
            )
            step.assigned_to = str(delegate_to)
            _store_steps(instance, steps, now)
            record_history(
                session,
                instance,
                action=HistoryAction.REASSIGNED.value,
                actor_id=actor_id,
                at=now,
                step_number=step.step_number,
                details=f"Step {step.step_number} reassigned from {previous or 'unassigned'} to {delegate_to}",
            )
            facts = [
                _fact(
                    instance,
                    event_kind="reassigned",
                    step_number=step.step_number,
                    recipients=_recipients([str(delegate_to)]),
                )
            ]

        else:
            record_step_action(step, action=action, actor_id=actor_id, at=now, comment=comment, attachments=files)
            _store_steps(instance, steps, now)
            instance.comments.append(InstanceComment(str(actor_id), comment, now).to_dict())
            record_history(
                session,
                instance,
                action=HistoryAction.UPDATED.value,
                actor_id=actor_id,
                at=now,
                step_number=step.step_number,
                details=f"Comment added on step {step.step_number}",
            )
            facts = []

        _persist(session, instance, facts, owns_db=owns_db, now=now)
        _log_transition(instance, f"process:{action}", actor_id)
        return instance


def pause_instance(
    instance_id: str,
    actor_id: str,
    reason: Optional[str] = None,
    *,
    expected_version: Optional[int] = None,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> WorkflowInstance:
    now = _resolve_now(now)

    with _unit_of_work(db) as (session, owns_db):
        instance = _load_instance(session, instance_id)
        _check_version(instance, expected_version)
        _require_status(instance, WorkflowStatus.ACTIVE, "pause")

        instance.status = WorkflowStatus.PAUSED.value
        instance.updated_at = now
        details = "Workflow paused"
        if reason and reason.strip():
            details = f"{details}: {reason.strip()}"
        record_history(
            session,
            instance,
            action=HistoryAction.UPDATED.value,
            actor_id=actor_id,
            at=now,
            step_number=instance.current_step,
            details=details,
        )

        facts = [
            _fact(
                instance,
                event_kind="paused",
                step_number=instance.current_step,
                recipients=_recipients([instance.initiator_id]),
            )
        ]
        _persist(session, instance, facts, owns_db=owns_db, now=now)
        _log_transition(instance, "pause", actor_id)
        return instance


def resume_instance(
    instance_id: str,
    actor_id: str,
    *,
    expected_version: Optional[int] = None,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> WorkflowInstance:
    now = _resolve_now(now)

    with _unit_of_work(db) as (session, owns_db):
        instance = _load_instance(session, instance_id)
        _check_version(instance, expected_version)
        _require_status(instance, WorkflowStatus.PAUSED, "resume")

        instance.status = WorkflowStatus.ACTIVE.value
        instance.updated_at = now
        record_history(
            session,
            instance,
            action=HistoryAction.REACTIVATED.value,
            actor_id=actor_id,
            at=now,
            step_number=instance.current_step,
            details="Workflow resumed",
        )

        facts = [
            _fact(
                instance,
                event_kind="resumed",
                step_number=instance.current_step,
                recipients=_recipients([instance.initiator_id]),
            )
        ]
        _persist(session, instance, facts, owns_db=owns_db, now=now)
        _log_transition(instance, "resume", actor_id)
        return instance


def cancel_instance(
    instance_id: str,
    actor_id: str,
    reason: Optional[str] = None,
    *,
    expected_version: Optional[int] = None,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> WorkflowInstance:
    now = _resolve_now(now)

    with _unit_of_work(db) as (session, owns_db):
        instance = _load_instance(session, instance_id)
        _check_version(instance, expected_version)
        _require_open(instance, "cancel")

        assignees = [s.assigned_to for s in instance.step_states() if s.step_number == instance.current_step]

        instance.status = WorkflowStatus.CANCELLED.value
        instance.completed_date = now
        instance.updated_at = now
        details = "Workflow cancelled"
        if reason and reason.strip():
            details = f"{details}: {reason.strip()}"
        record_history(
            session,
            instance,
            action=HistoryAction.CANCELLED.value,
            actor_id=actor_id,
            at=now,
            step_number=instance.current_step or None,
            details=details,
        )

        facts = [
            _fact(
                instance,
                event_kind="cancelled",
                step_number=instance.current_step or None,
                recipients=_recipients([instance.initiator_id], assignees),
            )
        ]
        _persist(session, instance, facts, owns_db=owns_db, now=now)
        _log_transition(instance, "cancel", actor_id)
        return instance


def add_comment(
    instance_id: str,
    actor_id: str,
    comment: str,
    *,
    now: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> WorkflowInstance:
    now = _resolve_now(now)
    comment = _require_reason(comment, "Comment text is required")

    with _unit_of_work(db) as (session, owns_db):
        instance = _load_instance(session, instance_id)
        _require_open(instance, "comment on")

        instance.comments.append(InstanceComment(str(actor_id), comment, now).to_dict())
        instance.updated_at = now
        record_history(
            session,
            instance,
            action=HistoryAction.UPDATED.value,
            actor_id=actor_id,
            at=now,
            details="Comment added",
        )

        _persist(session, instance, [], owns_db=owns_db, now=now)
        return instance


def get_instance(instance_id: str, *, db: Optional[Session] = None) -> WorkflowInstance:
    with _unit_of_work(db) as (session, _owns_db):
        return _load_instance(session, instance_id)


def _is_assigned(instance: WorkflowInstance, user_id: str) -> bool:
    return any(str(s.get("assigned_to")) == str(user_id) for s in (instance.steps_data or []))


def is_visible_to(instance: WorkflowInstance, viewer: Dict[str, Optional[str]]) -> bool:
    role = viewer.get("role")
    if role == "admin":
        return True

    user_id = str(viewer.get("user_id"))
    if instance.initiator_id == user_id or _is_assigned(instance, user_id):
        return True

    department_id = viewer.get("department_id")
    return (
        role in {"manager", "department_head"}
        and department_id is not None
        and instance.department_id == str(department_id)
    )


def list_instances(
    *,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    entity_type: Optional[str] = None,
    search: Optional[str] = None,
    assigned_to: Optional[str] = None,
    department_id: Optional[str] = None,
    template_id: Optional[str] = None,
    initiator_id: Optional[str] = None,
    include_archived: bool = False,
    visible_to: Optional[Dict[str, Optional[str]]] = None,
    limit: int = 50,
    offset: int = 0,
    db: Optional[Session] = None,
) -> List[WorkflowInstance]:
    """visible_to={"user_id", "role", "department_id"} applies per-role visibility.

    Assignee and visibility checks read the step snapshots, so those listings
    walk the ordered rows in batches until the requested page is filled.
    """
    with _unit_of_work(db) as (session, _owns_db):
        q = session.query(WorkflowInstance)

        if status is not None:
            q = q.filter(WorkflowInstance.status == str(status))
        if priority is not None:
            q = q.filter(WorkflowInstance.priority == str(priority))
        if entity_type is not None:
            q = q.filter(WorkflowInstance.related_entity_type == str(entity_type))
        if search:
            q = q.filter(WorkflowInstance.name.ilike(f"%{search.strip()}%"))
        if department_id is not None:
            q = q.filter(WorkflowInstance.department_id == str(department_id))
        if template_id is not None:
            q = q.filter(WorkflowInstance.template_id == str(template_id))
        if initiator_id is not None:
            q = q.filter(WorkflowInstance.initiator_id == str(initiator_id))
        if not include_archived:
            q = q.filter(WorkflowInstance.is_archived.is_(False))

        q = q.order_by(WorkflowInstance.updated_at.desc(), WorkflowInstance.id.asc())

        if assigned_to is None and visible_to is None:
            return q.limit(int(limit)).offset(int(offset)).all()

        wanted = int(offset) + int(limit)
        matches: List[WorkflowInstance] = []
        scanned = 0
        while len(matches) < wanted:
            batch = q.limit(_SCAN_BATCH).offset(scanned).all()
            for instance in batch:
                if assigned_to is not None and not _is_assigned(instance, assigned_to):
                    continue
                if visible_to is not None and not is_visible_to(instance, visible_to):
                    continue
                matches.append(instance)
            if len(batch) < _SCAN_BATCH:
                break
            scanned += len(batch)

        return matches[int(offset): wanted]
