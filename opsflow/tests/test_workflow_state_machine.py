import uuid
from datetime import datetime, timedelta, timezone

import pytest

from opsflow.core.errors import CorruptInstanceError, InvalidStateError, NotFoundError, ValidationError
from opsflow.database import SessionLocal
from opsflow.models.workflow import as_utc
from opsflow.models.workflow_instance import WorkflowInstance
from opsflow.services import projections, template_store, workflow_service

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _template(durations=(1, 2, 0), **overrides):
    kwargs = {
        "name": f"Onboarding {uuid.uuid4().hex[:8]}",
        "creator_id": "mgr-1",
        "steps": [
            {"name": f"Step {i + 1}", "assigned_role": "manager", "duration_in_days": d}
            for i, d in enumerate(durations)
        ],
    }
    kwargs.update(overrides)
    return template_store.create_template(**kwargs)


def _started(durations=(1, 2, 0)):
    template = _template(durations)
    instance = workflow_service.create_instance(template.id, "emp-1", now=T0)
    return workflow_service.start_instance(instance.id, "emp-1", now=T0)


def _step(instance, number):
    return next(s for s in instance.steps_data if s["step_number"] == number)


def _iso(dt: datetime) -> str:
    return dt.isoformat()


def test_create_instance_is_draft_with_pending_snapshot():
    template = _template()
    instance = workflow_service.create_instance(template.id, "emp-1", name="Alice onboarding", now=T0)

    assert instance.status == "draft"
    assert instance.current_step == 0
    assert instance.name == "Alice onboarding"
    assert [s["status"] for s in instance.steps_data] == ["pending", "pending", "pending"]
    assert [h.action for h in instance.history] == ["created"]


def test_create_instance_requires_active_template():
    template = _template()
    template_store.update_template(template.id, {"is_active": False})

    with pytest.raises(ValidationError, match="not active"):
        workflow_service.create_instance(template.id, "emp-1")

    with pytest.raises(NotFoundError):
        workflow_service.create_instance(str(uuid.uuid4()), "emp-1")


def test_create_instance_resolves_specific_user_assignment():
    template = _template(
        steps=[{"name": "Sign", "assigned_role": "specific_user", "assigned_user": "user-42"}],
    )
    instance = workflow_service.create_instance(template.id, "emp-1")
    assert instance.steps_data[0]["assigned_to"] == "user-42"


def test_start_moves_first_step_in_progress_with_due_date():
    instance = _started()

    assert instance.status == "active"
    assert instance.current_step == 1
    assert as_utc(instance.start_date) == T0
    step1 = _step(instance, 1)
    assert step1["status"] == "in_progress"
    assert step1["start_date"] == _iso(T0)
    assert step1["due_date"] == _iso(T0 + timedelta(days=1))


def test_start_twice_is_invalid_state():
    instance = _started()
    with pytest.raises(InvalidStateError) as excinfo:
        workflow_service.start_instance(instance.id, "emp-1")
    assert excinfo.value.current_status == "active"
    assert excinfo.value.expected_status == "draft"


def test_three_step_scenario_advance_then_reject():
    instance = _started(durations=(1, 2, 0))
    t1 = T0 + timedelta(hours=5)

    instance = workflow_service.advance_step(instance.id, "mgr-1", "looks good", now=t1)

    assert instance.status == "active"
    assert instance.current_step == 2
    assert _step(instance, 1)["status"] == "completed"
    assert _step(instance, 1)["completed_date"] == _iso(t1)
    assert _step(instance, 2)["status"] == "in_progress"
    assert _step(instance, 2)["due_date"] == _iso(t1 + timedelta(days=2))
    assert projections.progress(instance) == 33
    assert instance.comments[-1]["comment"] == "looks good"

    t2 = t1 + timedelta(hours=1)
    instance = workflow_service.reject_step(instance.id, "mgr-2", "blocked", now=t2)

    assert instance.status == "rejected"
    assert as_utc(instance.completed_date) == t2
    step2 = _step(instance, 2)
    assert step2["status"] == "rejected"
    assert step2["actions"][-1]["action"] == "reject"
    assert step2["actions"][-1]["comment"] == "blocked"
    assert projections.progress(instance) == 33
    assert [h.action for h in instance.history][-2:] == ["step_rejected", "rejected"]
    assert "blocked" in instance.history[-2].details

    with pytest.raises(InvalidStateError):
        workflow_service.advance_step(instance.id, "mgr-1")
    with pytest.raises(InvalidStateError):
        workflow_service.reject_step(instance.id, "mgr-1", "again")


def test_zero_day_step_is_due_at_start():
    instance = _started(durations=(0,))
    step = _step(instance, 1)
    assert step["due_date"] == step["start_date"]


def test_single_step_template_completes_on_first_advance():
    instance = _started(durations=(3,))
    t1 = T0 + timedelta(days=1)

    instance = workflow_service.advance_step(instance.id, "mgr-1", now=t1)

    assert instance.status == "completed"
    assert as_utc(instance.completed_date) == t1
    assert projections.progress(instance) == 100
    assert projections.time_remaining(instance, t1 + timedelta(days=10)) == 0
    assert projections.is_overdue(instance, t1 + timedelta(days=10)) is False
    assert [h.action for h in instance.history][-2:] == ["step_completed", "completed"]


def test_advance_on_draft_names_current_and_expected_status():
    template = _template()
    instance = workflow_service.create_instance(template.id, "emp-1")

    with pytest.raises(InvalidStateError) as excinfo:
        workflow_service.advance_step(instance.id, "mgr-1")

    assert excinfo.value.current_status == "draft"
    assert excinfo.value.expected_status == "active"
    assert "draft" in str(excinfo.value)


def test_expected_step_guards_against_double_submission():
    instance = _started()

    workflow_service.advance_step(instance.id, "mgr-1", expected_step=1)

    with pytest.raises(InvalidStateError):
        workflow_service.advance_step(instance.id, "mgr-1", expected_step=1)

    fresh = workflow_service.get_instance(instance.id)
    assert fresh.current_step == 2


def test_reject_requires_reason_and_leaves_instance_untouched():
    instance = _started()
    version_before = instance.version

    with pytest.raises(ValidationError):
        workflow_service.reject_step(instance.id, "mgr-1", "   ")

    fresh = workflow_service.get_instance(instance.id)
    assert fresh.status == "active"
    assert fresh.version == version_before
    assert len(fresh.history) == len(instance.history)


def test_pause_resume_and_cancel():
    instance = _started()

    paused = workflow_service.pause_instance(instance.id, "mgr-1", "waiting on budget")
    assert paused.status == "paused"
    assert paused.steps_data == instance.steps_data

    with pytest.raises(InvalidStateError):
        workflow_service.advance_step(instance.id, "mgr-1")

    resumed = workflow_service.resume_instance(instance.id, "mgr-1")
    assert resumed.status == "active"
    assert resumed.history[-1].action == "reactivated"

    cancelled = workflow_service.cancel_instance(instance.id, "mgr-1", "duplicate request")
    assert cancelled.status == "cancelled"
    assert cancelled.completed_date is not None
    assert cancelled.history[-1].action == "cancelled"

    for command in (workflow_service.pause_instance, workflow_service.cancel_instance):
        with pytest.raises(InvalidStateError):
            command(instance.id, "mgr-1")
    with pytest.raises(InvalidStateError):
        workflow_service.add_comment(instance.id, "mgr-1", "too late")


def test_resume_requires_paused():
    instance = _started()
    with pytest.raises(InvalidStateError) as excinfo:
        workflow_service.resume_instance(instance.id, "mgr-1")
    assert excinfo.value.expected_status == "paused"


def test_history_never_shrinks_across_operations():
    instance = _started(durations=(1, 1, 1))
    counts = [len(instance.history)]

    instance = workflow_service.add_comment(instance.id, "emp-1", "ping")
    counts.append(len(instance.history))
    instance = workflow_service.advance_step(instance.id, "mgr-1")
    counts.append(len(instance.history))
    instance = workflow_service.pause_instance(instance.id, "mgr-1")
    counts.append(len(instance.history))
    instance = workflow_service.resume_instance(instance.id, "mgr-1")
    counts.append(len(instance.history))
    instance = workflow_service.advance_step(instance.id, "mgr-1")
    counts.append(len(instance.history))
    instance = workflow_service.advance_step(instance.id, "mgr-1")
    counts.append(len(instance.history))

    assert counts == sorted(counts)
    assert len(set(counts)) == len(counts)
    assert instance.status == "completed"

    stored = workflow_service.get_instance(instance.id)
    assert len(stored.history) == counts[-1]
    assert [h.id for h in stored.history] == sorted(h.id for h in stored.history)


def test_list_instances_filters_by_assignee_and_status():
    template = _template(
        steps=[
            {"name": "Legal", "assigned_role": "specific_user", "assigned_user": f"lawyer-{uuid.uuid4().hex[:6]}"},
        ],
    )
    lawyer = template.steps[0]["assigned_user"]
    first = workflow_service.create_instance(template.id, "emp-1")
    second = workflow_service.create_instance(template.id, "emp-2")
    workflow_service.start_instance(second.id, "emp-2")

    assigned = workflow_service.list_instances(assigned_to=lawyer)
    assert {i.id for i in assigned} == {first.id, second.id}

    active = workflow_service.list_instances(assigned_to=lawyer, status="active")
    assert [i.id for i in active] == [second.id]

    by_template = workflow_service.list_instances(template_id=template.id, initiator_id="emp-1")
    assert [i.id for i in by_template] == [first.id]


def test_visibility_rules():
    template = _template(department_id="dept-fin")
    instance = workflow_service.create_instance(template.id, "emp-1", department_id="dept-fin")

    assert workflow_service.is_visible_to(instance, {"user_id": "emp-1", "role": "employee"})
    assert workflow_service.is_visible_to(instance, {"user_id": "x", "role": "admin"})
    assert workflow_service.is_visible_to(
        instance, {"user_id": "m", "role": "manager", "department_id": "dept-fin"}
    )
    assert not workflow_service.is_visible_to(
        instance, {"user_id": "m", "role": "manager", "department_id": "dept-hr"}
    )
    assert not workflow_service.is_visible_to(
        instance, {"user_id": "e", "role": "employee", "department_id": "dept-fin"}
    )


def test_caller_owned_session_is_not_committed():
    instance = _started()

    db = SessionLocal()
    try:
        workflow_service.advance_step(instance.id, "mgr-1", db=db)
        db.rollback()
    finally:
        db.close()

    fresh = workflow_service.get_instance(instance.id)
    assert fresh.current_step == 1
    assert fresh.version == instance.version
    assert len(fresh.history) == len(instance.history)


def _assigned_template(user_id: str):
    return _template(steps=[{"name": "Sign", "assigned_role": "specific_user", "assigned_user": user_id}])


def test_assignee_listing_reaches_past_newer_rows(monkeypatch):
    monkeypatch.setattr(workflow_service, "_SCAN_BATCH", 2)
    needle = f"user-{uuid.uuid4().hex[:8]}"

    older = workflow_service.create_instance(_assigned_template(needle).id, "emp-1")
    noise = _template()
    for _ in range(5):
        workflow_service.create_instance(noise.id, "emp-2")
    newer = workflow_service.create_instance(_assigned_template(needle).id, "emp-1")

    assert [i.id for i in workflow_service.list_instances(assigned_to=needle)] == [newer.id, older.id]
    assert [i.id for i in workflow_service.list_instances(assigned_to=needle, limit=1, offset=1)] == [older.id]
    assert workflow_service.list_instances(assigned_to=needle, offset=2) == []


def test_visible_listing_reaches_past_newer_rows(monkeypatch):
    monkeypatch.setattr(workflow_service, "_SCAN_BATCH", 2)
    initiator = f"emp-{uuid.uuid4().hex[:8]}"

    mine = workflow_service.create_instance(_template().id, initiator)
    noise = _template()
    for _ in range(5):
        workflow_service.create_instance(noise.id, "emp-2")

    rows = workflow_service.list_instances(visible_to={"user_id": initiator, "role": "employee"})
    assert [i.id for i in rows] == [mine.id]


def test_list_instances_filters_by_priority_entity_type_and_search():
    token = uuid.uuid4().hex[:8]
    template = _template()
    urgent = workflow_service.create_instance(
        template.id,
        "emp-1",
        name=f"Laptop {token} replacement",
        priority="urgent",
        related_entity={"entity_type": "document", "entity_id": "doc-1"},
    )
    workflow_service.create_instance(template.id, "emp-1", name=f"Desk {token}", priority="low")

    by_search = workflow_service.list_instances(search=token.upper(), template_id=template.id)
    assert len(by_search) == 2

    by_priority = workflow_service.list_instances(search=token, priority="urgent")
    assert [i.id for i in by_priority] == [urgent.id]

    by_entity = workflow_service.list_instances(template_id=template.id, entity_type="document")
    assert [i.id for i in by_entity] == [urgent.id]


def test_current_step_missing_from_snapshot_is_corrupt():
    instance = _started()

    db = SessionLocal()
    try:
        row = db.get(WorkflowInstance, instance.id)
        row.current_step = 99
        db.commit()
    finally:
        db.close()

    with pytest.raises(CorruptInstanceError):
        workflow_service.advance_step(instance.id, "mgr-1")
    with pytest.raises(CorruptInstanceError):
        workflow_service.reject_step(instance.id, "mgr-1", "broken")

    fresh = workflow_service.get_instance(instance.id)
    assert fresh.current_step == 99
    assert fresh.status == "active"
