import uuid

import pytest

from opsflow.core.errors import InvalidStateError, ValidationError
from opsflow.services import template_store, workflow_service


def _started(steps):
    template = template_store.create_template(
        name=f"Procurement {uuid.uuid4().hex[:8]}",
        creator_id="mgr-1",
        steps=steps,
        category="procurement",
    )
    instance = workflow_service.create_instance(template.id, "emp-1")
    return workflow_service.start_instance(instance.id, "emp-1")


def _current(instance):
    return next(s for s in instance.steps_data if s["step_number"] == instance.current_step)


def test_approve_records_action_and_advances():
    instance = _started([{"name": "Manager"}, {"name": "Finance"}])

    instance = workflow_service.process_step_action(instance.id, "mgr-1", "approve", comment="ok")

    assert instance.current_step == 2
    first = instance.steps_data[0]
    assert first["status"] == "completed"
    assert [a["action"] for a in first["actions"]] == ["approve"]
    assert first["actions"][0]["user_id"] == "mgr-1"


def test_action_not_allowed_on_step_is_rejected():
    instance = _started([{"name": "Manager", "actions": ["approve"]}])

    with pytest.raises(ValidationError, match="not permitted"):
        workflow_service.process_step_action(instance.id, "mgr-1", "delegate", delegate_to="mgr-2")


def test_unknown_action_is_validation_error():
    instance = _started([{"name": "Manager"}])
    with pytest.raises(ValidationError):
        workflow_service.process_step_action(instance.id, "mgr-1", "escalate")


def test_approve_requires_required_form_fields():
    instance = _started(
        [
            {
                "name": "Quote",
                "form_fields": [
                    {"label": "Amount", "type": "text", "required": True},
                    {"label": "Notes", "type": "textarea"},
                ],
            },
            {"name": "Finance"},
        ]
    )

    with pytest.raises(ValidationError, match="Amount"):
        workflow_service.process_step_action(instance.id, "emp-1", "approve", form_data={"Notes": "urgent"})

    fresh = workflow_service.get_instance(instance.id)
    assert _current(fresh)["form_data"] == {}

    instance = workflow_service.process_step_action(
        instance.id, "emp-1", "approve", form_data={"Amount": "1200"}
    )
    assert instance.steps_data[0]["form_data"] == {"Amount": "1200"}
    assert instance.current_step == 2


def test_reject_action_requires_comment_and_is_terminal():
    instance = _started([{"name": "Manager"}, {"name": "Finance"}])

    with pytest.raises(ValidationError):
        workflow_service.process_step_action(instance.id, "mgr-1", "reject")

    instance = workflow_service.process_step_action(instance.id, "mgr-1", "reject", comment="over budget")

    assert instance.status == "rejected"
    step = instance.steps_data[0]
    assert step["status"] == "rejected"
    assert [a["action"] for a in step["actions"]] == ["reject"]

    with pytest.raises(InvalidStateError):
        workflow_service.process_step_action(instance.id, "mgr-1", "approve")


def test_request_changes_keeps_step_open():
    instance = _started([{"name": "Manager"}, {"name": "Finance"}])

    instance = workflow_service.process_step_action(
        instance.id, "mgr-1", "request_changes", comment="attach the quote"
    )

    assert instance.status == "active"
    assert instance.current_step == 1
    assert _current(instance)["status"] == "in_progress"
    assert instance.history[-1].action == "updated"
    assert instance.history[-1].details == "Changes requested for step 1: attach the quote"


def test_delegate_reassigns_current_step():
    instance = _started([{"name": "Manager", "assigned_role": "specific_user", "assigned_user": "mgr-1"}])

    with pytest.raises(ValidationError):
        workflow_service.process_step_action(instance.id, "mgr-1", "delegate")
    with pytest.raises(ValidationError, match="already assigned"):
        workflow_service.process_step_action(instance.id, "mgr-1", "delegate", delegate_to="mgr-1")

    instance = workflow_service.process_step_action(
        instance.id,
        "mgr-1",
        "delegate",
        delegate_to="mgr-7",
        attachments=[{"name": "handover.pdf", "path": "/files/handover.pdf", "mime_type": "application/pdf"}],
    )

    step = _current(instance)
    assert step["assigned_to"] == "mgr-7"
    assert step["actions"][-1]["delegated_to"] == "mgr-7"
    assert step["actions"][-1]["attachments"][0]["name"] == "handover.pdf"
    assert instance.history[-1].action == "reassigned"


def test_comment_action_adds_to_thread_and_step():
    instance = _started([{"name": "Manager"}])

    instance = workflow_service.process_step_action(instance.id, "emp-1", "comment", comment="any update?")

    assert instance.status == "active"
    assert instance.comments[-1]["comment"] == "any update?"
    assert _current(instance)["actions"][-1]["action"] == "comment"
