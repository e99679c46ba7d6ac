import uuid

import pytest

from opsflow.core.errors import ConcurrentModificationError, InvalidStateError
from opsflow.database import SessionLocal
from opsflow.models.event_outbox import EventOutbox
from opsflow.models.workflow_instance import WorkflowInstance
from opsflow.services import template_store, workflow_service


def _started_instance():
    template = template_store.create_template(
        name=f"Concurrency {uuid.uuid4().hex[:8]}",
        creator_id="mgr-1",
        steps=[{"name": "Review"}, {"name": "Approve"}, {"name": "Archive"}],
    )
    instance = workflow_service.create_instance(template.id, "emp-1")
    return workflow_service.start_instance(instance.id, "emp-1")


def test_stale_writer_gets_concurrent_modification_not_double_advance():
    instance = _started_instance()

    db1 = SessionLocal()
    db2 = SessionLocal()
    try:
        # Both writers read the same version before either writes.
        db1.get(WorkflowInstance, instance.id)
        db2.get(WorkflowInstance, instance.id)

        workflow_service.advance_step(instance.id, "mgr-1", expected_step=1, db=db1)
        db1.commit()

        with pytest.raises(ConcurrentModificationError) as excinfo:
            workflow_service.advance_step(instance.id, "mgr-2", expected_step=1, db=db2)
        assert excinfo.value.retryable is True
        db2.rollback()
    finally:
        db1.close()
        db2.close()

    fresh = workflow_service.get_instance(instance.id)
    assert fresh.current_step == 2
    assert [s["status"] for s in fresh.steps_data] == ["completed", "in_progress", "pending"]
    assert [h.action for h in fresh.history].count("step_completed") == 1


def test_retry_after_conflict_sees_new_state():
    instance = _started_instance()

    workflow_service.advance_step(instance.id, "mgr-1", expected_step=1)

    # The loser re-reads and retries with the step it meant to act on.
    with pytest.raises(InvalidStateError):
        workflow_service.advance_step(instance.id, "mgr-2", expected_step=1)


def test_expected_version_fails_fast():
    instance = _started_instance()
    stale_version = instance.version

    workflow_service.add_comment(instance.id, "emp-1", "bump")

    with pytest.raises(ConcurrentModificationError) as excinfo:
        workflow_service.advance_step(instance.id, "mgr-1", expected_version=stale_version)
    assert excinfo.value.expected_version == stale_version


def test_losing_writer_enqueues_no_notification():
    instance = _started_instance()

    db1 = SessionLocal()
    db2 = SessionLocal()
    try:
        db1.get(WorkflowInstance, instance.id)
        db2.get(WorkflowInstance, instance.id)

        workflow_service.advance_step(instance.id, "mgr-1", db=db1)
        db1.commit()

        with pytest.raises(ConcurrentModificationError):
            workflow_service.advance_step(instance.id, "mgr-2", db=db2)
        db2.rollback()
    finally:
        db1.close()
        db2.close()

    db = SessionLocal()
    try:
        kinds = [
            r.payload["event_kind"]
            for r in db.query(EventOutbox)
            .filter(EventOutbox.aggregate_id == instance.id)
            .order_by(EventOutbox.id.asc())
            .all()
        ]
    finally:
        db.close()

    assert kinds == ["step_started", "step_completed", "step_started"]
