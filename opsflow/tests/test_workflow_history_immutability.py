import uuid

import pytest
from sqlalchemy.exc import DBAPIError

from opsflow.database import SessionLocal
from opsflow.models.workflow_history import WorkflowHistoryEntry
from opsflow.services import template_store, workflow_service


def _instance_with_history():
    template = template_store.create_template(
        name=f"Audit {uuid.uuid4().hex[:8]}",
        creator_id="mgr-1",
        steps=[{"name": "Review"}],
    )
    return workflow_service.create_instance(template.id, "emp-1")


def test_workflow_history_update_is_blocked():
    instance = _instance_with_history()

    db = SessionLocal()
    try:
        row = db.query(WorkflowHistoryEntry).filter_by(instance_id=instance.id).one()
        row.details = "MUTATED"
        with pytest.raises(DBAPIError):
            db.commit()
    finally:
        db.rollback()
        db.close()


def test_workflow_history_delete_is_blocked():
    instance = _instance_with_history()

    db = SessionLocal()
    try:
        row = db.query(WorkflowHistoryEntry).filter_by(instance_id=instance.id).one()
        db.delete(row)
        with pytest.raises(DBAPIError):
            db.commit()
    finally:
        db.rollback()
        db.close()

    fresh = workflow_service.get_instance(instance.id)
    assert [h.details for h in fresh.history] == [instance.history[0].details]
