import uuid
from datetime import datetime, timezone
from typing import List

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import relationship
from sqlalchemy.schema import Index

from opsflow.database import Base
from opsflow.models.workflow import StepState


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowInstance(Base):
    __tablename__ = "workflow_instances"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    template_id = Column(
        String,
        ForeignKey("workflow_templates.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    name = Column(String, nullable=False)
    initiator_id = Column(String, nullable=False, index=True)
    department_id = Column(String, nullable=True, index=True)

    status = Column(String, nullable=False, default="draft", index=True)
    priority = Column(String, nullable=False, default="medium")

    current_step = Column(Integer, nullable=False, default=0)
    start_date = Column(DateTime(timezone=True), nullable=True)
    completed_date = Column(DateTime(timezone=True), nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)

    related_entity_type = Column(String, nullable=False, default="none")
    related_entity_id = Column(String, nullable=True)

    steps_data = Column(JSON, nullable=False, default=list)
    comments = Column(MutableList.as_mutable(JSON), nullable=False, default=list)
    tags = Column(MutableList.as_mutable(JSON), nullable=False, default=list)
    is_archived = Column(Boolean, nullable=False, default=False)

    # Optimistic concurrency: every UPDATE is conditioned on the loaded version.
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    history = relationship(
        "WorkflowHistoryEntry",
        order_by="WorkflowHistoryEntry.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_workflow_instances_related_entity", "related_entity_type", "related_entity_id"),
    )

    def step_states(self) -> List[StepState]:
        return [StepState.from_dict(s) for s in (self.steps_data or [])]
