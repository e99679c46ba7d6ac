import uuid
from datetime import datetime, timezone
from typing import List

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.schema import Index

from opsflow.database import Base
from opsflow.models.workflow import StepDefinition


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowTemplate(Base):
    __tablename__ = "workflow_templates"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)

    creator_id = Column(String, nullable=False)
    department_id = Column(String, nullable=True, index=True)

    category = Column(String, nullable=False, default="custom", index=True)
    priority = Column(String, nullable=False, default="medium")
    is_active = Column(Boolean, nullable=False, default=True)

    # Structural revisions of a referenced template get a new row.
    version = Column(Integer, nullable=False, default=1)
    previous_version_id = Column(String, nullable=True)

    steps = Column(JSON, nullable=False, default=list)
    tags = Column(MutableList.as_mutable(JSON), nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_workflow_templates_active_category", "is_active", "category"),
    )

    def step_definitions(self) -> List[StepDefinition]:
        return [StepDefinition.from_dict(s) for s in (self.steps or [])]
