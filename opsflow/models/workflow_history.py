from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from opsflow.database import Base


class WorkflowHistoryEntry(Base):
    """Instance-level audit trail. Rows are immutable once written (DB triggers)."""

    __tablename__ = "workflow_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(String, ForeignKey("workflow_instances.id"), nullable=False, index=True)

    action = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    step_number = Column(Integer, nullable=True)
    details = Column(Text, nullable=False, default="")

    timestamp = Column(DateTime(timezone=True), nullable=False)
