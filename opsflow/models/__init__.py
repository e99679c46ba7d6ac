from opsflow.models.event_outbox import EventOutbox
from opsflow.models.workflow_history import WorkflowHistoryEntry
from opsflow.models.workflow_instance import WorkflowInstance
from opsflow.models.workflow_template import WorkflowTemplate

__all__ = [
    "EventOutbox",
    "WorkflowHistoryEntry",
    "WorkflowInstance",
    "WorkflowTemplate",
]
