"""Append-only recording of instance history and step actions.

Callers validate before recording; the recorder itself never rejects an
entry. The only failure it surfaces is a storage failure (PersistenceError).
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from opsflow.core.errors import PersistenceError
from opsflow.models.workflow import Attachment, StepAction, StepState
from opsflow.models.workflow_history import WorkflowHistoryEntry
from opsflow.models.workflow_instance import WorkflowInstance

logger = logging.getLogger(__name__)


def record_history(
    db: Session,
    instance: WorkflowInstance,
    *,
    action: str,
    actor_id: str,
    at: datetime,
    step_number: Optional[int] = None,
    details: str = "",
) -> WorkflowHistoryEntry:
    entry = WorkflowHistoryEntry(
        action=str(action),
        user_id=str(actor_id),
        step_number=step_number,
        details=details,
        timestamp=at,
    )

    try:
        instance.history.append(entry)
        db.add(entry)
    except SQLAlchemyError as exc:
        logger.exception(
            "Failed to record workflow history",
            extra={"instance_id": instance.id, "history_action": str(action)},
        )
        raise PersistenceError("Failed to record workflow history") from exc

    return entry


def record_step_action(
    step: StepState,
    *,
    action: str,
    actor_id: str,
    at: datetime,
    comment: str = "",
    attachments: Optional[Iterable[Attachment]] = None,
    delegated_to: Optional[str] = None,
) -> StepAction:
    entry = StepAction(
        action=str(action),
        user_id=str(actor_id),
        timestamp=at,
        comment=comment or "",
        attachments=list(attachments or []),
        delegated_to=delegated_to,
    )
    step.actions.append(entry)
    return entry
