import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from opsflow.models.event_outbox import EventOutbox

logger = logging.getLogger(__name__)

NotificationDispatcher = Callable[[Dict[str, Any]], None]

_dispatcher: Optional[NotificationDispatcher] = None


def set_notification_dispatcher(dispatcher: Optional[NotificationDispatcher]) -> None:
    """Install the delivery callable (socket push, email, ...). None restores log-only."""
    global _dispatcher
    _dispatcher = dispatcher


def _log_only_dispatch(fact: Dict[str, Any]) -> None:
    logger.info("Workflow notification fact", extra={"fact": fact})


def handle_workflow_step_changed(row: EventOutbox, db: Session) -> None:
    _ = db
    payload: Any = row.payload or {}

    if not isinstance(payload, dict) or not payload.get("instance_id") or not payload.get("event_kind"):
        logger.info(
            "WORKFLOW_STEP_CHANGED missing instance_id/event_kind; skipping",
            extra={"event_outbox_id": row.id},
        )
        return

    fact = {
        "instance_id": str(payload["instance_id"]),
        "step_number": payload.get("step_number"),
        "event_kind": str(payload["event_kind"]),
        "recipients": list(payload.get("recipients") or []),
    }

    dispatch = _dispatcher or _log_only_dispatch
    dispatch(fact)
