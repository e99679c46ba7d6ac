import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from opsflow.database import SessionLocal
from opsflow.models.event_outbox import EventOutbox

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboxProcessResult:
    processed: int
    failed: int


OutboxHandler = Callable[[EventOutbox, Session], None]

_ADVISORY_LOCK_KEYS = (4242, 4243)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_utc_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _retry_wait(retry_count: int) -> timedelta:
    """Deterministic exponential backoff for outbox retries.

    Contract (tests):
      - retry_count <= 0 => 0s
      - retry_count == 1 => 2s
      - retry_count == 2 => 4s
      - retry_count == 3 => 8s
    Capped at 60s.
    """
    n = int(retry_count) if retry_count is not None else 0
    if n <= 0:
        return timedelta(seconds=0)

    seconds = 2**n
    if seconds > 60:
        seconds = 60
    return timedelta(seconds=seconds)


def _due(created_at: datetime, retry_count: int, now: datetime) -> bool:
    """Timezone-normalized due check. Naive datetimes treated as UTC."""
    return _to_utc_aware(now) >= _to_utc_aware(created_at) + _retry_wait(retry_count)


def enqueue_event(
    db: Session,
    *,
    event_type: str,
    idempotency_key: str,
    aggregate_id: str,
    payload: Dict[str, Any],
    now: Optional[datetime] = None,
) -> EventOutbox:
    """Add an outbox row to the caller's transaction. Caller commits."""
    now = _utcnow() if now is None else _to_utc_aware(now)

    row = EventOutbox(
        event_type=event_type,
        idempotency_key=idempotency_key,
        aggregate_id=aggregate_id,
        payload=payload,
        processed=False,
        retry_count=0,
        created_at=now,
        available_at=now,
    )
    db.add(row)
    return row


def _default_handlers() -> Dict[str, OutboxHandler]:
    from opsflow.services.outbox_handlers import handle_workflow_step_changed

    return {
        "WORKFLOW_STEP_CHANGED": handle_workflow_step_changed,
    }


def process_outbox_batch(
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
    batch_size: int = 50,
    max_retries: int = 10,
    handlers: Optional[Dict[str, OutboxHandler]] = None,
) -> OutboxProcessResult:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    now = _utcnow() if now is None else _to_utc_aware(now)

    if handlers is None:
        handlers = _default_handlers()

    processed = 0
    failed = 0

    try:
        # Due filter before LIMIT so not-due rows can't starve due rows.
        rows = (
            db.query(EventOutbox)
            .filter(EventOutbox.processed.is_(False))
            .filter(EventOutbox.available_at <= now)
            .order_by(EventOutbox.id.asc())
            .with_for_update(skip_locked=True)
            .limit(int(batch_size))
            .all()
        )

        for row in rows:
            if not _due(row.created_at, row.retry_count, now):
                continue

            handler = handlers.get(row.event_type)

            try:
                if handler is None:
                    raise ValueError(f"Unknown event_type: {row.event_type}")

                handler(row, db)

                row.processed = True
                row.processed_at = now
                db.flush()
                processed += 1

            except Exception:
                row.retry_count = int(row.retry_count or 0) + 1
                row.available_at = _to_utc_aware(row.created_at) + _retry_wait(row.retry_count)

                if int(row.retry_count) >= int(max_retries):
                    row.processed = True
                    row.processed_at = now

                db.flush()
                failed += 1
                logger.exception(
                    "Outbox row processing failed",
                    extra={
                        "event_outbox_id": row.id,
                        "event_type": row.event_type,
                        "retry_count": int(row.retry_count),
                        "max_retries": int(max_retries),
                    },
                )

        if owns_db:
            db.commit()

        return OutboxProcessResult(processed=processed, failed=failed)

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def _is_postgres(db: Session) -> bool:
    bind = db.get_bind()
    return getattr(getattr(bind, "dialect", None), "name", "") == "postgresql"


def try_acquire_outbox_lock(db: Session) -> bool:
    # Single-worker guarantee only exists on Postgres; other backends run one process.
    if not _is_postgres(db):
        return True
    res = db.execute(
        text("select pg_try_advisory_lock(:a, :b)"),
        {"a": _ADVISORY_LOCK_KEYS[0], "b": _ADVISORY_LOCK_KEYS[1]},
    ).scalar()
    return bool(res)


def release_outbox_lock(db: Session) -> None:
    if not _is_postgres(db):
        return
    db.execute(
        text("select pg_advisory_unlock(:a, :b)"),
        {"a": _ADVISORY_LOCK_KEYS[0], "b": _ADVISORY_LOCK_KEYS[1]},
    )
