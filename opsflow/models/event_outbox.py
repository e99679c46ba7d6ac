from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.schema import Index, UniqueConstraint

from opsflow.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventOutbox(Base):
    __tablename__ = "event_outbox"

    id = Column(Integer, primary_key=True)

    event_type = Column(String, nullable=False, index=True)
    idempotency_key = Column(String, nullable=False)
    aggregate_id = Column(String, nullable=False, index=True)

    payload = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)

    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    # created_at + backoff(retry_count); the due filter runs in SQL before LIMIT.
    available_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "event_type",
            "idempotency_key",
            name="uq_event_outbox_idempotency",
        ),
        Index("ix_event_outbox_processed", "processed", "available_at"),
    )
