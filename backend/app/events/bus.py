from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from app.db.models.common import utcnow
from app.events.outbox import OutboxEvent


def publish(db: Session, topic: str, payload: dict, *, available_at: datetime | None = None) -> OutboxEvent:
    """Publish an event by writing to the transactional outbox.

    The caller owns the transaction: the event becomes visible when the
    surrounding change commits and disappears with it on rollback.
    """
    evt = OutboxEvent(
        topic=topic,
        payload=payload or {},
        available_at=available_at or utcnow(),
        delivered=False,
        attempt_count=0,
    )
    db.add(evt)
    return evt
