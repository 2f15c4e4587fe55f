from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from gearflow.models import PushNotificationQueue, PushQueueStatus


def enqueue_push(db: Session, *, user_id: int, title: str, body: str, data: dict | None = None) -> PushNotificationQueue:
    row = PushNotificationQueue(
        user_id=user_id,
        title=title,
        body=body,
        data=data or {},
        status=PushQueueStatus.PENDING,
    )
    db.add(row)
    db.flush()
    return row


def list_pending(db: Session, *, limit: int = 100) -> list[PushNotificationQueue]:
    return list(
        db.execute(
            select(PushNotificationQueue)
            .where(PushNotificationQueue.status == PushQueueStatus.PENDING)
            .order_by(PushNotificationQueue.id.asc())
            .limit(limit)
        )
        .scalars()
        .all()
    )
