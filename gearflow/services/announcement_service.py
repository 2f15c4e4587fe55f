from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from gearflow.errors import NotFound, ValidationError
from gearflow.models import Announcement


def create_announcement(db: Session, *, title: str, content: str | None, created_by: int) -> Announcement:
    title = (title or '').strip()
    if not title:
        raise ValidationError('Announcement title is required')
    announcement = Announcement(title=title, content=content, created_by=created_by)
    db.add(announcement)
    db.flush()
    return announcement


def list_announcements(db: Session, *, limit: int = 20) -> list[Announcement]:
    return list(
        db.execute(
            select(Announcement).order_by(Announcement.created_at.desc(), Announcement.id.desc()).limit(limit)
        )
        .scalars()
        .all()
    )


def delete_announcement(db: Session, announcement_id: int) -> None:
    announcement = db.get(Announcement, announcement_id)
    if not announcement:
        raise NotFound('Announcement not found')
    db.delete(announcement)
    db.flush()
