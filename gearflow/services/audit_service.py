from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from gearflow.models import ActivityLog, AuthEvent


def log_auth_event(
    db: Session,
    *,
    attempted_email: str,
    success: bool,
    ip: str | None,
    user_agent: str | None,
    profile_id: int | None = None,
    failure_reason: str | None = None,
) -> None:
    db.add(
        AuthEvent(
            attempted_email=attempted_email,
            success=success,
            failure_reason=failure_reason,
            profile_id=profile_id,
            ip=ip,
            user_agent=user_agent,
        )
    )


def log_audit(
    db: Session,
    *,
    actor_profile_id: int | None,
    action: str,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        ActivityLog(
            actor_profile_id=actor_profile_id,
            action=action,
            ip=ip,
            meta=metadata or {},
        )
    )


def list_activity(db: Session, *, limit: int = 50, actor_profile_id: int | None = None) -> list[ActivityLog]:
    stmt = select(ActivityLog).order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit)
    if actor_profile_id is not None:
        stmt = stmt.where(ActivityLog.actor_profile_id == actor_profile_id)
    return list(db.execute(stmt).scalars().all())
