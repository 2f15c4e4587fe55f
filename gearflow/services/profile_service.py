from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from gearflow.errors import Conflict, NotFound, ValidationError
from gearflow.models import Profile, ProfileRole, ProfileStatus
from gearflow.security.passwords import check_password_policy, hash_password
from gearflow.services.preferences import merge_preferences, resolve_preferences, validate_preferences


logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def normalize_email(value: str | None) -> str:
    return (value or '').strip().lower()


def profile_snapshot(profile: Profile) -> dict:
    return {
        'id': profile.id,
        'email': profile.email,
        'full_name': profile.full_name,
        'role': ProfileRole(profile.role).value,
        'status': ProfileStatus(profile.status).value,
    }


def get_profile(db: Session, profile_id: int) -> Profile:
    profile = db.get(Profile, profile_id)
    if not profile:
        raise NotFound('User not found')
    return profile


def find_by_email(db: Session, email: str) -> Profile | None:
    return db.execute(select(Profile).where(Profile.email == normalize_email(email))).scalar_one_or_none()


def signup(
    db: Session,
    *,
    email: str,
    password: str,
    full_name: str | None = None,
    phone: str | None = None,
    department: str | None = None,
) -> Profile:
    email = normalize_email(email)
    if not email or '@' not in email:
        raise ValidationError('A valid email is required')
    check_password_policy(password)
    if find_by_email(db, email) is not None:
        raise Conflict('An account with this email already exists')

    profile = Profile(
        email=email,
        password_hash=hash_password(password),
        full_name=(full_name or '').strip() or None,
        phone=phone,
        department=department,
        role=ProfileRole.USER,
        status=ProfileStatus.ACTIVE,
        notification_preferences={},
    )
    db.add(profile)
    db.flush()
    logger.info('profile_created', profile_id=profile.id)
    return profile


def list_profiles(
    db: Session,
    *,
    role: ProfileRole | None = None,
    status: ProfileStatus | None = None,
    search: str | None = None,
) -> list[Profile]:
    stmt = select(Profile).order_by(Profile.full_name.asc(), Profile.email.asc())
    if role is not None:
        stmt = stmt.where(Profile.role == role)
    if status is not None:
        stmt = stmt.where(Profile.status == status)
    if search:
        pattern = f'%{search.strip().lower()}%'
        stmt = stmt.where(or_(Profile.email.like(pattern), func.lower(func.coalesce(Profile.full_name, '')).like(pattern)))
    return list(db.execute(stmt).scalars().all())


def update_own_profile(db: Session, profile_id: int, *, changes: dict) -> Profile:
    profile = get_profile(db, profile_id)
    for key in ('full_name', 'phone', 'department'):
        if key in changes:
            setattr(profile, key, changes[key])
    profile.updated_at = _now()
    db.flush()
    return profile


def _active_admin_count(db: Session) -> int:
    return db.execute(
        select(func.count(Profile.id)).where(Profile.role == ProfileRole.ADMIN, Profile.status == ProfileStatus.ACTIVE)
    ).scalar_one()


def set_role(db: Session, profile_id: int, *, role: ProfileRole) -> tuple[Profile, dict]:
    profile = get_profile(db, profile_id)
    before = profile_snapshot(profile)
    if profile.role == role:
        return profile, before
    if profile.role == ProfileRole.ADMIN and profile.status == ProfileStatus.ACTIVE and _active_admin_count(db) <= 1:
        raise Conflict('Cannot remove the last active admin')
    profile.role = role
    profile.updated_at = _now()
    db.flush()
    logger.info('profile_role_changed', profile_id=profile.id, role=role.value)
    return profile, before


def set_status(db: Session, profile_id: int, *, status: ProfileStatus) -> tuple[Profile, dict]:
    profile = get_profile(db, profile_id)
    before = profile_snapshot(profile)
    if profile.status == status:
        return profile, before
    if (
        profile.role == ProfileRole.ADMIN
        and profile.status == ProfileStatus.ACTIVE
        and status != ProfileStatus.ACTIVE
        and _active_admin_count(db) <= 1
    ):
        raise Conflict('Cannot deactivate the last active admin')
    profile.status = status
    profile.updated_at = _now()
    db.flush()
    logger.info('profile_status_changed', profile_id=profile.id, status=status.value)
    return profile, before


def get_notification_preferences(db: Session, profile_id: int) -> dict[str, dict[str, bool]]:
    return resolve_preferences(get_profile(db, profile_id).notification_preferences)


def update_notification_preferences(db: Session, profile_id: int, *, payload: object) -> dict[str, dict[str, bool]]:
    cleaned = validate_preferences(payload)
    profile = get_profile(db, profile_id)
    profile.notification_preferences = merge_preferences(profile.notification_preferences, cleaned)
    profile.updated_at = _now()
    db.flush()
    return resolve_preferences(profile.notification_preferences)
