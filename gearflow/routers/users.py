from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.orm import Session

from gearflow.auth import Principal, get_current_principal, require_admin
from gearflow.db import get_db
from gearflow.dependencies import get_client_ip
from gearflow.models import ProfileRole, ProfileStatus
from gearflow.schemas import ProfileUpdateIn, RoleIn, StatusIn
from gearflow.serializers import profile_out
from gearflow.services import notification_service, profile_service
from gearflow.services.audit_service import log_audit

router = APIRouter(prefix='/api/users', tags=['users'])


@router.get('')
def list_users(
    role: ProfileRole | None = None,
    status: ProfileStatus | None = None,
    search: str | None = None,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    rows = profile_service.list_profiles(db, role=role, status=status, search=search)
    return {'data': [profile_out(row) for row in rows], 'error': None}


@router.patch('/me')
def update_me(
    payload: ProfileUpdateIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    profile = profile_service.update_own_profile(db, principal.id, changes=payload.model_dump(exclude_unset=True))
    db.commit()
    return {'success': True, 'data': profile_out(profile)}


@router.get('/me/notification-preferences')
def get_preferences(db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    return {'data': profile_service.get_notification_preferences(db, principal.id), 'error': None}


@router.put('/me/notification-preferences')
def update_preferences(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    preferences = profile_service.update_notification_preferences(db, principal.id, payload=payload)
    db.commit()
    return {'success': True, 'data': preferences}


def _after_profile_change(db: Session, request: Request, principal: Principal, profile, before: dict, action: str) -> dict:
    after = profile_service.profile_snapshot(profile)
    if after == before:
        return {'success': True, 'data': profile_out(profile), 'errors': []}
    log_audit(
        db,
        actor_profile_id=principal.id,
        action=action,
        ip=get_client_ip(request),
        metadata={'profile_id': profile.id, 'before': before, 'after': after},
    )
    db.commit()
    fanout = notification_service.dispatch(db, table='profiles', operation='UPDATE', record=after, old_record=before)
    return {'success': True, 'data': profile_out(profile), 'errors': fanout['errors']}


@router.put('/{user_id}/role')
def set_role(
    user_id: int,
    payload: RoleIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    profile, before = profile_service.set_role(db, user_id, role=payload.role)
    return _after_profile_change(db, request, principal, profile, before, 'PROFILE_ROLE_CHANGED')


@router.put('/{user_id}/status')
def set_status(
    user_id: int,
    payload: StatusIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    profile, before = profile_service.set_status(db, user_id, status=payload.status)
    return _after_profile_change(db, request, principal, profile, before, 'PROFILE_STATUS_CHANGED')
