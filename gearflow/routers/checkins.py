from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from gearflow.auth import Principal, get_current_principal, require_admin
from gearflow.db import get_db
from gearflow.dependencies import get_client_ip
from gearflow.models import CheckinStatus
from gearflow.schemas import CheckinApproveIn, CheckinIn, CheckinNotifyIn, RejectIn
from gearflow.serializers import checkin_out
from gearflow.services import checkin_service, notification_service
from gearflow.services.audit_service import log_audit

router = APIRouter(prefix='/api/checkins', tags=['checkins'])


@router.get('')
def list_checkins(
    status: CheckinStatus | None = None,
    user_id: int | None = None,
    limit: int = 100,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    if not principal.is_admin:
        user_id = principal.id
    rows = checkin_service.list_checkins(db, status=status, user_id=user_id, limit=limit)
    return {'data': [checkin_out(row) for row in rows], 'error': None}


@router.post('', status_code=201)
def submit_checkin(
    payload: CheckinIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    checkin = checkin_service.submit_checkin(
        db,
        principal=principal,
        gear_id=payload.gear_id,
        condition=payload.condition,
        notes=payload.notes,
        damage_notes=payload.damage_notes,
        quantity=payload.quantity,
        request_id=payload.request_id,
    )
    log_audit(
        db,
        actor_profile_id=principal.id,
        action='CHECKIN_SUBMITTED',
        ip=get_client_ip(request),
        metadata={'checkin_id': checkin.id, 'gear_id': checkin.gear_id},
    )
    db.commit()
    fanout = notification_service.dispatch(
        db,
        table='checkins',
        operation='INSERT',
        record=checkin_service.checkin_snapshot(checkin),
    )
    return {'success': True, 'data': checkin_out(checkin), 'errors': fanout['errors']}


@router.post('/notify')
def notify_checkin(
    payload: CheckinNotifyIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    errors = checkin_service.send_checkin_notices(db, payload.checkin_id, principal=principal)
    return {'success': True, 'errors': errors}


@router.post('/{checkin_id}/approve')
def approve_checkin(
    checkin_id: int,
    request: Request,
    payload: CheckinApproveIn | None = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    previous = checkin_service.checkin_snapshot(checkin_service.get_checkin(db, checkin_id))
    checkin, changed = checkin_service.approve_checkin(
        db,
        checkin_id,
        admin_id=principal.id,
        notes=payload.notes if payload else None,
    )
    if not changed:
        return {'success': True, 'data': checkin_out(checkin), 'errors': []}

    log_audit(
        db,
        actor_profile_id=principal.id,
        action='CHECKIN_APPROVED',
        ip=get_client_ip(request),
        metadata={'checkin_id': checkin.id, 'gear_id': checkin.gear_id},
    )
    db.commit()
    fanout = notification_service.dispatch(
        db,
        table='checkins',
        operation='UPDATE',
        record=checkin_service.checkin_snapshot(checkin),
        old_record=previous,
    )
    return {'success': True, 'data': checkin_out(checkin), 'errors': fanout['errors']}


@router.post('/{checkin_id}/reject')
def reject_checkin(
    checkin_id: int,
    request: Request,
    payload: RejectIn | None = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    previous = checkin_service.checkin_snapshot(checkin_service.get_checkin(db, checkin_id))
    checkin, changed = checkin_service.reject_checkin(
        db,
        checkin_id,
        admin_id=principal.id,
        reason=payload.reason if payload else None,
    )
    if not changed:
        return {'success': True, 'data': checkin_out(checkin), 'errors': []}

    log_audit(
        db,
        actor_profile_id=principal.id,
        action='CHECKIN_REJECTED',
        ip=get_client_ip(request),
        metadata={'checkin_id': checkin.id},
    )
    db.commit()
    fanout = notification_service.dispatch(
        db,
        table='checkins',
        operation='UPDATE',
        record=checkin_service.checkin_snapshot(checkin),
        old_record=previous,
    )
    return {'success': True, 'data': checkin_out(checkin), 'errors': fanout['errors']}
