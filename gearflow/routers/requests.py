from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from gearflow.auth import Principal, assert_owner_or_admin, get_current_principal, require_admin
from gearflow.db import get_db
from gearflow.dependencies import get_client_ip
from gearflow.models import RequestStatus
from gearflow.schemas import ApproveRequestIn, RejectIn, RequestIn
from gearflow.serializers import request_out
from gearflow.services import notification_service, request_service
from gearflow.services.audit_service import log_audit

router = APIRouter(prefix='/api/requests', tags=['requests'])


@router.get('')
def list_requests(
    status: RequestStatus | None = None,
    user_id: int | None = None,
    page: int = 1,
    page_size: int = 20,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    if not principal.is_admin:
        user_id = principal.id
    rows, total = request_service.list_requests(db, status=status, user_id=user_id, page=page, page_size=page_size)
    return {'data': [request_out(row) for row in rows], 'total': total, 'error': None}


@router.get('/{request_id}')
def get_request(request_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    gear_request = request_service.get_request(db, request_id)
    assert_owner_or_admin(principal, gear_request.user_id)
    return {'data': request_out(gear_request), 'error': None}


@router.post('', status_code=201)
def submit_request(
    payload: RequestIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    lines = [(line.gear_id, line.quantity) for line in payload.lines]
    lines.extend((gear_id, 1) for gear_id in payload.gear_ids)
    gear_request = request_service.submit_request(
        db,
        user_id=principal.id,
        lines=lines,
        reason=payload.reason,
        destination=payload.destination,
        expected_duration=payload.expected_duration,
    )
    log_audit(
        db,
        actor_profile_id=principal.id,
        action='REQUEST_SUBMITTED',
        ip=get_client_ip(request),
        metadata={'request_id': gear_request.id},
    )
    db.commit()
    fanout = notification_service.dispatch(
        db,
        table='gear_requests',
        operation='INSERT',
        record=request_service.request_snapshot(gear_request),
    )
    return {'success': True, 'data': request_out(gear_request), 'errors': fanout['errors']}


@router.post('/{request_id}/approve')
def approve_request(
    request_id: int,
    request: Request,
    payload: ApproveRequestIn | None = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    previous = request_service.request_snapshot(request_service.get_request(db, request_id))
    gear_request, changed = request_service.approve_request(
        db,
        request_id,
        admin_notes=payload.admin_notes if payload else None,
    )
    if not changed:
        return {'success': True, 'data': request_out(gear_request), 'errors': []}

    log_audit(
        db,
        actor_profile_id=principal.id,
        action='REQUEST_APPROVED',
        ip=get_client_ip(request),
        metadata={'request_id': gear_request.id},
    )
    db.commit()
    fanout = notification_service.dispatch(
        db,
        table='gear_requests',
        operation='UPDATE',
        record=request_service.request_snapshot(gear_request),
        old_record=previous,
    )
    return {'success': True, 'data': request_out(gear_request), 'errors': fanout['errors']}


@router.post('/{request_id}/reject')
def reject_request(
    request_id: int,
    request: Request,
    payload: RejectIn | None = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    previous = request_service.request_snapshot(request_service.get_request(db, request_id))
    gear_request, changed = request_service.reject_request(db, request_id, reason=payload.reason if payload else None)
    if not changed:
        return {'success': True, 'data': request_out(gear_request), 'errors': []}

    log_audit(
        db,
        actor_profile_id=principal.id,
        action='REQUEST_REJECTED',
        ip=get_client_ip(request),
        metadata={'request_id': gear_request.id},
    )
    db.commit()
    fanout = notification_service.dispatch(
        db,
        table='gear_requests',
        operation='UPDATE',
        record=request_service.request_snapshot(gear_request),
        old_record=previous,
    )
    return {'success': True, 'data': request_out(gear_request), 'errors': fanout['errors']}


@router.post('/{request_id}/checkout')
def checkout_request(
    request_id: int,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    gear_request, changed = request_service.mark_checked_out(db, request_id)
    if changed:
        log_audit(
            db,
            actor_profile_id=principal.id,
            action='REQUEST_CHECKED_OUT',
            ip=get_client_ip(request),
            metadata={'request_id': gear_request.id},
        )
        db.commit()
    return {'success': True, 'data': request_out(gear_request)}


@router.post('/{request_id}/cancel')
def cancel_request(
    request_id: int,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    gear_request, changed = request_service.cancel_request(db, request_id, principal=principal)
    if changed:
        log_audit(
            db,
            actor_profile_id=principal.id,
            action='REQUEST_CANCELLED',
            ip=get_client_ip(request),
            metadata={'request_id': gear_request.id},
        )
        db.commit()
    return {'success': True, 'data': request_out(gear_request)}
