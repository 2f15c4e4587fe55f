from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from gearflow.auth import Principal, get_current_principal, require_admin
from gearflow.db import get_db
from gearflow.dependencies import get_client_ip
from gearflow.errors import ValidationError
from gearflow.models import CalendarBookingStatus
from gearflow.schemas import CalendarBookingIn, CalendarDecisionIn
from gearflow.serializers import calendar_booking_out
from gearflow.services import calendar_booking_service, notification_service
from gearflow.services.audit_service import log_audit

router = APIRouter(prefix='/api/calendar/bookings', tags=['calendar'])


@router.get('')
def list_bookings(
    gear_id: int | None = None,
    status: CalendarBookingStatus | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    mine: bool = False,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    rows = calendar_booking_service.list_bookings(
        db,
        gear_id=gear_id,
        user_id=principal.id if mine else None,
        status=status,
        start=start,
        end=end,
    )
    return {'data': [calendar_booking_out(row) for row in rows], 'error': None}


@router.post('', status_code=201)
def create_booking(
    payload: CalendarBookingIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    booking = calendar_booking_service.create_booking(
        db,
        principal=principal,
        gear_id=payload.gear_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        reason=payload.reason,
    )
    db.commit()
    fanout = notification_service.dispatch(
        db,
        table='gear_calendar_bookings',
        operation='INSERT',
        record=calendar_booking_service.calendar_snapshot(booking),
    )
    return {'success': True, 'data': calendar_booking_out(booking), 'errors': fanout['errors']}


def _decide(db: Session, request: Request, principal: Principal, payload: CalendarDecisionIn, *, approve: bool) -> dict:
    previous = calendar_booking_service.calendar_snapshot(calendar_booking_service.get_booking(db, payload.booking_id))
    if approve:
        booking, changed = calendar_booking_service.approve_booking(
            db, payload.booking_id, admin_id=principal.id, notes=payload.notes
        )
    else:
        booking, changed = calendar_booking_service.reject_booking(
            db, payload.booking_id, admin_id=principal.id, notes=payload.notes
        )
    if not changed:
        return {'success': True, 'data': calendar_booking_out(booking), 'errors': []}

    log_audit(
        db,
        actor_profile_id=principal.id,
        action='RESERVATION_APPROVED' if approve else 'RESERVATION_REJECTED',
        ip=get_client_ip(request),
        metadata={'booking_id': booking.id, 'request_id': booking.request_id},
    )
    db.commit()
    fanout = notification_service.dispatch(
        db,
        table='gear_calendar_bookings',
        operation='UPDATE',
        record=calendar_booking_service.calendar_snapshot(booking),
        old_record=previous,
    )
    return {'success': True, 'data': calendar_booking_out(booking), 'errors': fanout['errors']}


@router.post('/approve')
def approve_booking(
    payload: CalendarDecisionIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    if payload.status == CalendarBookingStatus.REJECTED:
        return _decide(db, request, principal, payload, approve=False)
    return _decide(db, request, principal, payload, approve=True)


@router.put('/approve')
def reject_booking(
    payload: CalendarDecisionIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    if payload.status == CalendarBookingStatus.APPROVED:
        raise ValidationError('Use POST to approve a reservation')
    return _decide(db, request, principal, payload, approve=False)


@router.delete('/{booking_id}')
def delete_booking(
    booking_id: int,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    calendar_booking_service.delete_booking(db, booking_id, principal=principal)
    log_audit(
        db,
        actor_profile_id=principal.id,
        action='RESERVATION_DELETED',
        ip=get_client_ip(request),
        metadata={'booking_id': booking_id},
    )
    db.commit()
    return {'success': True}
