from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from gearflow.auth import Principal, assert_owner_or_admin, get_current_principal, require_admin
from gearflow.db import get_db
from gearflow.dependencies import get_client_ip
from gearflow.models import CarBookingStatus
from gearflow.schemas import AssignCarIn, CarBookingActionIn, CarBookingIn, CarIn, RejectIn
from gearflow.serializers import car_booking_out, car_out
from gearflow.services import car_booking_service, notification_service
from gearflow.services.audit_service import log_audit

router = APIRouter(tags=['car-bookings'])


def _booking_out(db: Session, booking) -> dict:
    assigned = car_booking_service.get_assignment(db, booking.id)
    return car_booking_out(booking, assigned[1] if assigned else None)


@router.get('/api/cars')
def list_cars(db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    cars = car_booking_service.list_cars(db, include_inactive=principal.is_admin)
    return {'data': [car_out(car) for car in cars], 'error': None}


@router.post('/api/cars', status_code=201)
def create_car(payload: CarIn, db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    car = car_booking_service.create_car(db, label=payload.label, plate=payload.plate)
    db.commit()
    return {'success': True, 'data': car_out(car)}


@router.get('/api/car-bookings')
def list_bookings(
    status: CarBookingStatus | None = None,
    date_of_use: date | None = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    requester_id = None if principal.is_admin else principal.id
    rows = car_booking_service.list_bookings(db, requester_id=requester_id, status=status, date_of_use=date_of_use)
    return {'data': [_booking_out(db, row) for row in rows], 'error': None}


@router.post('/api/car-bookings', status_code=201)
def create_booking(
    payload: CarBookingIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    booking = car_booking_service.create_booking(
        db,
        principal=principal,
        employee_name=payload.employee_name,
        date_of_use=payload.date_of_use,
        time_slot=payload.time_slot,
        destination=payload.destination,
        purpose=payload.purpose,
    )
    db.commit()
    fanout = notification_service.dispatch(
        db,
        table='car_bookings',
        operation='INSERT',
        record=car_booking_service.booking_snapshot(booking),
    )
    return {'success': True, 'data': _booking_out(db, booking), 'errors': fanout['errors']}


@router.get('/api/car-bookings/{booking_id}')
def get_booking(booking_id: int, db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    booking = car_booking_service.get_booking(db, booking_id)
    assert_owner_or_admin(principal, booking.requester_id)
    return {'data': _booking_out(db, booking), 'error': None}


@router.post('/api/car-bookings/{booking_id}/assign-car')
def assign_car(
    booking_id: int,
    payload: AssignCarIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    assignment, conflict = car_booking_service.assign_car(db, booking_id, car_id=payload.car_id)
    log_audit(
        db,
        actor_profile_id=principal.id,
        action='CAR_ASSIGNED',
        ip=get_client_ip(request),
        metadata={'booking_id': booking_id, 'car_id': assignment.car_id, 'conflict': conflict},
    )
    db.commit()
    booking = car_booking_service.get_booking(db, booking_id)
    return {'success': True, 'data': _booking_out(db, booking), 'conflict': conflict}


@router.post('/api/car-bookings/{booking_id}/approve')
def approve_booking(
    booking_id: int,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    previous = car_booking_service.booking_snapshot(car_booking_service.get_booking(db, booking_id))
    booking, changed = car_booking_service.approve_booking(db, booking_id, admin_id=principal.id)
    if not changed:
        return {'success': True, 'data': _booking_out(db, booking), 'errors': []}

    log_audit(
        db,
        actor_profile_id=principal.id,
        action='CAR_BOOKING_APPROVED',
        ip=get_client_ip(request),
        metadata={'booking_id': booking.id, 'request_id': booking.request_id},
    )
    db.commit()
    fanout = notification_service.dispatch(
        db,
        table='car_bookings',
        operation='UPDATE',
        record=car_booking_service.booking_snapshot(booking),
        old_record=previous,
    )
    return {'success': True, 'data': _booking_out(db, booking), 'errors': fanout['errors']}


@router.post('/api/car-bookings/{booking_id}/reject')
def reject_booking(
    booking_id: int,
    request: Request,
    payload: RejectIn | None = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    previous = car_booking_service.booking_snapshot(car_booking_service.get_booking(db, booking_id))
    booking, changed = car_booking_service.reject_booking(
        db,
        booking_id,
        admin_id=principal.id,
        reason=payload.reason if payload else None,
    )
    if not changed:
        return {'success': True, 'data': _booking_out(db, booking), 'errors': []}

    log_audit(
        db,
        actor_profile_id=principal.id,
        action='CAR_BOOKING_REJECTED',
        ip=get_client_ip(request),
        metadata={'booking_id': booking.id},
    )
    db.commit()
    fanout = notification_service.dispatch(
        db,
        table='car_bookings',
        operation='UPDATE',
        record=car_booking_service.booking_snapshot(booking),
        old_record=previous,
    )
    return {'success': True, 'data': _booking_out(db, booking), 'errors': fanout['errors']}


@router.post('/api/car-bookings/{booking_id}/cancel')
def cancel_booking(
    booking_id: int,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    booking, changed = car_booking_service.cancel_booking(db, booking_id, principal=principal)
    if changed:
        log_audit(
            db,
            actor_profile_id=principal.id,
            action='CAR_BOOKING_CANCELLED',
            ip=get_client_ip(request),
            metadata={'booking_id': booking.id},
        )
        db.commit()
    return {'success': True, 'data': _booking_out(db, booking)}


@router.post('/api/car-bookings/complete')
def complete_booking(
    payload: CarBookingActionIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    result = car_booking_service.complete_booking(db, payload.booking_id, principal=principal)
    body = {
        'success': True,
        'confirmed': result.confirmed,
        'status': result.status,
        'bookingId': result.booking_id,
        'errors': result.errors,
    }
    if not result.confirmed:
        body['message'] = 'Completion was submitted but could not be confirmed yet. Refresh to check its status.'
        return JSONResponse(body, status_code=202)
    return body
