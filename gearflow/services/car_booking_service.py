from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timezone
from typing import Callable

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from gearflow.auth import Principal, assert_owner_or_admin
from gearflow.config import settings
from gearflow.errors import Conflict, NotFound, RateLimited, ValidationError
from gearflow.models import (
    Car,
    CarAssignment,
    CarBooking,
    CarBookingStatus,
    GearRequest,
    Profile,
    RequestStatus,
)
from gearflow.services import email_service, notification_service, request_service
from gearflow.services.preferences import Channel


logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class CompletionResult:
    booking_id: int
    status: str
    confirmed: bool
    transitioned: bool
    errors: list[str] = field(default_factory=list)


def booking_snapshot(booking: CarBooking) -> dict:
    return {
        'id': booking.id,
        'requester_id': booking.requester_id,
        'employee_name': booking.employee_name,
        'date_of_use': booking.date_of_use.isoformat() if booking.date_of_use else None,
        'time_slot': booking.time_slot,
        'status': CarBookingStatus(booking.status).value,
        'rejection_reason': booking.rejection_reason,
        'request_id': booking.request_id,
    }


def get_booking(db: Session, booking_id: int) -> CarBooking:
    booking = db.get(CarBooking, booking_id)
    if not booking:
        raise NotFound('Booking not found')
    return booking


def list_cars(db: Session, *, include_inactive: bool = False) -> list[Car]:
    stmt = select(Car).order_by(Car.label.asc(), Car.id.asc())
    if not include_inactive:
        stmt = stmt.where(Car.active.is_(True))
    return list(db.execute(stmt).scalars().all())


def create_car(db: Session, *, label: str, plate: str | None = None) -> Car:
    label = (label or '').strip()
    if not label:
        raise ValidationError('Car label is required')
    car = Car(label=label, plate=plate, active=True)
    db.add(car)
    db.flush()
    return car


def create_booking(
    db: Session,
    *,
    principal: Principal,
    employee_name: str,
    date_of_use: date,
    time_slot: str,
    destination: str | None = None,
    purpose: str | None = None,
) -> CarBooking:
    if not (employee_name or '').strip() or not (time_slot or '').strip() or date_of_use is None:
        raise ValidationError('employee_name, date_of_use and time_slot are required')

    pending = db.execute(
        select(func.count(CarBooking.id)).where(
            CarBooking.requester_id == principal.id,
            CarBooking.status == CarBookingStatus.PENDING,
        )
    ).scalar_one()
    if pending >= settings.car_bookings_max_pending:
        raise RateLimited(
            f'You already have {pending} pending car bookings. Wait for a decision before booking again.'
        )

    booking = CarBooking(
        requester_id=principal.id,
        employee_name=employee_name.strip(),
        date_of_use=date_of_use,
        time_slot=time_slot.strip(),
        destination=destination,
        purpose=purpose,
        status=CarBookingStatus.PENDING,
    )
    db.add(booking)
    db.flush()
    logger.info('car_booking_created', booking_id=booking.id, requester_id=principal.id)
    return booking


def list_bookings(
    db: Session,
    *,
    requester_id: int | None = None,
    status: CarBookingStatus | None = None,
    date_of_use: date | None = None,
) -> list[CarBooking]:
    stmt = select(CarBooking).order_by(CarBooking.date_of_use.desc(), CarBooking.id.desc())
    if requester_id is not None:
        stmt = stmt.where(CarBooking.requester_id == requester_id)
    if status is not None:
        stmt = stmt.where(CarBooking.status == status)
    if date_of_use is not None:
        stmt = stmt.where(CarBooking.date_of_use == date_of_use)
    return list(db.execute(stmt).scalars().all())


def get_assignment(db: Session, booking_id: int) -> tuple[CarAssignment, Car] | None:
    row = db.execute(
        select(CarAssignment, Car).join(Car, Car.id == CarAssignment.car_id).where(CarAssignment.booking_id == booking_id)
    ).one_or_none()
    if not row:
        return None
    return row[0], row[1]


def assign_car(db: Session, booking_id: int, *, car_id: int) -> tuple[CarAssignment, bool]:
    """Attach a car to a booking, replacing any earlier assignment.

    The flag is True when another approved booking already holds the same car
    for the same date and time slot.
    """
    booking = get_booking(db, booking_id)
    if booking.status not in {CarBookingStatus.PENDING, CarBookingStatus.APPROVED}:
        raise Conflict(f'Booking is {CarBookingStatus(booking.status).value} and cannot be reassigned')
    car = db.get(Car, car_id)
    if not car or not car.active:
        raise NotFound('Car not found')

    assignment = db.execute(select(CarAssignment).where(CarAssignment.booking_id == booking.id)).scalar_one_or_none()
    if assignment is None:
        assignment = CarAssignment(booking_id=booking.id, car_id=car.id)
        db.add(assignment)
    else:
        assignment.car_id = car.id

    conflict = (
        db.execute(
            select(CarBooking.id)
            .join(CarAssignment, CarAssignment.booking_id == CarBooking.id)
            .where(
                CarAssignment.car_id == car.id,
                CarBooking.id != booking.id,
                CarBooking.date_of_use == booking.date_of_use,
                CarBooking.time_slot == booking.time_slot,
                CarBooking.status == CarBookingStatus.APPROVED,
            )
        ).first()
        is not None
    )
    booking.updated_at = _now()
    db.flush()
    if conflict:
        logger.warning('car_double_booked', booking_id=booking.id, car_id=car.id)
    return assignment, conflict


def approve_booking(db: Session, booking_id: int, *, admin_id: int) -> tuple[CarBooking, bool]:
    booking = get_booking(db, booking_id)
    if booking.status == CarBookingStatus.APPROVED:
        return booking, False
    if booking.status != CarBookingStatus.PENDING:
        raise Conflict(f'Booking is {CarBookingStatus(booking.status).value} and cannot be approved')
    if get_assignment(db, booking.id) is None:
        raise ValidationError('Assign a car before approving this booking')

    now = _now()
    if booking.requester_id is not None and booking.request_id is None:
        mirrored = request_service.create_approved_request(
            db,
            user_id=booking.requester_id,
            reason=f'Car booking: {booking.purpose or booking.time_slot}',
            destination=booking.destination,
            due_date=datetime.combine(booking.date_of_use, dt_time(23, 59), tzinfo=timezone.utc),
        )
        booking.request_id = mirrored.id

    booking.status = CarBookingStatus.APPROVED
    booking.approved_by = admin_id
    booking.approved_at = now
    booking.updated_at = now
    db.flush()
    logger.info('car_booking_approved', booking_id=booking.id, admin_id=admin_id)
    return booking, True


def _close_mirrored_request(db: Session, booking: CarBooking, status: RequestStatus) -> None:
    if booking.request_id is None:
        return
    request = db.get(GearRequest, booking.request_id)
    if request is None or request.status in request_service.CLOSED_STATUSES:
        return
    request.status = status
    request.updated_at = _now()


def reject_booking(db: Session, booking_id: int, *, admin_id: int, reason: str | None = None) -> tuple[CarBooking, bool]:
    booking = get_booking(db, booking_id)
    if booking.status == CarBookingStatus.REJECTED:
        return booking, False
    if booking.status not in {CarBookingStatus.PENDING, CarBookingStatus.APPROVED}:
        raise Conflict(f'Booking is {CarBookingStatus(booking.status).value} and cannot be rejected')

    booking.status = CarBookingStatus.REJECTED
    booking.rejected_by = admin_id
    booking.rejection_reason = reason
    booking.updated_at = _now()
    _close_mirrored_request(db, booking, RequestStatus.CANCELLED)
    db.flush()
    logger.info('car_booking_rejected', booking_id=booking.id, admin_id=admin_id)
    return booking, True


def cancel_booking(db: Session, booking_id: int, *, principal: Principal) -> tuple[CarBooking, bool]:
    booking = get_booking(db, booking_id)
    assert_owner_or_admin(principal, booking.requester_id)
    if booking.status == CarBookingStatus.CANCELLED:
        return booking, False
    if booking.status not in {CarBookingStatus.PENDING, CarBookingStatus.APPROVED}:
        raise Conflict(f'Booking is {CarBookingStatus(booking.status).value} and cannot be cancelled')

    now = _now()
    booking.status = CarBookingStatus.CANCELLED
    booking.cancelled_at = now
    booking.updated_at = now
    _close_mirrored_request(db, booking, RequestStatus.CANCELLED)
    db.flush()
    logger.info('car_booking_cancelled', booking_id=booking.id, actor_id=principal.id)
    return booking, True


def _poll_status(db: Session, booking_id: int, *, sleep: Callable[[float], None]) -> CarBookingStatus | None:
    attempts = max(settings.completion_poll_attempts, 1)
    delay = settings.completion_poll_delay_ms / 1000
    for attempt in range(1, attempts + 1):
        status = db.execute(select(CarBooking.status).where(CarBooking.id == booking_id)).scalar_one_or_none()
        if status == CarBookingStatus.COMPLETED:
            return status
        logger.info('car_booking_completion_unconfirmed', booking_id=booking_id, attempt=attempt)
        if attempt < attempts:
            sleep(delay)
    return None


def _send_completion_emails(db: Session, booking: CarBooking) -> list[str]:
    details = [('Date', booking.date_of_use.isoformat()), ('Time slot', booking.time_slot)]
    assigned = get_assignment(db, booking.id)
    if assigned:
        car = assigned[1]
        details.append(('Vehicle', f'{car.label} ({car.plate})' if car.plate else car.label))

    errors: list[str] = []
    requester = db.get(Profile, booking.requester_id) if booking.requester_id is not None else None
    if requester:
        try:
            email_service.send_template_email(
                to=requester.email,
                subject='Car Returned',
                template_name='notification',
                recipient_name=requester.full_name or booking.employee_name,
                message='Thanks for returning the car. Your booking is now complete.',
                link='/user/car-booking',
                details=details,
            )
        except email_service.EmailDeliveryError as exc:
            logger.warning('email_send_failed', booking_id=booking.id, to=requester.email, error=str(exc))
            errors.append(f'Requester email: {exc}')

    admin_recipients = notification_service.active_admin_emails(db)
    if settings.car_bookings_email_to and settings.car_bookings_email_to not in admin_recipients:
        admin_recipients.append(settings.car_bookings_email_to)
    if admin_recipients:
        try:
            email_service.send_template_email(
                to=admin_recipients,
                subject=f'Car Returned: {booking.employee_name}',
                template_name='notification',
                recipient_name=None,
                message=f'{booking.employee_name} has returned the car booked for {booking.date_of_use.isoformat()}.',
                link='/admin/car-bookings',
                details=details,
            )
        except email_service.EmailDeliveryError as exc:
            logger.warning('email_send_failed', booking_id=booking.id, to=admin_recipients, error=str(exc))
            errors.append(f'Admin email: {exc}')
    return errors


def complete_booking(
    db: Session,
    booking_id: int,
    *,
    principal: Principal,
    sleep: Callable[[float], None] = time.sleep,
) -> CompletionResult:
    """Mark an approved booking as returned.

    The transition is a conditional update, so of two concurrent calls only
    one moves the row and only that one sends notices. A completion that
    cannot be read back after the bounded poll is reported as unconfirmed.
    """
    booking = get_booking(db, booking_id)
    assert_owner_or_admin(principal, booking.requester_id)
    if booking.status == CarBookingStatus.COMPLETED:
        return CompletionResult(booking_id=booking.id, status=CarBookingStatus.COMPLETED.value, confirmed=True, transitioned=False)
    if booking.status != CarBookingStatus.APPROVED:
        raise ValidationError('Only approved bookings can be completed')

    result = db.execute(
        update(CarBooking)
        .where(CarBooking.id == booking.id, CarBooking.status == CarBookingStatus.APPROVED)
        .values(status=CarBookingStatus.COMPLETED, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    transitioned = result.rowcount == 1
    db.commit()

    if _poll_status(db, booking.id, sleep=sleep) is None:
        logger.warning('car_booking_completion_unknown', booking_id=booking.id)
        return CompletionResult(booking_id=booking.id, status='Unknown', confirmed=False, transitioned=transitioned)

    db.refresh(booking)
    if not transitioned:
        return CompletionResult(booking_id=booking.id, status=CarBookingStatus.COMPLETED.value, confirmed=True, transitioned=False)

    logger.info('car_booking_completed', booking_id=booking.id, actor_id=principal.id)
    _close_mirrored_request(db, booking, RequestStatus.COMPLETED)
    db.commit()

    errors = _send_completion_emails(db, booking)
    fanout = notification_service.dispatch(
        db,
        table='car_bookings',
        operation='UPDATE',
        record=booking_snapshot(booking),
        old_record={'status': CarBookingStatus.APPROVED.value},
        channels={Channel.IN_APP, Channel.PUSH},
    )
    errors.extend(fanout['errors'])
    return CompletionResult(
        booking_id=booking.id,
        status=CarBookingStatus.COMPLETED.value,
        confirmed=True,
        transitioned=True,
        errors=errors,
    )
