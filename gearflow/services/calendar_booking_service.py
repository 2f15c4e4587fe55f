from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from gearflow.auth import Principal, assert_owner_or_admin
from gearflow.errors import Conflict, NotFound, ValidationError
from gearflow.models import CalendarBookingStatus, Gear, GearCalendarBooking, GearStatus
from gearflow.services import gear_service, request_service


logger = structlog.get_logger(__name__)

UNBOOKABLE_STATUSES = frozenset(
    {GearStatus.UNDER_REPAIR, GearStatus.NEEDS_REPAIR, GearStatus.RETIRED, GearStatus.LOST}
)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def calendar_snapshot(booking: GearCalendarBooking) -> dict:
    return {
        'id': booking.id,
        'gear_id': booking.gear_id,
        'user_id': booking.user_id,
        'start_date': booking.start_date.isoformat(),
        'end_date': booking.end_date.isoformat(),
        'status': CalendarBookingStatus(booking.status).value,
        'notes': booking.notes,
        'request_id': booking.request_id,
    }


def get_booking(db: Session, booking_id: int) -> GearCalendarBooking:
    booking = db.get(GearCalendarBooking, booking_id)
    if not booking:
        raise NotFound('Booking not found')
    return booking


def _overlapping_approved(db: Session, *, gear_id: int, start: datetime, end: datetime, exclude_id: int | None = None) -> bool:
    stmt = select(GearCalendarBooking.id).where(
        GearCalendarBooking.gear_id == gear_id,
        GearCalendarBooking.status == CalendarBookingStatus.APPROVED,
        GearCalendarBooking.start_date <= end,
        GearCalendarBooking.end_date >= start,
    )
    if exclude_id is not None:
        stmt = stmt.where(GearCalendarBooking.id != exclude_id)
    return db.execute(stmt).first() is not None


def create_booking(
    db: Session,
    *,
    principal: Principal,
    gear_id: int,
    start_date: datetime,
    end_date: datetime,
    reason: str | None = None,
) -> GearCalendarBooking:
    if end_date < start_date:
        raise ValidationError('end_date must not be before start_date')
    gear = gear_service.get_gear(db, gear_id)
    if gear.status in UNBOOKABLE_STATUSES:
        raise ValidationError(f'{gear.name} is {GearStatus(gear.status).value} and cannot be reserved')
    if _overlapping_approved(db, gear_id=gear.id, start=start_date, end=end_date):
        raise Conflict(f'{gear.name} is already reserved for part of that period')

    booking = GearCalendarBooking(
        gear_id=gear.id,
        user_id=principal.id,
        start_date=start_date,
        end_date=end_date,
        reason=reason,
        status=CalendarBookingStatus.PENDING,
    )
    db.add(booking)
    db.flush()
    logger.info('reservation_created', booking_id=booking.id, gear_id=gear.id, user_id=principal.id)
    return booking


def list_bookings(
    db: Session,
    *,
    gear_id: int | None = None,
    user_id: int | None = None,
    status: CalendarBookingStatus | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[GearCalendarBooking]:
    stmt = select(GearCalendarBooking).order_by(GearCalendarBooking.start_date.asc(), GearCalendarBooking.id.asc())
    if gear_id is not None:
        stmt = stmt.where(GearCalendarBooking.gear_id == gear_id)
    if user_id is not None:
        stmt = stmt.where(GearCalendarBooking.user_id == user_id)
    if status is not None:
        stmt = stmt.where(GearCalendarBooking.status == status)
    if start is not None:
        stmt = stmt.where(GearCalendarBooking.end_date >= start)
    if end is not None:
        stmt = stmt.where(GearCalendarBooking.start_date <= end)
    return list(db.execute(stmt).scalars().all())


def approve_booking(
    db: Session,
    booking_id: int,
    *,
    admin_id: int,
    notes: str | None = None,
) -> tuple[GearCalendarBooking, bool]:
    """Approve a reservation and check one unit out through a mirrored request."""
    booking = get_booking(db, booking_id)
    if booking.status == CalendarBookingStatus.APPROVED:
        return booking, False
    if booking.status != CalendarBookingStatus.PENDING:
        raise Conflict(f'Booking is {CalendarBookingStatus(booking.status).value} and cannot be approved')

    gear = db.execute(select(Gear).where(Gear.id == booking.gear_id).with_for_update()).scalar_one_or_none()
    if gear is None:
        raise NotFound('Gear not found')
    if gear.status in UNBOOKABLE_STATUSES:
        raise ValidationError(f'{gear.name} is {GearStatus(gear.status).value} and cannot be reserved')
    if _overlapping_approved(db, gear_id=gear.id, start=booking.start_date, end=booking.end_date, exclude_id=booking.id):
        raise Conflict(f'{gear.name} is already reserved for part of that period')

    request = request_service.create_approved_request(
        db,
        user_id=booking.user_id,
        reason=booking.reason or f'Reservation of {gear.name}',
        due_date=booking.end_date,
        lines=[(gear.id, 1)],
    )
    gear_service.apply_checkout(gear, units=1, user_id=booking.user_id, request_id=request.id, due_date=booking.end_date)

    now = _now()
    booking.status = CalendarBookingStatus.APPROVED
    booking.approved_by = admin_id
    booking.approved_at = now
    booking.request_id = request.id
    if notes is not None:
        booking.notes = notes
    booking.updated_at = now
    db.flush()
    logger.info('reservation_approved', booking_id=booking.id, request_id=request.id, admin_id=admin_id)
    return booking, True


def reject_booking(
    db: Session,
    booking_id: int,
    *,
    admin_id: int,
    notes: str | None = None,
) -> tuple[GearCalendarBooking, bool]:
    booking = get_booking(db, booking_id)
    if booking.status == CalendarBookingStatus.REJECTED:
        return booking, False
    if booking.status != CalendarBookingStatus.PENDING:
        raise Conflict(f'Booking is {CalendarBookingStatus(booking.status).value} and cannot be rejected')

    booking.status = CalendarBookingStatus.REJECTED
    booking.approved_by = admin_id
    booking.notes = notes
    booking.updated_at = _now()
    db.flush()
    logger.info('reservation_rejected', booking_id=booking.id, admin_id=admin_id)
    return booking, True


def delete_booking(db: Session, booking_id: int, *, principal: Principal) -> None:
    booking = get_booking(db, booking_id)
    assert_owner_or_admin(principal, booking.user_id)
    if booking.status != CalendarBookingStatus.PENDING:
        raise Conflict('Only pending reservations can be deleted')
    db.delete(booking)
    db.flush()
