from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from gearflow.models import (
    Announcement,
    Car,
    CarBooking,
    Checkin,
    Gear,
    GearCalendarBooking,
    GearRequest,
    Notification,
    Profile,
)


def _value(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _row(obj, fields: tuple[str, ...]) -> dict:
    return {name: _value(getattr(obj, name)) for name in fields}


PROFILE_FIELDS = ('id', 'email', 'full_name', 'phone', 'department', 'role', 'status', 'created_at', 'updated_at')
GEAR_FIELDS = (
    'id',
    'name',
    'category',
    'description',
    'serial_number',
    'status',
    'condition',
    'quantity',
    'available_quantity',
    'checked_out_to',
    'current_request_id',
    'due_date',
    'last_checkout_date',
    'created_at',
    'updated_at',
)
REQUEST_FIELDS = (
    'id',
    'user_id',
    'status',
    'reason',
    'destination',
    'expected_duration',
    'due_date',
    'approved_at',
    'checkout_date',
    'admin_notes',
    'rejection_reason',
    'created_at',
    'updated_at',
)
CHECKIN_FIELDS = (
    'id',
    'gear_id',
    'user_id',
    'request_id',
    'status',
    'condition',
    'quantity',
    'notes',
    'damage_notes',
    'checkin_date',
    'approved_by',
    'approved_at',
    'rejection_reason',
)
CAR_BOOKING_FIELDS = (
    'id',
    'requester_id',
    'employee_name',
    'date_of_use',
    'time_slot',
    'destination',
    'purpose',
    'status',
    'request_id',
    'approved_by',
    'approved_at',
    'rejected_by',
    'rejection_reason',
    'cancelled_at',
    'created_at',
)
CALENDAR_FIELDS = (
    'id',
    'gear_id',
    'user_id',
    'start_date',
    'end_date',
    'reason',
    'status',
    'approved_by',
    'approved_at',
    'notes',
    'request_id',
)
NOTIFICATION_FIELDS = (
    'id',
    'user_id',
    'type',
    'title',
    'message',
    'is_read',
    'category',
    'priority',
    'link',
    'expires_at',
    'created_at',
)


def profile_out(profile: Profile) -> dict:
    return _row(profile, PROFILE_FIELDS)


def gear_out(gear: Gear) -> dict:
    return _row(gear, GEAR_FIELDS)


def request_out(request: GearRequest) -> dict:
    data = _row(request, REQUEST_FIELDS)
    data['gear_request_gears'] = [
        {
            'gear_id': line.gear_id,
            'quantity': line.quantity,
            'returned_quantity': line.returned_quantity,
        }
        for line in request.lines
    ]
    data['gear_ids'] = [line.gear_id for line in request.lines]
    return data


def checkin_out(checkin: Checkin) -> dict:
    return _row(checkin, CHECKIN_FIELDS)


def car_out(car: Car) -> dict:
    return {'id': car.id, 'label': car.label, 'plate': car.plate, 'active': car.active}


def car_booking_out(booking: CarBooking, car: Car | None = None) -> dict:
    data = _row(booking, CAR_BOOKING_FIELDS)
    data['car'] = car_out(car) if car else None
    return data


def calendar_booking_out(booking: GearCalendarBooking) -> dict:
    return _row(booking, CALENDAR_FIELDS)


def notification_out(notification: Notification) -> dict:
    data = _row(notification, NOTIFICATION_FIELDS)
    data['metadata'] = notification.meta or {}
    return data


def announcement_out(announcement: Announcement) -> dict:
    return _row(announcement, ('id', 'title', 'content', 'created_by', 'created_at'))
