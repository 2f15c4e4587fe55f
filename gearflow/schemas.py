from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from gearflow.models import (
    CalendarBookingStatus,
    GearCondition,
    GearStatus,
    NotificationPriority,
    ProfileRole,
    ProfileStatus,
)


class Body(BaseModel):
    # Accept both snake_case and the camelCase the web client sends.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')


class SignupIn(Body):
    email: str
    password: str
    full_name: str | None = None
    phone: str | None = None
    department: str | None = None


class LoginIn(Body):
    email: str
    password: str


class ProfileUpdateIn(Body):
    full_name: str | None = None
    phone: str | None = None
    department: str | None = None


class RoleIn(Body):
    role: ProfileRole


class StatusIn(Body):
    status: ProfileStatus


class GearIn(Body):
    name: str
    category: str | None = None
    description: str | None = None
    serial_number: str | None = None
    quantity: int = Field(default=1, ge=1)
    status: GearStatus = GearStatus.AVAILABLE
    condition: GearCondition = GearCondition.GOOD


class GearUpdateIn(Body):
    name: str | None = None
    category: str | None = None
    description: str | None = None
    serial_number: str | None = None
    quantity: int | None = Field(default=None, ge=1)
    status: GearStatus | None = None
    condition: GearCondition | None = None


class GearDeleteIn(Body):
    gear_id: int


class RequestLineIn(Body):
    gear_id: int
    quantity: int = Field(default=1, ge=1)


class RequestIn(Body):
    lines: list[RequestLineIn] = Field(default_factory=list)
    gear_ids: list[int] = Field(default_factory=list)
    reason: str | None = None
    destination: str | None = None
    expected_duration: str | None = None


class ApproveRequestIn(Body):
    admin_notes: str | None = None


class RejectIn(Body):
    reason: str | None = None


class CheckinIn(Body):
    gear_id: int
    condition: GearCondition = GearCondition.GOOD
    notes: str | None = None
    damage_notes: str | None = None
    quantity: int | None = Field(default=None, ge=1)
    request_id: int | None = None


class CheckinApproveIn(Body):
    notes: str | None = None


class CheckinNotifyIn(Body):
    checkin_id: int


class CarIn(Body):
    label: str
    plate: str | None = None


class CarBookingIn(Body):
    employee_name: str
    date_of_use: date
    time_slot: str
    destination: str | None = None
    purpose: str | None = None


class AssignCarIn(Body):
    car_id: int


class CarBookingActionIn(Body):
    booking_id: int
    reason: str | None = None


class CalendarBookingIn(Body):
    gear_id: int
    start_date: datetime
    end_date: datetime
    reason: str | None = None


class CalendarDecisionIn(Body):
    booking_id: int
    notes: str | None = None
    status: CalendarBookingStatus | None = None


class NotificationIn(Body):
    user_id: int
    type: str
    title: str
    message: str
    category: str | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    link: str | None = None
    metadata: dict | None = None
    expires_at: datetime | None = None


class NotificationUpdateIn(Body):
    type: str | None = None
    title: str | None = None
    message: str | None = None
    category: str | None = None
    priority: NotificationPriority | None = None
    link: str | None = None
    is_read: bool | None = None
    metadata: dict | None = None
    expires_at: datetime | None = None


class MarkReadIn(Body):
    notification_ids: list[int] | None = None
    all: bool = False


class TriggerIn(BaseModel):
    model_config = ConfigDict(extra='ignore')

    type: str
    table: str
    record: dict
    old_record: dict | None = None


class FixGearQuantitiesIn(Body):
    action: str = 'fix'


class AnnouncementIn(Body):
    title: str
    content: str | None = None
