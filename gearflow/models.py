from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# SQLite only autoincrements INTEGER primary keys.
Id = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


def _enum(enum_cls: type[Enum], name: str) -> SQLEnum:
    return SQLEnum(enum_cls, name=name, values_callable=lambda members: [member.value for member in members])


class ProfileRole(str, Enum):
    ADMIN = 'Admin'
    USER = 'User'


class ProfileStatus(str, Enum):
    ACTIVE = 'Active'
    INACTIVE = 'Inactive'
    SUSPENDED = 'Suspended'


class GearStatus(str, Enum):
    AVAILABLE = 'Available'
    DAMAGED = 'Damaged'
    UNDER_REPAIR = 'Under Repair'
    NEW = 'New'
    CHECKED_OUT = 'Checked Out'
    PARTIALLY_CHECKED_OUT = 'Partially Checked Out'
    NEEDS_REPAIR = 'Needs Repair'
    RETIRED = 'Retired'
    LOST = 'Lost'
    PENDING_CHECKIN = 'Pending Check-in'


CHECKED_OUT_FAMILY = frozenset(
    {GearStatus.CHECKED_OUT, GearStatus.PARTIALLY_CHECKED_OUT, GearStatus.PENDING_CHECKIN}
)


class GearCondition(str, Enum):
    NEW = 'New'
    GOOD = 'Good'
    FAIR = 'Fair'
    DAMAGED = 'Damaged'


class RequestStatus(str, Enum):
    NEW = 'New'
    PENDING = 'Pending'
    APPROVED = 'Approved'
    REJECTED = 'Rejected'
    CHECKED_OUT = 'CheckedOut'
    PARTIALLY_RETURNED = 'PartiallyReturned'
    COMPLETED = 'Completed'
    CANCELLED = 'Cancelled'


# Requests in these states still hold their unreturned units.
HOLDING_REQUEST_STATUSES = frozenset(
    {RequestStatus.APPROVED, RequestStatus.CHECKED_OUT, RequestStatus.PARTIALLY_RETURNED}
)


class CheckinStatus(str, Enum):
    PENDING_ADMIN_APPROVAL = 'Pending Admin Approval'
    COMPLETED = 'Completed'
    REJECTED = 'Rejected'


class CarBookingStatus(str, Enum):
    PENDING = 'Pending'
    APPROVED = 'Approved'
    REJECTED = 'Rejected'
    COMPLETED = 'Completed'
    CANCELLED = 'Cancelled'


class CalendarBookingStatus(str, Enum):
    PENDING = 'Pending'
    APPROVED = 'Approved'
    REJECTED = 'Rejected'


class NotificationPriority(str, Enum):
    LOW = 'Low'
    NORMAL = 'Normal'
    HIGH = 'High'
    URGENT = 'Urgent'


class PushQueueStatus(str, Enum):
    PENDING = 'pending'
    SENT = 'sent'
    FAILED = 'failed'


class Profile(Base):
    __tablename__ = 'profiles'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    full_name: Mapped[str | None] = mapped_column(Text)
    phone: Mapped[str | None] = mapped_column(Text)
    department: Mapped[str | None] = mapped_column(Text)
    role: Mapped[ProfileRole] = mapped_column(
        _enum(ProfileRole, 'profile_role'), nullable=False, default=ProfileRole.USER
    )
    status: Mapped[ProfileStatus] = mapped_column(
        _enum(ProfileStatus, 'profile_status'), nullable=False, default=ProfileStatus.ACTIVE
    )
    notification_preferences: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Gear(Base):
    __tablename__ = 'gears'
    __table_args__ = (CheckConstraint('quantity >= 0', name='gears_quantity_non_negative'),)

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    serial_number: Mapped[str | None] = mapped_column(Text)
    status: Mapped[GearStatus] = mapped_column(
        _enum(GearStatus, 'gear_status'), nullable=False, default=GearStatus.AVAILABLE
    )
    condition: Mapped[GearCondition] = mapped_column(
        _enum(GearCondition, 'gear_condition'), nullable=False, default=GearCondition.GOOD
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    available_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    checked_out_to: Mapped[int | None] = mapped_column(Id, ForeignKey('profiles.id', ondelete='SET NULL'))
    current_request_id: Mapped[int | None] = mapped_column(Id, ForeignKey('gear_requests.id', ondelete='SET NULL'))
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_checkout_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class GearRequest(Base):
    __tablename__ = 'gear_requests'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    user_id: Mapped[int] = mapped_column(Id, ForeignKey('profiles.id'), nullable=False)
    status: Mapped[RequestStatus] = mapped_column(
        _enum(RequestStatus, 'request_status'), nullable=False, default=RequestStatus.NEW
    )
    reason: Mapped[str | None] = mapped_column(Text)
    destination: Mapped[str | None] = mapped_column(Text)
    expected_duration: Mapped[str | None] = mapped_column(Text)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    checkout_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    admin_notes: Mapped[str | None] = mapped_column(Text)
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    lines: Mapped[list[GearRequestGear]] = relationship(
        back_populates='request',
        cascade='all, delete-orphan',
        order_by='GearRequestGear.id',
    )


class GearRequestGear(Base):
    __tablename__ = 'gear_request_gears'
    __table_args__ = (
        UniqueConstraint('gear_request_id', 'gear_id', name='gear_request_gears_request_gear_key'),
        CheckConstraint('quantity > 0', name='gear_request_gears_quantity_positive'),
    )

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    gear_request_id: Mapped[int] = mapped_column(Id, ForeignKey('gear_requests.id', ondelete='CASCADE'), nullable=False)
    gear_id: Mapped[int] = mapped_column(Id, ForeignKey('gears.id', ondelete='CASCADE'), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    returned_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    request: Mapped[GearRequest] = relationship(back_populates='lines')


class Checkin(Base):
    __tablename__ = 'checkins'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    gear_id: Mapped[int] = mapped_column(Id, ForeignKey('gears.id', ondelete='CASCADE'), nullable=False)
    user_id: Mapped[int] = mapped_column(Id, ForeignKey('profiles.id'), nullable=False)
    request_id: Mapped[int | None] = mapped_column(Id, ForeignKey('gear_requests.id', ondelete='SET NULL'))
    status: Mapped[CheckinStatus] = mapped_column(
        _enum(CheckinStatus, 'checkin_status'), nullable=False, default=CheckinStatus.PENDING_ADMIN_APPROVAL
    )
    condition: Mapped[GearCondition] = mapped_column(
        _enum(GearCondition, 'gear_condition'), nullable=False, default=GearCondition.GOOD
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    notes: Mapped[str | None] = mapped_column(Text)
    damage_notes: Mapped[str | None] = mapped_column(Text)
    checkin_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    approved_by: Mapped[int | None] = mapped_column(Id, ForeignKey('profiles.id'))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Car(Base):
    __tablename__ = 'cars'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    label: Mapped[str] = mapped_column(Text, nullable=False)
    plate: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class CarBooking(Base):
    __tablename__ = 'car_bookings'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    requester_id: Mapped[int | None] = mapped_column(Id, ForeignKey('profiles.id'))
    employee_name: Mapped[str] = mapped_column(Text, nullable=False)
    date_of_use: Mapped[date] = mapped_column(Date, nullable=False)
    time_slot: Mapped[str] = mapped_column(Text, nullable=False)
    destination: Mapped[str | None] = mapped_column(Text)
    purpose: Mapped[str | None] = mapped_column(Text)
    status: Mapped[CarBookingStatus] = mapped_column(
        _enum(CarBookingStatus, 'car_booking_status'), nullable=False, default=CarBookingStatus.PENDING
    )
    request_id: Mapped[int | None] = mapped_column(Id, ForeignKey('gear_requests.id', ondelete='SET NULL'))
    approved_by: Mapped[int | None] = mapped_column(Id, ForeignKey('profiles.id'))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejected_by: Mapped[int | None] = mapped_column(Id, ForeignKey('profiles.id'))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class CarAssignment(Base):
    __tablename__ = 'car_assignment'
    __table_args__ = (UniqueConstraint('booking_id', name='car_assignment_booking_id_key'),)

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    booking_id: Mapped[int] = mapped_column(Id, ForeignKey('car_bookings.id', ondelete='CASCADE'), nullable=False)
    car_id: Mapped[int] = mapped_column(Id, ForeignKey('cars.id'), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class GearCalendarBooking(Base):
    __tablename__ = 'gear_calendar_bookings'
    __table_args__ = (CheckConstraint('end_date >= start_date', name='gear_calendar_bookings_date_order'),)

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    gear_id: Mapped[int] = mapped_column(Id, ForeignKey('gears.id', ondelete='CASCADE'), nullable=False)
    user_id: Mapped[int] = mapped_column(Id, ForeignKey('profiles.id'), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    status: Mapped[CalendarBookingStatus] = mapped_column(
        _enum(CalendarBookingStatus, 'calendar_booking_status'), nullable=False, default=CalendarBookingStatus.PENDING
    )
    approved_by: Mapped[int | None] = mapped_column(Id, ForeignKey('profiles.id'))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)
    request_id: Mapped[int | None] = mapped_column(Id, ForeignKey('gear_requests.id', ondelete='SET NULL'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Notification(Base):
    __tablename__ = 'notifications'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    user_id: Mapped[int] = mapped_column(Id, ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    category: Mapped[str | None] = mapped_column(Text)
    priority: Mapped[NotificationPriority] = mapped_column(
        _enum(NotificationPriority, 'notification_priority'), nullable=False, default=NotificationPriority.NORMAL
    )
    link: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PushNotificationQueue(Base):
    __tablename__ = 'push_notification_queue'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    user_id: Mapped[int] = mapped_column(Id, ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[PushQueueStatus] = mapped_column(
        _enum(PushQueueStatus, 'push_queue_status'), nullable=False, default=PushQueueStatus.PENDING
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Announcement(Base):
    __tablename__ = 'announcements'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[int | None] = mapped_column(Id, ForeignKey('profiles.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuthEvent(Base):
    __tablename__ = 'auth_events'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    attempted_email: Mapped[str] = mapped_column(String(320), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    profile_id: Mapped[int | None] = mapped_column(Id, ForeignKey('profiles.id'))
    ip: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ActivityLog(Base):
    __tablename__ = 'activity_log'

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    actor_profile_id: Mapped[int | None] = mapped_column(Id, ForeignKey('profiles.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    ip: Mapped[str | None] = mapped_column(String(64))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebSession(Base):
    __tablename__ = 'web_sessions'
    __table_args__ = (
        UniqueConstraint('session_token', name='web_sessions_session_token_key'),
    )

    id: Mapped[int] = mapped_column(Id, primary_key=True)
    session_token: Mapped[str] = mapped_column(String(128), nullable=False)
    profile_id: Mapped[int] = mapped_column(Id, ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False)
    ip: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
