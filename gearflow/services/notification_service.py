"""In-app notifications and the event fan-out.

``dispatch`` receives a ``(table, operation, record, old_record)`` change
event, works out who should hear about it, and delivers to each target over
the in-app, email and push channels their preferences allow. The record's
own write is expected to be committed before ``dispatch`` runs; every channel
is attempted independently and failures are collected into ``errors``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gearflow.errors import NotFound, ValidationError
from gearflow.models import (
    Gear,
    GearRequestGear,
    Notification,
    NotificationPriority,
    Profile,
    ProfileRole,
    ProfileStatus,
)
from gearflow.services import email_service, request_service
from gearflow.services.preferences import Channel, Event, is_enabled
from gearflow.services.push_queue_service import enqueue_push


logger = structlog.get_logger(__name__)

TARGET_USER = 'user'
TARGET_ADMINS = 'admins'
TARGET_EVERYONE = 'everyone'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class FanoutMessage:
    event: Event
    type: str
    title: str
    message: str
    category: str
    target: str
    user_id: int | None = None
    link: str | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    details: list[tuple[str, str]] = field(default_factory=list)


def create_notification(
    db: Session,
    *,
    user_id: int,
    type: str,
    title: str,
    message: str,
    category: str | None = None,
    priority: NotificationPriority | str = NotificationPriority.NORMAL,
    link: str | None = None,
    metadata: dict | None = None,
    expires_at: datetime | None = None,
) -> Notification:
    if not title or not message:
        raise ValidationError('Notification title and message are required')
    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        category=category,
        priority=NotificationPriority(priority),
        link=link,
        meta=metadata or {},
        expires_at=expires_at,
        is_read=False,
    )
    db.add(notification)
    db.flush()
    return notification


def list_for_user(db: Session, *, user_id: int, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    stmt = (
        select(Notification)
        .where(
            Notification.user_id == user_id,
            or_(Notification.expires_at.is_(None), Notification.expires_at > _now()),
        )
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(max(1, min(limit, 200)))
    )
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    return list(db.execute(stmt).scalars().all())


def count_unread(db: Session, *, user_id: int) -> int:
    rows = db.execute(
        select(Notification.id).where(Notification.user_id == user_id, Notification.is_read.is_(False))
    ).all()
    return len(rows)


def mark_read(db: Session, *, user_id: int, notification_ids: list[int] | None = None) -> int:
    stmt = (
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True, updated_at=_now())
    )
    if notification_ids is not None:
        if not notification_ids:
            return 0
        stmt = stmt.where(Notification.id.in_(notification_ids))
    result = db.execute(stmt)
    return result.rowcount or 0


def mark_all_read(db: Session, *, user_id: int | None = None) -> int:
    stmt = update(Notification).where(Notification.is_read.is_(False)).values(is_read=True, updated_at=_now())
    if user_id is not None:
        stmt = stmt.where(Notification.user_id == user_id)
    return db.execute(stmt).rowcount or 0


def list_all(
    db: Session,
    *,
    user_id: int | None = None,
    unread_only: bool = False,
    limit: int = 100,
    offset: int = 0,
) -> list[Notification]:
    stmt = (
        select(Notification)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(max(1, min(limit, 500)))
        .offset(max(0, offset))
    )
    if user_id is not None:
        stmt = stmt.where(Notification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    return list(db.execute(stmt).scalars().all())


def get_notification(db: Session, notification_id: int) -> Notification:
    notification = db.get(Notification, notification_id)
    if not notification:
        raise NotFound('Notification not found')
    return notification


EDITABLE_FIELDS = ('type', 'title', 'message', 'category', 'priority', 'link', 'is_read', 'expires_at')


def update_notification(db: Session, notification_id: int, *, changes: dict) -> Notification:
    notification = get_notification(db, notification_id)
    for key, value in changes.items():
        if key == 'metadata':
            notification.meta = value or {}
            continue
        if key not in EDITABLE_FIELDS:
            continue
        if key == 'priority':
            value = NotificationPriority(value)
        if key in {'title', 'message', 'type'} and not value:
            raise ValidationError(f'{key} cannot be empty')
        setattr(notification, key, value)
    notification.updated_at = _now()
    db.flush()
    return notification


def delete_notification(db: Session, notification_id: int) -> None:
    notification = get_notification(db, notification_id)
    db.delete(notification)
    db.flush()


def create_login_alert(db: Session, *, profile: Profile, ip: str | None, user_agent: str | None) -> dict:
    preferences = profile.notification_preferences
    when = _now().strftime('%Y-%m-%d %H:%M UTC')
    message = f'New sign-in to your account on {when}'
    if ip:
        message += f' from {ip}'
    message += '.'

    result = {'in_app': False, 'push': False}
    if is_enabled(preferences, Channel.IN_APP, Event.SECURITY):
        create_notification(
            db,
            user_id=profile.id,
            type='Login Alert',
            title='New Login Detected',
            message=message,
            category='Security',
            priority=NotificationPriority.HIGH,
            metadata={'ip': ip, 'user_agent': user_agent},
        )
        result['in_app'] = True
    if is_enabled(preferences, Channel.PUSH, Event.SECURITY):
        enqueue_push(
            db,
            user_id=profile.id,
            title='New Login Detected',
            body=message,
            data={'type': 'login_alert', 'url': '/user/notifications'},
        )
        result['push'] = True
    return result


def _profile_name(db: Session, profile_id: int | None) -> str:
    if profile_id is None:
        return 'a user'
    profile = db.get(Profile, profile_id)
    if not profile:
        return 'a user'
    return profile.full_name or profile.email


def _request_gear_names(db: Session, request_id: int | None) -> str:
    if request_id is None:
        return 'equipment'
    names = db.execute(
        select(Gear.name)
        .join(GearRequestGear, GearRequestGear.gear_id == Gear.id)
        .where(GearRequestGear.gear_request_id == request_id)
        .order_by(GearRequestGear.id.asc())
    ).scalars().all()
    return ', '.join(names) if names else 'equipment'


def _gear_name(db: Session, gear_id: int | None) -> str:
    gear = db.get(Gear, gear_id) if gear_id is not None else None
    return gear.name if gear else 'equipment'


def _status_changed(record: dict, old_record: dict, value: str) -> bool:
    return record.get('status') == value and old_record.get('status') != value


def _gear_request_messages(db: Session, operation: str, record: dict, old_record: dict) -> list[FanoutMessage]:
    gear_names = _request_gear_names(db, record.get('id'))
    user_id = record.get('user_id')
    if operation == 'INSERT':
        requester = _profile_name(db, user_id)
        return [
            FanoutMessage(
                event=Event.GEAR_REQUESTS,
                type='gear_requests',
                title='New Gear Request Submitted',
                message=f'A new gear request has been submitted by {requester} for {gear_names}.',
                category='request',
                target=TARGET_ADMINS,
                link='/admin/manage-requests',
            ),
            FanoutMessage(
                event=Event.GEAR_REQUESTS,
                type='gear_requests',
                title='Gear Request Submitted',
                message=f'Your request for {gear_names} has been submitted and is awaiting approval.',
                category='request',
                target=TARGET_USER,
                user_id=user_id,
                link='/user/my-requests',
            ),
        ]
    if operation != 'UPDATE':
        return []
    if _status_changed(record, old_record, 'Approved'):
        details = [('Due date', str(record['due_date']))] if record.get('due_date') else []
        return [
            FanoutMessage(
                event=Event.GEAR_REQUESTS,
                type='gear_requests',
                title='Your Gear Request Was Approved!',
                message=f'Your request for {gear_names} has been approved.',
                category='request',
                target=TARGET_USER,
                user_id=user_id,
                link='/user/my-requests',
                details=details,
            )
        ]
    if _status_changed(record, old_record, 'Rejected'):
        message = f'Your request for {gear_names} has been rejected.'
        if record.get('rejection_reason'):
            message += f" Reason: {record['rejection_reason']}"
        return [
            FanoutMessage(
                event=Event.GEAR_REQUESTS,
                type='gear_requests',
                title='Gear Request Rejected',
                message=message,
                category='request',
                target=TARGET_USER,
                user_id=user_id,
                link='/user/my-requests',
            )
        ]
    return []


def _checkin_messages(db: Session, operation: str, record: dict, old_record: dict) -> list[FanoutMessage]:
    gear_name = _gear_name(db, record.get('gear_id'))
    user_id = record.get('user_id')
    if operation == 'INSERT':
        return [
            FanoutMessage(
                event=Event.GEAR_CHECKINS,
                type='checkins',
                title='Gear Check-in Pending',
                message=f'{_profile_name(db, user_id)} checked in {gear_name}. Review it to make the gear available again.',
                category='gear_checkin',
                target=TARGET_ADMINS,
                link='/admin/manage-checkins',
            ),
            FanoutMessage(
                event=Event.GEAR_CHECKINS,
                type='checkins',
                title='Gear Checked In',
                message=f'You have successfully checked in {gear_name}. An admin will confirm the return.',
                category='gear_checkin',
                target=TARGET_USER,
                user_id=user_id,
                link='/user/check-in',
            ),
        ]
    if operation != 'UPDATE':
        return []
    if _status_changed(record, old_record, 'Completed'):
        condition = record.get('condition') or 'Good'
        return [
            FanoutMessage(
                event=Event.GEAR_CHECKINS,
                type='checkins',
                title='Check-in Approved',
                message=f'Your check-in of {gear_name} has been approved. Condition recorded: {condition}.',
                category='gear_checkin',
                target=TARGET_USER,
                user_id=user_id,
                link='/user/check-in',
            )
        ]
    if _status_changed(record, old_record, 'Rejected'):
        message = f'Your check-in of {gear_name} was rejected.'
        if record.get('rejection_reason'):
            message += f" Reason: {record['rejection_reason']}"
        return [
            FanoutMessage(
                event=Event.GEAR_CHECKINS,
                type='checkins',
                title='Check-in Rejected',
                message=message,
                category='gear_checkin',
                target=TARGET_USER,
                user_id=user_id,
                link='/user/check-in',
                priority=NotificationPriority.HIGH,
            )
        ]
    return []


def _car_booking_messages(db: Session, operation: str, record: dict, old_record: dict) -> list[FanoutMessage]:
    user_id = record.get('requester_id')
    when = f"{record.get('date_of_use')} ({record.get('time_slot')})"
    details = [('Date', str(record.get('date_of_use'))), ('Time slot', str(record.get('time_slot')))]
    if operation == 'INSERT':
        return [
            FanoutMessage(
                event=Event.CAR_BOOKINGS,
                type='car_bookings',
                title='New Car Booking',
                message=f"{record.get('employee_name') or 'An employee'} requested a car for {when}.",
                category='car_booking',
                target=TARGET_ADMINS,
                link='/admin/car-bookings',
                details=details,
            )
        ]
    if operation != 'UPDATE':
        return []
    if _status_changed(record, old_record, 'Approved'):
        return [
            FanoutMessage(
                event=Event.CAR_BOOKINGS,
                type='car_bookings',
                title='Car Booking Approved',
                message=f'Your car booking for {when} has been approved.',
                category='car_booking',
                target=TARGET_USER,
                user_id=user_id,
                link='/user/car-booking',
                details=details,
            )
        ]
    if _status_changed(record, old_record, 'Rejected'):
        message = f'Your car booking for {when} has been rejected.'
        if record.get('rejection_reason'):
            message += f" Reason: {record['rejection_reason']}"
        return [
            FanoutMessage(
                event=Event.CAR_BOOKINGS,
                type='car_bookings',
                title='Car Booking Rejected',
                message=message,
                category='car_booking',
                target=TARGET_USER,
                user_id=user_id,
                link='/user/car-booking',
            )
        ]
    if _status_changed(record, old_record, 'Completed'):
        return [
            FanoutMessage(
                event=Event.CAR_BOOKINGS,
                type='car_bookings',
                title='Car Returned',
                message=f'Your car booking for {when} has been marked as returned.',
                category='car_booking',
                target=TARGET_USER,
                user_id=user_id,
                link='/user/car-booking',
            ),
            FanoutMessage(
                event=Event.CAR_BOOKINGS,
                type='car_bookings',
                title='Car Returned',
                message=f"{record.get('employee_name') or 'An employee'} returned the car booked for {when}.",
                category='car_booking',
                target=TARGET_ADMINS,
                link='/admin/car-bookings',
            ),
        ]
    return []


def _calendar_booking_messages(db: Session, operation: str, record: dict, old_record: dict) -> list[FanoutMessage]:
    gear_name = _gear_name(db, record.get('gear_id'))
    user_id = record.get('user_id')
    span = f"{record.get('start_date')} to {record.get('end_date')}"
    if operation == 'INSERT':
        return [
            FanoutMessage(
                event=Event.RESERVATIONS,
                type='gear_calendar_bookings',
                title='New Reservation Request',
                message=f'{_profile_name(db, user_id)} wants to reserve {gear_name} from {span}.',
                category='reservation',
                target=TARGET_ADMINS,
                link='/admin/calendar',
            )
        ]
    if operation != 'UPDATE':
        return []
    if _status_changed(record, old_record, 'Approved'):
        return [
            FanoutMessage(
                event=Event.RESERVATIONS,
                type='gear_calendar_bookings',
                title='Reservation Approved',
                message=f'Your reservation of {gear_name} from {span} has been approved.',
                category='reservation',
                target=TARGET_USER,
                user_id=user_id,
                link='/user/calendar',
            )
        ]
    if _status_changed(record, old_record, 'Rejected'):
        message = f'Your reservation of {gear_name} from {span} has been rejected.'
        if record.get('notes'):
            message += f" Notes: {record['notes']}"
        return [
            FanoutMessage(
                event=Event.RESERVATIONS,
                type='gear_calendar_bookings',
                title='Reservation Rejected',
                message=message,
                category='reservation',
                target=TARGET_USER,
                user_id=user_id,
                link='/user/calendar',
            )
        ]
    return []


def _announcement_messages(db: Session, operation: str, record: dict, old_record: dict) -> list[FanoutMessage]:
    if operation != 'INSERT':
        return []
    return [
        FanoutMessage(
            event=Event.ANNOUNCEMENTS,
            type='announcements',
            title='New Announcement',
            message=record.get('title') or 'A new announcement has been posted.',
            category='announcement',
            target=TARGET_EVERYONE,
            link='/user/announcements',
        )
    ]


def _profile_messages(db: Session, operation: str, record: dict, old_record: dict) -> list[FanoutMessage]:
    if operation != 'UPDATE':
        return []
    message = 'Your profile has been updated.'
    if old_record.get('role') and record.get('role') != old_record.get('role'):
        message = f"Your role has been changed to {record.get('role')}."
    elif old_record.get('status') and record.get('status') != old_record.get('status'):
        message = f"Your account status is now {record.get('status')}."
    return [
        FanoutMessage(
            event=Event.PROFILE_UPDATES,
            type='profiles',
            title='Profile Updated',
            message=message,
            category='profile_update',
            target=TARGET_USER,
            user_id=record.get('id'),
            link='/user/settings',
        )
    ]


MESSAGE_BUILDERS = {
    'gear_requests': _gear_request_messages,
    'checkins': _checkin_messages,
    'car_bookings': _car_booking_messages,
    'gear_calendar_bookings': _calendar_booking_messages,
    'announcements': _announcement_messages,
    'profiles': _profile_messages,
}


def build_messages(db: Session, *, table: str, operation: str, record: dict, old_record: dict | None = None) -> list[FanoutMessage]:
    # Rows written to notifications are already the in-app delivery.
    if table == 'notifications':
        return []
    builder = MESSAGE_BUILDERS.get(table)
    if builder is None:
        return []
    return builder(db, operation.upper(), record, old_record or {})


def _resolve_targets(db: Session, message: FanoutMessage) -> list[Profile]:
    stmt = select(Profile).where(Profile.status == ProfileStatus.ACTIVE).order_by(Profile.id.asc())
    if message.target == TARGET_USER:
        if message.user_id is None:
            return []
        stmt = stmt.where(Profile.id == message.user_id)
    elif message.target == TARGET_ADMINS:
        stmt = stmt.where(Profile.role == ProfileRole.ADMIN)
    return list(db.execute(stmt).scalars().all())


def active_admin_emails(db: Session) -> list[str]:
    return list(
        db.execute(
            select(Profile.email)
            .where(Profile.role == ProfileRole.ADMIN, Profile.status == ProfileStatus.ACTIVE)
            .order_by(Profile.id.asc())
        )
        .scalars()
        .all()
    )


def _deliver(
    db: Session,
    profile: Profile,
    message: FanoutMessage,
    errors: list[str],
    channels: frozenset[Channel],
) -> bool:
    profile_id = profile.id
    email = profile.email
    recipient_name = profile.full_name
    preferences = profile.notification_preferences
    delivered = False
    notification_id = None

    if Channel.IN_APP in channels and is_enabled(preferences, Channel.IN_APP, message.event):
        try:
            notification = create_notification(
                db,
                user_id=profile_id,
                type=message.type,
                title=message.title,
                message=message.message,
                category=message.category,
                priority=message.priority,
                link=message.link,
            )
            db.commit()
            notification_id = notification.id
            delivered = True
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning('in_app_notification_failed', user_id=profile_id, error=str(exc))
            errors.append(f'In-app: {exc}')

    if email and Channel.EMAIL in channels and is_enabled(preferences, Channel.EMAIL, message.event):
        try:
            email_service.send_template_email(
                to=email,
                subject=message.title,
                template_name='notification',
                recipient_name=recipient_name,
                message=message.message,
                link=message.link,
                details=message.details,
            )
            delivered = True
        except email_service.EmailDeliveryError as exc:
            logger.warning('email_send_failed', user_id=profile_id, to=email, error=str(exc))
            errors.append(f'Email: {exc}')

    if Channel.PUSH in channels and is_enabled(preferences, Channel.PUSH, message.event):
        try:
            enqueue_push(
                db,
                user_id=profile_id,
                title=message.title,
                body=message.message,
                data={'type': message.type, 'url': message.link},
            )
            db.commit()
            delivered = True
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning('push_enqueue_failed', user_id=profile_id, error=str(exc))
            errors.append(f'Push: {exc}')
            if notification_id is not None:
                _record_last_error(db, notification_id, f'Push: {exc}')

    return delivered


def _record_last_error(db: Session, notification_id: int, error: str) -> None:
    try:
        db.execute(update(Notification).where(Notification.id == notification_id).values(last_error=error))
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning('notification_last_error_failed', notification_id=notification_id, error=str(exc))


def dispatch(
    db: Session,
    *,
    table: str,
    operation: str,
    record: dict,
    old_record: dict | None = None,
    channels: set[Channel] | None = None,
) -> dict:
    """Fan a committed change event out to its audience.

    Returns ``{'success': True, 'notified': n, 'errors': [...]}``. Channel
    failures never raise; they are logged and listed in ``errors``.
    ``channels`` narrows delivery when the caller handles some channels itself.
    """
    if not table or not operation or record is None:
        raise ValidationError('Missing required fields: type, table, or record')

    messages = build_messages(db, table=table, operation=operation, record=record, old_record=old_record)
    allowed = frozenset(channels) if channels is not None else frozenset(Channel)
    errors: list[str] = []
    notified = 0
    for message in messages:
        for profile in _resolve_targets(db, message):
            if _deliver(db, profile, message, errors, allowed):
                notified += 1

    logger.info('notification_dispatched', table=table, operation=operation.upper(), notified=notified, errors=len(errors))
    return {'success': True, 'notified': notified, 'errors': errors}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def send_overdue_reminders(db: Session, *, now: datetime | None = None) -> dict:
    """Remind every holder of overdue gear, one message per user.

    Lines are grouped by the requester; the message names each overdue gear
    and counts days from the earliest due date.
    """
    now = now or _now()
    grouped: dict[int, list[tuple[str, datetime, int]]] = {}
    for request, line, gear in request_service.list_overdue_lines(db, now=now):
        units = line.quantity - (line.returned_quantity or 0)
        grouped.setdefault(request.user_id, []).append((gear.name, _as_utc(request.due_date), units))

    errors: list[str] = []
    notified = 0
    for user_id, items in grouped.items():
        profile = db.get(Profile, user_id)
        if profile is None or profile.status != ProfileStatus.ACTIVE:
            continue
        earliest = min(due for _, due, _ in items)
        days = max((now - earliest).days, 0)
        names = list(dict.fromkeys(name for name, _, _ in items))
        verb = 'is' if len(names) == 1 else 'are'
        message = FanoutMessage(
            event=Event.OVERDUE_REMINDERS,
            type='overdue_reminder',
            title='Overdue Gear Reminder',
            message=(
                f"{', '.join(names)} {verb} overdue by {days} day{'' if days == 1 else 's'}. "
                'Please return or check in the gear as soon as possible.'
            ),
            category='Equipment',
            target=TARGET_USER,
            user_id=user_id,
            link='/user/check-in',
            priority=NotificationPriority.HIGH,
            details=[(name, f'{units} unit(s), due {due.date().isoformat()}') for name, due, units in items],
        )
        if _deliver(db, profile, message, errors, frozenset(Channel)):
            notified += 1

    logger.info('overdue_reminders_sent', users=len(grouped), notified=notified, errors=len(errors))
    return {'success': True, 'overdueUsers': len(grouped), 'notified': notified, 'errors': errors}
