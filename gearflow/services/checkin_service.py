from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from gearflow.auth import Principal
from gearflow.errors import Conflict, Forbidden, NotFound, ValidationError
from gearflow.models import (
    CHECKED_OUT_FAMILY,
    Checkin,
    CheckinStatus,
    Gear,
    GearCondition,
    GearRequest,
    GearRequestGear,
    GearStatus,
    Profile,
)
from gearflow.services import email_service, gear_service, request_service
from gearflow.services.notification_service import active_admin_emails
from gearflow.services.preferences import Channel, Event, is_enabled


logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def checkin_snapshot(checkin: Checkin) -> dict:
    return {
        'id': checkin.id,
        'gear_id': checkin.gear_id,
        'user_id': checkin.user_id,
        'request_id': checkin.request_id,
        'status': CheckinStatus(checkin.status).value,
        'condition': GearCondition(checkin.condition).value,
        'quantity': checkin.quantity,
        'rejection_reason': checkin.rejection_reason,
    }


def get_checkin(db: Session, checkin_id: int) -> Checkin:
    checkin = db.get(Checkin, checkin_id)
    if not checkin:
        raise NotFound('Check-in not found')
    return checkin


def has_pending_checkin(db: Session, gear_id: int) -> bool:
    return (
        db.execute(
            select(Checkin.id).where(
                Checkin.gear_id == gear_id,
                Checkin.status == CheckinStatus.PENDING_ADMIN_APPROVAL,
            )
        ).first()
        is not None
    )


def _find_open_request(db: Session, *, gear: Gear, user_id: int) -> GearRequest | None:
    candidates = db.execute(
        select(GearRequest)
        .join(GearRequestGear, GearRequestGear.gear_request_id == GearRequest.id)
        .where(
            GearRequestGear.gear_id == gear.id,
            GearRequest.user_id == user_id,
            GearRequest.status.in_(request_service.OUTSTANDING_STATUSES),
        )
        .order_by(GearRequest.approved_at.desc(), GearRequest.id.desc())
    ).scalars().all()
    for request in candidates:
        if request_service.outstanding_units(request, gear.id) > 0:
            return request
    return None


def submit_checkin(
    db: Session,
    *,
    principal: Principal,
    gear_id: int,
    condition: GearCondition = GearCondition.GOOD,
    notes: str | None = None,
    damage_notes: str | None = None,
    quantity: int | None = None,
    request_id: int | None = None,
) -> Checkin:
    gear = gear_service.get_gear(db, gear_id)
    if has_pending_checkin(db, gear.id):
        raise Conflict(f'{gear.name} already has a check-in awaiting approval')

    holder_id = principal.id
    if request_id is not None:
        request = request_service.get_request(db, request_id)
        if request.user_id != principal.id and not principal.is_admin:
            raise Forbidden('You can only check in your own gear')
        holder_id = request.user_id
        open_request = request.status in request_service.OUTSTANDING_STATUSES
        if not open_request or request_service.outstanding_units(request, gear.id) <= 0:
            raise Conflict(f'Request {request.id} has no outstanding units of {gear.name}')
    else:
        if principal.is_admin and gear.checked_out_to is not None:
            holder_id = gear.checked_out_to
        request = _find_open_request(db, gear=gear, user_id=holder_id)
        if request is None:
            # Units handed out without a request are tracked by the holder column only.
            if gear.checked_out_to is None or GearStatus(gear.status) not in CHECKED_OUT_FAMILY:
                raise Conflict(f'{gear.name} is not checked out')
            if gear.checked_out_to != principal.id and not principal.is_admin:
                raise Forbidden('You can only check in gear checked out to you')

    outstanding = request_service.outstanding_units(request, gear.id) if request else 1
    units = quantity if quantity is not None else outstanding
    if units < 1:
        raise ValidationError('Quantity must be at least 1')
    if units > outstanding:
        raise ValidationError(f'Only {outstanding} units of {gear.name} are outstanding')

    checkin = Checkin(
        gear_id=gear.id,
        user_id=holder_id,
        request_id=request.id if request else None,
        status=CheckinStatus.PENDING_ADMIN_APPROVAL,
        condition=condition,
        quantity=units,
        notes=notes,
        damage_notes=damage_notes if condition == GearCondition.DAMAGED else None,
        checkin_date=_now(),
    )
    db.add(checkin)
    # Units are not credited back until an admin approves the check-in.
    if GearStatus(gear.status) in CHECKED_OUT_FAMILY and (gear.available_quantity or 0) <= 0:
        gear.status = GearStatus.PENDING_CHECKIN
        gear.updated_at = _now()
    db.flush()
    logger.info('checkin_submitted', checkin_id=checkin.id, gear_id=gear.id, units=units, condition=condition.value)
    return checkin


def list_checkins(
    db: Session,
    *,
    status: CheckinStatus | None = None,
    user_id: int | None = None,
    limit: int = 100,
) -> list[Checkin]:
    stmt = select(Checkin).order_by(Checkin.checkin_date.desc(), Checkin.id.desc()).limit(max(1, min(limit, 500)))
    if status is not None:
        stmt = stmt.where(Checkin.status == status)
    if user_id is not None:
        stmt = stmt.where(Checkin.user_id == user_id)
    return list(db.execute(stmt).scalars().all())


def approve_checkin(db: Session, checkin_id: int, *, admin_id: int, notes: str | None = None) -> tuple[Checkin, bool]:
    """Approve a pending check-in and credit the gear.

    An already completed check-in is returned untouched so retries never
    credit the same units twice.
    """
    checkin = get_checkin(db, checkin_id)
    if checkin.status == CheckinStatus.COMPLETED:
        return checkin, False
    if checkin.status != CheckinStatus.PENDING_ADMIN_APPROVAL:
        raise Conflict(f'Check-in is {CheckinStatus(checkin.status).value} and cannot be approved')

    gear = db.execute(select(Gear).where(Gear.id == checkin.gear_id).with_for_update()).scalar_one_or_none()
    if gear is None:
        raise NotFound('Gear not found')

    damaged = checkin.condition == GearCondition.DAMAGED
    gear_service.apply_return(
        gear,
        units=checkin.quantity or 1,
        damaged=damaged,
        outstanding=gear_service.units_out(db, gear.id),
    )
    if not damaged and GearStatus(gear.status) not in gear_service.REPAIR_STATUSES:
        gear.condition = GearCondition(checkin.condition)

    if checkin.request_id is not None:
        request = db.get(GearRequest, checkin.request_id)
        if request is not None:
            request_service.record_return(db, request, gear_id=gear.id, units=checkin.quantity or 1)

    now = _now()
    checkin.status = CheckinStatus.COMPLETED
    checkin.approved_by = admin_id
    checkin.approved_at = now
    if notes:
        checkin.notes = f'{checkin.notes}\n{notes}' if checkin.notes else notes
    checkin.updated_at = now
    db.flush()
    logger.info('checkin_approved', checkin_id=checkin.id, gear_id=gear.id, damaged=damaged, admin_id=admin_id)
    return checkin, True


def reject_checkin(db: Session, checkin_id: int, *, admin_id: int, reason: str | None = None) -> tuple[Checkin, bool]:
    checkin = get_checkin(db, checkin_id)
    if checkin.status == CheckinStatus.REJECTED:
        return checkin, False
    if checkin.status != CheckinStatus.PENDING_ADMIN_APPROVAL:
        raise Conflict(f'Check-in is {CheckinStatus(checkin.status).value} and cannot be rejected')

    gear = db.get(Gear, checkin.gear_id)
    if gear is not None and gear.status == GearStatus.PENDING_CHECKIN:
        gear_service.restore_checked_out_status(gear)

    now = _now()
    checkin.status = CheckinStatus.REJECTED
    checkin.rejection_reason = reason
    checkin.approved_by = admin_id
    checkin.updated_at = now
    db.flush()
    logger.info('checkin_rejected', checkin_id=checkin.id, admin_id=admin_id)
    return checkin, True


def send_checkin_notices(db: Session, checkin_id: int, *, principal: Principal) -> list[str]:
    """Email the submitter a receipt and every active admin a review request."""
    checkin = get_checkin(db, checkin_id)
    if checkin.user_id != principal.id and not principal.is_admin:
        raise Forbidden('Forbidden')
    gear = db.get(Gear, checkin.gear_id)
    user = db.get(Profile, checkin.user_id)
    gear_name = gear.name if gear else 'equipment'
    condition = GearCondition(checkin.condition).value
    details = [('Gear', gear_name), ('Quantity', str(checkin.quantity)), ('Condition', condition)]
    if checkin.damage_notes:
        details.append(('Damage notes', checkin.damage_notes))

    errors: list[str] = []
    if user and is_enabled(user.notification_preferences, Channel.EMAIL, Event.GEAR_CHECKINS):
        try:
            email_service.send_template_email(
                to=user.email,
                subject='Check-in Submitted',
                template_name='notification',
                recipient_name=user.full_name,
                message=f'We received your check-in of {gear_name}. An admin will review it shortly.',
                link='/user/check-in',
                details=details,
            )
        except email_service.EmailDeliveryError as exc:
            logger.warning('email_send_failed', checkin_id=checkin.id, to=user.email, error=str(exc))
            errors.append(f'User email: {exc}')

    admin_emails = active_admin_emails(db)
    if admin_emails:
        submitter = (user.full_name or user.email) if user else 'A user'
        try:
            email_service.send_template_email(
                to=admin_emails,
                subject='Check-in Awaiting Approval',
                template_name='notification',
                recipient_name=None,
                message=f'{submitter} checked in {gear_name}. Please review and approve the return.',
                link='/admin/manage-checkins',
                details=details,
            )
        except email_service.EmailDeliveryError as exc:
            logger.warning('email_send_failed', checkin_id=checkin.id, to=admin_emails, error=str(exc))
            errors.append(f'Admin email: {exc}')
    return errors
