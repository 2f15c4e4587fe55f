from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from gearflow.auth import Principal, assert_owner_or_admin
from gearflow.errors import Conflict, NotFound, ValidationError
from gearflow.models import (
    HOLDING_REQUEST_STATUSES,
    Checkin,
    CheckinStatus,
    Gear,
    GearRequest,
    GearRequestGear,
    RequestStatus,
)
from gearflow.services import gear_service


logger = structlog.get_logger(__name__)

DURATION_DAYS = {
    '24hours': 1,
    '48hours': 2,
    '72hours': 3,
    '1 week': 7,
    '2 weeks': 14,
    'month': 30,
    '1year': 365,
}
DEFAULT_DURATION_DAYS = 7

REVIEWABLE_STATUSES = frozenset({RequestStatus.NEW, RequestStatus.PENDING})
OUTSTANDING_STATUSES = HOLDING_REQUEST_STATUSES
ALREADY_APPROVED_STATUSES = OUTSTANDING_STATUSES | {RequestStatus.COMPLETED}
CLOSED_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED, RequestStatus.REJECTED})


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def calculate_due_date(expected_duration: str | None, *, start: datetime | None = None) -> datetime:
    start = start or _now()
    key = (expected_duration or '').strip().lower()
    return start + timedelta(days=DURATION_DAYS.get(key, DEFAULT_DURATION_DAYS))


def request_snapshot(request: GearRequest) -> dict:
    return {
        'id': request.id,
        'user_id': request.user_id,
        'status': RequestStatus(request.status).value,
        'due_date': request.due_date.isoformat() if request.due_date else None,
        'rejection_reason': request.rejection_reason,
        'admin_notes': request.admin_notes,
    }


def _merge_lines(lines: list[tuple[int, int]]) -> OrderedDict[int, int]:
    merged: OrderedDict[int, int] = OrderedDict()
    for gear_id, quantity in lines:
        if quantity is None or quantity < 1:
            raise ValidationError('Quantity must be at least 1')
        merged[gear_id] = merged.get(gear_id, 0) + quantity
    return merged


def _load_gears_for_update(db: Session, gear_ids: list[int]) -> dict[int, Gear]:
    gears = db.execute(select(Gear).where(Gear.id.in_(gear_ids)).with_for_update()).scalars().all()
    by_id = {gear.id: gear for gear in gears}
    missing = [gear_id for gear_id in gear_ids if gear_id not in by_id]
    if missing:
        raise NotFound(f'Gear not found: {missing[0]}')
    return by_id


def _shortfall_message(gear: Gear, requested: int) -> str:
    return f'Not enough available units for {gear.name}. Requested {requested}, available {gear.available_quantity or 0}.'


def get_request(db: Session, request_id: int) -> GearRequest:
    request = db.get(GearRequest, request_id)
    if not request:
        raise NotFound('Request not found')
    return request


def submit_request(
    db: Session,
    *,
    user_id: int,
    lines: list[tuple[int, int]],
    reason: str | None = None,
    destination: str | None = None,
    expected_duration: str | None = None,
) -> GearRequest:
    if not lines:
        raise ValidationError('At least one gear item is required')
    merged = _merge_lines(lines)
    gears = _load_gears_for_update(db, list(merged))
    for gear_id, quantity in merged.items():
        gear = gears[gear_id]
        if gear.status not in gear_service.REQUESTABLE_STATUSES or (gear.available_quantity or 0) < quantity:
            raise Conflict(_shortfall_message(gear, quantity))

    request = GearRequest(
        user_id=user_id,
        status=RequestStatus.PENDING,
        reason=reason,
        destination=destination,
        expected_duration=expected_duration,
    )
    request.lines = [GearRequestGear(gear_id=gear_id, quantity=quantity) for gear_id, quantity in merged.items()]
    db.add(request)
    db.flush()
    logger.info('request_submitted', request_id=request.id, user_id=user_id, lines=len(merged))
    return request


def list_requests(
    db: Session,
    *,
    status: RequestStatus | None = None,
    user_id: int | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[GearRequest], int]:
    page = max(page, 1)
    page_size = max(1, min(page_size, 100))
    filters = []
    if status is not None:
        filters.append(GearRequest.status == status)
    if user_id is not None:
        filters.append(GearRequest.user_id == user_id)

    total = db.execute(select(func.count(GearRequest.id)).where(*filters)).scalar_one()
    rows = db.execute(
        select(GearRequest)
        .where(*filters)
        .order_by(GearRequest.created_at.desc(), GearRequest.id.desc())
        .limit(page_size)
        .offset((page - 1) * page_size)
    ).scalars().all()
    return list(rows), total


def approve_request(db: Session, request_id: int, *, admin_notes: str | None = None) -> tuple[GearRequest, bool]:
    """Approve a request and check its units out.

    Returns ``(request, changed)``; ``changed`` is False when the request was
    already approved (or has moved past approval) and nothing was touched.
    """
    request = get_request(db, request_id)
    if request.status in ALREADY_APPROVED_STATUSES:
        return request, False
    if request.status not in REVIEWABLE_STATUSES:
        raise Conflict(f'Request is {RequestStatus(request.status).value} and cannot be approved')
    if not request.lines:
        raise ValidationError('Request has no gear items')

    gears = _load_gears_for_update(db, [line.gear_id for line in request.lines])
    for line in request.lines:
        gear = gears[line.gear_id]
        if gear.status not in gear_service.REQUESTABLE_STATUSES or (gear.available_quantity or 0) < line.quantity:
            raise Conflict(_shortfall_message(gear, line.quantity))

    now = _now()
    due_date = calculate_due_date(request.expected_duration, start=now)
    for line in request.lines:
        gear_service.apply_checkout(
            gears[line.gear_id],
            units=line.quantity,
            user_id=request.user_id,
            request_id=request.id,
            due_date=due_date,
        )

    request.status = RequestStatus.APPROVED
    request.approved_at = now
    request.due_date = due_date
    if admin_notes is not None:
        request.admin_notes = admin_notes
    request.updated_at = now
    db.flush()
    logger.info('request_approved', request_id=request.id, due_date=due_date.isoformat())
    return request, True


def reject_request(db: Session, request_id: int, *, reason: str | None = None) -> tuple[GearRequest, bool]:
    request = get_request(db, request_id)
    if request.status == RequestStatus.REJECTED:
        return request, False
    if request.status not in REVIEWABLE_STATUSES:
        raise Conflict(f'Request is {RequestStatus(request.status).value} and cannot be rejected')

    request.status = RequestStatus.REJECTED
    request.rejection_reason = reason
    request.updated_at = _now()
    db.flush()
    logger.info('request_rejected', request_id=request.id)
    return request, True


def mark_checked_out(db: Session, request_id: int) -> tuple[GearRequest, bool]:
    request = get_request(db, request_id)
    if request.status in (RequestStatus.CHECKED_OUT, RequestStatus.PARTIALLY_RETURNED, RequestStatus.COMPLETED):
        return request, False
    if request.status != RequestStatus.APPROVED:
        raise Conflict('Only approved requests can be handed over')

    now = _now()
    request.status = RequestStatus.CHECKED_OUT
    request.checkout_date = now
    request.updated_at = now
    db.flush()
    return request, True


def _has_pending_checkin(db: Session, request_id: int) -> bool:
    return (
        db.execute(
            select(Checkin.id).where(
                Checkin.request_id == request_id,
                Checkin.status == CheckinStatus.PENDING_ADMIN_APPROVAL,
            )
        ).first()
        is not None
    )


def cancel_request(db: Session, request_id: int, *, principal: Principal) -> tuple[GearRequest, bool]:
    request = get_request(db, request_id)
    assert_owner_or_admin(principal, request.user_id)
    if request.status == RequestStatus.CANCELLED:
        return request, False
    if request.status in CLOSED_STATUSES:
        raise Conflict(f'Request is {RequestStatus(request.status).value} and cannot be cancelled')

    if request.status in OUTSTANDING_STATUSES:
        # A pending check-in will credit its units when approved.
        if _has_pending_checkin(db, request.id):
            raise Conflict('Request has a check-in awaiting approval. Approve or reject it before cancelling.')
        gears = _load_gears_for_update(db, [line.gear_id for line in request.lines])
        for line in request.lines:
            outstanding = line.quantity - (line.returned_quantity or 0)
            if outstanding <= 0:
                continue
            gear_service.apply_return(
                gears[line.gear_id],
                units=outstanding,
                outstanding=gear_service.units_out(db, line.gear_id),
            )
            line.returned_quantity = line.quantity

    request.status = RequestStatus.CANCELLED
    request.updated_at = _now()
    db.flush()
    logger.info('request_cancelled', request_id=request.id, actor_id=principal.id)
    return request, True


def record_return(db: Session, request: GearRequest, *, gear_id: int, units: int) -> None:
    """Book returned units against a request line and settle the request status."""
    line = next((row for row in request.lines if row.gear_id == gear_id), None)
    if line is None:
        return
    line.returned_quantity = min(line.quantity, (line.returned_quantity or 0) + units)
    if request.status not in OUTSTANDING_STATUSES:
        return
    if all((row.returned_quantity or 0) >= row.quantity for row in request.lines):
        request.status = RequestStatus.COMPLETED
    else:
        request.status = RequestStatus.PARTIALLY_RETURNED
    request.updated_at = _now()


def outstanding_units(request: GearRequest, gear_id: int) -> int:
    line = next((row for row in request.lines if row.gear_id == gear_id), None)
    if line is None:
        return 0
    return max(line.quantity - (line.returned_quantity or 0), 0)


def create_approved_request(
    db: Session,
    *,
    user_id: int,
    reason: str | None,
    due_date: datetime | None,
    lines: list[tuple[int, int]] | None = None,
    destination: str | None = None,
) -> GearRequest:
    """Insert an already-approved request mirroring a booking."""
    now = _now()
    request = GearRequest(
        user_id=user_id,
        status=RequestStatus.APPROVED,
        reason=reason,
        destination=destination,
        approved_at=now,
        due_date=due_date,
    )
    request.lines = [GearRequestGear(gear_id=gear_id, quantity=quantity) for gear_id, quantity in (lines or [])]
    db.add(request)
    db.flush()
    return request


def list_overdue_lines(db: Session, *, now: datetime | None = None) -> list[tuple[GearRequest, GearRequestGear, Gear]]:
    """Open request lines with unreturned units whose request is past its due date."""
    now = now or _now()
    rows = db.execute(
        select(GearRequest, GearRequestGear, Gear)
        .join(GearRequestGear, GearRequestGear.gear_request_id == GearRequest.id)
        .join(Gear, Gear.id == GearRequestGear.gear_id)
        .where(
            GearRequest.status.in_(OUTSTANDING_STATUSES),
            GearRequest.due_date.is_not(None),
            GearRequest.due_date < now,
            GearRequestGear.quantity > func.coalesce(GearRequestGear.returned_quantity, 0),
        )
        .order_by(GearRequest.user_id.asc(), GearRequest.due_date.asc(), GearRequestGear.id.asc())
    ).all()
    return [(request, line, gear) for request, line, gear in rows]
