"""Gear inventory and the one place gear availability is mutated.

Every write path that moves units out of or back into a gear (request
approval, check-in approval, cancellation, reservation approval) goes
through ``apply_checkout`` / ``apply_return`` so ``status``,
``available_quantity`` and ``checked_out_to`` stay consistent.
"""
from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from gearflow.errors import Conflict, NotFound, ValidationError
from gearflow.models import (
    CHECKED_OUT_FAMILY,
    HOLDING_REQUEST_STATUSES,
    Gear,
    GearCondition,
    GearRequest,
    GearRequestGear,
    GearStatus,
)


logger = structlog.get_logger(__name__)

ZERO_AVAILABLE_STATUSES = frozenset(
    {
        GearStatus.CHECKED_OUT,
        GearStatus.UNDER_REPAIR,
        GearStatus.NEEDS_REPAIR,
        GearStatus.RETIRED,
        GearStatus.LOST,
        GearStatus.PENDING_CHECKIN,
        GearStatus.DAMAGED,
    }
)
REQUESTABLE_STATUSES = frozenset({GearStatus.AVAILABLE, GearStatus.NEW, GearStatus.PARTIALLY_CHECKED_OUT})
REPAIR_STATUSES = frozenset(
    {GearStatus.DAMAGED, GearStatus.UNDER_REPAIR, GearStatus.NEEDS_REPAIR, GearStatus.RETIRED, GearStatus.LOST}
)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def total_quantity(gear: Gear) -> int:
    return gear.quantity if gear.quantity is not None else 1


def units_out(db: Session, gear_id: int) -> int:
    """Units of a gear still held by open requests."""
    total = db.execute(
        select(func.coalesce(func.sum(GearRequestGear.quantity - func.coalesce(GearRequestGear.returned_quantity, 0)), 0))
        .join(GearRequest, GearRequest.id == GearRequestGear.gear_request_id)
        .where(GearRequestGear.gear_id == gear_id, GearRequest.status.in_(HOLDING_REQUEST_STATUSES))
    ).scalar_one()
    return max(int(total or 0), 0)


def expected_available_quantity(gear: Gear, *, has_pending_checkin: bool) -> int:
    quantity = total_quantity(gear)
    status = GearStatus(gear.status)
    if status in ZERO_AVAILABLE_STATUSES:
        return 0
    if status == GearStatus.PARTIALLY_CHECKED_OUT:
        return max(0, min(gear.available_quantity or 0, quantity))
    if has_pending_checkin:
        return 0
    return quantity


def list_gears(
    db: Session,
    *,
    status: GearStatus | None = None,
    category: str | None = None,
    search: str | None = None,
    available_only: bool = False,
) -> list[Gear]:
    stmt = select(Gear).order_by(Gear.name.asc(), Gear.id.asc())
    if status is not None:
        stmt = stmt.where(Gear.status == status)
    if category:
        stmt = stmt.where(Gear.category == category)
    if search:
        pattern = f'%{search.strip().lower()}%'
        stmt = stmt.where(
            or_(func.lower(Gear.name).like(pattern), func.lower(func.coalesce(Gear.serial_number, '')).like(pattern))
        )
    if available_only:
        stmt = stmt.where(Gear.status.in_(REQUESTABLE_STATUSES), Gear.available_quantity > 0)
    return list(db.execute(stmt).scalars().all())


def get_gear(db: Session, gear_id: int) -> Gear:
    gear = db.get(Gear, gear_id)
    if not gear:
        raise NotFound('Gear not found')
    return gear


def create_gear(
    db: Session,
    *,
    name: str,
    category: str | None = None,
    description: str | None = None,
    serial_number: str | None = None,
    quantity: int = 1,
    status: GearStatus = GearStatus.AVAILABLE,
    condition: GearCondition = GearCondition.GOOD,
) -> Gear:
    name = (name or '').strip()
    if not name:
        raise ValidationError('Gear name is required')
    if quantity < 1:
        raise ValidationError('Quantity must be at least 1')
    if status in CHECKED_OUT_FAMILY:
        raise ValidationError('New gear cannot start checked out')

    gear = Gear(
        name=name,
        category=category,
        description=description,
        serial_number=serial_number,
        quantity=quantity,
        status=status,
        condition=condition,
    )
    gear.available_quantity = expected_available_quantity(gear, has_pending_checkin=False)
    db.add(gear)
    db.flush()
    return gear


def update_gear(db: Session, gear_id: int, *, changes: dict) -> Gear:
    gear = get_gear(db, gear_id)
    if 'name' in changes:
        name = (changes['name'] or '').strip()
        if not name:
            raise ValidationError('Gear name is required')
        gear.name = name
    for key in ('category', 'description', 'serial_number'):
        if key in changes:
            setattr(gear, key, changes[key])
    if changes.get('condition') is not None:
        gear.condition = GearCondition(changes['condition'])

    if changes.get('quantity') is not None:
        new_quantity = int(changes['quantity'])
        if new_quantity < 1:
            raise ValidationError('Quantity must be at least 1')
        out = total_quantity(gear) - (gear.available_quantity or 0)
        if new_quantity < out:
            raise Conflict(f'{out} units of {gear.name} are checked out; quantity cannot drop below that')
        gear.available_quantity = (gear.available_quantity or 0) + new_quantity - total_quantity(gear)
        gear.quantity = new_quantity

    if changes.get('status') is not None:
        new_status = GearStatus(changes['status'])
        if new_status != gear.status:
            if new_status in CHECKED_OUT_FAMILY:
                raise ValidationError('Checked-out statuses are set by request approval, not edited directly')
            gear.status = new_status
            gear.available_quantity = expected_available_quantity(gear, has_pending_checkin=False)
            held = units_out(db, gear.id)
            if held and new_status in (GearStatus.AVAILABLE, GearStatus.NEW):
                # Back from repair while holders still have units out.
                gear.available_quantity = max(total_quantity(gear) - held, 0)
                gear.status = GearStatus.CHECKED_OUT if gear.available_quantity == 0 else GearStatus.PARTIALLY_CHECKED_OUT
            elif not held and (
                gear.available_quantity == total_quantity(gear) or new_status in ZERO_AVAILABLE_STATUSES
            ):
                gear.checked_out_to = None
                gear.current_request_id = None
                gear.due_date = None

    gear.updated_at = _now()
    db.flush()
    return gear


def delete_gear(db: Session, gear_id: int) -> None:
    gear = get_gear(db, gear_id)
    db.delete(gear)
    db.flush()


def list_categories(db: Session) -> list[str]:
    rows = db.execute(select(Gear.category).where(Gear.category.is_not(None)).distinct().order_by(Gear.category.asc()))
    return [row[0] for row in rows]


def apply_checkout(
    gear: Gear,
    *,
    units: int,
    user_id: int,
    request_id: int | None,
    due_date: datetime | None,
) -> None:
    """Move ``units`` out of ``gear`` to ``user_id``."""
    if units < 1:
        raise ValidationError('Quantity must be at least 1')
    available = gear.available_quantity or 0
    if GearStatus(gear.status) not in REQUESTABLE_STATUSES or available < units:
        raise Conflict(f'Not enough available units for {gear.name}. Requested {units}, available {available}.')

    now = _now()
    gear.available_quantity = available - units
    gear.status = GearStatus.CHECKED_OUT if gear.available_quantity == 0 else GearStatus.PARTIALLY_CHECKED_OUT
    gear.checked_out_to = user_id
    gear.current_request_id = request_id
    gear.due_date = due_date
    gear.last_checkout_date = now
    gear.updated_at = now
    logger.info('gear_checked_out', gear_id=gear.id, units=units, available=gear.available_quantity, request_id=request_id)


def apply_return(gear: Gear, *, units: int, damaged: bool = False, outstanding: int | None = None) -> int:
    """Credit ``units`` back to ``gear``; returns how many units remain out.

    ``outstanding`` is the number of units held before this return, usually
    from :func:`units_out`. Without it the count is derived from
    ``available_quantity``, which only holds while the gear is not in repair.
    A gear in repair keeps its status and stays at zero available.
    """
    quantity = total_quantity(gear)
    available = max(0, min(gear.available_quantity or 0, quantity))
    if not outstanding or outstanding < 0:
        outstanding = quantity - available
    remaining_out = max(outstanding - units, 0)

    if damaged:
        gear.status = GearStatus.NEEDS_REPAIR
        gear.condition = GearCondition.DAMAGED
        gear.available_quantity = 0
    elif GearStatus(gear.status) in REPAIR_STATUSES:
        gear.available_quantity = 0
    else:
        gear.available_quantity = min(available + units, quantity)
        gear.status = (
            GearStatus.AVAILABLE if gear.available_quantity >= quantity else GearStatus.PARTIALLY_CHECKED_OUT
        )

    if remaining_out == 0:
        gear.checked_out_to = None
        gear.current_request_id = None
        gear.due_date = None
    gear.updated_at = _now()
    logger.info(
        'gear_returned',
        gear_id=gear.id,
        units=units,
        damaged=damaged,
        available=gear.available_quantity,
        remaining_out=remaining_out,
    )
    return remaining_out


def restore_checked_out_status(gear: Gear) -> None:
    if (gear.available_quantity or 0) <= 0:
        gear.status = GearStatus.CHECKED_OUT
    else:
        gear.status = GearStatus.PARTIALLY_CHECKED_OUT
    gear.updated_at = _now()
