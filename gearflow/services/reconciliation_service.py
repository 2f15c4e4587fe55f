"""Dashboard counts and the gear quantity healing pass.

``available_quantity`` is a cached counter; these helpers recompute what it
should be from each gear's status and the set of check-ins still awaiting
approval, and optionally write the corrected value back.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gearflow.models import Checkin, CheckinStatus, Gear, GearStatus
from gearflow.services.gear_service import expected_available_quantity, total_quantity


logger = structlog.get_logger(__name__)

REPAIR_STATUSES = frozenset({GearStatus.UNDER_REPAIR, GearStatus.NEEDS_REPAIR, GearStatus.DAMAGED})
OUT_OF_SERVICE_STATUSES = frozenset({GearStatus.RETIRED, GearStatus.LOST})


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class DashboardCounts:
    totalEquipment: int = 0
    availableEquipment: int = 0
    checkedOutEquipment: int = 0
    underRepairEquipment: int = 0
    pendingCheckinEquipment: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def pending_checkin_gear_ids(db: Session) -> set[int]:
    rows = db.execute(
        select(Checkin.gear_id).where(Checkin.status == CheckinStatus.PENDING_ADMIN_APPROVAL).distinct()
    ).scalars()
    return set(rows)


def calculate_dashboard_counts(db: Session) -> DashboardCounts:
    pending_ids = pending_checkin_gear_ids(db)
    counts = DashboardCounts()
    for gear in db.execute(select(Gear)).scalars():
        quantity = total_quantity(gear)
        counts.totalEquipment += quantity
        if gear.id in pending_ids:
            # Returned but not yet approved: never available, whatever the stored status says.
            counts.pendingCheckinEquipment += 1
            continue

        status = GearStatus(gear.status)
        stored = max(0, min(gear.available_quantity or 0, quantity))
        if status in (GearStatus.AVAILABLE, GearStatus.NEW):
            counts.availableEquipment += stored or quantity
        elif status == GearStatus.PARTIALLY_CHECKED_OUT:
            counts.availableEquipment += stored
            counts.checkedOutEquipment += quantity - stored
        elif status in (GearStatus.CHECKED_OUT, GearStatus.PENDING_CHECKIN):
            counts.checkedOutEquipment += quantity
        elif status in REPAIR_STATUSES:
            counts.underRepairEquipment += quantity
    return counts


def _issue_for(gear: Gear, *, has_pending_checkin: bool) -> str | None:
    quantity = total_quantity(gear)
    available = gear.available_quantity or 0
    status = GearStatus(gear.status)
    if available > quantity:
        return 'available_quantity exceeds total quantity'
    if available < 0:
        return 'available_quantity is negative'
    if status == GearStatus.AVAILABLE and available == 0 and not gear.checked_out_to and not has_pending_checkin:
        return 'Available gear has 0 available_quantity but is not checked out'
    if status == GearStatus.CHECKED_OUT and available > 0:
        return 'Checked out gear has available_quantity > 0'
    if status == GearStatus.AVAILABLE and not has_pending_checkin and available != quantity:
        return 'Available gear available_quantity does not match total quantity'
    if available != expected_available_quantity(gear, has_pending_checkin=has_pending_checkin):
        return f'{status.value} gear has an unexpected available_quantity'
    return None


def validate_gear_quantities(db: Session) -> dict:
    pending_ids = pending_checkin_gear_ids(db)
    valid = 0
    issues: list[dict] = []
    for gear in db.execute(select(Gear).order_by(Gear.id.asc())).scalars():
        issue = _issue_for(gear, has_pending_checkin=gear.id in pending_ids)
        if issue is None:
            valid += 1
            continue
        issues.append(
            {
                'gearId': gear.id,
                'name': gear.name,
                'issue': issue,
                'currentState': {
                    'status': GearStatus(gear.status).value,
                    'quantity': gear.quantity,
                    'available_quantity': gear.available_quantity,
                    'checked_out_to': gear.checked_out_to,
                    'current_request_id': gear.current_request_id,
                },
            }
        )
    return {'valid': valid, 'invalid': len(issues), 'issues': issues}


def update_gear_available_quantities(db: Session) -> int:
    """Overwrite ``available_quantity`` with the status-derived value.

    Returns the number of gears changed. Running it again straight away
    changes nothing.
    """
    pending_ids = pending_checkin_gear_ids(db)
    changed = 0
    for gear in db.execute(select(Gear).order_by(Gear.id.asc())).scalars():
        expected = expected_available_quantity(gear, has_pending_checkin=gear.id in pending_ids)
        if gear.available_quantity != expected:
            logger.info(
                'gear_quantity_corrected',
                gear_id=gear.id,
                status=GearStatus(gear.status).value,
                before=gear.available_quantity,
                after=expected,
            )
            gear.available_quantity = expected
            gear.updated_at = _now()
            changed += 1
    db.flush()
    return changed


def fix_gear_quantities(db: Session) -> dict:
    errors: list[str] = []
    try:
        fixed = update_gear_available_quantities(db)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error('gear_quantity_fix_failed', error=str(exc))
        errors.append(f'Emergency fix failed: {exc}')
        return {'success': False, 'fixed': 0, 'errors': errors}
    return {'success': True, 'fixed': fixed, 'errors': errors}


def fix_dashboard_counts(db: Session) -> dict:
    before = calculate_dashboard_counts(db)
    fixed = update_gear_available_quantities(db)
    after = calculate_dashboard_counts(db)
    return {
        'before': before.as_dict(),
        'after': after.as_dict(),
        'fixed': fixed,
        'summary': after.as_dict(),
    }
