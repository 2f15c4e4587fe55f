from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from gearflow.auth import Principal, get_current_principal, require_admin
from gearflow.db import get_db
from gearflow.dependencies import get_client_ip
from gearflow.services import reconciliation_service
from gearflow.services.audit_service import log_audit

router = APIRouter(tags=['dashboard'])


@router.get('/api/dashboard/counts')
def dashboard_counts(db: Session = Depends(get_db), _: Principal = Depends(get_current_principal)):
    return {'data': reconciliation_service.calculate_dashboard_counts(db).as_dict(), 'error': None}


@router.get('/api/debug/fix-dashboard-counts')
def preview_dashboard_counts(db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    counts = reconciliation_service.calculate_dashboard_counts(db).as_dict()
    return {'success': True, 'counts': counts, **reconciliation_service.validate_gear_quantities(db)}


@router.post('/api/debug/fix-dashboard-counts')
def fix_dashboard_counts(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    result = reconciliation_service.fix_dashboard_counts(db)
    log_audit(
        db,
        actor_profile_id=principal.id,
        action='DASHBOARD_COUNTS_FIXED',
        ip=get_client_ip(request),
        metadata={'fixed': result['fixed']},
    )
    db.commit()
    return {'success': True, 'message': 'Dashboard counts recalculated', **result}
