from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from gearflow.auth import Principal, get_current_principal, require_admin
from gearflow.db import get_db
from gearflow.dependencies import get_client_ip
from gearflow.models import GearStatus
from gearflow.schemas import GearIn, GearUpdateIn
from gearflow.serializers import gear_out
from gearflow.services import gear_service
from gearflow.services.audit_service import log_audit

router = APIRouter(prefix='/api/gears', tags=['gears'])


@router.get('')
def list_gears(
    status: GearStatus | None = None,
    category: str | None = None,
    search: str | None = None,
    available_only: bool = False,
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
):
    gears = gear_service.list_gears(db, status=status, category=category, search=search, available_only=available_only)
    return {'data': [gear_out(gear) for gear in gears], 'error': None}


@router.get('/categories')
def list_categories(db: Session = Depends(get_db), _: Principal = Depends(get_current_principal)):
    return {'data': gear_service.list_categories(db), 'error': None}


@router.get('/{gear_id}')
def get_gear(gear_id: int, db: Session = Depends(get_db), _: Principal = Depends(get_current_principal)):
    return {'data': gear_out(gear_service.get_gear(db, gear_id)), 'error': None}


@router.post('', status_code=201)
def create_gear(
    payload: GearIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    gear = gear_service.create_gear(
        db,
        name=payload.name,
        category=payload.category,
        description=payload.description,
        serial_number=payload.serial_number,
        quantity=payload.quantity,
        status=payload.status,
        condition=payload.condition,
    )
    log_audit(
        db,
        actor_profile_id=principal.id,
        action='GEAR_CREATED',
        ip=get_client_ip(request),
        metadata={'gear_id': gear.id, 'name': gear.name},
    )
    db.commit()
    return {'success': True, 'data': gear_out(gear)}


@router.put('/{gear_id}')
def update_gear(
    gear_id: int,
    payload: GearUpdateIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    changes = payload.model_dump(exclude_unset=True)
    gear = gear_service.update_gear(db, gear_id, changes=changes)
    log_audit(
        db,
        actor_profile_id=principal.id,
        action='GEAR_UPDATED',
        ip=get_client_ip(request),
        metadata={'gear_id': gear.id, 'fields': sorted(changes)},
    )
    db.commit()
    return {'success': True, 'data': gear_out(gear)}


@router.delete('/{gear_id}')
def delete_gear(
    gear_id: int,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    gear_service.delete_gear(db, gear_id)
    log_audit(
        db,
        actor_profile_id=principal.id,
        action='GEAR_DELETED',
        ip=get_client_ip(request),
        metadata={'gear_id': gear_id},
    )
    db.commit()
    return {'success': True}
