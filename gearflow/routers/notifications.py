from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from gearflow.auth import Principal, get_current_principal, require_admin
from gearflow.db import get_db
from gearflow.dependencies import get_client_ip, get_user_agent
from gearflow.schemas import MarkReadIn, TriggerIn
from gearflow.serializers import notification_out
from gearflow.services import notification_service, profile_service

router = APIRouter(prefix='/api/notifications', tags=['notifications'])


@router.get('')
def list_notifications(
    unread_only: bool = Query(False, alias='unreadOnly'),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    rows = notification_service.list_for_user(db, user_id=principal.id, unread_only=unread_only, limit=limit)
    return {
        'data': [notification_out(row) for row in rows],
        'unreadCount': notification_service.count_unread(db, user_id=principal.id),
        'error': None,
    }


@router.post('')
def mark_read(
    payload: MarkReadIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    ids = None if payload.all else (payload.notification_ids or [])
    updated = notification_service.mark_read(db, user_id=principal.id, notification_ids=ids)
    db.commit()
    return {'success': True, 'updated': updated}


@router.post('/trigger')
def trigger(
    payload: TriggerIn,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    return notification_service.dispatch(
        db,
        table=payload.table,
        operation=payload.type,
        record=payload.record,
        old_record=payload.old_record,
    )


@router.post('/login')
def login_alert(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    profile = profile_service.get_profile(db, principal.id)
    result = notification_service.create_login_alert(
        db,
        profile=profile,
        ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    return {'success': True, **result}
