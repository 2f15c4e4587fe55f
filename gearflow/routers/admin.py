from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from gearflow.auth import Principal, require_admin
from gearflow.db import get_db
from gearflow.dependencies import get_client_ip
from gearflow.errors import ValidationError
from gearflow.schemas import FixGearQuantitiesIn, GearDeleteIn, NotificationIn, NotificationUpdateIn
from gearflow.serializers import notification_out
from gearflow.services import gear_service, notification_service, push_queue_service, reconciliation_service
from gearflow.services.audit_service import list_activity, log_audit

router = APIRouter(prefix='/api/admin', tags=['admin'])


@router.get('/notifications')
def list_notifications(
    user_id: int | None = Query(None, alias='userId'),
    unread_only: bool = Query(False, alias='unreadOnly'),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    rows = notification_service.list_all(db, user_id=user_id, unread_only=unread_only, limit=limit, offset=offset)
    return {'data': [notification_out(row) for row in rows], 'error': None}


@router.post('/notifications', status_code=201)
def create_notification(
    payload: NotificationIn,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    notification = notification_service.create_notification(
        db,
        user_id=payload.user_id,
        type=payload.type,
        title=payload.title,
        message=payload.message,
        category=payload.category,
        priority=payload.priority,
        link=payload.link,
        metadata=payload.metadata,
        expires_at=payload.expires_at,
    )
    db.commit()
    return {'data': notification_out(notification), 'error': None}


@router.post('/notifications/mark-all-read')
def mark_all_read(
    user_id: int | None = Query(None, alias='userId'),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    updated = notification_service.mark_all_read(db, user_id=user_id)
    db.commit()
    return {'success': True, 'updated': updated}


@router.get('/notifications/{notification_id}')
def get_notification(notification_id: int, db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    return {'data': notification_out(notification_service.get_notification(db, notification_id)), 'error': None}


@router.put('/notifications/{notification_id}')
def update_notification(
    notification_id: int,
    payload: NotificationUpdateIn,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    notification = notification_service.update_notification(
        db,
        notification_id,
        changes=payload.model_dump(exclude_unset=True),
    )
    db.commit()
    return {'data': notification_out(notification), 'error': None}


@router.delete('/notifications/{notification_id}')
def delete_notification(notification_id: int, db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    notification_service.delete_notification(db, notification_id)
    db.commit()
    return {'success': True}


@router.delete('/gears')
def delete_gear(
    payload: GearDeleteIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    gear_service.delete_gear(db, payload.gear_id)
    log_audit(
        db,
        actor_profile_id=principal.id,
        action='GEAR_DELETED',
        ip=get_client_ip(request),
        metadata={'gear_id': payload.gear_id},
    )
    db.commit()
    return {'success': True}


@router.get('/fix-gear-quantities')
def validate_gear_quantities(db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    return {'success': True, 'action': 'validation', **reconciliation_service.validate_gear_quantities(db)}


@router.post('/fix-gear-quantities')
def fix_gear_quantities(
    request: Request,
    payload: FixGearQuantitiesIn | None = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    action = payload.action if payload else 'fix'
    if action == 'validate':
        return {'success': True, 'action': 'validation', **reconciliation_service.validate_gear_quantities(db)}
    if action != 'fix':
        raise ValidationError('Invalid action. Use "fix" or "validate"')

    result = reconciliation_service.fix_gear_quantities(db)
    if result['success']:
        log_audit(
            db,
            actor_profile_id=principal.id,
            action='GEAR_QUANTITIES_FIXED',
            ip=get_client_ip(request),
            metadata={'fixed': result['fixed']},
        )
        db.commit()
    return {'action': 'fix', **result}


@router.get('/activity')
def activity(
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    rows = list_activity(db, limit=limit)
    return {
        'data': [
            {
                'id': row.id,
                'actor_profile_id': row.actor_profile_id,
                'action': row.action,
                'metadata': row.meta,
                'created_at': row.created_at.isoformat() if row.created_at else None,
            }
            for row in rows
        ],
        'error': None,
    }


@router.post('/overdue-reminders')
def overdue_reminders(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    result = notification_service.send_overdue_reminders(db)
    log_audit(
        db,
        actor_profile_id=principal.id,
        action='OVERDUE_REMINDERS_SENT',
        ip=get_client_ip(request),
        metadata={'overdue_users': result['overdueUsers'], 'notified': result['notified']},
    )
    db.commit()
    return result


@router.get('/push-queue')
def pending_pushes(
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    rows = push_queue_service.list_pending(db, limit=limit)
    return {
        'data': [
            {
                'id': row.id,
                'user_id': row.user_id,
                'title': row.title,
                'body': row.body,
                'data': row.data,
                'created_at': row.created_at.isoformat() if row.created_at else None,
            }
            for row in rows
        ],
        'error': None,
    }
