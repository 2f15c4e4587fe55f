from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from gearflow.auth import Principal, get_current_principal, require_admin
from gearflow.db import get_db
from gearflow.schemas import AnnouncementIn
from gearflow.serializers import announcement_out
from gearflow.services import announcement_service, notification_service

router = APIRouter(prefix='/api/announcements', tags=['announcements'])


@router.get('')
def list_announcements(
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
):
    rows = announcement_service.list_announcements(db, limit=limit)
    return {'data': [announcement_out(row) for row in rows], 'error': None}


@router.post('', status_code=201)
def create_announcement(
    payload: AnnouncementIn,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    announcement = announcement_service.create_announcement(
        db,
        title=payload.title,
        content=payload.content,
        created_by=principal.id,
    )
    db.commit()
    fanout = notification_service.dispatch(
        db,
        table='announcements',
        operation='INSERT',
        record={'id': announcement.id, 'title': announcement.title},
    )
    return {'success': True, 'data': announcement_out(announcement), 'errors': fanout['errors']}


@router.delete('/{announcement_id}')
def delete_announcement(announcement_id: int, db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    announcement_service.delete_announcement(db, announcement_id)
    db.commit()
    return {'success': True}
