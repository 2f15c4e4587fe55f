from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gearflow.config import settings
from gearflow.db import get_db
from gearflow.errors import UpstreamError, install_error_handlers
from gearflow.logging import RequestIdMiddleware, setup_logging
from gearflow.routers import (
    admin,
    announcements,
    auth,
    calendar,
    car_bookings,
    checkins,
    dashboard,
    gears,
    notifications,
    requests,
    users,
)

setup_logging()

app = FastAPI(title='Nest by Eden Oasis')

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)
app.add_middleware(RequestIdMiddleware)
install_error_handlers(app)

app.include_router(auth.router)
app.include_router(gears.router)
app.include_router(requests.router)
app.include_router(checkins.router)
app.include_router(car_bookings.router)
app.include_router(calendar.router)
app.include_router(notifications.router)
app.include_router(admin.router)
app.include_router(dashboard.router)
app.include_router(users.router)
app.include_router(announcements.router)


@app.get('/api/health')
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text('SELECT 1'))
    except SQLAlchemyError as exc:
        raise UpstreamError('Database unavailable') from exc
    return {'status': 'ok'}
