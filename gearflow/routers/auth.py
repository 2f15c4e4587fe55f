from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from gearflow.auth import Principal, get_current_principal, read_session_token
from gearflow.config import settings
from gearflow.db import get_db
from gearflow.dependencies import get_client_ip, get_user_agent
from gearflow.errors import Unauthorized
from gearflow.models import ProfileStatus
from gearflow.schemas import LoginIn, SignupIn
from gearflow.security.passwords import verify_password
from gearflow.security.sessions import create_web_session, load_principal_from_token, revoke_web_session
from gearflow.serializers import profile_out
from gearflow.services import profile_service
from gearflow.services.audit_service import log_audit, log_auth_event

router = APIRouter(prefix='/api/auth', tags=['auth'])


def _session_response(payload: dict, token: str, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    response = JSONResponse(payload, status_code=status_code)
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite=settings.session_cookie_samesite,
        max_age=settings.session_ttl_minutes * 60,
    )
    return response


@router.post('/signup')
def signup(payload: SignupIn, request: Request, db: Session = Depends(get_db)):
    profile = profile_service.signup(
        db,
        email=payload.email,
        password=payload.password,
        full_name=payload.full_name,
        phone=payload.phone,
        department=payload.department,
    )
    ip = get_client_ip(request)
    token = create_web_session(db, profile.id, ip=ip, user_agent=get_user_agent(request))
    log_audit(db, actor_profile_id=profile.id, action='AUTH_SIGNUP', ip=ip, metadata={'email': profile.email})
    db.commit()
    return _session_response(
        {'success': True, 'data': profile_out(profile), 'token': token},
        token,
        status_code=status.HTTP_201_CREATED,
    )


@router.post('/login')
def login(payload: LoginIn, request: Request, db: Session = Depends(get_db)):
    email = profile_service.normalize_email(payload.email)
    ip = get_client_ip(request)
    user_agent = get_user_agent(request)

    profile = profile_service.find_by_email(db, email)
    failure_reason = None
    if not profile:
        failure_reason = 'UNKNOWN_EMAIL'
    elif profile.status != ProfileStatus.ACTIVE:
        failure_reason = 'INACTIVE_PROFILE'
    elif not verify_password(payload.password, profile.password_hash):
        failure_reason = 'BAD_PASSWORD'

    if failure_reason:
        log_auth_event(
            db,
            attempted_email=email,
            success=False,
            failure_reason=failure_reason,
            profile_id=profile.id if profile else None,
            ip=ip,
            user_agent=user_agent,
        )
        db.commit()
        raise Unauthorized('Invalid email or password')

    token = create_web_session(db, profile.id, ip=ip, user_agent=user_agent)
    log_auth_event(
        db,
        attempted_email=email,
        success=True,
        failure_reason=None,
        profile_id=profile.id,
        ip=ip,
        user_agent=user_agent,
    )
    log_audit(db, actor_profile_id=profile.id, action='AUTH_LOGIN', ip=ip, metadata={'email': email})
    db.commit()
    return _session_response({'success': True, 'data': profile_out(profile), 'token': token}, token)


@router.post('/logout')
def logout(request: Request, db: Session = Depends(get_db)):
    token = read_session_token(request)
    principal = load_principal_from_token(db, token)
    if token:
        revoke_web_session(db, token)
    log_audit(
        db,
        actor_profile_id=principal.id if principal else None,
        action='AUTH_LOGOUT',
        ip=get_client_ip(request),
    )
    db.commit()

    response = JSONResponse({'success': True})
    response.delete_cookie(settings.session_cookie_name)
    return response


@router.get('/me')
def me(db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    profile = profile_service.get_profile(db, principal.id)
    return {'data': profile_out(profile), 'error': None}
