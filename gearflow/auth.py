from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from gearflow.config import settings
from gearflow.db import get_db
from gearflow.errors import Forbidden, Unauthorized


class Role(str, Enum):
    ADMIN = 'Admin'
    USER = 'User'


@dataclass
class Principal:
    id: int
    email: str
    full_name: str | None
    role: Role
    active: bool

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def read_session_token(request: Request) -> str | None:
    authorization = request.headers.get('authorization', '')
    scheme, _, credentials = authorization.partition(' ')
    if scheme.lower() == 'bearer' and credentials.strip():
        return credentials.strip()
    return request.cookies.get(settings.session_cookie_name)


def get_current_principal(request: Request, db: Session = Depends(get_db)) -> Principal:
    from gearflow.security.sessions import load_principal_from_token

    principal = load_principal_from_token(db, read_session_token(request))
    if not principal:
        raise Unauthorized('Unauthorized')
    db.commit()
    if not principal.active:
        raise Forbidden('Account is not active')
    request.state.principal = principal
    return principal


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise Forbidden('Forbidden')
        return principal

    return _dep


require_admin = require_role(Role.ADMIN)


def assert_owner_or_admin(principal: Principal, owner_id: int | None) -> None:
    if principal.is_admin:
        return
    if owner_id is None or principal.id != owner_id:
        raise Forbidden('Forbidden')
