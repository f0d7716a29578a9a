"""
Authentication and authorization gates, exposed as FastAPI dependencies.

The authentication gate turns a bearer token into a live principal: staff
users are looked up on every request so a deactivated account stops working
immediately, while viewer tokens only require their student to still exist.
The authorization gate is a pure role check against a per-route role set.
"""

import logging
from typing import Callable, FrozenSet, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from driving_school.config import Settings, get_settings
from driving_school.credentials import CredentialStore
from driving_school.database import get_db
from driving_school.exceptions import Forbidden, Unauthenticated
from driving_school.models import Role
from driving_school.principals import Principal, StaffPrincipal, ViewerPrincipal
from driving_school.tokens import TokenKind, TokenService

logger = logging.getLogger(__name__)

ADMIN_ONLY: FrozenSet[Role] = frozenset({Role.ADMIN})
STAFF_ROLES: FrozenSet[Role] = frozenset({Role.ADMIN, Role.STAFF})
ANY_ROLE: FrozenSet[Role] = frozenset({Role.ADMIN, Role.STAFF, Role.VIEWER})

bearer_scheme = HTTPBearer(auto_error=False)


def get_credential_store(db: Session = Depends(get_db)) -> CredentialStore:
    return CredentialStore(db)


def get_token_service(
    settings: Settings = Depends(get_settings),
    credentials: CredentialStore = Depends(get_credential_store),
) -> TokenService:
    return TokenService(settings, credentials)


def resolve_principal(token: Optional[str], tokens: TokenService) -> Principal:
    if not token:
        raise Unauthenticated("No token provided")

    principal = tokens.verify(token, TokenKind.ACCESS)
    store = tokens.credentials

    if isinstance(principal, ViewerPrincipal):
        if store.get_student(principal.student_id) is None:
            raise Unauthenticated("Student not found")
        return principal

    user = store.get_user(principal.id)
    if user is None or not user.is_active:
        raise Unauthenticated("User not found or inactive")
    return StaffPrincipal(id=user.id, email=user.email, role=user.role)


def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    tokens: TokenService = Depends(get_token_service),
) -> Principal:
    principal = resolve_principal(credentials.credentials if credentials else None, tokens)
    request.state.principal = principal
    return principal


def get_optional_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    tokens: TokenService = Depends(get_token_service),
) -> Optional[Principal]:
    try:
        principal = resolve_principal(credentials.credentials if credentials else None, tokens)
    except Unauthenticated:
        return None
    except (RuntimeError, SQLAlchemyError) as e:
        logger.warning("Optional authentication skipped: %s", e)
        return None
    request.state.principal = principal
    return principal


def authorize(principal: Optional[Principal], allowed_roles: FrozenSet[Role]) -> Principal:
    if principal is None:
        raise Unauthenticated("Not authenticated")
    if principal.role not in allowed_roles:
        raise Forbidden()
    return principal


def require_roles(allowed_roles: FrozenSet[Role]) -> Callable[..., Principal]:
    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        return authorize(principal, allowed_roles)

    return dependency


def ensure_can_view_student(principal: Principal, student_id: int) -> None:
    if isinstance(principal, ViewerPrincipal) and principal.student_id != student_id:
        raise Forbidden()
