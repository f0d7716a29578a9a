"""
Token service: signed, time-limited access and refresh tokens.

Access tokens are verified statelessly. Staff refresh tokens additionally
carry the user's session generation; a refresh is only honoured while that
generation is still the one stored for the user, which is what makes logout
and rotate-on-refresh effective.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from driving_school.config import Settings
from driving_school.credentials import CredentialStore
from driving_school.exceptions import TokenExpired, TokenInvalid, Unauthenticated
from driving_school.models import Role
from driving_school.principals import Principal, StaffPrincipal, ViewerPrincipal

logger = logging.getLogger(__name__)


class TokenKind(str, enum.Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: Optional[str] = None


class TokenService:
    def __init__(self, settings: Settings, credentials: CredentialStore):
        self.settings = settings
        self.credentials = credentials

    def _secret(self, kind: TokenKind) -> str:
        if kind == TokenKind.ACCESS:
            secret, name = self.settings.jwt_secret, "JWT_SECRET"
        else:
            secret, name = self.settings.jwt_refresh_secret, "JWT_REFRESH_SECRET"
        if not secret:
            raise RuntimeError(f"{name} environment variable must be set")
        return secret

    def _lifetime(self, kind: TokenKind) -> timedelta:
        if kind == TokenKind.ACCESS:
            return timedelta(minutes=self.settings.access_token_expire_minutes)
        return timedelta(days=self.settings.refresh_token_expire_days)

    @staticmethod
    def _claims_for(principal: Principal) -> Dict[str, Any]:
        if isinstance(principal, ViewerPrincipal):
            return {
                "sub": f"student:{principal.student_id}",
                "role": Role.VIEWER.value,
                "student_id": principal.student_id,
            }
        return {"sub": str(principal.id), "role": principal.role.value, "email": principal.email}

    def _encode(self, principal: Principal, kind: TokenKind, **extra: Any) -> str:
        now = datetime.now(timezone.utc)
        to_encode = self._claims_for(principal)
        to_encode.update(extra)
        to_encode.update(
            {
                "type": kind.value,
                "jti": uuid.uuid4().hex,
                "iat": now,
                "exp": now + self._lifetime(kind),
            }
        )
        return jwt.encode(to_encode, self._secret(kind), algorithm=self.settings.jwt_algorithm)

    def issue_access_token(self, principal: Principal) -> str:
        return self._encode(principal, TokenKind.ACCESS)

    def issue_refresh_token(self, principal: Principal) -> str:
        if isinstance(principal, ViewerPrincipal):
            return self._encode(principal, TokenKind.REFRESH)
        generation = self.credentials.advance_session(principal.id)
        return self._encode(principal, TokenKind.REFRESH, gen=generation)

    def issue_pair(self, principal: Principal) -> TokenPair:
        return TokenPair(self.issue_access_token(principal), self.issue_refresh_token(principal))

    def decode(self, token: str, kind: TokenKind) -> Dict[str, Any]:
        try:
            claims = jwt.decode(
                token,
                self._secret(kind),
                algorithms=[self.settings.jwt_algorithm],
                options={"require": ["exp", "sub", "type"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpired()
        except jwt.InvalidTokenError:
            raise TokenInvalid()
        if claims.get("type") != kind.value:
            raise TokenInvalid()
        return claims

    @staticmethod
    def principal_from_claims(claims: Dict[str, Any]) -> Principal:
        try:
            role = Role(claims["role"])
            if role == Role.VIEWER:
                return ViewerPrincipal(student_id=int(claims["student_id"]))
            return StaffPrincipal(id=int(claims["sub"]), email=claims.get("email", ""), role=role)
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid()

    def verify(self, token: str, kind: TokenKind = TokenKind.ACCESS) -> Principal:
        return self.principal_from_claims(self.decode(token, kind))

    def refresh(self, refresh_token: str) -> TokenPair:
        claims = self.decode(refresh_token, TokenKind.REFRESH)
        principal = self.principal_from_claims(claims)

        # viewers have no destructive capabilities; re-issue without rotation
        if isinstance(principal, ViewerPrincipal):
            return TokenPair(self.issue_access_token(principal))

        user = self.credentials.get_user(principal.id)
        if user is None or not user.is_active:
            raise Unauthenticated("Invalid refresh token")
        current = StaffPrincipal(id=user.id, email=user.email, role=user.role)

        presented = claims.get("gen")
        if not isinstance(presented, int):
            raise Unauthenticated("Invalid refresh token")
        generation = self.credentials.rotate_session(current.id, presented)
        if generation is None:
            logger.warning("Rejected superseded refresh token for user id=%s (generation %s)", current.id, presented)
            raise Unauthenticated("Invalid refresh token")

        return TokenPair(
            self.issue_access_token(current),
            self._encode(current, TokenKind.REFRESH, gen=generation),
        )
