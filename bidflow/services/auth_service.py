"""
Identity resolution for bearer tokens.

Accounts, passwords and token issuance belong to the external auth service.
This module only verifies the access tokens it issues and turns them into
an ``Identity`` (user id + marketplace role) the engines authorize against.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from bidflow.core.config import Settings
from bidflow.services.jobStateManager import ActorType


class Role(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    PROVIDER = "PROVIDER"
    ADMIN = "ADMIN"


@dataclass(frozen=True)
class Identity:
    """The authenticated caller of an operation."""
    user_id: uuid.UUID
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def actor_type(self) -> ActorType:
        return ActorType(self.role.value.lower())


# ---------------------------------------------------------------------------
# JWT handling
# ---------------------------------------------------------------------------

ACCESS_TOKEN_EXPIRE_MINUTES = 30


def create_access_token(
    settings: Settings,
    user_id: uuid.UUID,
    role: Role,
    expires_minutes: int = ACCESS_TOKEN_EXPIRE_MINUTES,
) -> str:
    """Mint an access token in the auth service's format.

    Used by local tooling and tests; production tokens come from the auth
    service.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role.value,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


class JWTIdentityResolver:
    """Resolve bearer tokens signed with the shared auth-service secret."""

    def __init__(self, settings: Settings) -> None:
        self._secret = settings.jwt_secret
        self._algorithm = settings.jwt_algorithm

    def resolve(self, token: str) -> Identity:
        """Decode an access token into an ``Identity``.

        Raises:
            ValueError: If the token is invalid, expired, of the wrong type,
                or carries a malformed subject or unknown role.
        """
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            raise ValueError("Access token has expired.")
        except jwt.InvalidTokenError:
            raise ValueError("Invalid access token.")

        if payload.get("type", "access") != "access":
            raise ValueError("Invalid token type. Expected an access token.")

        user_id_str = payload.get("sub")
        if user_id_str is None:
            raise ValueError("Invalid token: missing subject.")
        try:
            user_id = uuid.UUID(user_id_str)
        except (ValueError, AttributeError, TypeError):
            raise ValueError("Invalid token: malformed subject.")

        try:
            role = Role(str(payload.get("role", "")).upper())
        except ValueError:
            raise ValueError("Invalid token: unknown role.")

        return Identity(user_id=user_id, role=role)
