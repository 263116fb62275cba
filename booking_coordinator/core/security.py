"""Principal extraction from identity-provider session tokens.

Tokens are issued elsewhere; this service only verifies them and reads the
user id and role set.
"""

from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt

from booking_coordinator.config import settings
from booking_coordinator.core.exceptions import AuthenticationError

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller."""

    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


def verify_token(token: str) -> dict[str, Any]:
    """Verify and decode a JWT token."""
    options = {"verify_aud": settings.auth_jwt_audience is not None}
    try:
        return jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=settings.auth_jwt_audience,
            options=options,
        )
    except JWTError as e:
        raise AuthenticationError(f"Token validation failed: {str(e)}")


def principal_from_claims(claims: dict[str, Any]) -> Principal:
    user_id = claims.get("sub")
    if not user_id:
        raise AuthenticationError("Token has no subject")

    roles = claims.get(settings.auth_roles_claim) or []
    if isinstance(roles, str):
        roles = [roles]
    return Principal(user_id=str(user_id), roles=frozenset(str(r) for r in roles))
