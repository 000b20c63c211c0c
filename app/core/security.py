"""
Identity and Authorization Module

Credentials are verified by the upstream gateway, which forwards the caller's
identity in request headers. This module turns those headers into an
IdentityContext and provides the role checks shared by the HTTP layer and the
engine services.
"""

import uuid
from dataclasses import dataclass
from typing import Dict, Iterable

import structlog
from fastapi import Header

from app.core.exceptions import PermissionDeniedError, ValidationError
from app.models.database import UserRole

# =============================================================================
# Logger Setup
# =============================================================================

logger = structlog.get_logger(__name__)

USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"


# =============================================================================
# Identity Context
# =============================================================================

@dataclass(frozen=True)
class IdentityContext:
    """The authenticated caller. Every engine operation receives one."""

    user_id: uuid.UUID
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def parse_identity(user_id: str, role: str) -> IdentityContext:
    """
    Build an IdentityContext from raw header values.

    Args:
        user_id: UUID string of the caller
        role: One of the UserRole values (case-insensitive)

    Returns:
        IdentityContext

    Raises:
        ValidationError: If either value is malformed
    """
    try:
        parsed_id = uuid.UUID(user_id)
    except (TypeError, ValueError):
        raise ValidationError(
            "Invalid user identifier",
            field=USER_ID_HEADER,
            error_code="INVALID_IDENTITY",
        )

    try:
        parsed_role = UserRole(role.strip().upper())
    except (AttributeError, ValueError):
        raise ValidationError(
            "Invalid user role",
            field=USER_ROLE_HEADER,
            error_code="INVALID_IDENTITY",
        )

    return IdentityContext(user_id=parsed_id, role=parsed_role)


async def get_identity(
    x_user_id: str = Header(..., alias=USER_ID_HEADER),
    x_user_role: str = Header(..., alias=USER_ROLE_HEADER),
) -> IdentityContext:
    """FastAPI dependency resolving the caller from gateway headers."""
    identity = parse_identity(x_user_id, x_user_role)
    structlog.contextvars.bind_contextvars(
        user_id=str(identity.user_id),
        user_role=identity.role.value,
    )
    return identity


# =============================================================================
# Role Checks
# =============================================================================

def ensure_role(identity: IdentityContext, allowed_roles: Iterable[UserRole], action: str) -> None:
    """
    Raise PermissionDeniedError unless the caller holds one of the roles.

    Used by the engine services, so the check holds for every entry point.
    """
    allowed = list(allowed_roles)
    if identity.role not in allowed:
        logger.warning(
            "Access denied - insufficient role",
            user_id=str(identity.user_id),
            user_role=identity.role.value,
            required_roles=[role.value for role in allowed],
            action=action,
        )
        raise PermissionDeniedError(
            message=f"Your role is not allowed to {action}.",
            required_role=[role.value for role in allowed],
        )


# =============================================================================
# Security Headers
# =============================================================================

def get_security_headers() -> Dict[str, str]:
    """Get security headers for responses."""
    return {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    }


__all__ = [
    "IdentityContext",
    "parse_identity",
    "get_identity",
    "ensure_role",
    "get_security_headers",
]
