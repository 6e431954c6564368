"""Bearer-token authentication for the control-plane API.

Security model:
    Users authenticate with static bearer tokens. The config stores only the
    SHA-256 hex digest of each token (``auth.tokens[].token_sha256``) along
    with the user id and an admin flag; the raw token never touches disk.

    Host agents authenticate with their per-host bearer secret, which is
    resolved against the hosts table by ``HostEnvironmentService``; this
    module only extracts it from the header.

Usage:
    @router.get("/toolboxes")
    async def list_toolboxes(principal: Principal = Depends(require_principal)):
        ...
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from toolshed.errors import AuthenticationError, AuthorizationError

if TYPE_CHECKING:
    from toolshed.config import AuthConfig

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """The user a request acts for."""

    user_id: str
    admin: bool = False


# Set during server startup (see server.py)
_principals: dict[str, Principal] = {}


def configure(auth: AuthConfig) -> None:
    global _principals
    _principals = {
        entry.token_sha256: Principal(user_id=entry.user_id, admin=entry.admin)
        for entry in auth.tokens
    }
    if not _principals:
        logger.warning("No API tokens configured — every authenticated endpoint will return 401")


def token_hash(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def generate_token() -> str:
    """Generate a cryptographically secure API token."""
    return secrets.token_urlsafe(32)


def _lookup(token: str) -> Principal | None:
    digest = token_hash(token)
    # Constant-time compare against every configured digest.
    found = None
    for known, principal in _principals.items():
        if secrets.compare_digest(known, digest):
            found = principal
    return found


async def require_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Principal:
    """FastAPI dependency resolving the caller's bearer token to a Principal."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("missing bearer token")
    principal = _lookup(credentials.credentials)
    if principal is None:
        logger.warning("Rejected API token %s…", token_hash(credentials.credentials)[:8])
        raise AuthenticationError("invalid bearer token")
    return principal


async def require_admin(principal: Principal = Depends(require_principal)) -> Principal:
    if not principal.admin:
        raise AuthorizationError()
    return principal


async def host_bearer(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> str | None:
    """Raw host bearer secret from the Authorization header (validated by the caller)."""
    return credentials.credentials if credentials else None
