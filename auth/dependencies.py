"""
auth/dependencies.py -- FastAPI Depends() helpers: the request-time auth gate.

Per request, in order:
  1. Bearer token from the Authorization header. Missing or not "Bearer <t>"
     -> 401.
  2. Revocation registry hit -> 401 ("Token has been invalidated.").
  3. Signature and expiry check -> 401 ("Invalid token." / "Token expired.").
  4. Live session for this exact token, owned by an active, non-deleted user
     whose id matches the token subject -> otherwise 401.
  5. Attach AuthenticatedUser to request.state.user.

A token with a valid signature can still fail at steps 2 and 4. Never cache
"signature valid => authenticated".

All failures are the same 401 code ("unauthorized"). The message varies only
between the coarse classes above, never by which account state failed.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() raises 401. require_roles() / require_admin() add a 403.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Request

from auth.errors import Forbidden, TokenExpired, TokenMalformed, Unauthenticated
from auth.models import Role
from auth.revocation import RevocationRegistry
from auth.sessions import SessionStore
from auth.tokens import verify_access_token
from core.config import get_settings

logger = logging.getLogger("gsoauth.auth")

_settings = get_settings()


@dataclass(frozen=True)
class AuthenticatedUser:
    """The identity attached to an authenticated request."""

    id: int
    email: str
    role: str
    session_id: int
    token: str


def extract_bearer(request: Request) -> str | None:
    """Return the bearer token from the Authorization header, or None."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def authenticate_request(request: Request) -> AuthenticatedUser:
    """Run the full auth gate and return the identity, raising Unauthenticated."""
    cached = getattr(request.state, "user", None)
    if isinstance(cached, AuthenticatedUser):
        return cached

    token = extract_bearer(request)
    if token is None:
        raise Unauthenticated()

    registry: RevocationRegistry = request.app.state.revocation
    if registry.contains(token):
        raise Unauthenticated("Token has been invalidated.")

    try:
        claims = verify_access_token(token)
    except TokenExpired as exc:
        raise Unauthenticated("Token expired.") from exc
    except TokenMalformed as exc:
        raise Unauthenticated("Invalid token.") from exc

    session_store: SessionStore = request.app.state.session_store
    found = session_store.get(token)
    if found is None:
        raise Unauthenticated("Session is no longer active.")
    session, user = found
    if user.id != claims.user_id:
        logger.warning("Token subject %s does not own session %s", claims.user_id, session.id)
        raise Unauthenticated("Session is no longer active.")

    if _maybe_touch(session_store, session.id, session.last_activity):
        request.app.state.user_store.update_last_activity(user.id)

    identity = AuthenticatedUser(
        id=user.id,
        email=user.email,
        role=user.role,
        session_id=session.id,
        token=token,
    )
    request.state.user = identity
    return identity


def _maybe_touch(session_store: SessionStore, session_id: int, last_activity: str | None) -> bool:
    """Heartbeat the session at most once per SESSION_TOUCH_INTERVAL_SECONDS. True if it wrote."""
    if last_activity:
        try:
            last = datetime.fromisoformat(last_activity)
        except ValueError:
            last = None
        if last is not None:
            age = datetime.now(timezone.utc) - last
            if age < timedelta(seconds=_settings.session_touch_interval_seconds):
                return False
    session_store.touch(session_id)
    return True


def try_get_current_user(request: Request) -> AuthenticatedUser | None:
    """Authenticate the request if possible. Never raises Unauthenticated."""
    try:
        return authenticate_request(request)
    except Unauthenticated:
        return None


def get_current_user(request: Request) -> AuthenticatedUser:
    """Require authentication. Raises Unauthenticated (HTTP 401).

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: AuthenticatedUser = Depends(get_current_user)): ...
    """
    return authenticate_request(request)


def require_roles(*roles: Role):
    """Build a dependency that admits only the given roles (HTTP 403 otherwise)."""
    allowed = {r.value for r in roles}

    def dependency(request: Request) -> AuthenticatedUser:
        user = authenticate_request(request)
        if user.role not in allowed:
            raise Forbidden("Insufficient role for this operation.")
        return user

    return dependency


require_admin = require_roles(Role.admin)
