"""
api/limiter.py -- Shared slowapi rate limiter, key function and route budgets.

Import this in api/main.py (to mount the middleware) and in route modules (to
apply per-route limits with @limiter.limit()). A single shared instance means
all routes share one counter store.

Keying:
  user:<id>        when the request carries a bearer token that verifies and
                   is not revoked;
  <network addr>   otherwise (see auth.origin.client_ip).
  On routes with only the default limit the key function runs in
  SlowAPIMiddleware, before FastAPI dependencies, so it checks the token
  itself when request.state.user is not set yet.

Budgets (route classes):
  LOGIN_LIMIT          5/hour        POST /auth/login
  PASSWORD_RESET_LIMIT 5/hour        password reset request/confirm, verification resend
  REGISTRATION_LIMIT   50/day        POST /auth/register, POST /auth/verify-email
  default limit        100/15minutes every route without an explicit limit
  VIEW_LIMIT           200/15minutes read-only resource routes; authenticated callers exempt
  MODIFY_LIMIT         50/15minutes  mutating resource routes; never exempt

Counters live in RATE_LIMIT_STORAGE_URI. The default memory:// store is
per-process: N instances behind a balancer give each client N times the
budget. Point it at redis:// to share counters.
"""

from __future__ import annotations

from slowapi import Limiter
from starlette.requests import Request

from auth.errors import TokenError
from auth.origin import client_ip
from auth.tokens import verify_access_token
from core.config import get_settings

_settings = get_settings()

LOGIN_LIMIT = _settings.login_rate_limit
PASSWORD_RESET_LIMIT = _settings.password_reset_rate_limit
REGISTRATION_LIMIT = _settings.registration_rate_limit
VIEW_LIMIT = _settings.view_rate_limit
MODIFY_LIMIT = _settings.modify_rate_limit

LOGIN_MESSAGE = "Too many login attempts, please try again after an hour."
PASSWORD_RESET_MESSAGE = "Too many password reset attempts, please try again after an hour."
REGISTRATION_MESSAGE = "Too many registration attempts, please try again tomorrow."
VIEW_MESSAGE = "Too many view requests, please try again later."
MODIFY_MESSAGE = "Too many modification requests, please try again later."

# Rejections from these routes also carry defensive headers (see api/main.py).
SECURITY_SENSITIVE_MESSAGES = frozenset({LOGIN_MESSAGE, PASSWORD_RESET_MESSAGE, REGISTRATION_MESSAGE})


def authenticated_user_id(request: Request) -> int | None:
    """Return the user id of a verified, unrevoked bearer token, else None.

    Cheap check for keying only: no database access. The auth dependency
    still runs the full gate before any handler sees the identity.
    """
    cached = getattr(request.state, "user", None)
    if cached is not None:
        return cached.id
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        return None
    registry = getattr(request.app.state, "revocation", None)
    if registry is not None and registry.contains(token):
        return None
    try:
        return verify_access_token(token).user_id
    except TokenError:
        return None


def rate_limit_key(request: Request) -> str:
    user_id = authenticated_user_id(request)
    if user_id is not None:
        return f"user:{user_id}"
    return client_ip(request, trust_proxy_headers=_settings.trust_proxy_headers)


def is_authenticated(request: Request) -> bool:
    """exempt_when hook for view limits: logged-in callers are not throttled on reads."""
    return authenticated_user_id(request) is not None


limiter = Limiter(
    key_func=rate_limit_key,
    default_limits=[_settings.api_rate_limit],
    storage_uri=_settings.rate_limit_storage_uri,
)
