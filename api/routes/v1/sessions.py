"""
api/routes/v1/sessions.py -- Session management for the signed-in user.

Routes:
  GET    /api/v1/sessions          -- list my live sessions
  GET    /api/v1/sessions/{id}     -- one of my sessions
  POST   /api/v1/sessions          -- issue a fresh token for this device
  DELETE /api/v1/sessions/current  -- log out this session
  DELETE /api/v1/sessions/all      -- log out everywhere
  DELETE /api/v1/sessions/{id}     -- log out one of my sessions

Reads use VIEW_LIMIT, which authenticated callers are exempt from. Writes use
MODIFY_LIMIT with no exemption. /current and /all are declared before
/{session_id} so they never match the id route.

Handlers call authenticate_request() as their first statement rather than
declaring Depends(get_current_user). Dependencies resolve before the slowapi
wrapper, so a 401 raised there would never reach the counter.

IDOR guard: every id route loads the session and compares its owner with the
caller before returning or deleting it.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse

from api.audit_trail import schedule_audit
from api.limiter import MODIFY_LIMIT, MODIFY_MESSAGE, VIEW_LIMIT, VIEW_MESSAGE, is_authenticated, limiter
from api.models import (
    LogoutAllResponse,
    MessageResponse,
    SessionCreateRequest,
    SessionListResponse,
    SessionResponse,
    SessionTokenResponse,
)
from api.routes.v1.auth import revoke_tokens
from auth import audit
from auth.dependencies import AuthenticatedUser, authenticate_request
from auth.errors import Forbidden, SessionNotFound
from auth.fingerprint import fingerprint_from_headers
from auth.models import GeoLocation, Session
from auth.origin import GeoLocator, client_ip
from auth.revocation import RevocationRegistry
from auth.sessions import SessionStore
from auth.tokens import issue_access_token
from core.config import get_settings

_settings = get_settings()

router = APIRouter()


def _owned_session(session_store: SessionStore, session_id: int, user: AuthenticatedUser) -> Session:
    session = session_store.get_by_id(session_id)
    if session is None:
        raise SessionNotFound()
    if session.user_id != user.id:
        raise Forbidden("You do not have access to this session.")
    return session


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/sessions", response_model=SessionListResponse)
@limiter.limit(VIEW_LIMIT, exempt_when=is_authenticated, error_message=VIEW_MESSAGE)
def list_sessions(
    request: Request,
    background_tasks: BackgroundTasks,
) -> SessionListResponse:
    current_user = authenticate_request(request)
    session_store: SessionStore = request.app.state.session_store
    sessions = session_store.list_active(current_user.id)
    schedule_audit(background_tasks, request, current_user.id, audit.VIEW_SESSIONS, count=len(sessions))
    return SessionListResponse(sessions=[SessionResponse.from_session(s, current_user.token) for s in sessions])


@router.get("/sessions/{session_id}", response_model=SessionResponse)
@limiter.limit(VIEW_LIMIT, exempt_when=is_authenticated, error_message=VIEW_MESSAGE)
def get_session(
    request: Request,
    session_id: int,
    background_tasks: BackgroundTasks,
) -> SessionResponse:
    current_user = authenticate_request(request)
    session_store: SessionStore = request.app.state.session_store
    session = _owned_session(session_store, session_id, current_user)
    schedule_audit(background_tasks, request, current_user.id, audit.VIEW_SESSION)
    return SessionResponse.from_session(session, current_user.token)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


@router.post("/sessions", response_model=SessionTokenResponse, status_code=201)
@limiter.limit(MODIFY_LIMIT, error_message=MODIFY_MESSAGE)
def create_session(
    request: Request,
    background_tasks: BackgroundTasks,
    body: SessionCreateRequest | None = None,
) -> JSONResponse:
    """Issue a new token for the calling device and bind it to that device's session.

    When this device already has a session (the usual case) its token is
    replaced, which ends the token used to make this call.
    """
    current_user = authenticate_request(request)
    session_store: SessionStore = request.app.state.session_store
    geo: GeoLocator = request.app.state.geo

    token = issue_access_token(current_user.id, current_user.role)
    fingerprint = fingerprint_from_headers(request.headers)
    ip_address = client_ip(request, trust_proxy_headers=_settings.trust_proxy_headers)
    if body is not None and body.location is not None:
        location = GeoLocation(**body.location.model_dump())
    else:
        location = geo.lookup(ip_address)

    session = session_store.create_or_refresh(current_user.id, token, fingerprint, ip_address, location)
    schedule_audit(background_tasks, request, current_user.id, audit.CREATE_SESSION, session_id=session.id)

    resp = JSONResponse(
        status_code=201,
        content=SessionTokenResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106
            expires_in=_settings.token_expire_seconds,
            session=SessionResponse.from_session(session, token),
        ).model_dump(),
        background=background_tasks,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.delete("/sessions/current", response_model=MessageResponse)
@limiter.limit(MODIFY_LIMIT, error_message=MODIFY_MESSAGE)
def logout_current(
    request: Request,
    background_tasks: BackgroundTasks,
) -> MessageResponse:
    current_user = authenticate_request(request)
    session_store: SessionStore = request.app.state.session_store
    registry: RevocationRegistry = request.app.state.revocation

    removed = session_store.delete_by_token(current_user.token)
    if not removed:
        raise SessionNotFound()
    revoke_tokens(registry, removed)
    schedule_audit(background_tasks, request, current_user.id, audit.LOGOUT_SESSION, session_id=current_user.session_id)
    return MessageResponse(message="Logged out of this session.")


@router.delete("/sessions/all", response_model=LogoutAllResponse)
@limiter.limit(MODIFY_LIMIT, error_message=MODIFY_MESSAGE)
def logout_all(
    request: Request,
    background_tasks: BackgroundTasks,
) -> LogoutAllResponse:
    current_user = authenticate_request(request)
    session_store: SessionStore = request.app.state.session_store
    registry: RevocationRegistry = request.app.state.revocation

    removed = session_store.delete_all_for_user(current_user.id)
    revoke_tokens(registry, sorted(set(removed) | {current_user.token}))
    schedule_audit(background_tasks, request, current_user.id, audit.LOGOUT_ALL_SESSIONS, sessions_removed=len(removed))
    return LogoutAllResponse(message="Logged out of all sessions.", revoked=len(removed))


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
@limiter.limit(MODIFY_LIMIT, error_message=MODIFY_MESSAGE)
def delete_session(
    request: Request,
    session_id: int,
    background_tasks: BackgroundTasks,
) -> MessageResponse:
    current_user = authenticate_request(request)
    session_store: SessionStore = request.app.state.session_store
    registry: RevocationRegistry = request.app.state.revocation

    _owned_session(session_store, session_id, current_user)
    removed = session_store.delete_by_id(session_id)
    if not removed:
        raise SessionNotFound()
    revoke_tokens(registry, removed)
    schedule_audit(background_tasks, request, current_user.id, audit.DELETE_SESSION, session_id=session_id)
    return MessageResponse(message="Session deleted.")
