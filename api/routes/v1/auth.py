"""
api/routes/v1/auth.py -- Login, logout, registration and account recovery.

Routes:
  POST /api/v1/auth/login                 -- password login; returns bearer token + session
  POST /api/v1/auth/register              -- create an account; sends a verification link
  POST /api/v1/auth/logout                -- end this token's session and this device's
  POST /api/v1/auth/password/reset-request -- mail a reset link (generic response)
  POST /api/v1/auth/password/reset        -- set a new password; ends every session
  POST /api/v1/auth/verify-email          -- confirm an address with a mailed token
  POST /api/v1/auth/verify-email/request  -- resend the verification link (generic response)
  GET  /api/v1/auth/me                    -- current identity (requires auth)

Security:
  Login is limited to LOGIN_LIMIT per client. @limiter.limit sits BELOW
  @router so the router registers the limiting wrapper; a throttled call
  never reaches authenticate_user() or bcrypt.
  authenticate_user() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on every login response, success or failure.
  Reset and resend requests answer identically for known and unknown emails.
  Every token removed from the session table is also added to the revocation
  registry so it stops working immediately on every instance.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.audit_trail import schedule_audit
from api.limiter import (
    LOGIN_LIMIT,
    LOGIN_MESSAGE,
    PASSWORD_RESET_LIMIT,
    PASSWORD_RESET_MESSAGE,
    REGISTRATION_LIMIT,
    REGISTRATION_MESSAGE,
    limiter,
)
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    RegisterResponse,
    ResendVerificationRequest,
    RoleEnum,
    SessionSummary,
    UserSummary,
    VerifyEmailRequest,
)
from auth import audit
from auth.dependencies import AuthenticatedUser, get_current_user, try_get_current_user
from auth.email import EmailService, redact_email
from auth.errors import AuthError, Conflict, Forbidden, InvalidOneTimeToken
from auth.fingerprint import fingerprint_from_headers
from auth.models import GeoLocation, Role, User
from auth.origin import GeoLocator, client_ip
from auth.revocation import RevocationRegistry
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import (
    authenticate_user,
    generate_one_time_token,
    hash_one_time_token,
    hash_password,
    issue_access_token,
    token_expiry,
)
from core.config import get_settings

logger = logging.getLogger("gsoauth.api.auth")

_settings = get_settings()

_RESET_REQUESTED = "If that email is registered, a password reset link has been sent."
_VERIFICATION_REQUESTED = "If that email is registered and unverified, a verification link has been sent."

# Auth policy:
# - POST /auth/login, /auth/password/*, /auth/verify-email*: public
# - POST /auth/register: public for department_rep; any other role requires an admin caller
# - POST /auth/logout, GET /auth/me: requires auth (get_current_user)
router = APIRouter()


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"
    return resp


def revoke_tokens(registry: RevocationRegistry, tokens: list[str]) -> None:
    """Add every token to the revocation registry, sized by its own exp claim."""
    for token in tokens:
        registry.add(token, token_expiry(token))


def _user_summary(user: User) -> UserSummary:
    return UserSummary(id=user.id, email=user.email, name=user.name, role=user.role)


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(LOGIN_LIMIT, error_message=LOGIN_MESSAGE)
def login(request: Request, body: LoginRequest, background_tasks: BackgroundTasks) -> JSONResponse:
    """Authenticate with email and password; issue a token bound to this device.

    A second login from the same (platform, browser) replaces the token on the
    existing session row instead of adding a row, so the previous token stops
    authenticating.
    """
    user_store: UserStore = request.app.state.user_store
    session_store: SessionStore = request.app.state.session_store
    geo: GeoLocator = request.app.state.geo

    try:
        user = authenticate_user(user_store, body.email, body.password)
    except AuthError as exc:
        logger.info("Login failed for %s (%s)", redact_email(body.email), exc.code)
        return _no_store(JSONResponse(status_code=exc.status_code, content=exc.to_dict()))

    token = issue_access_token(user.id, user.role)
    fingerprint = fingerprint_from_headers(request.headers)
    ip_address = client_ip(request, trust_proxy_headers=_settings.trust_proxy_headers)
    if body.location is not None:
        location = GeoLocation(**body.location.model_dump())
    else:
        location = geo.lookup(ip_address)

    session = session_store.create_or_refresh(user.id, token, fingerprint, ip_address, location)
    user_store.update_last_login(user.id)
    logger.info("User %s logged in from %s (%s)", user.id, ip_address, fingerprint.key)
    schedule_audit(background_tasks, request, user.id, audit.LOGIN, session_id=session.id, device=fingerprint.key)

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=_settings.token_expire_seconds,
            session=SessionSummary(id=session.id, expires_at=session.expires_at),
            user=_user_summary(user),
        ).model_dump(),
        background=background_tasks,
    )
    return _no_store(resp)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: AuthenticatedUser = Depends(get_current_user),
) -> MessageResponse:
    """End the session behind this token, plus any session for this device."""
    session_store: SessionStore = request.app.state.session_store
    registry: RevocationRegistry = request.app.state.revocation

    removed = session_store.delete_by_token(current_user.token)
    fingerprint = fingerprint_from_headers(request.headers)
    removed += session_store.delete_by_device_fingerprint(current_user.id, fingerprint)
    revoke_tokens(registry, sorted(set(removed) | {current_user.token}))

    schedule_audit(background_tasks, request, current_user.id, audit.LOGOUT, sessions_removed=len(set(removed)))
    return MessageResponse(message="Logged out successfully.")


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: AuthenticatedUser = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(
        id=current_user.id,
        email=current_user.email,
        role=current_user.role,
        session_id=current_user.session_id,
    )


# ---------------------------------------------------------------------------
# Registration and email verification
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
@limiter.limit(REGISTRATION_LIMIT, error_message=REGISTRATION_MESSAGE)
def register(request: Request, body: RegisterRequest, background_tasks: BackgroundTasks) -> RegisterResponse:
    """Create an unverified account and mail a verification link.

    Self-service registration always yields department_rep. Creating staff or
    admin accounts requires an authenticated admin caller.
    """
    user_store: UserStore = request.app.state.user_store
    email_service: EmailService = request.app.state.email

    caller = try_get_current_user(request)
    if body.role != RoleEnum.department_rep and (caller is None or caller.role != Role.admin.value):
        raise Forbidden("Only an administrator can create accounts with this role.")

    if user_store.get_by_email(body.email) is not None:
        raise Conflict("An account with this email already exists.")
    user = User(
        email=body.email,
        name=body.name,
        role=body.role.value,
        password_hash=hash_password(body.password),
    )
    try:
        user.id = user_store.create_user(user)
    except IntegrityError as exc:
        raise Conflict("An account with this email already exists.") from exc

    raw_token = generate_one_time_token()
    user_store.create_verification_token(
        user.id, hash_one_time_token(raw_token), _settings.email_verification_expire_seconds
    )
    background_tasks.add_task(email_service.send_verification, user.email, raw_token)
    actor_id = caller.id if caller is not None else user.id
    schedule_audit(background_tasks, request, actor_id, audit.REGISTER, new_user_id=user.id, role=user.role)
    logger.info("Registered user %s (%s)", user.id, user.role)

    return RegisterResponse(
        message="Account created. Check your email to verify your address.",
        user=_user_summary(user),
    )


@router.post("/auth/verify-email", response_model=MessageResponse)
@limiter.limit(REGISTRATION_LIMIT, error_message=REGISTRATION_MESSAGE)
def verify_email(request: Request, body: VerifyEmailRequest, background_tasks: BackgroundTasks) -> MessageResponse:
    """Consume a verification token and mark the account verified."""
    user_store: UserStore = request.app.state.user_store

    record = user_store.consume_verification_token(hash_one_time_token(body.token))
    if record is None or not user_store.mark_verified(record.user_id):
        raise InvalidOneTimeToken()

    schedule_audit(background_tasks, request, record.user_id, audit.VERIFY_EMAIL)
    return MessageResponse(message="Email verified. You can now log in.")


@router.post("/auth/verify-email/request", response_model=MessageResponse)
@limiter.limit(PASSWORD_RESET_LIMIT, error_message=PASSWORD_RESET_MESSAGE)
def resend_verification(
    request: Request, body: ResendVerificationRequest, background_tasks: BackgroundTasks
) -> MessageResponse:
    """Mail a fresh verification link. The response never reveals account state."""
    user_store: UserStore = request.app.state.user_store
    email_service: EmailService = request.app.state.email

    user = user_store.get_by_email(body.email)
    if user is not None and user.is_active and not user.is_verified:
        raw_token = generate_one_time_token()
        user_store.create_verification_token(
            user.id, hash_one_time_token(raw_token), _settings.email_verification_expire_seconds
        )
        background_tasks.add_task(email_service.send_verification, user.email, raw_token)
    return MessageResponse(message=_VERIFICATION_REQUESTED)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/password/reset-request", response_model=MessageResponse)
@limiter.limit(PASSWORD_RESET_LIMIT, error_message=PASSWORD_RESET_MESSAGE)
def request_password_reset(
    request: Request, body: PasswordResetRequest, background_tasks: BackgroundTasks
) -> MessageResponse:
    """Mail a reset link if the account exists. Unknown emails get the same answer."""
    user_store: UserStore = request.app.state.user_store
    email_service: EmailService = request.app.state.email

    user = user_store.get_by_email(body.email)
    if user is None or not user.is_active:
        logger.info("Password reset requested for unknown or inactive %s", redact_email(body.email))
        return MessageResponse(message=_RESET_REQUESTED)

    raw_token = generate_one_time_token()
    user_store.create_password_reset_token(
        user.id, hash_one_time_token(raw_token), _settings.password_reset_expire_seconds
    )
    background_tasks.add_task(email_service.send_password_reset, user.email, raw_token)
    schedule_audit(background_tasks, request, user.id, audit.PASSWORD_RESET_REQUEST)
    return MessageResponse(message=_RESET_REQUESTED)


@router.post("/auth/password/reset", response_model=MessageResponse)
@limiter.limit(PASSWORD_RESET_LIMIT, error_message=PASSWORD_RESET_MESSAGE)
def reset_password(request: Request, body: PasswordResetConfirm, background_tasks: BackgroundTasks) -> MessageResponse:
    """Set a new password from a reset token and end every session of the account."""
    user_store: UserStore = request.app.state.user_store
    session_store: SessionStore = request.app.state.session_store
    registry: RevocationRegistry = request.app.state.revocation

    record = user_store.consume_password_reset_token(hash_one_time_token(body.token))
    if record is None:
        raise InvalidOneTimeToken()
    user = user_store.get_by_id(record.user_id)
    if user is None or not user.is_active:
        raise InvalidOneTimeToken()

    user_store.update_password(record.user_id, hash_password(body.new_password))
    removed = session_store.delete_all_for_user(record.user_id)
    revoke_tokens(registry, removed)
    logger.info("Password reset for user %s; %d session(s) ended", record.user_id, len(removed))

    schedule_audit(background_tasks, request, record.user_id, audit.PASSWORD_RESET, sessions_removed=len(removed))
    return MessageResponse(message="Password has been reset. Please log in again.")
