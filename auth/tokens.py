"""
auth/tokens.py -- Password hashing, credential verification, JWT issue/verify,
and one-time token helpers.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry sub (user id), role, exp, iat and a
       random jti, so two logins within the same second still produce distinct
       tokens. Verification is stateless and raises TokenExpired or
       TokenMalformed; revocation and session checks are composed by
       auth/dependencies.py, never here.

  Passwords: bcrypt with a configurable cost (>= 10). The _DUMMY_HASH constant
       enables timing equalization in authenticate_user() so response time
       does not reveal whether an email exists [C1].

  One-time tokens (password reset, email verification): secrets.token_urlsafe
       gives 256 bits of entropy. We store HMAC-SHA256(SECRET_KEY, raw) so a
       leaked table is useless without the key, and lookup stays O(1).

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import EmailNotVerified, InvalidCredentials, TokenExpired, TokenMalformed, UserNotFound
from auth.models import TokenClaims
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("gsoauth.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password fields at 128 characters.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in the store
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones [C1].
_DUMMY_HASH: str = hash_password("gsoauth_timing_dummy")


# ---------------------------------------------------------------------------
# Credential verifier [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email: str, password: str) -> User:
    """Verify an email/password pair and return the User.

    Raises:
        UserNotFound:       no (non-deleted) user has this exact email.
        InvalidCredentials: wrong password, no local password, or inactive account.
        EmailNotVerified:   correct password but the email is unverified and
                            REQUIRE_EMAIL_VERIFICATION is on.

    bcrypt always runs, against _DUMMY_HASH when the user is unknown, so the
    two failure paths take the same time.
    """
    user = store.get_by_email(email)
    if user is None:
        verify_password(password, _DUMMY_HASH)
        raise UserNotFound()
    if not user.password_hash:
        verify_password(password, _DUMMY_HASH)
        raise InvalidCredentials()
    if not verify_password(password, user.password_hash):
        raise InvalidCredentials()
    if not user.is_active:
        raise InvalidCredentials()
    if _settings.require_email_verification and not user.is_verified:
        raise EmailNotVerified()
    return user


# ---------------------------------------------------------------------------
# JWT issue / verify
# ---------------------------------------------------------------------------


def issue_access_token(user_id: int, role: str, expire_seconds: int = 0, now: datetime | None = None) -> str:
    """Encode a signed JWT carrying {sub, role, exp, iat, jti}.

    Args:
        user_id:        Numeric user ID; stored as a string sub claim.
        role:           Role value at issue time.
        expire_seconds: Lifetime in seconds. 0 uses TOKEN_EXPIRE_SECONDS.
        now:            Issue instant. Tests pass a past instant to mint
                        already-expired tokens.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    issued = now or datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(seconds=duration)).timestamp()),
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def verify_access_token(token: str) -> TokenClaims:
    """Decode and verify a JWT.

    Raises TokenExpired when the exp claim has passed and TokenMalformed for
    every other failure (bad signature, garbage input, missing claims).
    """
    if not token:
        raise TokenMalformed("Token is missing")
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise TokenExpired("Token has expired") from exc
    except JWTError as exc:
        raise TokenMalformed("Invalid token") from exc

    role = payload.get("role")
    if not role:
        raise TokenMalformed("Token role is missing")
    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise TokenMalformed("Invalid token subject") from exc
    return TokenClaims(
        user_id=user_id,
        role=role,
        expires_at=int(payload["exp"]),
        token_id=payload.get("jti", ""),
    )


def token_expiry(token: str) -> datetime | None:
    """Return the exp claim of a token WITHOUT verifying its signature.

    Used only to size revocation entries; never for authentication.
    """
    try:
        exp = jwt.get_unverified_claims(token).get("exp")
    except JWTError:
        return None
    if exp is None:
        return None
    try:
        return datetime.fromtimestamp(int(exp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


# ---------------------------------------------------------------------------
# One-time tokens
# ---------------------------------------------------------------------------


def generate_one_time_token() -> str:
    """Return a URL-safe random token for reset / verification links."""
    return secrets.token_urlsafe(32)


def hash_one_time_token(raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()
