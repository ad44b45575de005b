"""
auth/store.py -- SQLAlchemy Core persistence for users and one-time tokens.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user /
_row_to_one_time_token are the mappers. Route and dependency code never touches
SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Soft-deleted users are invisible to every lookup here. From the auth core's
  point of view a deleted account does not exist.

  One-time tokens are stored as HMAC hashes only (see auth/tokens.py). A token
  is consumed by a single conditional UPDATE (used_at IS NULL AND not expired),
  so two concurrent redemptions of the same link cannot both succeed.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import Table, and_, func, select
from sqlalchemy.engine import Engine

from auth import schema
from auth.models import OneTimeToken, User
from auth.schema import now_iso, now_utc, to_iso

_users = schema.users


class UserStore:
    """Repository for User entities and their one-time tokens.

    Usage:
        store = UserStore(make_engine("sqlite:///auth.db"))
        uid = store.create_user(User(email="a@x.com", role="admin", password_hash=hash_password("secret")))
        user = store.get_by_email("a@x.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers (POST /auth/register) translate that into a 409.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    name=user.name,
                    password_hash=user.password_hash,
                    role=user.role,
                    is_active=1 if user.is_active else 0,
                    is_verified=1 if user.is_verified else 0,
                    created_at=now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a live user by exact email (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == email) & (_users.c.is_deleted == 0))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a live user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.id == user_id) & (_users.c.is_deleted == 0))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_password(self, user_id: int, password_hash: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(password_hash=password_hash))
        return result.rowcount > 0

    def mark_verified(self, user_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(is_verified=1))
        return result.rowcount > 0

    def set_active(self, user_id: int, is_active: bool) -> bool:
        """Activate or deactivate an account.

        Account management lives outside this service; the auth core only needs
        this for bootstrap scripts and tests.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_active=1 if is_active else 0)
            )
        return result.rowcount > 0

    def soft_delete(self, user_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.is_deleted == 0))
                .values(is_deleted=1, deleted_at=now_iso(), is_active=0)
            )
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp last_login and last_activity after a successful password login."""
        stamp = now_iso()
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=stamp, last_activity=stamp))

    def update_last_activity(self, user_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_activity=now_iso()))

    # ------------------------------------------------------------------
    # One-time tokens (password reset, email verification)
    # ------------------------------------------------------------------

    def create_password_reset_token(self, user_id: int, token_hash: str, ttl_seconds: int) -> OneTimeToken:
        return self._create_one_time_token(schema.password_reset_tokens, user_id, token_hash, ttl_seconds)

    def consume_password_reset_token(self, token_hash: str) -> OneTimeToken | None:
        return self._consume_one_time_token(schema.password_reset_tokens, token_hash)

    def create_verification_token(self, user_id: int, token_hash: str, ttl_seconds: int) -> OneTimeToken:
        return self._create_one_time_token(schema.email_verification_tokens, user_id, token_hash, ttl_seconds)

    def consume_verification_token(self, token_hash: str) -> OneTimeToken | None:
        return self._consume_one_time_token(schema.email_verification_tokens, token_hash)

    def purge_expired_tokens(self) -> int:
        """Delete expired one-time tokens from both tables. Returns rows removed."""
        cutoff = now_iso()
        removed = 0
        with self.engine.begin() as conn:
            for table in (schema.password_reset_tokens, schema.email_verification_tokens):
                result = conn.execute(table.delete().where(table.c.expires_at <= cutoff))
                removed += result.rowcount
        return removed

    def _create_one_time_token(self, table: Table, user_id: int, token_hash: str, ttl_seconds: int) -> OneTimeToken:
        now = now_utc()
        expires_at = to_iso(now + timedelta(seconds=ttl_seconds))
        with self.engine.begin() as conn:
            result = conn.execute(
                table.insert().values(
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=expires_at,
                    created_at=to_iso(now),
                )
            )
            token_id = result.inserted_primary_key[0]
        return OneTimeToken(
            id=token_id,
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            created_at=to_iso(now),
        )

    def _consume_one_time_token(self, table: Table, token_hash: str) -> OneTimeToken | None:
        """Mark an unused, unexpired token as used and return it; None otherwise."""
        now = now_iso()
        live = and_(table.c.token_hash == token_hash, table.c.used_at.is_(None), table.c.expires_at > now)
        with self.engine.begin() as conn:
            result = conn.execute(table.update().where(live).values(used_at=now))
            if result.rowcount == 0:
                return None
            row = conn.execute(table.select().where(table.c.token_hash == token_hash)).fetchone()
        return _row_to_one_time_token(row)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name or "",
        password_hash=row.password_hash,
        role=row.role,
        is_active=bool(row.is_active),
        is_verified=bool(row.is_verified),
        is_deleted=bool(row.is_deleted),
        deleted_at=row.deleted_at,
        created_at=row.created_at,
        last_login=row.last_login,
        last_activity=row.last_activity,
    )


def _row_to_one_time_token(row) -> OneTimeToken:
    return OneTimeToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        used_at=row.used_at,
        created_at=row.created_at,
    )
