"""
auth/sessions.py -- Session store with per-device deduplication.

Central invariant: ONE row per (user, device fingerprint). A new login from a
device that already has a live session replaces that row's token and bumps its
last_activity; it never inserts a second row.

Concurrency:
  create_or_refresh() runs in one transaction:
    1. delete the pair's expired row, if any (so the UNIQUE constraint cannot
       block a fresh insert);
    2. UPDATE the live row;
    3. INSERT only when step 2 touched nothing.
  Two concurrent logins from the same device that both reach step 3 collide on
  UNIQUE(user_id, device_key). The loser retries step 2 and overwrites the
  winner's token. Last writer wins; the earlier token is orphaned (no session)
  and therefore rejected by the auth dependency.

Failure semantics: persistence errors propagate unchanged. A failed session
write must fail the login.

Every delete_* method returns the tokens it removed so the caller can add them
to the revocation registry.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta

from sqlalchemy import and_, delete, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth import schema
from auth.models import DeviceFingerprint, GeoLocation, Session, User
from auth.schema import now_iso, now_utc, to_iso
from auth.store import _row_to_user

logger = logging.getLogger("gsoauth.sessions")

_sessions = schema.sessions
_users = schema.users

DEFAULT_SESSION_TTL = 24 * 3600


class SessionStore:
    """Repository for Session rows.

    Usage:
        sessions = SessionStore(engine)
        session = sessions.create_or_refresh(uid, token, fingerprint, "203.0.113.5", GeoLocation())
        found = sessions.get(token)  # (Session, User) or None
    """

    def __init__(self, engine: Engine, ttl_seconds: int = DEFAULT_SESSION_TTL) -> None:
        self.engine = engine
        self.ttl_seconds = ttl_seconds

    # ------------------------------------------------------------------
    # Create / refresh
    # ------------------------------------------------------------------

    def create_or_refresh(
        self,
        user_id: int,
        token: str,
        fingerprint: DeviceFingerprint,
        ip_address: str | None = None,
        location: GeoLocation | None = None,
    ) -> Session:
        """Bind token to the user's session for this device, creating it if needed."""
        location = location or GeoLocation()
        try:
            with self.engine.begin() as conn:
                return self._create_or_refresh(conn, user_id, token, fingerprint, ip_address, location)
        except IntegrityError:
            # A concurrent login from the same device inserted first.
            logger.info("Session insert race for user %s on %s; refreshing instead", user_id, fingerprint.key)
            with self.engine.begin() as conn:
                return self._create_or_refresh(conn, user_id, token, fingerprint, ip_address, location)

    def _create_or_refresh(
        self,
        conn: Connection,
        user_id: int,
        token: str,
        fingerprint: DeviceFingerprint,
        ip_address: str | None,
        location: GeoLocation,
    ) -> Session:
        now = now_utc()
        stamp = to_iso(now)
        same_device = and_(_sessions.c.user_id == user_id, _sessions.c.device_key == fingerprint.key)

        conn.execute(delete(_sessions).where(same_device & (_sessions.c.expires_at <= stamp)))

        values: dict = {
            "token": token,
            "last_activity": stamp,
            "device_info": json.dumps(fingerprint.as_dict()),
        }
        if ip_address:
            values["ip_address"] = ip_address
        if not location.is_empty():
            values.update(
                location_country=location.country,
                location_city=location.city,
                location_region=location.region,
            )
        result = conn.execute(update(_sessions).where(same_device).values(**values))
        if result.rowcount == 0:
            conn.execute(
                _sessions.insert().values(
                    user_id=user_id,
                    token=token,
                    device_info=json.dumps(fingerprint.as_dict()),
                    device_key=fingerprint.key,
                    ip_address=ip_address,
                    location_country=location.country,
                    location_city=location.city,
                    location_region=location.region,
                    created_at=stamp,
                    last_activity=stamp,
                    expires_at=to_iso(now + timedelta(seconds=self.ttl_seconds)),
                )
            )
        row = conn.execute(_sessions.select().where(same_device)).fetchone()
        return _row_to_session(row)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, token: str) -> tuple[Session, User] | None:
        """Return the live session for token and its owning user.

        None covers every negative case: unknown token, expired session, and an
        owner who is inactive or soft-deleted.
        """
        query = (
            select(_sessions, _users)
            .select_from(_sessions.join(_users, _sessions.c.user_id == _users.c.id))
            .where(
                (_sessions.c.token == token)
                & (_sessions.c.expires_at > now_iso())
                & (_users.c.is_active == 1)
                & (_users.c.is_deleted == 0)
            )
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        if row is None:
            return None
        session = _row_to_session(row)
        user = _row_to_user(_UserRow(row))
        return session, user

    def get_by_id(self, session_id: int) -> Session | None:
        """Return a live session by primary key. Ownership checks are the caller's job."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where((_sessions.c.id == session_id) & (_sessions.c.expires_at > now_iso()))
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_active(self, user_id: int) -> list[Session]:
        """Return the user's live sessions, most recently active first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.expires_at > now_iso()))
                .order_by(_sessions.c.last_activity.desc(), _sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def touch(self, session_id: int) -> None:
        """Activity heartbeat: bump last_activity on a live session."""
        with self.engine.begin() as conn:
            conn.execute(
                update(_sessions)
                .where((_sessions.c.id == session_id) & (_sessions.c.expires_at > now_iso()))
                .values(last_activity=now_iso())
            )

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def delete_by_token(self, token: str) -> list[str]:
        return self._delete_where(_sessions.c.token == token)

    def delete_by_id(self, session_id: int) -> list[str]:
        return self._delete_where(_sessions.c.id == session_id)

    def delete_all_for_user(self, user_id: int) -> list[str]:
        return self._delete_where(_sessions.c.user_id == user_id)

    def delete_by_device_fingerprint(self, user_id: int, fingerprint: DeviceFingerprint) -> list[str]:
        return self._delete_where((_sessions.c.user_id == user_id) & (_sessions.c.device_key == fingerprint.key))

    def reap_expired(self) -> int:
        """Bulk-delete sessions past expiry. Returns the number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(delete(_sessions).where(_sessions.c.expires_at <= now_iso()))
        return result.rowcount

    def _delete_where(self, condition) -> list[str]:
        with self.engine.begin() as conn:
            tokens = [r.token for r in conn.execute(select(_sessions.c.token).where(condition)).fetchall()]
            if tokens:
                conn.execute(delete(_sessions).where(condition))
        return tokens


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


class _UserRow:
    """Adapter exposing the users.* columns of a joined row by attribute name.

    Both tables have id and created_at; the joined row resolves those by
    Column object, so the user mapper reads through this view.
    """

    def __init__(self, row) -> None:
        self._mapping = row._mapping

    def __getattr__(self, name: str):
        return self._mapping[_users.c[name]]


def _row_to_session(row) -> Session:
    mapping = row._mapping
    info = json.loads(mapping[_sessions.c.device_info] or "{}")
    return Session(
        id=mapping[_sessions.c.id],
        user_id=mapping[_sessions.c.user_id],
        token=mapping[_sessions.c.token],
        device=DeviceFingerprint(
            platform=info.get("platform", "Unknown"),
            browser=info.get("browser", "Unknown"),
            user_agent=info.get("user_agent", ""),
        ),
        ip_address=mapping[_sessions.c.ip_address],
        location=GeoLocation(
            country=mapping[_sessions.c.location_country],
            city=mapping[_sessions.c.location_city],
            region=mapping[_sessions.c.location_region],
        ),
        created_at=mapping[_sessions.c.created_at],
        last_activity=mapping[_sessions.c.last_activity],
        expires_at=mapping[_sessions.c.expires_at],
    )
