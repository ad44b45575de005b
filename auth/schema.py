"""
auth/schema.py -- SQLAlchemy Core schema and engine factory for the auth store.

All auth tables live in one database so sessions can be joined to their owning
user in a single query. Timestamps are ISO 8601 UTC strings with fixed
microsecond precision, which keeps lexicographic order equal to time order
on every backend.

Invariant enforced here: UNIQUE(user_id, device_key) on sessions. At most one
row per user per normalized device fingerprint; SessionStore removes expired
rows for the pair before inserting so the constraint never blocks a re-login.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("password_hash", Text),
    Column("role", String(30), nullable=False, server_default="department_rep"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("is_deleted", Integer, nullable=False, server_default="0"),
    Column("deleted_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("last_activity", String(32)),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token", Text, nullable=False, unique=True),
    Column("device_info", Text, nullable=False),  # JSON: platform, browser, user_agent
    Column("device_key", String(255), nullable=False),  # "platform|browser"
    Column("ip_address", String(64)),
    Column("location_country", String(100)),
    Column("location_city", String(100)),
    Column("location_region", String(100)),
    Column("created_at", String(32), nullable=False),
    Column("last_activity", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    UniqueConstraint("user_id", "device_key", name="uq_sessions_user_device"),
    # Ids are never reused, so a session_id in audit details names one session.
    sqlite_autoincrement=True,
)
Index("ix_sessions_expires_at", sessions.c.expires_at)

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),
    Column("action", String(64), nullable=False),
    Column("details", Text, nullable=False),  # JSON blob
    Column("created_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)
Index("ix_audit_logs_user_action", audit_logs.c.user_id, audit_logs.c.action)


def _one_time_token_table(name: str) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
        Column("expires_at", String(32), nullable=False),
        Column("used_at", String(32)),
        Column("created_at", String(32), nullable=False),
    )


password_reset_tokens = _one_time_token_table("password_reset_tokens")
email_verification_tokens = _one_time_token_table("email_verification_tokens")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new SQLite connection.

    SQLite PRAGMAs are per-connection, so they must be set as each pooled
    connection is opened.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def make_engine(db_url: str) -> Engine:
    """Create an engine for db_url and make sure every auth table exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    return engine


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(now_utc())
