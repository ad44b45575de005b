"""
auth/audit.py -- Append-only audit trail of security-relevant actions.

record() is best-effort and at-most-once. Routes schedule it through FastAPI
BackgroundTasks, which run only after a successful response has been sent, so
a failed audit write can neither change the response nor roll back the
operation it describes. Failures are logged with a traceback and counted on
the instance; they are never raised.

The store never updates or deletes entries.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from auth import schema
from auth.models import AuditEntry
from auth.schema import now_iso

logger = logging.getLogger("gsoauth.audit")

_audit = schema.audit_logs

# Action names
LOGIN = "LOGIN"
LOGOUT = "LOGOUT"
REGISTER = "REGISTER"
PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
PASSWORD_RESET = "PASSWORD_RESET"
VERIFY_EMAIL = "VERIFY_EMAIL"
VIEW_SESSIONS = "VIEW_SESSIONS"
VIEW_SESSION = "VIEW_SESSION"
CREATE_SESSION = "CREATE_SESSION"
LOGOUT_SESSION = "LOGOUT_SESSION"
LOGOUT_ALL_SESSIONS = "LOGOUT_ALL_SESSIONS"
DELETE_SESSION = "DELETE_SESSION"

# Never persisted, wherever they appear in a details blob.
_REDACTED_KEYS = {"password", "new_password", "token", "access_token"}


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: ("[redacted]" if k in _REDACTED_KEYS else _redact(v)) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact(v) for v in value]
    return value


class AuditLog:
    """Repository for audit entries.

    Usage:
        audit = AuditLog(engine)
        background_tasks.add_task(audit.record, user.id, LOGIN, {"session_id": 3})
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.failures = 0

    def record(self, actor_id: int | None, action: str, details: dict | None = None) -> bool:
        """Append one entry. Returns False (after logging) if the write failed."""
        try:
            payload = json.dumps(_redact(details or {}), default=str)
            with self.engine.connect() as conn:
                conn.execute(
                    _audit.insert().values(
                        user_id=actor_id,
                        action=action,
                        details=payload,
                        created_at=now_iso(),
                    )
                )
                conn.commit()
        except Exception:
            self.failures += 1
            logger.exception("Audit log write failed (action=%s, user=%s)", action, actor_id)
            return False
        return True

    def list_entries(
        self,
        user_id: int | None = None,
        action: str | None = None,
        since: str | None = None,
        until: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditEntry], int]:
        """Return (page of entries newest first, total matching count)."""
        conditions = []
        if user_id is not None:
            conditions.append(_audit.c.user_id == user_id)
        if action:
            conditions.append(_audit.c.action == action)
        if since:
            conditions.append(_audit.c.created_at >= since)
        if until:
            conditions.append(_audit.c.created_at <= until)

        count_query = select(func.count()).select_from(_audit).where(*conditions)
        page_query = (
            _audit.select()
            .where(*conditions)
            .order_by(_audit.c.created_at.desc(), _audit.c.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with self.engine.connect() as conn:
            total = conn.execute(count_query).scalar() or 0
            rows = conn.execute(page_query).fetchall()
        return [_row_to_entry(r) for r in rows], total


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        details=json.loads(row.details or "{}"),
        created_at=row.created_at,
    )
