"""
api/routes/v1/audit.py -- Read access to the audit trail. Admin only.

  GET /api/v1/audit-logs?user_id=&action=&since=&until=&limit=&offset=

since/until are ISO-8601 timestamps compared against created_at. Entries come
back newest first.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditEntryResponse, AuditPage
from auth.audit import AuditLog
from auth.dependencies import AuthenticatedUser, require_admin

router = APIRouter()


@router.get("/audit-logs", response_model=AuditPage)
def list_audit_logs(
    request: Request,
    user_id: Optional[int] = Query(default=None),
    action: Optional[str] = Query(default=None, max_length=64),
    since: Optional[str] = Query(default=None, max_length=40),
    until: Optional[str] = Query(default=None, max_length=40),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    current_user: AuthenticatedUser = Depends(require_admin),
) -> AuditPage:
    audit_log: AuditLog = request.app.state.audit_log
    entries, total = audit_log.list_entries(
        user_id=user_id,
        action=action,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
    return AuditPage(
        entries=[
            AuditEntryResponse(
                id=e.id,
                user_id=e.user_id,
                action=e.action,
                details=e.details,
                created_at=e.created_at or "",
            )
            for e in entries
        ],
        total=total,
        limit=limit,
        offset=offset,
    )
