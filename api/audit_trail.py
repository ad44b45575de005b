"""
api/audit_trail.py -- Schedule audit entries after a successful response.

BackgroundTasks only run once the response has been sent, and only if the
handler returned normally, so an entry is written exactly for 2xx outcomes and
its failure can never reach the client. AuditLog.record() itself swallows and
logs write errors.
"""

from __future__ import annotations

from typing import Any

from fastapi import BackgroundTasks, Request

from auth.audit import AuditLog


def request_details(request: Request, **extra: Any) -> dict:
    """Describe the request for the audit details blob (no bodies, no headers)."""
    details: dict[str, Any] = {
        "method": request.method,
        "path": request.url.path,
        "params": dict(request.path_params),
        "query": dict(request.query_params),
    }
    details.update(extra)
    return details


def schedule_audit(
    background_tasks: BackgroundTasks,
    request: Request,
    actor_id: int | None,
    action: str,
    **extra: Any,
) -> None:
    audit_log: AuditLog = request.app.state.audit_log
    background_tasks.add_task(audit_log.record, actor_id, action, request_details(request, **extra))
