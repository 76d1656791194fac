"""
api/routes/v1/audit.py -- Read access to the audit trail.

Routes:
  GET /api/v1/audit   -- newest entries first; Owner only

The trail is append-only: there is no write, update or delete endpoint.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditEntryResponse
from audit.logger import AuditLogger
from auth.dependencies import require_owner
from auth.models import User

router = APIRouter()


@router.get("/audit", response_model=list[AuditEntryResponse])
def list_audit_entries(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    actor_id: str | None = Query(default=None, max_length=64),
    action: str | None = Query(default=None, max_length=100),
    current_user: User = Depends(require_owner),
) -> list[AuditEntryResponse]:
    """Filter by actor id or by the exact action label (e.g. "Login mislukt")."""
    audit: AuditLogger = request.app.state.audit
    return [AuditEntryResponse.from_entry(e) for e in audit.recent(limit=limit, actor_id=actor_id, action=action)]
