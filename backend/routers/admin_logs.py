# routers/admin_logs.py — Operation logs across all users, and the security audit trail
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, require_permission
from database import get_db_session
from errors import ok
from logging_system import LogCategory, LogLevel, get_logger
from operations import OperationAuditService, operation_to_dict
from security_audit import SecurityAuditService, audit_record

router = APIRouter(prefix="/api/v1/admin", tags=["Audit"])


# ============================================================
# OPERATION LOGS
# ============================================================

@router.get("/operation-logs")
async def list_operation_logs(
    user_id: Optional[int] = None,
    server_id: Optional[int] = None,
    stack_name: Optional[str] = None,
    command: Optional[str] = None,
    status: Optional[str] = Query(default=None, pattern="^(queued|running|completed|failed|timeout)$"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    user: CurrentUser = Depends(require_permission("admin.logs.read")),
    db: AsyncSession = Depends(get_db_session),
):
    rows, total = await OperationAuditService(db).list_logs(
        user_id=user_id, server_id=server_id, stack_name=stack_name,
        command=command, status=status, page=page, page_size=page_size,
    )
    return ok({
        "logs": [operation_to_dict(r) for r in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
    })


@router.get("/operation-logs/stats")
async def operation_log_stats(
    user: CurrentUser = Depends(require_permission("admin.logs.read")),
    db: AsyncSession = Depends(get_db_session),
):
    return ok(await OperationAuditService(db).stats())


@router.get("/operation-logs/{log_id}")
async def get_operation_log(
    log_id: int,
    user: CurrentUser = Depends(require_permission("admin.logs.read")),
    db: AsyncSession = Depends(get_db_session),
):
    audit = OperationAuditService(db)
    row = await audit.get(log_id)
    return ok(operation_to_dict(row, await audit.messages(row.id)))


# ============================================================
# SECURITY AUDIT
# ============================================================

@router.get("/security-audit-logs")
async def list_security_audit_logs(
    event_type: Optional[str] = None,
    category: Optional[str] = Query(default=None, pattern="^(auth|user_mgmt|rbac|server|api|file|operation)$"),
    severity: Optional[str] = Query(default=None, pattern="^(low|medium|high|critical)$"),
    actor_user_id: Optional[int] = None,
    success: Optional[bool] = None,
    server_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    user: CurrentUser = Depends(require_permission("admin.audit.read")),
    db: AsyncSession = Depends(get_db_session),
):
    rows, total = await SecurityAuditService(db).query(
        event_type=event_type,
        category=category,
        severity=severity,
        actor_user_id=actor_user_id,
        success=success,
        server_id=server_id,
        since=start_date,
        until=end_date,
        page=page,
        page_size=page_size,
    )
    return ok({
        "logs": [audit_record(r) for r in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
    })


@router.get("/security-audit-logs/stats")
async def security_audit_stats(
    user: CurrentUser = Depends(require_permission("admin.audit.read")),
    db: AsyncSession = Depends(get_db_session),
):
    return ok(await SecurityAuditService(db).stats())


# ============================================================
# RECENT EVENTS (in-memory)
# ============================================================

@router.get("/events/recent")
async def recent_events(
    level: Optional[LogLevel] = None,
    category: Optional[LogCategory] = None,
    correlation_id: Optional[str] = None,
    user_id: Optional[int] = None,
    search: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    user: CurrentUser = Depends(require_permission("admin.audit.read")),
):
    """Newest first; lost on restart. The database trails above are authoritative."""
    entries = get_logger().get_logs(
        level=level, category=category, correlation_id=correlation_id,
        user_id=user_id, search=search, limit=limit,
    )
    return ok({"events": [e.to_dict() for e in entries], "count": len(entries)})
