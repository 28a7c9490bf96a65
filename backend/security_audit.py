# security_audit.py — Security audit trail
# The event vocabulary is closed: every event_type maps to a fixed category
# and severity. Rows join the caller's transaction; once it commits they are
# handed to the file outbox (best effort) and mirrored into the structured log.

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Request
from sqlalchemy import event, select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from file_logger import AuditOutbox
from logging_system import log_security
from models import SecurityAuditLog, EventCategory, Severity
from rate_limit import resolve_client_ip

logger = logging.getLogger("berth.audit")

SECURITY_STREAM = "security"


class SecurityEvent:
    # Authentication
    AUTH_LOGIN_SUCCESS = "auth.login.success"
    AUTH_LOGIN_FAILURE = "auth.login.failure"
    AUTH_LOGOUT = "auth.logout"
    AUTH_SESSION_REVOKED = "auth.session.revoked"
    AUTH_SESSIONS_REVOKED_ALL = "auth.sessions.revoked_all"
    # TOTP
    TOTP_ENABLED = "totp.enabled"
    TOTP_DISABLED = "totp.disabled"
    TOTP_VERIFICATION_SUCCESS = "totp.verification.success"
    TOTP_VERIFICATION_FAILURE = "totp.verification.failure"
    TOTP_SETUP_INITIATED = "totp.setup.initiated"
    # User management
    USER_CREATED = "user.created"
    USER_DELETED = "user.deleted"
    USER_PASSWORD_CHANGED = "user.password.changed"
    USER_EMAIL_CHANGED = "user.email.changed"
    USER_ROLE_ASSIGNED = "user.role.assigned"
    USER_ROLE_REVOKED = "user.role.revoked"
    # RBAC
    RBAC_ROLE_CREATED = "rbac.role.created"
    RBAC_ROLE_UPDATED = "rbac.role.updated"
    RBAC_ROLE_DELETED = "rbac.role.deleted"
    RBAC_PERMISSION_ADDED = "rbac.permission.added"
    RBAC_PERMISSION_REMOVED = "rbac.permission.removed"
    # Servers
    SERVER_CREATED = "server.created"
    SERVER_UPDATED = "server.updated"
    SERVER_DELETED = "server.deleted"
    SERVER_TOKEN_REGENERATED = "server.access_token.regenerated"
    SERVER_TEST_SUCCESS = "server.connection.test_success"
    SERVER_TEST_FAILURE = "server.connection.test_failure"
    # API credentials
    API_TOKEN_ISSUED = "api.token.issued"
    API_TOKEN_REFRESHED = "api.token.refreshed"
    API_TOKEN_REVOKED = "api.token.revoked"
    API_AUTH_FAILED = "api.auth.failed"
    # Files
    FILE_UPLOADED = "file.uploaded"
    FILE_DOWNLOADED = "file.downloaded"
    FILE_DELETED = "file.deleted"
    FILE_RENAMED = "file.renamed"
    # Operations
    OPERATION_STARTED = "operation.started"
    OPERATION_COMPLETED = "operation.completed"
    OPERATION_FAILED = "operation.failed"
    # Webhooks
    WEBHOOK_CREATED = "webhook.created"
    WEBHOOK_UPDATED = "webhook.updated"
    WEBHOOK_DELETED = "webhook.deleted"
    WEBHOOK_KEY_REGENERATED = "webhook.api_key_regenerated"
    WEBHOOK_TRIGGERED = "webhook.triggered"
    WEBHOOK_TRIGGER_FAILED = "webhook.trigger_failed"
    WEBHOOK_AUTH_FAILED = "webhook.authorization_failed"


_CATEGORY_BY_PREFIX = {
    "auth": EventCategory.AUTH,
    "totp": EventCategory.AUTH,
    "user": EventCategory.USER_MGMT,
    "rbac": EventCategory.RBAC,
    "server": EventCategory.SERVER,
    "api": EventCategory.API,
    "file": EventCategory.FILE,
    "operation": EventCategory.OPERATION,
    "webhook": EventCategory.WEBHOOK,
}

_SEVERITY: Dict[str, Severity] = {}
for _event in (
    SecurityEvent.USER_DELETED, SecurityEvent.RBAC_ROLE_DELETED,
    SecurityEvent.SERVER_DELETED, SecurityEvent.SERVER_TOKEN_REGENERATED,
    SecurityEvent.WEBHOOK_KEY_REGENERATED,
):
    _SEVERITY[_event] = Severity.CRITICAL
for _event in (
    SecurityEvent.AUTH_LOGIN_FAILURE, SecurityEvent.TOTP_VERIFICATION_FAILURE,
    SecurityEvent.API_AUTH_FAILED, SecurityEvent.USER_CREATED,
    SecurityEvent.USER_ROLE_ASSIGNED, SecurityEvent.USER_ROLE_REVOKED,
    SecurityEvent.RBAC_ROLE_CREATED, SecurityEvent.RBAC_ROLE_UPDATED,
    SecurityEvent.RBAC_PERMISSION_ADDED, SecurityEvent.RBAC_PERMISSION_REMOVED,
    SecurityEvent.SERVER_CREATED, SecurityEvent.SERVER_UPDATED,
    SecurityEvent.TOTP_ENABLED, SecurityEvent.TOTP_DISABLED,
    SecurityEvent.WEBHOOK_CREATED, SecurityEvent.WEBHOOK_DELETED,
    SecurityEvent.WEBHOOK_AUTH_FAILED,
):
    _SEVERITY[_event] = Severity.HIGH
for _event in (
    SecurityEvent.USER_PASSWORD_CHANGED, SecurityEvent.USER_EMAIL_CHANGED,
    SecurityEvent.SERVER_TEST_FAILURE, SecurityEvent.FILE_DELETED,
    SecurityEvent.FILE_RENAMED, SecurityEvent.OPERATION_FAILED,
    SecurityEvent.WEBHOOK_UPDATED, SecurityEvent.WEBHOOK_TRIGGER_FAILED,
):
    _SEVERITY[_event] = Severity.MEDIUM
for _event in (
    SecurityEvent.AUTH_LOGIN_SUCCESS, SecurityEvent.AUTH_LOGOUT,
    SecurityEvent.AUTH_SESSION_REVOKED, SecurityEvent.AUTH_SESSIONS_REVOKED_ALL,
    SecurityEvent.TOTP_VERIFICATION_SUCCESS, SecurityEvent.TOTP_SETUP_INITIATED,
    SecurityEvent.API_TOKEN_ISSUED, SecurityEvent.API_TOKEN_REFRESHED,
    SecurityEvent.API_TOKEN_REVOKED, SecurityEvent.SERVER_TEST_SUCCESS,
    SecurityEvent.FILE_UPLOADED, SecurityEvent.FILE_DOWNLOADED,
    SecurityEvent.OPERATION_STARTED, SecurityEvent.OPERATION_COMPLETED,
    SecurityEvent.WEBHOOK_TRIGGERED,
):
    _SEVERITY[_event] = Severity.LOW

KNOWN_EVENTS = frozenset(_SEVERITY)


def classify(event_type: str) -> Tuple[EventCategory, Severity]:
    if event_type not in KNOWN_EVENTS:
        raise ValueError(f"unknown security event type: {event_type}")
    category = _CATEGORY_BY_PREFIX[event_type.split(".", 1)[0]]
    return category, _SEVERITY[event_type]


def audit_record(row: SecurityAuditLog) -> Dict[str, Any]:
    return {
        "id": row.id,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "event_type": row.event_type,
        "event_category": row.event_category.value,
        "severity": row.severity.value,
        "actor_user_id": row.actor_user_id,
        "actor_username": row.actor_username,
        "actor_ip": row.actor_ip,
        "actor_user_agent": row.actor_user_agent,
        "target_type": row.target_type,
        "target_id": row.target_id,
        "target_name": row.target_name,
        "success": row.success,
        "failure_reason": row.failure_reason,
        "metadata": row.event_metadata or {},
        "server_id": row.server_id,
        "stack_name": row.stack_name,
        "session_id": row.session_id,
    }


def client_ip(request: Optional[Request]) -> str:
    if request is None:
        return ""
    return resolve_client_ip(request)


# ============================================================
# Publish on commit
# ============================================================

_PENDING_KEY = "berth.audit.pending"


def _pending(session: Session) -> List[Tuple[Dict[str, Any], Optional[AuditOutbox]]]:
    return session.info.setdefault(_PENDING_KEY, [])


def _publish(record: Dict[str, Any], outbox: Optional[AuditOutbox]) -> None:
    log_security(
        record["event_type"],
        record["severity"],
        record["success"],
        metadata={"target": f"{record['target_type']}:{record['target_name']}", "reason": record["failure_reason"]},
    )
    if outbox is not None:
        outbox.publish(SECURITY_STREAM, record)


@event.listens_for(Session, "after_commit")
def _publish_committed(session: Session) -> None:
    for record, outbox in session.info.pop(_PENDING_KEY, None) or ():
        _publish(record, outbox)


@event.listens_for(Session, "after_soft_rollback")
def _discard_rolled_back(session: Session, previous_transaction) -> None:
    session.info.pop(_PENDING_KEY, None)


class SecurityAuditService:
    """Writes and queries security_audit_logs"""

    def __init__(self, db: AsyncSession, outbox: Optional[AuditOutbox] = None):
        self.db = db
        self.outbox = outbox

    async def log(
        self,
        event_type: str,
        *,
        request: Optional[Request] = None,
        actor_user_id: Optional[int] = None,
        actor_username: str = "",
        success: bool = True,
        failure_reason: Optional[str] = None,
        target_type: str = "",
        target_id: Optional[int] = None,
        target_name: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        server_id: Optional[int] = None,
        stack_name: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> SecurityAuditLog:
        """Record an event in the caller's unit of work.

        The row is flushed, not committed. It reaches the file outbox and the
        structured log only once the caller commits; a rollback discards it.
        """
        category, severity = classify(event_type)
        row = SecurityAuditLog(
            event_type=event_type,
            event_category=category,
            severity=severity,
            actor_user_id=actor_user_id,
            actor_username=actor_username or "",
            actor_ip=client_ip(request),
            actor_user_agent=request.headers.get("user-agent", "") if request else "",
            target_type=target_type,
            target_id=target_id,
            target_name=target_name,
            success=success,
            failure_reason=failure_reason,
            event_metadata=metadata or {},
            server_id=server_id,
            stack_name=stack_name,
            session_id=session_id,
        )
        self.db.add(row)
        await self.db.flush()
        _pending(self.db.sync_session).append((audit_record(row), self.outbox))
        return row

    async def query(
        self,
        event_type: Optional[str] = None,
        category: Optional[str] = None,
        severity: Optional[str] = None,
        actor_user_id: Optional[int] = None,
        success: Optional[bool] = None,
        server_id: Optional[int] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[SecurityAuditLog], int]:
        stmt = select(SecurityAuditLog)
        if event_type:
            stmt = stmt.where(SecurityAuditLog.event_type == event_type)
        if category:
            stmt = stmt.where(SecurityAuditLog.event_category == EventCategory(category))
        if severity:
            stmt = stmt.where(SecurityAuditLog.severity == Severity(severity))
        if actor_user_id is not None:
            stmt = stmt.where(SecurityAuditLog.actor_user_id == actor_user_id)
        if success is not None:
            stmt = stmt.where(SecurityAuditLog.success == success)
        if server_id is not None:
            stmt = stmt.where(SecurityAuditLog.server_id == server_id)
        if since:
            stmt = stmt.where(SecurityAuditLog.created_at >= since)
        if until:
            stmt = stmt.where(SecurityAuditLog.created_at <= until)

        total = (await self.db.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
        stmt = (
            stmt.order_by(SecurityAuditLog.created_at.desc(), SecurityAuditLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        rows = (await self.db.execute(stmt)).scalars().all()
        return list(rows), total

    async def stats(self) -> Dict[str, Any]:
        by_category = await self.db.execute(
            select(SecurityAuditLog.event_category, func.count()).group_by(SecurityAuditLog.event_category)
        )
        by_severity = await self.db.execute(
            select(SecurityAuditLog.severity, func.count()).group_by(SecurityAuditLog.severity)
        )
        failures = await self.db.execute(
            select(func.count()).select_from(SecurityAuditLog).where(SecurityAuditLog.success.is_(False))
        )
        categories = {c.value: n for c, n in by_category.all()}
        severities = {s.value: n for s, n in by_severity.all()}
        return {
            "total": sum(categories.values()),
            "failures": failures.scalar_one(),
            "by_category": categories,
            "by_severity": severities,
        }
