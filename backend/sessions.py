# sessions.py — Session ("device") listing and revocation
# One user_sessions row exists per live credential: JWT logins link their
# access JTI and refresh row, browser logins hold a hashed cookie token and
# a CSRF token. Revoking a session revokes everything it links to.

import secrets
import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Request
from sqlalchemy import select, delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, session_token_for_refresh
from config import Settings
from crypto import sha256_hex
from errors import NotFound, ValidationFailed
from file_logger import AuditOutbox
from models import User, UserSession, RefreshToken, SessionType, utcnow
from revocation import RevocationCache
from security_audit import SecurityAuditService, SecurityEvent, client_ip

logger = logging.getLogger("berth.auth")


def session_to_dict(row: UserSession, current: bool) -> Dict[str, Any]:
    return {
        "id": row.id,
        "type": row.type.value,
        "token": row.token if row.type == SessionType.JWT else None,
        "ip_address": row.ip_address,
        "user_agent": row.user_agent,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "last_used": row.last_used.isoformat() if row.last_used else None,
        "expires_at": row.expires_at.isoformat() if row.expires_at else None,
        "current": current,
    }


class SessionService:
    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        revocations: RevocationCache,
        outbox: Optional[AuditOutbox] = None,
    ):
        self.db = db
        self.settings = settings
        self.revocations = revocations
        self.audit = SecurityAuditService(db, outbox)

    async def _current_handles(self, current: CurrentUser, refresh_token: Optional[str]) -> Tuple[set, set]:
        ids = set()
        tokens = set()
        if current.session_id:
            ids.add(current.session_id)
        if refresh_token:
            row = (
                await self.db.execute(
                    select(RefreshToken.id).where(RefreshToken.token_hash == sha256_hex(refresh_token))
                )
            ).scalar_one_or_none()
            if row is not None:
                tokens.add(session_token_for_refresh(row))
        return ids, tokens

    def _is_current(self, row: UserSession, current: CurrentUser, ids: set, tokens: set) -> bool:
        if row.id in ids or row.token in tokens:
            return True
        return bool(current.jti) and row.jwt_access_jti == current.jti

    async def list_sessions(self, current: CurrentUser, refresh_token: Optional[str] = None) -> List[Dict[str, Any]]:
        ids, tokens = await self._current_handles(current, refresh_token)
        rows = (
            await self.db.execute(
                select(UserSession)
                .where(UserSession.user_id == current.id, UserSession.expires_at > utcnow())
                .order_by(UserSession.last_used.desc(), UserSession.id.desc())
            )
        ).scalars().all()
        return [session_to_dict(r, self._is_current(r, current, ids, tokens)) for r in rows]

    async def _revoke_row(self, row: UserSession) -> None:
        now = utcnow()
        if row.jwt_access_jti:
            await self.revocations.revoke(
                self.db, row.jwt_access_jti, now + self.settings.jwt_access_expiry, row.user_id
            )
        if row.refresh_token_id:
            await self.db.execute(
                update(RefreshToken)
                .where(RefreshToken.id == row.refresh_token_id, RefreshToken.revoked_at.is_(None))
                .values(revoked_at=now)
                .execution_options(synchronize_session=False)
            )
        await self.db.delete(row)

    async def revoke(self, current: CurrentUser, session_id: int, request: Optional[Request] = None) -> None:
        row = await self.db.get(UserSession, session_id)
        if row is None or row.user_id != current.id:
            raise NotFound("Session not found")
        await self._revoke_row(row)
        await self.audit.log(
            SecurityEvent.AUTH_SESSION_REVOKED,
            request=request,
            actor_user_id=current.id,
            actor_username=current.username,
            target_type="session",
            target_id=session_id,
            session_id=str(session_id),
        )
        await self.db.commit()

    async def revoke_all_others(
        self, current: CurrentUser, refresh_token: Optional[str] = None, request: Optional[Request] = None
    ) -> int:
        ids, tokens = await self._current_handles(current, refresh_token)
        rows = (
            await self.db.execute(select(UserSession).where(UserSession.user_id == current.id))
        ).scalars().all()
        others = [r for r in rows if not self._is_current(r, current, ids, tokens)]
        if len(others) == len(rows) and rows:
            raise ValidationFailed("Could not identify the current session")
        for row in others:
            await self._revoke_row(row)
        await self.audit.log(
            SecurityEvent.AUTH_SESSIONS_REVOKED_ALL,
            request=request,
            actor_user_id=current.id,
            actor_username=current.username,
            target_type="user",
            target_id=current.id,
            metadata={"revoked": len(others)},
        )
        await self.db.commit()
        return len(others)

    async def create_web_session(self, user: User, request: Optional[Request] = None) -> Tuple[str, str, UserSession]:
        """Start a browser session. Returns (cookie_value, csrf_token, row)."""
        raw = secrets.token_urlsafe(32)
        csrf = secrets.token_urlsafe(32)
        row = UserSession(
            user_id=user.id,
            token=sha256_hex(raw),
            type=SessionType.SESSION,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent", "") if request else "",
            csrf_token=csrf,
            expires_at=utcnow() + self.settings.refresh_token_expiry,
        )
        self.db.add(row)
        user.last_login_at = utcnow()
        await self.db.flush()
        await self.audit.log(
            SecurityEvent.AUTH_LOGIN_SUCCESS,
            request=request,
            actor_user_id=user.id,
            actor_username=user.username,
            target_type="session",
            target_id=row.id,
            session_id=str(row.id),
        )
        await self.db.commit()
        return raw, csrf, row

    async def purge_expired(self) -> int:
        result = await self.db.execute(delete(UserSession).where(UserSession.expires_at <= utcnow()))
        return result.rowcount or 0
