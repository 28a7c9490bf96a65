# revocation.py — Revoked access-token store
# revoked_tokens is the source of truth. A process-local cache sits in front
# of it so the per-request check is a dict lookup once a JTI has been seen.
# Entries leave both the cache and the table after their expires_at.

import logging
import threading
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from models import RevokedToken, utcnow, as_utc

logger = logging.getLogger("berth.auth")


class RevocationCache:
    """JTI -> expires_at, shared by every request handler"""

    def __init__(self):
        self._entries: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def remember(self, jti: str, expires_at: datetime) -> None:
        with self._lock:
            self._entries[jti] = as_utc(expires_at)

    def contains(self, jti: str) -> bool:
        with self._lock:
            expires_at = self._entries.get(jti)
            if expires_at is None:
                return False
            if expires_at <= utcnow():
                del self._entries[jti]
                return False
            return True

    def evict_expired(self) -> int:
        now = utcnow()
        with self._lock:
            stale = [jti for jti, exp in self._entries.items() if exp <= now]
            for jti in stale:
                del self._entries[jti]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    async def is_revoked(self, db: AsyncSession, jti: str) -> bool:
        if self.contains(jti):
            return True
        row = (
            await db.execute(select(RevokedToken).where(RevokedToken.jti == jti))
        ).scalar_one_or_none()
        if row is None:
            return False
        expires_at = as_utc(row.expires_at)
        if expires_at <= utcnow():
            return False
        self.remember(jti, expires_at)
        return True

    async def revoke(
        self, db: AsyncSession, jti: str, expires_at: datetime, user_id: Optional[int] = None
    ) -> None:
        """Stage a revocation on the session; the caller commits."""
        if not jti:
            return
        exists = (
            await db.execute(select(RevokedToken.id).where(RevokedToken.jti == jti))
        ).first()
        if exists is None:
            db.add(RevokedToken(jti=jti, user_id=user_id, expires_at=expires_at))
            await db.flush()
        self.remember(jti, expires_at)

    async def purge_expired(self, db: AsyncSession) -> int:
        self.evict_expired()
        result = await db.execute(delete(RevokedToken).where(RevokedToken.expires_at <= utcnow()))
        return result.rowcount or 0
