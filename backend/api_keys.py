# api_keys.py — Scoped API keys for machine clients
# Keys look like "berth_<43 url-safe chars>". Only the SHA-256 of the full key
# is stored, next to a short display prefix that shows up in audit logs.
# A key can exercise a permission only when its owner holds it AND one of the
# key's scopes covers it (same permission, matching server, matching stack).

import hmac
import base64
import secrets
import hashlib
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import NotFound, Conflict, ValidationFailed, Forbidden, Unauthorized
from models import APIKey, APIKeyScope, Permission, Server, User, utcnow, as_utc
from rbac import RBACService, matches_pattern, validate_pattern, is_admin_permission

logger = logging.getLogger("berth.auth")

KEY_BYTES = 32
DISPLAY_CHARS = 8


class APIKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    expires_at: Optional[datetime] = None


class APIKeyScopeCreate(BaseModel):
    permission: str = Field(..., min_length=1)
    server_id: Optional[int] = None
    stack_pattern: str = "*"


def hash_key(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def generate_key(prefix: str) -> Tuple[str, str, str]:
    """Returns (raw_key, key_hash, display_prefix)"""
    body = base64.urlsafe_b64encode(secrets.token_bytes(KEY_BYTES)).decode("ascii").rstrip("=")
    raw = f"{prefix}{body}"
    return raw, hash_key(raw), raw[: len(prefix) + DISPLAY_CHARS]


def key_to_dict(key: APIKey) -> dict:
    return {
        "id": key.id,
        "name": key.name,
        "key_prefix": key.key_prefix,
        "is_active": key.is_active,
        "last_used_at": key.last_used_at.isoformat() if key.last_used_at else None,
        "expires_at": key.expires_at.isoformat() if key.expires_at else None,
        "created_at": key.created_at.isoformat() if key.created_at else None,
        "scopes": [scope_to_dict(s) for s in key.scopes],
    }


def scope_to_dict(scope: APIKeyScope) -> dict:
    return {
        "id": scope.id,
        "permission": scope.permission.name if scope.permission else None,
        "server_id": scope.server_id,
        "stack_pattern": scope.stack_pattern,
    }


class APIKeyService:
    def __init__(self, db: AsyncSession, prefix: str = "berth_"):
        self.db = db
        self.prefix = prefix

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def validate(self, raw: str) -> Tuple[APIKey, User]:
        if not raw.startswith(self.prefix):
            raise Unauthorized("Invalid API key", error="invalid_token")
        digest = hash_key(raw)
        key = (
            await self.db.execute(select(APIKey).where(APIKey.key_hash == digest))
        ).scalar_one_or_none()
        if key is None or not hmac.compare_digest(key.key_hash, digest):
            raise Unauthorized("Invalid API key", error="invalid_token")
        if not key.is_active:
            raise Unauthorized("API key has been revoked", error="invalid_token")
        if key.expires_at is not None and as_utc(key.expires_at) <= utcnow():
            raise Unauthorized("API key has expired", error="expired_token")
        user = await self.db.get(User, key.user_id)
        if user is None or not user.is_active:
            raise Unauthorized("API key owner is inactive", error="invalid_token")
        key.last_used_at = utcnow()
        await self.db.commit()
        return key, user

    # ------------------------------------------------------------------
    # Key management
    # ------------------------------------------------------------------

    async def create(self, user: User, name: str, expires_at: Optional[datetime] = None) -> Tuple[APIKey, str]:
        if expires_at is not None and as_utc(expires_at) <= utcnow():
            raise ValidationFailed("expires_at must be in the future")
        raw, digest, display = generate_key(self.prefix)
        key = APIKey(
            user_id=user.id,
            name=name.strip(),
            key_hash=digest,
            key_prefix=display,
            expires_at=expires_at,
            is_active=True,
        )
        self.db.add(key)
        await self.db.flush()
        await self.db.refresh(key, attribute_names=["scopes"])
        logger.info(f"API key {display} created for user {user.id}")
        return key, raw

    async def list_for_user(self, user_id: int) -> List[APIKey]:
        stmt = select(APIKey).where(APIKey.user_id == user_id).order_by(APIKey.created_at.desc(), APIKey.id.desc())
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_for_user(self, user_id: int, key_id: int) -> APIKey:
        key = await self.db.get(APIKey, key_id)
        if key is None or key.user_id != user_id:
            raise NotFound("API key not found")
        return key

    async def update(self, user_id: int, key_id: int, name: Optional[str], is_active: Optional[bool]) -> APIKey:
        key = await self.get_for_user(user_id, key_id)
        if name is not None:
            if not name.strip():
                raise ValidationFailed("Name must not be empty")
            key.name = name.strip()
        if is_active is not None:
            key.is_active = is_active
        await self.db.flush()
        return key

    async def delete(self, user_id: int, key_id: int) -> APIKey:
        key = await self.get_for_user(user_id, key_id)
        await self.db.delete(key)
        await self.db.flush()
        return key

    # ------------------------------------------------------------------
    # Scopes
    # ------------------------------------------------------------------

    async def add_scope(
        self, user: User, key_id: int, permission_name: str,
        server_id: Optional[int] = None, stack_pattern: str = "*",
    ) -> APIKeyScope:
        key = await self.get_for_user(user.id, key_id)
        permission = (
            await self.db.execute(select(Permission).where(Permission.name == permission_name))
        ).scalar_one_or_none()
        if permission is None:
            raise ValidationFailed(f"Unknown permission: {permission_name}")
        stack_pattern = validate_pattern(stack_pattern)

        if server_id is not None and await self.db.get(Server, server_id) is None:
            raise NotFound("Server not found")

        rbac = RBACService(self.db)
        if is_admin_permission(permission.name):
            if not await rbac.is_admin(user.id):
                raise Forbidden(f"Permission '{permission.name}' requires the admin role")
        elif permission.is_api_key_only:
            accessible = await rbac.accessible_server_ids(user.id)
            if not accessible or (server_id is not None and server_id not in accessible):
                raise Forbidden(f"You cannot delegate '{permission.name}' on this server")
        elif server_id is None:
            if not await rbac.has_permission_by_name(user.id, permission.name):
                raise Forbidden(f"You do not hold '{permission.name}'")
        elif not await rbac.user_has_any_stack_permission(user.id, server_id, permission.name):
            raise Forbidden(f"You do not hold '{permission.name}' on server {server_id}")

        for scope in key.scopes:
            if (
                scope.permission_id == permission.id
                and scope.server_id == server_id
                and scope.stack_pattern == stack_pattern
            ):
                raise Conflict("Scope already exists on this key")

        scope = APIKeyScope(
            api_key_id=key.id,
            permission_id=permission.id,
            server_id=server_id,
            stack_pattern=stack_pattern,
        )
        self.db.add(scope)
        await self.db.flush()
        await self.db.refresh(scope, attribute_names=["permission"])
        await self.db.refresh(key, attribute_names=["scopes"])
        return scope

    async def remove_scope(self, user_id: int, key_id: int, scope_id: int) -> APIKeyScope:
        key = await self.get_for_user(user_id, key_id)
        scope = next((s for s in key.scopes if s.id == scope_id), None)
        if scope is None:
            raise NotFound("Scope not found")
        key.scopes.remove(scope)
        await self.db.flush()
        return scope

    async def _scopes(self, api_key_id: int, permission: str) -> List[APIKeyScope]:
        stmt = (
            select(APIKeyScope)
            .join(Permission, Permission.id == APIKeyScope.permission_id)
            .where(APIKeyScope.api_key_id == api_key_id, Permission.name == permission)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def has_scope_permission(self, api_key_id: int, permission: str) -> bool:
        return bool(await self._scopes(api_key_id, permission))

    async def scope_allows(self, api_key_id: int, permission: str, server_id: int, stack_name: str) -> bool:
        for scope in await self._scopes(api_key_id, permission):
            if scope.server_id is not None and scope.server_id != server_id:
                continue
            if matches_pattern(stack_name, scope.stack_pattern):
                return True
        return False

    async def scope_patterns(self, api_key_id: int, permission: str, server_id: int) -> List[str]:
        return sorted({
            s.stack_pattern for s in await self._scopes(api_key_id, permission)
            if s.server_id is None or s.server_id == server_id
        })

    async def scope_covers_server(self, api_key_id: int, server_id: int) -> bool:
        stmt = select(APIKeyScope.id).where(
            APIKeyScope.api_key_id == api_key_id,
            (APIKeyScope.server_id.is_(None)) | (APIKeyScope.server_id == server_id),
        ).limit(1)
        return (await self.db.execute(stmt)).first() is not None
