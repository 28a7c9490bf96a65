# webhooks.py — CI webhooks that queue compose operations
# A webhook belongs to one user and carries a "wh_" secret that is shown once;
# only its bcrypt hash is stored. A trigger runs with the owner's permissions,
# narrowed to the webhook's stack pattern and (when set) its server list.

import secrets
import logging
from datetime import datetime
from typing import List, Optional, Tuple

import bcrypt
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import Forbidden, NotFound, Unauthorized, ValidationFailed
from models import Server, User, Webhook, WebhookServerScope, utcnow, as_utc
from operations import COMMANDS, required_permission
from rbac import RBACService, matches_pattern, validate_pattern

logger = logging.getLogger("berth.webhooks")

KEY_PREFIX = "wh_"
KEY_BYTES = 32
DISPLAY_CHARS = 8
HASH_ROUNDS = 10


class WebhookCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    description: str = Field(default="", max_length=512)
    stack_pattern: str = "*"
    server_ids: List[int] = Field(default_factory=list)
    expires_at: Optional[datetime] = None


class WebhookUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    description: Optional[str] = Field(default=None, max_length=512)
    stack_pattern: Optional[str] = None
    server_ids: Optional[List[int]] = None
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = None


class ServiceImageChange(BaseModel):
    service_name: str
    new_image: Optional[str] = None
    new_tag: Optional[str] = None


class ComposeChanges(BaseModel):
    service_image_updates: List[ServiceImageChange] = Field(default_factory=list)


class WebhookTrigger(BaseModel):
    api_key: str = Field(..., min_length=1)
    server_id: int
    stack_name: str = Field(..., min_length=1)
    command: str
    options: List[str] = Field(default_factory=list)
    services: List[str] = Field(default_factory=list)
    compose_changes: Optional[ComposeChanges] = None


def generate_secret() -> Tuple[str, str, str]:
    """Returns (raw_secret, bcrypt_hash, display_prefix)"""
    raw = KEY_PREFIX + secrets.token_hex(KEY_BYTES)
    digest = bcrypt.hashpw(raw.encode("utf-8"), bcrypt.gensalt(rounds=HASH_ROUNDS)).decode("utf-8")
    return raw, digest, raw[: len(KEY_PREFIX) + DISPLAY_CHARS]


def verify_secret(raw: str, digest: str) -> bool:
    try:
        return bcrypt.checkpw(raw.encode("utf-8"), digest.encode("utf-8"))
    except ValueError:
        return False


def webhook_to_dict(hook: Webhook) -> dict:
    return {
        "id": hook.id,
        "user_id": hook.user_id,
        "name": hook.name,
        "description": hook.description,
        "key_prefix": hook.key_prefix,
        "stack_pattern": hook.stack_pattern,
        "server_ids": sorted(s.server_id for s in hook.servers),
        "is_active": hook.is_active,
        "expires_at": as_utc(hook.expires_at).isoformat() if hook.expires_at else None,
        "last_triggered_at": as_utc(hook.last_triggered_at).isoformat() if hook.last_triggered_at else None,
        "trigger_count": hook.trigger_count or 0,
        "created_at": as_utc(hook.created_at).isoformat() if hook.created_at else None,
    }


class WebhookService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.rbac = RBACService(db)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    async def _check_servers(self, owner_id: int, server_ids: List[int]) -> List[int]:
        ids = sorted(set(server_ids))
        for server_id in ids:
            server = await self.db.get(Server, server_id)
            if server is None or not await self.rbac.can_access_server(owner_id, server_id):
                raise ValidationFailed(f"Server {server_id} not found")
        return ids

    def _check_expiry(self, expires_at: Optional[datetime]) -> None:
        if expires_at is not None and as_utc(expires_at) <= utcnow():
            raise ValidationFailed("expires_at must be in the future")

    async def create(self, owner_id: int, body: WebhookCreate) -> Tuple[Webhook, str]:
        self._check_expiry(body.expires_at)
        server_ids = await self._check_servers(owner_id, body.server_ids)
        raw, digest, display = generate_secret()
        hook = Webhook(
            user_id=owner_id,
            name=body.name.strip(),
            description=body.description,
            key_hash=digest,
            key_prefix=display,
            stack_pattern=validate_pattern(body.stack_pattern),
            expires_at=body.expires_at,
            is_active=True,
            trigger_count=0,
            servers=[WebhookServerScope(server_id=sid) for sid in server_ids],
        )
        self.db.add(hook)
        await self.db.flush()
        logger.info(f"Webhook {hook.id} ({hook.name}) created for user {owner_id}")
        return hook, raw

    async def list_for_user(self, user_id: int) -> List[Webhook]:
        stmt = select(Webhook).where(Webhook.user_id == user_id).order_by(Webhook.id)
        return list((await self.db.execute(stmt)).scalars().all())

    async def list_all(self) -> List[Webhook]:
        return list((await self.db.execute(select(Webhook).order_by(Webhook.id))).scalars().all())

    async def get(self, hook_id: int) -> Webhook:
        hook = await self.db.get(Webhook, hook_id)
        if hook is None:
            raise NotFound("Webhook not found")
        return hook

    async def get_for_user(self, user_id: int, hook_id: int) -> Webhook:
        hook = await self.get(hook_id)
        if hook.user_id != user_id:
            raise NotFound("Webhook not found")
        return hook

    async def update(self, hook: Webhook, body: WebhookUpdate) -> Webhook:
        if body.name is not None:
            hook.name = body.name.strip()
        if body.description is not None:
            hook.description = body.description
        if body.stack_pattern is not None:
            hook.stack_pattern = validate_pattern(body.stack_pattern)
        if body.expires_at is not None:
            self._check_expiry(body.expires_at)
            hook.expires_at = body.expires_at
        if body.is_active is not None:
            hook.is_active = body.is_active
        if body.server_ids is not None:
            wanted = await self._check_servers(hook.user_id, body.server_ids)
            hook.servers = [s for s in hook.servers if s.server_id in wanted]
            present = {s.server_id for s in hook.servers}
            hook.servers.extend(WebhookServerScope(server_id=sid) for sid in wanted if sid not in present)
        await self.db.flush()
        return hook

    async def regenerate(self, hook: Webhook) -> str:
        raw, digest, display = generate_secret()
        hook.key_hash = digest
        hook.key_prefix = display
        await self.db.flush()
        return raw

    async def delete(self, hook: Webhook) -> None:
        await self.db.delete(hook)
        await self.db.flush()

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    async def authenticate(self, hook_id: int, raw: str) -> Webhook:
        hook = await self.db.get(Webhook, hook_id)
        if hook is None or not raw.startswith(KEY_PREFIX) or not verify_secret(raw, hook.key_hash):
            raise Unauthorized("Invalid webhook key", error="invalid_token")
        if not hook.is_active:
            raise Unauthorized("Webhook is disabled", error="invalid_token")
        if hook.expires_at is not None and as_utc(hook.expires_at) <= utcnow():
            raise Unauthorized("Webhook has expired", error="expired_token")
        return hook

    async def authorize(self, hook: Webhook, server_id: int, stack_name: str, command: str) -> Tuple[Server, User]:
        """Server and owner a trigger acts as. Raises Forbidden, or ValidationFailed for an unknown command."""
        if command not in COMMANDS:
            raise ValidationFailed(f"unsupported command '{command}'")
        if not matches_pattern(stack_name, hook.stack_pattern):
            raise Forbidden(f"Stack '{stack_name}' is outside this webhook's pattern")
        scoped = {s.server_id for s in hook.servers}
        if scoped and server_id not in scoped:
            raise Forbidden("Server is outside this webhook's scope")
        owner = await self.db.get(User, hook.user_id)
        if owner is None or not owner.is_active:
            raise Forbidden("Webhook owner is inactive")
        server = await self.db.get(Server, server_id)
        if server is None or not server.is_active or not await self.rbac.can_access_server(owner.id, server_id):
            raise Forbidden("Webhook owner cannot access this server")
        permission = required_permission(command)
        if not await self.rbac.user_has_stack_permission(owner.id, server_id, stack_name, permission):
            raise Forbidden(f"Webhook owner lacks '{permission}' on stack '{stack_name}'")
        return server, owner

    async def record_use(self, hook: Webhook) -> None:
        hook.last_triggered_at = utcnow()
        hook.trigger_count = (hook.trigger_count or 0) + 1
        await self.db.flush()
