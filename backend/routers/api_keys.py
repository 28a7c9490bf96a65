# routers/api_keys.py — Personal API keys and their permission scopes
# The raw key is shown once, at creation. Managing keys needs an
# interactive login: a key cannot mint or widen keys.
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api_keys import APIKeyCreate, APIKeyScopeCreate, APIKeyService, key_to_dict, scope_to_dict
from auth import CurrentUser, require_interactive_user
from container import ServiceContainer, get_container
from database import get_db_session
from errors import ok
from models import User
from security_audit import SecurityAuditService, SecurityEvent

router = APIRouter(prefix="/api/v1/api-keys", tags=["API Keys"])


class APIKeyUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=128)
    is_active: Optional[bool] = None


def _keys(db: AsyncSession, container: ServiceContainer) -> APIKeyService:
    return APIKeyService(db, container.settings.api_key_prefix)


@router.get("")
async def list_keys(
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    return ok([key_to_dict(k) for k in await _keys(db, container).list_for_user(user.id)])


@router.post("")
async def create_key(
    body: APIKeyCreate,
    request: Request,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    owner = await db.get(User, user.id)
    key, raw = await _keys(db, container).create(owner, body.name, body.expires_at)
    data = key_to_dict(key)
    data["key"] = raw
    await SecurityAuditService(db, container.outbox).log(
        SecurityEvent.API_TOKEN_ISSUED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="api_key",
        target_id=key.id,
        target_name=key.key_prefix,
        metadata={"name": key.name},
    )
    await db.commit()
    return ok(data, "Store this key now; it cannot be shown again")


@router.get("/{key_id}")
async def get_key(
    key_id: int,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    return ok(key_to_dict(await _keys(db, container).get_for_user(user.id, key_id)))


@router.patch("/{key_id}")
async def update_key(
    key_id: int,
    body: APIKeyUpdate,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    key = await _keys(db, container).update(user.id, key_id, body.name, body.is_active)
    await db.commit()
    return ok(key_to_dict(key))


@router.delete("/{key_id}")
async def delete_key(
    key_id: int,
    request: Request,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    key = await _keys(db, container).delete(user.id, key_id)
    await SecurityAuditService(db, container.outbox).log(
        SecurityEvent.API_TOKEN_REVOKED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="api_key",
        target_id=key_id,
        target_name=key.key_prefix,
    )
    await db.commit()
    return ok(message="API key deleted")


@router.get("/{key_id}/scopes")
async def list_scopes(
    key_id: int,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    key = await _keys(db, container).get_for_user(user.id, key_id)
    return ok([scope_to_dict(s) for s in key.scopes])


@router.post("/{key_id}/scopes")
async def add_scope(
    key_id: int,
    body: APIKeyScopeCreate,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """A scope with no server_id covers every server the owner can reach."""
    owner = await db.get(User, user.id)
    scope = await _keys(db, container).add_scope(
        owner, key_id, body.permission, body.server_id, body.stack_pattern
    )
    await db.commit()
    container.permissions.invalidate()
    return ok(scope_to_dict(scope))


@router.delete("/{key_id}/scopes/{scope_id}")
async def remove_scope(
    key_id: int,
    scope_id: int,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    await _keys(db, container).remove_scope(user.id, key_id, scope_id)
    await db.commit()
    container.permissions.invalidate()
    return ok(message="Scope removed")
