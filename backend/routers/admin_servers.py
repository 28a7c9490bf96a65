# routers/admin_servers.py — Server registry administration (agents, tokens, connectivity)
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agent_client import AgentError
from auth import CurrentUser, require_permission
from container import ServiceContainer, get_container
from database import get_db_session
from errors import Conflict, NotFound, ok
from models import Server
from routers.servers import server_to_dict
from security_audit import SecurityAuditService, SecurityEvent
from seeds import seed_default_grants

logger = logging.getLogger("berth.servers")

router = APIRouter(prefix="/api/v1/admin/servers", tags=["Server Administration"])


class ServerCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    description: str = ""
    host: str = Field(..., min_length=1)
    port: int = Field(default=8081, ge=1, le=65535)
    use_https: bool = True
    skip_ssl_verification: bool = False
    access_token: str = Field(..., min_length=1)
    is_active: bool = True


class ServerUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    description: Optional[str] = None
    host: Optional[str] = Field(default=None, min_length=1)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    use_https: Optional[bool] = None
    skip_ssl_verification: Optional[bool] = None
    access_token: Optional[str] = Field(default=None, min_length=1)
    is_active: Optional[bool] = None


async def _get_server(db: AsyncSession, server_id: int) -> Server:
    server = await db.get(Server, server_id)
    if server is None:
        raise NotFound("Server not found")
    return server


async def _check_name(db: AsyncSession, name: str, exclude_id: Optional[int] = None) -> None:
    stmt = select(Server.id).where(Server.name == name)
    if exclude_id is not None:
        stmt = stmt.where(Server.id != exclude_id)
    if (await db.execute(stmt)).first():
        raise Conflict(f"Server '{name}' already exists")


@router.get("")
async def list_servers(
    user: CurrentUser = Depends(require_permission("admin.servers.read")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    servers = (await db.execute(select(Server).order_by(Server.name))).scalars().all()
    return ok([server_to_dict(s, container.supervisor.status(s.id) or {}) for s in servers])


@router.post("")
async def create_server(
    body: ServerCreate,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.servers.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    await _check_name(db, body.name)
    values = body.model_dump()
    values["access_token"] = container.crypto.encrypt(body.access_token)
    server = Server(**values)
    db.add(server)
    await db.flush()
    # built-in roles get their grants on the new server
    await seed_default_grants(db, server)
    await SecurityAuditService(db, container.outbox).log(
        SecurityEvent.SERVER_CREATED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="server",
        target_id=server.id,
        target_name=server.name,
        server_id=server.id,
        metadata={"host": server.host, "port": server.port},
    )
    await db.commit()
    container.server_changed(server)
    return ok(server_to_dict(server), "Server created")


@router.get("/{server_id}")
async def get_server(
    server_id: int,
    user: CurrentUser = Depends(require_permission("admin.servers.read")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await _get_server(db, server_id)
    return ok(server_to_dict(server, container.supervisor.status(server.id) or {}))


@router.patch("/{server_id}")
async def update_server(
    server_id: int,
    body: ServerUpdate,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.servers.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await _get_server(db, server_id)
    changes = body.model_dump(exclude_unset=True)
    if changes.get("name") and changes["name"] != server.name:
        await _check_name(db, changes["name"], exclude_id=server.id)
    if "access_token" in changes:
        changes["access_token"] = container.crypto.encrypt(changes["access_token"])
    for field, value in changes.items():
        setattr(server, field, value)
    await db.flush()
    await SecurityAuditService(db, container.outbox).log(
        SecurityEvent.SERVER_UPDATED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="server",
        target_id=server.id,
        target_name=server.name,
        server_id=server.id,
        metadata={"fields": sorted(changes)},
    )
    await db.commit()
    if server.is_active:
        container.server_changed(server)
    else:
        await container.server_removed(server.id)
    return ok(server_to_dict(server))


@router.delete("/{server_id}")
async def delete_server(
    server_id: int,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.servers.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await _get_server(db, server_id)
    name = server.name
    await db.delete(server)
    await SecurityAuditService(db, container.outbox).log(
        SecurityEvent.SERVER_DELETED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="server",
        target_id=server_id,
        target_name=name,
    )
    await db.commit()
    await container.server_removed(server_id)
    return ok(message="Server deleted")


@router.post("/{server_id}/test")
async def test_connection(
    server_id: int,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.servers.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """Probe the agent's /health; the outcome is returned, not raised."""
    server = await _get_server(db, server_id)
    error = None
    health = {}
    try:
        health = await container.agents.health(server)
    except AgentError as e:
        error = str(e)
        logger.warning(f"Connection test to {server.name} failed: {e}")
    await SecurityAuditService(db, container.outbox).log(
        SecurityEvent.SERVER_TEST_FAILURE if error else SecurityEvent.SERVER_TEST_SUCCESS,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        success=error is None,
        failure_reason=error,
        target_type="server",
        target_id=server.id,
        target_name=server.name,
        server_id=server.id,
    )
    await db.commit()
    return ok({"connected": error is None, "error": error, "health": health})


@router.post("/{server_id}/regenerate-token")
async def regenerate_token(
    server_id: int,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.servers.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """New agent bearer; shown once, stored encrypted. The agent must be reconfigured with it."""
    server = await _get_server(db, server_id)
    token = secrets.token_urlsafe(32)
    server.access_token = container.crypto.encrypt(token)
    await db.flush()
    await SecurityAuditService(db, container.outbox).log(
        SecurityEvent.SERVER_TOKEN_REGENERATED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="server",
        target_id=server.id,
        target_name=server.name,
        server_id=server.id,
    )
    await db.commit()
    container.server_changed(server)
    return ok({"access_token": token}, "Access token regenerated")


@router.get("/{server_id}/status")
async def agent_status(
    server_id: int,
    user: CurrentUser = Depends(require_permission("admin.servers.read")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await _get_server(db, server_id)
    status = container.supervisor.status(server.id)
    if status is None:
        status = {"server_id": server.id, "connected": False, "last_error": None, "supervised": False}
    return ok(status)
