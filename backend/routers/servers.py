# routers/servers.py — Servers visible to the caller, and their stack statistics
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agent_client import agent_call
from api_keys import APIKeyService
from auth import CurrentUser, authorize_server, get_current_user, visible_stack_filter
from container import ServiceContainer, get_container
from database import get_db_session
from errors import ok
from models import Server
from rbac import RBACService

router = APIRouter(prefix="/api/v1/servers", tags=["Servers"])


def server_to_dict(server: Server, status: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Public view of a server; the agent token never leaves the database."""
    body = {
        "id": server.id,
        "name": server.name,
        "description": server.description,
        "host": server.host,
        "port": server.port,
        "use_https": server.use_https,
        "skip_ssl_verification": server.skip_ssl_verification,
        "is_active": server.is_active,
        "created_at": server.created_at.isoformat() if server.created_at else None,
        "updated_at": server.updated_at.isoformat() if server.updated_at else None,
    }
    if status is not None:
        body["connected"] = bool(status.get("connected"))
    return body


@router.get("")
async def list_servers(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    ids = await RBACService(db).accessible_server_ids(user.id)
    if user.is_api_key:
        keys = APIKeyService(db)
        ids = [sid for sid in ids if await keys.scope_covers_server(user.api_key_id, sid)]
    if not ids:
        return ok([])
    servers = (
        await db.execute(select(Server).where(Server.id.in_(ids)).order_by(Server.name))
    ).scalars().all()
    return ok([server_to_dict(s, container.supervisor.status(s.id) or {}) for s in servers])


@router.get("/{server_id}")
async def get_server(
    server_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await authorize_server(db, user, server_id)
    return ok(server_to_dict(server, container.supervisor.status(server.id) or {}))


@router.get("/{server_id}/statistics")
async def server_statistics(
    server_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """Container and stack counts, computed by the agent over the caller's visible stacks only."""
    server = await authorize_server(db, user, server_id)
    _, patterns = await visible_stack_filter(db, user, server_id)
    if not patterns:
        return ok({"total_stacks": 0, "running_stacks": 0, "total_containers": 0, "running_containers": 0})
    summary = await agent_call(
        container.agents.request_json(
            server, "GET", "/stacks/summary", params={"patterns": ",".join(patterns)}
        )
    )
    return ok(summary or {})
