# routers/stacks.py — Stack inventory, compose editing, logs and files
# Every route names a stack and is authorized on (user, server, stack,
# permission); the agent is only contacted after that check passes.
import re
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from agent_client import agent_call
from api_keys import APIKeyService
from auth import CurrentUser, authorize_server, authorize_stack, get_current_user, visible_stack_filter
from compose_engine import ComposeError, ComposeService, parse_document
from container import ServiceContainer, get_container
from database import get_db_session
from errors import ValidationFailed, ok
from models import Server
from rbac import (
    RBACService, PERM_FILES_READ, PERM_FILES_WRITE, PERM_LOGS_READ,
    PERM_STACKS_CREATE, PERM_STACKS_MANAGE, PERM_STACKS_READ,
)
from security_audit import SecurityAuditService, SecurityEvent

router = APIRouter(prefix="/api/v1/servers/{server_id}/stacks", tags=["Stacks"])
logger = logging.getLogger("berth.files")

STACK_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


# --- Schemas ---

class StackCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    compose_content: str = Field(..., min_length=1)


class ComposeUpdate(BaseModel):
    changes: Dict[str, Any] = Field(default_factory=dict)
    preview: bool = False


class ServiceImageUpdate(BaseModel):
    service_name: str
    new_image: Optional[str] = None
    new_tag: Optional[str] = None


class ImageUpdateRequest(BaseModel):
    service_updates: List[ServiceImageUpdate] = Field(..., min_length=1)
    preview: bool = False


class FileWrite(BaseModel):
    path: str = Field(..., min_length=1)
    content: str = ""


class FileRename(BaseModel):
    old_path: str = Field(..., min_length=1)
    new_path: str = Field(..., min_length=1)


# --- Helpers ---

def check_stack_name(name: str) -> str:
    if not STACK_NAME_RE.match(name or ""):
        raise ValidationFailed(f"Invalid stack name '{name}'")
    return name


def check_relative_path(path: str) -> str:
    parts = path.replace("\\", "/").split("/")
    if path.startswith("/") or ".." in parts:
        raise ValidationFailed("Path must be relative to the stack directory")
    return path


async def stack_target(
    db: AsyncSession, user: CurrentUser, server_id: int, stack_name: str, permission: str
) -> Server:
    """Resolve the server and authorize one permission on one of its stacks."""
    check_stack_name(stack_name)
    server = await authorize_server(db, user, server_id)
    await authorize_stack(db, user, server_id, stack_name, permission)
    return server


def stack_entries(body: Any) -> List[Dict[str, Any]]:
    stacks = body.get("stacks") if isinstance(body, dict) else body
    return [s for s in (stacks or []) if isinstance(s, dict)]


async def _audit_file(
    db: AsyncSession, container: ServiceContainer, event: str, user: CurrentUser,
    request: Request, server_id: int, stack_name: str, path: str, metadata: Optional[Dict] = None,
) -> None:
    await SecurityAuditService(db, container.outbox).log(
        event,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="file",
        target_name=path,
        server_id=server_id,
        stack_name=stack_name,
        metadata=metadata,
    )
    await db.commit()


# ============================================================
# INVENTORY
# ============================================================

@router.get("")
async def list_stacks(
    server_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """Only stacks matching one of the caller's stacks.read patterns are returned."""
    server = await authorize_server(db, user, server_id)
    allowed, patterns = await visible_stack_filter(db, user, server_id, PERM_STACKS_READ)
    if not patterns:
        return ok([])
    body = await agent_call(container.agents.request_json(server, "GET", "/stacks"))
    return ok([s for s in stack_entries(body) if allowed(s.get("name", ""))])


@router.post("")
async def create_stack(
    server_id: int,
    body: StackCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await stack_target(db, user, server_id, body.name, PERM_STACKS_CREATE)
    try:
        parse_document(body.compose_content)
    except ComposeError as e:
        raise ValidationFailed(str(e))
    created = await agent_call(container.agents.request_json(
        server, "POST", "/stacks", payload={"name": body.name, "compose_content": body.compose_content}
    ))
    logger.info(f"Stack {body.name} created on {server.name} by {user.username}")
    return ok(created or {"name": body.name}, "Stack created")


@router.get("/{stack_name}")
async def get_stack(
    server_id: int,
    stack_name: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await stack_target(db, user, server_id, stack_name, PERM_STACKS_READ)
    return ok(await agent_call(container.agents.request_json(server, "GET", f"/stacks/{stack_name}")))


@router.get("/{stack_name}/permissions")
async def stack_permissions(
    server_id: int,
    stack_name: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    check_stack_name(stack_name)
    await authorize_server(db, user, server_id)
    names = await RBACService(db).stack_permissions(user.id, server_id, stack_name)
    if user.is_api_key:
        keys = APIKeyService(db)
        names = [n for n in names if await keys.scope_allows(user.api_key_id, n, server_id, stack_name)]
    return ok({"stack_name": stack_name, "permissions": names})


@router.get("/{stack_name}/stats")
async def stack_stats(
    server_id: int,
    stack_name: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await stack_target(db, user, server_id, stack_name, PERM_STACKS_READ)
    return ok(await agent_call(container.agents.request_json(server, "GET", f"/stacks/{stack_name}/stats")))


@router.get("/{stack_name}/networks")
async def stack_networks(
    server_id: int,
    stack_name: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await stack_target(db, user, server_id, stack_name, PERM_STACKS_READ)
    return ok(await agent_call(container.agents.request_json(server, "GET", f"/stacks/{stack_name}/networks")))


@router.get("/{stack_name}/volumes")
async def stack_volumes(
    server_id: int,
    stack_name: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await stack_target(db, user, server_id, stack_name, PERM_STACKS_READ)
    return ok(await agent_call(container.agents.request_json(server, "GET", f"/stacks/{stack_name}/volumes")))


@router.get("/{stack_name}/environment")
async def stack_environment(
    server_id: int,
    stack_name: str,
    unmask: bool = Query(default=False),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """Secret-looking values come back masked unless the caller can manage the stack."""
    permission = PERM_STACKS_MANAGE if unmask else PERM_STACKS_READ
    server = await stack_target(db, user, server_id, stack_name, permission)
    return ok(await agent_call(container.agents.request_json(
        server, "GET", f"/stacks/{stack_name}/environment", params={"unmask": str(unmask).lower()}
    )))


# ============================================================
# COMPOSE
# ============================================================

@router.get("/{stack_name}/compose")
async def get_compose(
    server_id: int,
    stack_name: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await stack_target(db, user, server_id, stack_name, PERM_FILES_READ)
    try:
        content = await agent_call(ComposeService(container.agents).fetch(server, stack_name))
    except ComposeError as e:
        raise ValidationFailed(str(e))
    return ok({"content": content})


@router.patch("/{stack_name}/compose")
async def update_compose(
    server_id: int,
    stack_name: str,
    body: ComposeUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """Apply a structured patch. ``preview`` returns both documents and writes nothing."""
    server = await stack_target(db, user, server_id, stack_name, PERM_FILES_WRITE)
    try:
        result = await agent_call(
            ComposeService(container.agents).update(server, stack_name, body.changes, body.preview)
        )
    except ComposeError as e:
        raise ValidationFailed(str(e))
    return result


@router.patch("/{stack_name}/images")
async def update_service_images(
    server_id: int,
    stack_name: str,
    body: ImageUpdateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await stack_target(db, user, server_id, stack_name, PERM_FILES_WRITE)
    updates = [u.model_dump() for u in body.service_updates]
    try:
        result = await agent_call(
            ComposeService(container.agents).update_images(server, stack_name, updates, body.preview)
        )
    except ComposeError as e:
        raise ValidationFailed(str(e))
    return result


# ============================================================
# LOGS
# ============================================================

@router.get("/{stack_name}/logs")
async def stack_logs(
    server_id: int,
    stack_name: str,
    tail: int = Query(default=100, ge=1, le=10000),
    since: Optional[str] = None,
    timestamps: bool = False,
    services: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await stack_target(db, user, server_id, stack_name, PERM_LOGS_READ)
    params = {"tail": tail, "timestamps": str(timestamps).lower()}
    if since:
        params["since"] = since
    if services:
        params["services"] = services
    return ok(await agent_call(
        container.agents.request_json(server, "GET", f"/stacks/{stack_name}/logs", params=params)
    ))


@router.get("/{stack_name}/containers/{container_name}/logs")
async def container_logs(
    server_id: int,
    stack_name: str,
    container_name: str,
    tail: int = Query(default=100, ge=1, le=10000),
    since: Optional[str] = None,
    timestamps: bool = False,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await stack_target(db, user, server_id, stack_name, PERM_LOGS_READ)
    check_stack_name(container_name)
    params = {"tail": tail, "timestamps": str(timestamps).lower()}
    if since:
        params["since"] = since
    return ok(await agent_call(container.agents.request_json(
        server, "GET", f"/stacks/{stack_name}/containers/{container_name}/logs", params=params
    )))


# ============================================================
# FILES
# ============================================================

@router.get("/{stack_name}/files")
async def list_files(
    server_id: int,
    stack_name: str,
    path: str = Query(default=""),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await stack_target(db, user, server_id, stack_name, PERM_FILES_READ)
    if path:
        check_relative_path(path)
    return ok(await agent_call(container.agents.request_json(
        server, "GET", f"/stacks/{stack_name}/files", params={"path": path}
    )))


@router.get("/{stack_name}/files/content")
async def read_file(
    server_id: int,
    stack_name: str,
    request: Request,
    path: str = Query(..., min_length=1),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await stack_target(db, user, server_id, stack_name, PERM_FILES_READ)
    check_relative_path(path)
    content = await agent_call(container.agents.request_json(
        server, "GET", f"/stacks/{stack_name}/files/content", params={"path": path}
    ))
    await _audit_file(db, container, SecurityEvent.FILE_DOWNLOADED, user, request, server_id, stack_name, path)
    return ok(content)


@router.post("/{stack_name}/files/content")
async def write_file(
    server_id: int,
    stack_name: str,
    body: FileWrite,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await stack_target(db, user, server_id, stack_name, PERM_FILES_WRITE)
    check_relative_path(body.path)
    await agent_call(container.agents.request_json(
        server, "PUT", f"/stacks/{stack_name}/files/content",
        payload={"path": body.path, "content": body.content},
    ))
    await _audit_file(
        db, container, SecurityEvent.FILE_UPLOADED, user, request, server_id, stack_name, body.path,
        metadata={"size": len(body.content.encode("utf-8"))},
    )
    return ok({"path": body.path}, "File saved")


@router.delete("/{stack_name}/files")
async def delete_file(
    server_id: int,
    stack_name: str,
    request: Request,
    path: str = Query(..., min_length=1),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await stack_target(db, user, server_id, stack_name, PERM_FILES_WRITE)
    check_relative_path(path)
    await agent_call(container.agents.request_json(
        server, "DELETE", f"/stacks/{stack_name}/files", params={"path": path}
    ))
    await _audit_file(db, container, SecurityEvent.FILE_DELETED, user, request, server_id, stack_name, path)
    return ok({"path": path}, "File deleted")


@router.post("/{stack_name}/files/rename")
async def rename_file(
    server_id: int,
    stack_name: str,
    body: FileRename,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await stack_target(db, user, server_id, stack_name, PERM_FILES_WRITE)
    check_relative_path(body.old_path)
    check_relative_path(body.new_path)
    await agent_call(container.agents.request_json(
        server, "POST", f"/stacks/{stack_name}/files/rename",
        payload={"old_path": body.old_path, "new_path": body.new_path},
    ))
    await _audit_file(
        db, container, SecurityEvent.FILE_RENAMED, user, request, server_id, stack_name, body.new_path,
        metadata={"old_path": body.old_path},
    )
    return ok({"path": body.new_path}, "File renamed")
