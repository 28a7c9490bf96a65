# routers/image_updates.py — Stored image digest checks, reconciled with live container state
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api_keys import APIKeyService
from auth import CurrentUser, authorize_server, get_current_user, require_permission, visible_stack_filter
from container import ServiceContainer, get_container
from database import get_db_session
from errors import ok
from image_updates import ImageUpdateService, update_to_dict
from rbac import RBACService

router = APIRouter(prefix="/api/v1", tags=["Image Updates"])


def _service(db: AsyncSession, container: ServiceContainer) -> ImageUpdateService:
    return ImageUpdateService(
        db, container.agents, container.crypto, container.settings.image_update_check_disabled_registries
    )


@router.get("/image-updates")
async def list_available_updates(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """Containers with a newer digest, across every server the caller can see."""
    server_ids = await RBACService(db).accessible_server_ids(user.id)
    if user.is_api_key:
        keys = APIKeyService(db)
        server_ids = [sid for sid in server_ids if await keys.scope_covers_server(user.api_key_id, sid)]
    filters = {}
    for sid in server_ids:
        filters[sid], _ = await visible_stack_filter(db, user, sid)
    rows = await _service(db, container).available_updates(server_ids)
    return ok([
        update_to_dict(row, name) for row, name in rows if filters[row.server_id](row.stack_name)
    ])


@router.get("/servers/{server_id}/image-updates")
async def server_image_updates(
    server_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    server = await authorize_server(db, user, server_id)
    allowed, _ = await visible_stack_filter(db, user, server_id)
    rows = await _service(db, container).server_updates(server)
    return ok([r for r in rows if allowed(r["stack_name"])])


@router.post("/admin/image-updates/check")
async def trigger_image_check(
    user: CurrentUser = Depends(require_permission("admin.servers.write")),
    container: ServiceContainer = Depends(get_container),
):
    """Run one polling cycle now, whether or not the background poller is enabled."""
    outcome = await container.image_poller.run_once()
    return ok({
        "servers": {str(sid): result for sid, result in outcome.items()},
        "checked_at": container.image_poller.last_run_at.isoformat(),
    })
