# routers/registries.py — Per-server registry credentials (passwords encrypted at rest)
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api_keys import APIKeyService
from auth import CurrentUser, authorize_server, get_current_user
from container import ServiceContainer, get_container
from database import get_db_session
from errors import Forbidden, ok
from models import Server
from rbac import RBACService, PERM_REGISTRIES_MANAGE
from registry import RegistryCredentialCreate, RegistryCredentialUpdate, RegistryService, credential_to_dict

router = APIRouter(prefix="/api/v1/servers/{server_id}/registries", tags=["Registries"])


async def _managed_server(db: AsyncSession, user: CurrentUser, server_id: int) -> Server:
    server = await authorize_server(db, user, server_id)
    if not await RBACService(db).user_has_any_stack_permission(user.id, server_id, PERM_REGISTRIES_MANAGE):
        raise Forbidden(f"Permission '{PERM_REGISTRIES_MANAGE}' required on this server")
    if user.is_api_key:
        patterns = await APIKeyService(db).scope_patterns(user.api_key_id, PERM_REGISTRIES_MANAGE, server_id)
        if not patterns:
            raise Forbidden("API key scope does not include registries.manage", error="insufficient_scope")
    return server


@router.get("")
async def list_credentials(
    server_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    await _managed_server(db, user, server_id)
    creds = await RegistryService(db, container.crypto).list_credentials(server_id)
    return ok([credential_to_dict(c) for c in creds])


@router.post("")
async def create_credential(
    server_id: int,
    body: RegistryCredentialCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    await _managed_server(db, user, server_id)
    cred = await RegistryService(db, container.crypto).create_credential(server_id, body)
    await db.commit()
    return ok(credential_to_dict(cred), "Registry credential created")


@router.get("/{credential_id}")
async def get_credential(
    server_id: int,
    credential_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    await _managed_server(db, user, server_id)
    cred = await RegistryService(db, container.crypto).get_credential(server_id, credential_id)
    return ok(credential_to_dict(cred))


@router.patch("/{credential_id}")
async def update_credential(
    server_id: int,
    credential_id: int,
    body: RegistryCredentialUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    await _managed_server(db, user, server_id)
    cred = await RegistryService(db, container.crypto).update_credential(server_id, credential_id, body)
    await db.commit()
    return ok(credential_to_dict(cred))


@router.delete("/{credential_id}")
async def delete_credential(
    server_id: int,
    credential_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    await _managed_server(db, user, server_id)
    await RegistryService(db, container.crypto).delete_credential(server_id, credential_id)
    await db.commit()
    return ok(message="Registry credential deleted")
