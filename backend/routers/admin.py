# routers/admin.py — User, role, grant and permission administration
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import select, delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthService, CurrentUser, UserCreate, check_password_policy, require_permission, user_payload
from container import ServiceContainer, get_container
from database import get_db_session
from errors import Conflict, NotFound, ValidationFailed, ok
from models import Permission, RefreshToken, User, UserSession, utcnow
from rbac import RBACService, grant_to_dict
from security_audit import SecurityAuditService, SecurityEvent

router = APIRouter(prefix="/api/v1/admin", tags=["Administration"])


# --- Schemas ---

class AdminUserCreate(UserCreate):
    role_ids: List[int] = Field(default_factory=list)


class AdminUserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: Optional[str]) -> Optional[str]:
        return check_password_policy(v) if v is not None else v


class RoleAssign(BaseModel):
    role_id: int


class RoleCreate(BaseModel):
    name: str = Field(..., max_length=64)
    description: str = ""


class RoleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=64)
    description: Optional[str] = None


class StackPermissionCreate(BaseModel):
    server_id: int
    permission: str
    stack_pattern: str = "*"


def _audit(db: AsyncSession, container: ServiceContainer) -> SecurityAuditService:
    return SecurityAuditService(db, container.outbox)


async def _get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


async def _revoke_user_sessions(db: AsyncSession, container: ServiceContainer, user_id: int) -> int:
    """Kill every session and refresh token of one user; returns the session count."""
    now = utcnow()
    sessions = (await db.execute(select(UserSession).where(UserSession.user_id == user_id))).scalars().all()
    for session in sessions:
        if session.jwt_access_jti:
            await container.revocations.revoke(
                db, session.jwt_access_jti, now + container.settings.jwt_access_expiry, user_id
            )
    await db.execute(delete(UserSession).where(UserSession.user_id == user_id))
    await db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    return len(sessions)


# ============================================================
# USERS
# ============================================================

@router.get("/users")
async def list_users(
    user: CurrentUser = Depends(require_permission("admin.users.read")),
    db: AsyncSession = Depends(get_db_session),
):
    users = (await db.execute(select(User).order_by(User.id))).scalars().all()
    return ok([user_payload(u) for u in users])


@router.post("/users")
async def create_user(
    body: AdminUserCreate,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.users.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    exists = (await db.execute(select(User.id).where(User.username == body.username))).first()
    if exists:
        raise Conflict(f"Username '{body.username}' is already taken")
    rbac = RBACService(db)
    roles = [await rbac.get_role(rid) for rid in body.role_ids]
    created = User(
        username=body.username,
        email=str(body.email),
        password_hash=AuthService.hash_password(body.password),
        is_active=True,
    )
    created.roles.extend(roles)
    db.add(created)
    await db.flush()
    await _audit(db, container).log(
        SecurityEvent.USER_CREATED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="user",
        target_id=created.id,
        target_name=created.username,
        metadata={"roles": [r.name for r in roles]},
    )
    await db.commit()
    return ok(user_payload(created), "User created")


@router.get("/users/{user_id}")
async def get_user(
    user_id: int,
    user: CurrentUser = Depends(require_permission("admin.users.read")),
    db: AsyncSession = Depends(get_db_session),
):
    return ok(user_payload(await _get_user(db, user_id)))


@router.patch("/users/{user_id}")
async def update_user(
    user_id: int,
    body: AdminUserUpdate,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.users.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """A new password or deactivation ends every session the user holds."""
    target = await _get_user(db, user_id)
    if body.is_active is False and user_id == user.id:
        raise ValidationFailed("You cannot deactivate your own account")
    events = []
    if body.email is not None and str(body.email) != target.email:
        target.email = str(body.email)
        target.email_verified_at = None
        events.append(SecurityEvent.USER_EMAIL_CHANGED)
    if body.password is not None:
        target.password_hash = AuthService.hash_password(body.password)
        events.append(SecurityEvent.USER_PASSWORD_CHANGED)
    revoked = 0
    if body.is_active is not None:
        target.is_active = body.is_active
    if body.password is not None or body.is_active is False:
        revoked = await _revoke_user_sessions(db, container, user_id)

    if not events:
        await db.commit()
    for event in events:
        await _audit(db, container).log(
            event,
            request=request,
            actor_user_id=user.id,
            actor_username=user.username,
            target_type="user",
            target_id=target.id,
            target_name=target.username,
            metadata={"sessions_revoked": revoked},
        )
        await db.commit()
    return ok(user_payload(target), "User updated")


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: int,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.users.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """Sessions and refresh tokens are revoked before the row goes."""
    if user_id == user.id:
        raise ValidationFailed("You cannot delete your own account")
    target = await _get_user(db, user_id)
    revoked = await _revoke_user_sessions(db, container, user_id)
    username = target.username
    await db.delete(target)
    await _audit(db, container).log(
        SecurityEvent.USER_DELETED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="user",
        target_id=user_id,
        target_name=username,
        metadata={"sessions_revoked": revoked},
    )
    await db.commit()
    container.permissions.invalidate()
    return ok(message="User deleted")


@router.post("/users/{user_id}/roles")
async def assign_role(
    user_id: int,
    body: RoleAssign,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.users.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    target = await _get_user(db, user_id)
    role = await RBACService(db).assign_role(target, body.role_id)
    await _audit(db, container).log(
        SecurityEvent.USER_ROLE_ASSIGNED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="user",
        target_id=target.id,
        target_name=target.username,
        metadata={"role": role.name},
    )
    await db.commit()
    container.permissions.invalidate()
    return ok({"user_id": target.id, "role": role.name})


@router.delete("/users/{user_id}/roles/{role_id}")
async def revoke_role(
    user_id: int,
    role_id: int,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.users.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    target = await _get_user(db, user_id)
    role = await RBACService(db).revoke_role(target, role_id)
    await _audit(db, container).log(
        SecurityEvent.USER_ROLE_REVOKED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="user",
        target_id=target.id,
        target_name=target.username,
        metadata={"role": role.name},
    )
    await db.commit()
    container.permissions.invalidate()
    return ok({"user_id": target.id, "role": role.name})


# ============================================================
# ROLES & GRANTS
# ============================================================

@router.get("/roles")
async def list_roles(
    user: CurrentUser = Depends(require_permission("admin.roles.read")),
    db: AsyncSession = Depends(get_db_session),
):
    return ok(await RBACService(db).list_roles())


@router.post("/roles")
async def create_role(
    body: RoleCreate,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.roles.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    role = await RBACService(db).create_role(body.name, body.description)
    await _audit(db, container).log(
        SecurityEvent.RBAC_ROLE_CREATED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="role",
        target_id=role.id,
        target_name=role.name,
    )
    await db.commit()
    return ok({"id": role.id, "name": role.name, "description": role.description, "is_admin": role.is_admin})


@router.patch("/roles/{role_id}")
async def update_role(
    role_id: int,
    body: RoleUpdate,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.roles.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    role = await RBACService(db).update_role(role_id, body.name, body.description)
    await _audit(db, container).log(
        SecurityEvent.RBAC_ROLE_UPDATED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="role",
        target_id=role.id,
        target_name=role.name,
    )
    await db.commit()
    return ok({"id": role.id, "name": role.name, "description": role.description, "is_admin": role.is_admin})


@router.delete("/roles/{role_id}")
async def delete_role(
    role_id: int,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.roles.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    role = await RBACService(db).delete_role(role_id)
    await _audit(db, container).log(
        SecurityEvent.RBAC_ROLE_DELETED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="role",
        target_id=role_id,
        target_name=role.name,
    )
    await db.commit()
    container.permissions.invalidate()
    return ok(message="Role deleted")


@router.get("/roles/{role_id}/stack-permissions")
async def list_stack_permissions(
    role_id: int,
    user: CurrentUser = Depends(require_permission("admin.roles.read")),
    db: AsyncSession = Depends(get_db_session),
):
    grants = await RBACService(db).list_stack_permissions(role_id)
    return ok([grant_to_dict(g) for g in grants])


@router.post("/roles/{role_id}/stack-permissions")
async def add_stack_permission(
    role_id: int,
    body: StackPermissionCreate,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.roles.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    grant = await RBACService(db).add_stack_permission(role_id, body.server_id, body.permission, body.stack_pattern)
    data = grant_to_dict(grant)
    await _audit(db, container).log(
        SecurityEvent.RBAC_PERMISSION_ADDED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="role",
        target_id=role_id,
        target_name=body.permission,
        server_id=body.server_id,
        metadata={"stack_pattern": grant.stack_pattern},
    )
    await db.commit()
    container.permissions.invalidate()
    return ok(data)


@router.delete("/roles/{role_id}/stack-permissions/{grant_id}")
async def remove_stack_permission(
    role_id: int,
    grant_id: int,
    request: Request,
    user: CurrentUser = Depends(require_permission("admin.roles.write")),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    grant = await RBACService(db).remove_stack_permission(role_id, grant_id)
    await _audit(db, container).log(
        SecurityEvent.RBAC_PERMISSION_REMOVED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="role",
        target_id=role_id,
        target_name=grant.permission.name if grant.permission else "",
        server_id=grant.server_id,
        metadata={"stack_pattern": grant.stack_pattern},
    )
    await db.commit()
    container.permissions.invalidate()
    return ok(message="Grant removed")


# ============================================================
# PERMISSIONS
# ============================================================

@router.get("/permissions")
async def list_permissions(
    user: CurrentUser = Depends(require_permission("admin.permissions.read")),
    db: AsyncSession = Depends(get_db_session),
):
    rows = (await db.execute(select(Permission).order_by(Permission.name))).scalars().all()
    return ok([
        {
            "id": p.id,
            "name": p.name,
            "resource": p.resource,
            "action": p.action,
            "description": p.description,
            "is_api_key_only": p.is_api_key_only,
        }
        for p in rows
    ])
