# routers/setup.py — First-run bootstrap: create the initial admin account
from fastapi import APIRouter, Depends, Request
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthService, UserCreate, user_payload
from container import ServiceContainer, get_container
from database import get_db_session
from errors import Conflict, ok
from models import Role, User
from rbac import ADMIN_ROLE
from security_audit import SecurityAuditService, SecurityEvent
from seeds import seed_all

router = APIRouter(prefix="/api/v1/setup", tags=["Setup"])


async def _user_count(db: AsyncSession) -> int:
    return (await db.execute(select(func.count()).select_from(User))).scalar_one()


@router.get("/status")
async def setup_status(db: AsyncSession = Depends(get_db_session)):
    return ok({"setup_required": await _user_count(db) == 0})


@router.post("/admin")
async def create_admin(
    request: Request,
    body: UserCreate,
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """Only allowed while the user table is empty."""
    if await _user_count(db) > 0:
        raise Conflict("Setup has already been completed", error="setup_complete")
    await seed_all(db)
    admin_role = (await db.execute(select(Role).where(Role.name == ADMIN_ROLE))).scalar_one()
    user = User(
        username=body.username,
        email=str(body.email),
        password_hash=AuthService.hash_password(body.password),
        is_active=True,
    )
    user.roles.append(admin_role)
    db.add(user)
    await db.flush()
    await SecurityAuditService(db, container.outbox).log(
        SecurityEvent.USER_CREATED,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="user",
        target_id=user.id,
        target_name=user.username,
        metadata={"setup": True, "roles": [ADMIN_ROLE]},
    )
    await db.commit()
    return ok(user_payload(user), "Administrator created")
