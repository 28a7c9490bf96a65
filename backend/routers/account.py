# routers/account.py — Self-service TOTP enrolment and session ("device") management
# Both change a human's own credentials, so API keys are refused outright.
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, TOTPCodeRequest, require_interactive_user
from container import ServiceContainer, get_container
from database import get_db_session
from errors import ok
from models import User
from security_audit import SecurityAuditService, SecurityEvent
from sessions import SessionService
from totp import TOTPService

router = APIRouter(prefix="/api/v1", tags=["Account"])


class TOTPDisableRequest(TOTPCodeRequest):
    password: str = Field(..., min_length=1)


class SessionListRequest(BaseModel):
    refresh_token: Optional[str] = None


class SessionRevokeRequest(BaseModel):
    session_id: int


async def _audit(db: AsyncSession, container: ServiceContainer, event: str, user: CurrentUser, request: Request):
    await SecurityAuditService(db, container.outbox).log(
        event,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        target_type="user",
        target_id=user.id,
        target_name=user.username,
    )
    await db.commit()


# ============================================================
# TOTP
# ============================================================

@router.get("/totp/status")
async def totp_status(
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    row = await db.get(User, user.id)
    return ok(TOTPService(db, container.crypto).status(row))


@router.get("/totp/setup")
@router.post("/totp/setup")
async def totp_setup(
    request: Request,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """Generate a fresh seed. It is not active until /totp/enable confirms a code."""
    row = await db.get(User, user.id)
    data = await TOTPService(db, container.crypto).setup(row)
    await _audit(db, container, SecurityEvent.TOTP_SETUP_INITIATED, user, request)
    return ok(data)


@router.post("/totp/enable")
async def totp_enable(
    request: Request,
    body: TOTPCodeRequest,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    row = await db.get(User, user.id)
    await TOTPService(db, container.crypto).enable(row, body.code)
    await _audit(db, container, SecurityEvent.TOTP_ENABLED, user, request)
    return ok({"enabled": True}, "TOTP enabled")


@router.post("/totp/disable")
async def totp_disable(
    request: Request,
    body: TOTPDisableRequest,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    row = await db.get(User, user.id)
    await TOTPService(db, container.crypto).disable(row, body.password, body.code)
    await _audit(db, container, SecurityEvent.TOTP_DISABLED, user, request)
    return ok({"enabled": False}, "TOTP disabled")


# ============================================================
# SESSIONS
# ============================================================

def _sessions(db: AsyncSession, container: ServiceContainer) -> SessionService:
    return SessionService(db, container.settings, container.revocations, container.outbox)


@router.post("/sessions")
async def list_sessions(
    body: Optional[SessionListRequest] = None,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """The refresh token, when given, lets a JWT client recognise its own session."""
    rows = await _sessions(db, container).list_sessions(user, body.refresh_token if body else None)
    return ok(rows)


@router.post("/sessions/revoke")
async def revoke_session(
    request: Request,
    body: SessionRevokeRequest,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    await _sessions(db, container).revoke(user, body.session_id, request)
    return ok(message="Session revoked")


@router.post("/sessions/revoke-all-others")
async def revoke_other_sessions(
    request: Request,
    body: Optional[SessionListRequest] = None,
    user: CurrentUser = Depends(require_interactive_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    count = await _sessions(db, container).revoke_all_others(
        user, body.refresh_token if body else None, request
    )
    return ok({"revoked": count})
