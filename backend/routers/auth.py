# routers/auth.py — Login, TOTP upgrade, refresh rotation, logout, profile
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, CurrentUser, LoginRequest, LogoutRequest, RefreshRequest, TOTPCodeRequest,
    CSRF_COOKIE, SESSION_COOKIE, get_current_user, security, user_payload,
)
from container import ServiceContainer, get_container
from database import get_db_session
from errors import Unauthorized, ok
from models import User
from rate_limit import limiter, LOGIN_LIMIT, TOTP_VERIFY_LIMIT
from rbac import RBACService
from security_audit import SecurityEvent
from sessions import SessionService
from totp import TOTPService

router = APIRouter(prefix="/api/v1", tags=["Authentication"])


class WebLoginRequest(LoginRequest):
    totp_code: Optional[str] = Field(default=None, max_length=8)


async def _check_totp(
    auth: AuthService, totp: TOTPService, user: User, code: str, request: Request
) -> None:
    if await totp.verify_code(user, code):
        await auth.audit.log(
            SecurityEvent.TOTP_VERIFICATION_SUCCESS,
            request=request,
            actor_user_id=user.id,
            actor_username=user.username,
            target_type="user",
            target_id=user.id,
        )
        await auth.db.commit()
        return
    await auth.audit.log(
        SecurityEvent.TOTP_VERIFICATION_FAILURE,
        request=request,
        actor_user_id=user.id,
        actor_username=user.username,
        success=False,
        failure_reason="invalid_totp_code",
        target_type="user",
        target_id=user.id,
    )
    await auth.db.commit()
    raise Unauthorized("Invalid TOTP code", error="invalid_totp_code")


@router.post("/auth/login")
@limiter.limit(LOGIN_LIMIT)
async def login(
    request: Request,
    body: LoginRequest,
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """Password login. Users with TOTP get a short-lived temporary token instead of a pair."""
    auth = AuthService.from_container(db, container)
    result = await auth.login(body.username, body.password, request)
    await db.commit()
    return ok(result)


@router.post("/auth/totp/verify")
@limiter.limit(TOTP_VERIFY_LIMIT)
async def verify_totp(
    request: Request,
    body: TOTPCodeRequest,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Temporary token required")
    auth = AuthService.from_container(db, container)
    user = await auth.pending_user(credentials.credentials)
    await _check_totp(auth, TOTPService(db, container.crypto), user, body.code, request)
    result = await auth.issue_token_pair(user, request)
    await db.commit()
    return ok(result)


@router.post("/auth/refresh")
async def refresh(
    request: Request,
    body: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    auth = AuthService.from_container(db, container)
    result = await auth.rotate_refresh_token(body.refresh_token, request)
    await db.commit()
    return ok(result)


@router.post("/auth/logout")
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    auth = AuthService.from_container(db, container)
    result = await auth.logout(user, body.refresh_token if body else None, request)
    await db.commit()
    if user.auth_type == "session":
        response.delete_cookie(SESSION_COOKIE, path="/")
        response.delete_cookie(CSRF_COOKIE, path="/")
    return ok(result)


@router.post("/auth/session/login")
@limiter.limit(LOGIN_LIMIT)
async def web_login(
    request: Request,
    response: Response,
    body: WebLoginRequest,
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
):
    """Browser login: an HttpOnly session cookie plus a CSRF token the page echoes back."""
    settings = container.settings
    auth = AuthService.from_container(db, container)
    user = await auth.authenticate(body.username, body.password, request)
    if user.totp_enabled:
        if not body.totp_code:
            return ok({"totp_required": True})
        await _check_totp(auth, TOTPService(db, container.crypto), user, body.totp_code, request)

    sessions = SessionService(db, settings, container.revocations, container.outbox)
    cookie, csrf, row = await sessions.create_web_session(user, request)
    await db.commit()

    max_age = settings.refresh_expiry_seconds
    response.set_cookie(
        SESSION_COOKIE, cookie, max_age=max_age, httponly=True,
        secure=settings.session_secure, samesite=settings.session_same_site, path="/",
    )
    response.set_cookie(
        CSRF_COOKIE, csrf, max_age=max_age, httponly=False,
        secure=settings.session_secure, samesite=settings.session_same_site, path="/",
    )
    return ok({"csrf_token": csrf, "session_id": row.id, "user": user_payload(user)})


@router.get("/profile")
async def profile(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    row = await db.get(User, user.id)
    data = user_payload(row)
    data["auth_type"] = user.auth_type
    data["permissions"] = await RBACService(db).user_permission_names(user.id)
    return ok(data)
