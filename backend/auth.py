# auth.py — Authentication and credential lifecycle for Berth
# Features:
# - bcrypt password hashes, constant-time verification (unknown users included)
# - HS256 JWTs with a JTI, token_type claim (access / refresh / totp_pending)
# - Single-use rotating refresh tokens grouped into families
# - Refresh reuse revokes the whole family and its live sessions
# - Revocation store checked on every request
# - Three credential variants: session cookie, JWT bearer, berth_ API key

import uuid
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Tuple

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends, Request, WebSocket
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from api_keys import APIKeyService
from config import Settings
from container import ServiceContainer, get_container
from crypto import sha256_hex
from database import get_db_session
from errors import Unauthorized, Forbidden, NotFound
from file_logger import AuditOutbox
from logging_system import bind_user
from models import (
    User, Server, RefreshToken, UserSession, SessionType, utcnow, as_utc,
)
from rbac import RBACService, matches_pattern
from revocation import RevocationCache
from security_audit import SecurityAuditService, SecurityEvent, client_ip

logger = logging.getLogger("berth.auth")

# ============================================================
# CONFIGURATION
# ============================================================

ALGORITHM = "HS256"
TOKEN_ACCESS = "access"
TOKEN_REFRESH = "refresh"
TOKEN_TOTP_PENDING = "totp_pending"

SESSION_COOKIE = "berth_session"
CSRF_COOKIE = "berth_csrf"
CSRF_HEADER = "X-CSRF-Token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

MIN_PASSWORD_LENGTH = 12

security = HTTPBearer(auto_error=False)

# Verifying against this keeps the unknown-user path as slow as a real check
_DUMMY_HASH = bcrypt.hashpw(b"berth-timing-equaliser", bcrypt.gensalt(rounds=12)).decode("utf-8")


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

def check_password_policy(v: str) -> str:
    if len(v) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in v):
        raise ValueError("Password must contain at least one uppercase letter")
    if not any(c.isdigit() for c in v):
        raise ValueError("Password must contain at least one digit")
    return v


class PasswordPolicy(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return check_password_policy(v)


class UserCreate(PasswordPolicy):
    username: str = Field(..., min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    email: EmailStr


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class TOTPCodeRequest(BaseModel):
    code: str

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str) -> str:
        v = v.strip().replace(" ", "")
        if len(v) != 6 or not v.isdigit():
            raise ValueError("TOTP code must be 6 digits")
        return v


class CurrentUser(BaseModel):
    id: int
    username: str
    email: str
    auth_type: str  # session | jwt | apikey
    is_admin: bool = False
    jti: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    session_id: Optional[int] = None
    api_key_id: Optional[int] = None

    @property
    def is_api_key(self) -> bool:
        return self.auth_type == "apikey"


def user_payload(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "roles": sorted(r.name for r in user.roles),
        "is_admin": any(r.is_admin for r in user.roles),
        "totp_enabled": user.totp_enabled,
        "email_verified": user.email_verified_at is not None,
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
    }


def session_token_for_refresh(refresh_token_id: int) -> str:
    """Stable public handle of a JWT session, derived from its refresh row."""
    return sha256_hex(f"refresh_token_id_{refresh_token_id}")


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Login, TOTP upgrade, refresh rotation and logout"""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        revocations: RevocationCache,
        outbox: Optional[AuditOutbox] = None,
    ):
        self.db = db
        self.settings = settings
        self.revocations = revocations
        self.audit = SecurityAuditService(db, outbox)

    @classmethod
    def from_container(cls, db: AsyncSession, container: ServiceContainer) -> "AuthService":
        return cls(db, container.settings, container.revocations, container.outbox)

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: Optional[str]) -> bool:
        candidate = password_hash or _DUMMY_HASH
        try:
            matched = bcrypt.checkpw(password.encode("utf-8"), candidate.encode("utf-8"))
        except ValueError:
            return False
        return matched and password_hash is not None

    # --------------------------------------------------------
    # Tokens
    # --------------------------------------------------------

    def _create_token(self, user_id: int, token_type: str, lifetime: timedelta) -> Tuple[str, str, datetime]:
        now = utcnow()
        jti = str(uuid.uuid4())
        expires_at = now + lifetime
        claims = {
            "sub": str(user_id),
            "jti": jti,
            "token_type": token_type,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return jwt.encode(claims, self.settings.jwt_secret_key, algorithm=ALGORITHM), jti, expires_at

    def create_access_token(self, user_id: int) -> Tuple[str, str, datetime]:
        return self._create_token(user_id, TOKEN_ACCESS, self.settings.jwt_access_expiry)

    def create_totp_pending_token(self, user_id: int) -> str:
        token, _, _ = self._create_token(user_id, TOKEN_TOTP_PENDING, self.settings.totp_pending_expiry)
        return token

    def decode_token(self, token: str, expected_type: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, self.settings.jwt_secret_key, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise Unauthorized("Token expired", error="expired_token")
        except JWTError:
            raise Unauthorized("Invalid token", error="invalid_token")
        if payload.get("token_type") != expected_type:
            raise Unauthorized("Invalid token type", error="invalid_token")
        if not payload.get("sub") or not payload.get("jti"):
            raise Unauthorized("Invalid token", error="invalid_token")
        return payload

    async def load_active_user(self, user_id: Any) -> User:
        try:
            uid = int(user_id)
        except (TypeError, ValueError):
            raise Unauthorized("Invalid token", error="invalid_token")
        user = await self.db.get(User, uid)
        if user is None or not user.is_active:
            raise Unauthorized("User not found or inactive")
        return user

    # --------------------------------------------------------
    # Login
    # --------------------------------------------------------

    async def authenticate(self, username: str, password: str, request: Optional[Request] = None) -> User:
        user = (
            await self.db.execute(select(User).where(User.username == username))
        ).scalar_one_or_none()

        valid = self.verify_password(password, user.password_hash if user else None)
        if not valid or not user.is_active:
            await self.audit.log(
                SecurityEvent.AUTH_LOGIN_FAILURE,
                request=request,
                actor_user_id=user.id if user else None,
                actor_username=username,
                success=False,
                failure_reason="invalid_credentials",
                target_type="user",
                target_name=username,
            )
            await self.db.commit()
            raise Unauthorized("Invalid username or password", error="invalid_credentials")

        if self.settings.email_verification_required and user.email_verified_at is None:
            raise Forbidden("Email address has not been verified", error="email_not_verified")
        return user

    async def login(self, username: str, password: str, request: Optional[Request] = None) -> Dict[str, Any]:
        user = await self.authenticate(username, password, request)
        if user.totp_enabled:
            return {
                "totp_required": True,
                "temporary_token": self.create_totp_pending_token(user.id),
            }
        return await self.issue_token_pair(user, request)

    async def pending_user(self, temporary_token: str) -> User:
        payload = self.decode_token(temporary_token, TOKEN_TOTP_PENDING)
        return await self.load_active_user(payload["sub"])

    async def issue_token_pair(
        self, user: User, request: Optional[Request] = None, family_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Mint access + refresh, persist the refresh row and its session."""
        access_token, access_jti, access_exp = self.create_access_token(user.id)
        refresh_token, _, refresh_exp = self._create_token(
            user.id, TOKEN_REFRESH, self.settings.refresh_token_expiry
        )
        info = {
            "ip": client_ip(request),
            "user_agent": request.headers.get("user-agent", "") if request else "",
        }
        row = RefreshToken(
            user_id=user.id,
            token_hash=sha256_hex(refresh_token),
            family_id=family_id or str(uuid.uuid4()),
            expires_at=refresh_exp,
            session_info=info,
        )
        self.db.add(row)
        await self.db.flush()

        self.db.add(UserSession(
            user_id=user.id,
            token=session_token_for_refresh(row.id),
            type=SessionType.JWT,
            ip_address=info["ip"],
            user_agent=info["user_agent"],
            expires_at=refresh_exp,
            jwt_access_jti=access_jti,
            refresh_token_id=row.id,
        ))
        user.last_login_at = utcnow()

        await self.audit.log(
            SecurityEvent.API_TOKEN_ISSUED,
            request=request,
            actor_user_id=user.id,
            actor_username=user.username,
            target_type="user",
            target_id=user.id,
            target_name=user.username,
        )
        await self.db.commit()
        return self._pair_body(user, access_token, refresh_token)

    def _pair_body(self, user: User, access_token: str, refresh_token: str) -> Dict[str, Any]:
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "Bearer",
            "expires_in": self.settings.access_expiry_seconds,
            "refresh_expires_in": self.settings.refresh_expiry_seconds,
            "user": user_payload(user),
        }

    # --------------------------------------------------------
    # Refresh rotation
    # --------------------------------------------------------

    async def rotate_refresh_token(self, presented: str, request: Optional[Request] = None) -> Dict[str, Any]:
        try:
            payload = self.decode_token(presented, TOKEN_REFRESH)
        except Unauthorized:
            raise Unauthorized("Invalid refresh token", error="invalid_token")

        row = (
            await self.db.execute(
                select(RefreshToken).where(RefreshToken.token_hash == sha256_hex(presented))
            )
        ).scalar_one_or_none()
        if row is None or str(row.user_id) != str(payload["sub"]):
            raise Unauthorized("Invalid refresh token", error="invalid_token")

        if row.revoked_at is not None:
            if row.replaced_by_id is not None:
                await self._revoke_family(row, request)
            raise Unauthorized("Invalid refresh token", error="invalid_token")
        if as_utc(row.expires_at) <= utcnow():
            raise Unauthorized("Refresh token expired", error="invalid_token")

        user = await self.load_active_user(row.user_id)

        if not self.settings.rotate_refresh_tokens:
            return await self._refresh_access_only(user, row, presented, request)

        # Compare-and-set: only one concurrent caller can revoke this row
        now = utcnow()
        result = await self.db.execute(
            update(RefreshToken)
            .where(RefreshToken.id == row.id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise Unauthorized("Invalid refresh token", error="invalid_token")

        access_token, access_jti, _ = self.create_access_token(user.id)
        refresh_token, _, refresh_exp = self._create_token(
            user.id, TOKEN_REFRESH, self.settings.refresh_token_expiry
        )
        new_row = RefreshToken(
            user_id=user.id,
            token_hash=sha256_hex(refresh_token),
            family_id=row.family_id,
            expires_at=refresh_exp,
            session_info=row.session_info or {},
        )
        self.db.add(new_row)
        await self.db.flush()
        await self.db.execute(
            update(RefreshToken)
            .where(RefreshToken.id == row.id)
            .values(replaced_by_id=new_row.id)
            .execution_options(synchronize_session=False)
        )

        session = (
            await self.db.execute(select(UserSession).where(UserSession.refresh_token_id == row.id))
        ).scalar_one_or_none()
        if session is None:
            session = UserSession(
                user_id=user.id,
                type=SessionType.JWT,
                ip_address=client_ip(request),
                user_agent=request.headers.get("user-agent", "") if request else "",
            )
            self.db.add(session)
        session.token = session_token_for_refresh(new_row.id)
        session.refresh_token_id = new_row.id
        session.jwt_access_jti = access_jti
        session.expires_at = refresh_exp
        session.last_used = now

        await self.audit.log(
            SecurityEvent.API_TOKEN_REFRESHED,
            request=request,
            actor_user_id=user.id,
            actor_username=user.username,
            target_type="refresh_token",
            target_id=new_row.id,
        )
        await self.db.commit()
        return self._pair_body(user, access_token, refresh_token)

    async def _refresh_access_only(
        self, user: User, row: RefreshToken, presented: str, request: Optional[Request]
    ) -> Dict[str, Any]:
        access_token, access_jti, _ = self.create_access_token(user.id)
        await self.db.execute(
            update(UserSession)
            .where(UserSession.refresh_token_id == row.id)
            .values(jwt_access_jti=access_jti, last_used=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.audit.log(
            SecurityEvent.API_TOKEN_REFRESHED,
            request=request,
            actor_user_id=user.id,
            actor_username=user.username,
            target_type="refresh_token",
            target_id=row.id,
        )
        await self.db.commit()
        return self._pair_body(user, access_token, presented)

    async def _revoke_family(self, row: RefreshToken, request: Optional[Request]) -> None:
        """A rotated token came back: kill every token and session of its login."""
        now = utcnow()
        family_ids = list((
            await self.db.execute(select(RefreshToken.id).where(RefreshToken.family_id == row.family_id))
        ).scalars().all())
        await self.db.execute(
            update(RefreshToken)
            .where(RefreshToken.family_id == row.family_id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        sessions = (
            await self.db.execute(select(UserSession).where(UserSession.refresh_token_id.in_(family_ids)))
        ).scalars().all()
        for session in sessions:
            if session.jwt_access_jti:
                await self.revocations.revoke(
                    self.db, session.jwt_access_jti, now + self.settings.jwt_access_expiry, row.user_id
                )
            await self.db.delete(session)

        logger.warning(f"Refresh token reuse detected for user {row.user_id}, family {row.family_id} revoked")
        await self.audit.log(
            SecurityEvent.API_AUTH_FAILED,
            request=request,
            actor_user_id=row.user_id,
            success=False,
            failure_reason="refresh_token_reuse",
            target_type="refresh_token",
            target_id=row.id,
            metadata={"family_id": row.family_id, "sessions_revoked": len(sessions)},
        )
        await self.db.commit()

    # --------------------------------------------------------
    # Logout
    # --------------------------------------------------------

    async def logout(
        self, current: CurrentUser, refresh_token: Optional[str], request: Optional[Request] = None
    ) -> Dict[str, Any]:
        revoked: List[str] = []
        now = utcnow()

        if current.jti:
            await self.revocations.revoke(
                self.db, current.jti, now + self.settings.jwt_access_expiry, current.id
            )
            revoked.append("access_token")

        refresh_row = None
        if refresh_token:
            refresh_row = (
                await self.db.execute(
                    select(RefreshToken).where(RefreshToken.token_hash == sha256_hex(refresh_token))
                )
            ).scalar_one_or_none()
            if refresh_row is not None and refresh_row.user_id != current.id:
                refresh_row = None
        if refresh_row is None and current.jti:
            session = (
                await self.db.execute(select(UserSession).where(UserSession.jwt_access_jti == current.jti))
            ).scalar_one_or_none()
            if session is not None and session.refresh_token_id:
                refresh_row = await self.db.get(RefreshToken, session.refresh_token_id)

        if refresh_row is not None:
            if refresh_row.revoked_at is None:
                refresh_row.revoked_at = now
            revoked.append("refresh_token")
            await self.db.execute(
                delete(UserSession).where(UserSession.refresh_token_id == refresh_row.id)
            )
        if current.jti:
            await self.db.execute(delete(UserSession).where(UserSession.jwt_access_jti == current.jti))
        if current.session_id:
            await self.db.execute(delete(UserSession).where(UserSession.id == current.session_id))
            revoked.append("session")

        await self.audit.log(
            SecurityEvent.AUTH_LOGOUT,
            request=request,
            actor_user_id=current.id,
            actor_username=current.username,
            target_type="user",
            target_id=current.id,
            target_name=current.username,
        )
        await self.db.commit()
        return {"message": "Logged out", "revoked_tokens": revoked}


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def resolve_bearer(
    token: str, db: AsyncSession, container: ServiceContainer
) -> CurrentUser:
    """Authenticate a bearer credential (JWT or API key)."""
    settings = container.settings
    if token.startswith(settings.api_key_prefix):
        key, user = await APIKeyService(db, settings.api_key_prefix).validate(token)
        current = CurrentUser(
            id=user.id,
            username=user.username,
            email=user.email,
            auth_type="apikey",
            api_key_id=key.id,
            is_admin=await RBACService(db).is_admin(user.id),
        )
    else:
        auth = AuthService.from_container(db, container)
        payload = auth.decode_token(token, TOKEN_ACCESS)
        if await container.revocations.is_revoked(db, payload["jti"]):
            raise Unauthorized("Token has been revoked", error="invalid_token")
        user = await auth.load_active_user(payload["sub"])
        current = CurrentUser(
            id=user.id,
            username=user.username,
            email=user.email,
            auth_type="jwt",
            jti=payload["jti"],
            token_expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            is_admin=await RBACService(db).is_admin(user.id),
        )
    bind_user(current.id, current.auth_type)
    return current


async def resolve_session_cookie(
    request: Request, cookie: str, db: AsyncSession, container: ServiceContainer
) -> CurrentUser:
    session = (
        await db.execute(
            select(UserSession).where(
                UserSession.token == sha256_hex(cookie),
                UserSession.type == SessionType.SESSION,
            )
        )
    ).scalar_one_or_none()
    if session is None or as_utc(session.expires_at) <= utcnow():
        raise Unauthorized("Session expired or invalid", error="invalid_token")

    if container.settings.csrf_enabled and request.method not in SAFE_METHODS:
        presented = request.headers.get(CSRF_HEADER, "")
        if not session.csrf_token or not hmac.compare_digest(presented, session.csrf_token):
            raise Forbidden("CSRF token missing or invalid", error="csrf_failed")

    user = await db.get(User, session.user_id)
    if user is None or not user.is_active:
        raise Unauthorized("User not found or inactive")
    session.last_used = utcnow()
    await db.commit()

    bind_user(user.id, "session")
    return CurrentUser(
        id=user.id,
        username=user.username,
        email=user.email,
        auth_type="session",
        session_id=session.id,
        is_admin=await RBACService(db).is_admin(user.id),
    )


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
    container: ServiceContainer = Depends(get_container),
) -> CurrentUser:
    if credentials is not None and credentials.credentials:
        return await resolve_bearer(credentials.credentials, db, container)
    cookie = request.cookies.get(SESSION_COOKIE)
    if cookie:
        return await resolve_session_cookie(request, cookie, db, container)
    raise Unauthorized("Authentication required")


async def require_interactive_user(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Routes that change a human's own credentials refuse API keys outright."""
    if user.is_api_key:
        raise Forbidden("API keys cannot be used for this endpoint", error="api_key_not_allowed")
    return user


def require_permission(permission: str):
    """Dependency factory: user (and key scope, for API keys) must hold a permission"""
    async def _check(
        user: CurrentUser = Depends(get_current_user),
        db: AsyncSession = Depends(get_db_session),
        container: ServiceContainer = Depends(get_container),
    ) -> CurrentUser:
        if not await RBACService(db).has_permission_by_name(user.id, permission):
            raise Forbidden(f"Missing required permission: {permission}")
        if user.is_api_key:
            keys = APIKeyService(db, container.settings.api_key_prefix)
            if not await keys.has_scope_permission(user.api_key_id, permission):
                raise Forbidden(f"API key scope does not include {permission}", error="insufficient_scope")
        return user
    return _check


async def authorize_stack(
    db: AsyncSession,
    user: CurrentUser,
    server_id: int,
    stack_name: str,
    permission: str,
) -> None:
    if not await RBACService(db).user_has_stack_permission(user.id, server_id, stack_name, permission):
        raise Forbidden(f"Permission '{permission}' required on stack '{stack_name}'")
    if user.is_api_key:
        keys = APIKeyService(db)
        if not await keys.scope_allows(user.api_key_id, permission, server_id, stack_name):
            raise Forbidden("API key scope does not include this action", error="insufficient_scope")


async def authorize_server(db: AsyncSession, user: CurrentUser, server_id: int) -> Server:
    """Resolve a server the caller may see; hidden servers read as missing."""
    server = await db.get(Server, server_id)
    if server is None or not server.is_active:
        raise NotFound("Server not found")
    if not await RBACService(db).can_access_server(user.id, server_id):
        raise NotFound("Server not found")
    if user.is_api_key:
        if not await APIKeyService(db).scope_covers_server(user.api_key_id, server_id):
            raise NotFound("Server not found")
    return server


async def visible_stack_filter(
    db: AsyncSession, user: CurrentUser, server_id: int, permission: str = "stacks.read"
):
    """Predicate over stack names the caller may see with ``permission``."""
    patterns = await RBACService(db).accessible_stack_patterns(user.id, server_id, permission)
    key_patterns: Optional[List[str]] = None
    if user.is_api_key:
        key_patterns = await APIKeyService(db).scope_patterns(user.api_key_id, permission, server_id)

    def allowed(name: str) -> bool:
        if not any(matches_pattern(name, p) for p in patterns):
            return False
        if key_patterns is not None and not any(matches_pattern(name, p) for p in key_patterns):
            return False
        return True

    return allowed, patterns


async def resolve_websocket_user(
    websocket: WebSocket, db: AsyncSession, container: ServiceContainer
) -> CurrentUser:
    """Browsers cannot set headers on a WebSocket, so ?token= is accepted too."""
    token = websocket.query_params.get("token", "")
    header = websocket.headers.get("authorization", "")
    if not token and header.lower().startswith("bearer "):
        token = header[7:].strip()
    if not token:
        raise Unauthorized("Authentication required")
    return await resolve_bearer(token, db, container)
