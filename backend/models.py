# models.py — Database models for the Berth control plane
# - Integer primary keys (ids appear in URLs: /servers/1/stacks/web)
# - Users, roles and the closed permission vocabulary
# - Per-(role, server, stack pattern) grants
# - Credentials: refresh tokens, revoked JTIs, sessions, API keys, TOTP replay guard
# - Servers and their registry credentials, image-update records
# - Operation logs with ordered messages, security audit trail
# - Webhooks that trigger operations from CI

import enum
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer, BigInteger,
    Enum as SQLEnum, ForeignKey, Text, Index, Table, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================
# ENUMS
# ============================================================

class SessionType(str, enum.Enum):
    SESSION = "session"
    JWT = "jwt"


class OperationStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class MessageType(str, enum.Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


class EventCategory(str, enum.Enum):
    AUTH = "auth"
    USER_MGMT = "user_mgmt"
    RBAC = "rbac"
    SERVER = "server"
    API = "api"
    FILE = "file"
    OPERATION = "operation"
    WEBHOOK = "webhook"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================
# USERS & ROLES
# ============================================================

user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(64), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    email_verified_at = Column(DateTime(timezone=True), nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    totp_secret = Column(String, nullable=True)  # encrypted base32 seed
    totp_enabled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    roles = relationship("Role", secondary=user_roles, back_populates="users", lazy="selectin")


class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), unique=True, nullable=False, index=True)
    description = Column(String, nullable=False, default="")
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    users = relationship("User", secondary=user_roles, back_populates="roles")


class Permission(Base):
    __tablename__ = "permissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), unique=True, nullable=False, index=True)  # e.g. "stacks.read"
    resource = Column(String(32), nullable=False)
    action = Column(String(32), nullable=False)
    description = Column(String, nullable=False, default="")
    is_api_key_only = Column(Boolean, default=False, nullable=False)


class ServerRoleStackPermission(Base):
    __tablename__ = "server_role_stack_permissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    server_id = Column(Integer, ForeignKey("servers.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    permission_id = Column(Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False)
    stack_pattern = Column(String, nullable=False, default="*")
    created_at = Column(DateTime(timezone=True), default=utcnow)

    permission = relationship("Permission", lazy="joined")

    __table_args__ = (
        UniqueConstraint("server_id", "role_id", "permission_id", "stack_pattern", name="uq_srsp_grant"),
        Index("idx_srsp_role_server", "role_id", "server_id"),
    )


# ============================================================
# SERVERS
# ============================================================

class Server(Base):
    __tablename__ = "servers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), unique=True, nullable=False)
    description = Column(String, nullable=False, default="")
    host = Column(String, nullable=False)
    port = Column(Integer, nullable=False, default=8081)
    use_https = Column(Boolean, default=True, nullable=False)
    skip_ssl_verification = Column(Boolean, default=False, nullable=False)
    access_token = Column(String, nullable=False, default="")  # encrypted agent bearer
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ServerRegistryCredential(Base):
    __tablename__ = "server_registry_credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    server_id = Column(Integer, ForeignKey("servers.id", ondelete="CASCADE"), nullable=False, index=True)
    stack_pattern = Column(String, nullable=False, default="*")
    registry_url = Column(String, nullable=False)
    image_pattern = Column(String, nullable=True)
    username = Column(String, nullable=False)
    encrypted_password = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ContainerImageUpdate(Base):
    __tablename__ = "container_image_updates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    server_id = Column(Integer, ForeignKey("servers.id", ondelete="CASCADE"), nullable=False)
    stack_name = Column(String, nullable=False)
    container_name = Column(String, nullable=False)
    current_image_name = Column(String, nullable=False, default="")
    current_repo_digest = Column(String, nullable=False, default="")
    latest_repo_digest = Column(String, nullable=False, default="")
    update_available = Column(Boolean, default=False, nullable=False, index=True)
    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    check_error = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("server_id", "stack_name", "container_name", name="uq_image_update_container"),
    )


# ============================================================
# CREDENTIALS
# ============================================================

class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    family_id = Column(String(36), nullable=False, index=True)  # shared by every rotation of one login
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    replaced_by_id = Column(Integer, nullable=True)
    session_info = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    jti = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(Integer, nullable=True)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)


class UserSession(Base):
    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token = Column(String(64), unique=True, nullable=False, index=True)
    type = Column(SQLEnum(SessionType), nullable=False, default=SessionType.JWT)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    csrf_token = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    last_used = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    jwt_access_jti = Column(String, nullable=True, index=True)
    refresh_token_id = Column(Integer, nullable=True, index=True)  # weak link, no FK


class UsedTOTPCode(Base):
    __tablename__ = "used_totp_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    time_step = Column(BigInteger, nullable=False)
    used_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "time_step", name="uq_totp_user_step"),
    )


class APIKey(Base):
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    key_hash = Column(String(64), nullable=False, unique=True)
    key_prefix = Column(String, nullable=False)  # "berth_" + first 8 chars, for display and audit
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    scopes = relationship(
        "APIKeyScope", back_populates="api_key", cascade="all, delete-orphan", lazy="selectin",
    )


class APIKeyScope(Base):
    __tablename__ = "api_key_scopes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    api_key_id = Column(Integer, ForeignKey("api_keys.id", ondelete="CASCADE"), nullable=False, index=True)
    permission_id = Column(Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False)
    server_id = Column(Integer, ForeignKey("servers.id", ondelete="CASCADE"), nullable=True)  # null = every server
    stack_pattern = Column(String, nullable=False, default="*")
    created_at = Column(DateTime(timezone=True), default=utcnow)

    api_key = relationship("APIKey", back_populates="scopes")
    permission = relationship("Permission", lazy="joined")


# ============================================================
# WEBHOOKS
# ============================================================

class Webhook(Base):
    __tablename__ = "webhooks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=False, default="")
    key_hash = Column(String, nullable=False)  # bcrypt of the "wh_" secret
    key_prefix = Column(String, nullable=False)
    stack_pattern = Column(String, nullable=False, default="*")
    expires_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_triggered_at = Column(DateTime(timezone=True), nullable=True)
    trigger_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    servers = relationship(
        "WebhookServerScope", back_populates="webhook", cascade="all, delete-orphan", lazy="selectin",
    )


class WebhookServerScope(Base):
    __tablename__ = "webhook_server_scopes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    webhook_id = Column(Integer, ForeignKey("webhooks.id", ondelete="CASCADE"), nullable=False, index=True)
    server_id = Column(Integer, ForeignKey("servers.id", ondelete="CASCADE"), nullable=False)

    webhook = relationship("Webhook", back_populates="servers")

    __table_args__ = (
        UniqueConstraint("webhook_id", "server_id", name="uq_webhook_server"),
    )


# ============================================================
# OPERATIONS
# ============================================================

class OperationLog(Base):
    __tablename__ = "operation_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    server_id = Column(Integer, ForeignKey("servers.id", ondelete="CASCADE"), nullable=False, index=True)
    stack_name = Column(String, nullable=False, index=True)
    operation_id = Column(String(26), unique=True, nullable=False, index=True)  # ULID
    agent_operation_id = Column(String, nullable=True)
    command = Column(String(32), nullable=False)
    options = Column(JSON, nullable=False, default=list)
    services = Column(JSON, nullable=False, default=list)
    status = Column(SQLEnum(OperationStatus), nullable=False, default=OperationStatus.RUNNING, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    success = Column(Boolean, nullable=True)
    exit_code = Column(Integer, nullable=True)
    duration_ms = Column(BigInteger, nullable=True)
    summary = Column(Text, nullable=True)
    failure_reason = Column(String, nullable=True)
    queued_at = Column(DateTime(timezone=True), nullable=True)
    batch_id = Column(String(26), nullable=True, index=True)
    webhook_id = Column(Integer, ForeignKey("webhooks.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    messages = relationship(
        "OperationLogMessage",
        back_populates="operation_log",
        cascade="all, delete-orphan",
        order_by="OperationLogMessage.sequence_number",
    )

    __table_args__ = (
        Index("idx_oplog_server_stack", "server_id", "stack_name"),
    )


class OperationLogMessage(Base):
    __tablename__ = "operation_log_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    operation_log_id = Column(Integer, ForeignKey("operation_logs.id", ondelete="CASCADE"), nullable=False)
    sequence_number = Column(Integer, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    message_type = Column(String(16), nullable=False)
    message_data = Column(Text, nullable=False, default="")
    exit_code = Column(Integer, nullable=True)
    success = Column(Boolean, nullable=True)

    operation_log = relationship("OperationLog", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("operation_log_id", "sequence_number", name="uq_oplog_message_seq"),
    )


# ============================================================
# SECURITY AUDIT
# ============================================================

class SecurityAuditLog(Base):
    __tablename__ = "security_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    event_type = Column(String(64), nullable=False, index=True)
    event_category = Column(SQLEnum(EventCategory), nullable=False, index=True)
    severity = Column(SQLEnum(Severity), nullable=False, index=True)
    actor_user_id = Column(Integer, nullable=True, index=True)
    actor_username = Column(String, nullable=False, default="")
    actor_ip = Column(String, nullable=False, default="")
    actor_user_agent = Column(String, nullable=False, default="")
    target_type = Column(String, nullable=False, default="")
    target_id = Column(Integer, nullable=True)
    target_name = Column(String, nullable=False, default="")
    success = Column(Boolean, nullable=False, default=True)
    failure_reason = Column(String, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=False, default=dict)
    server_id = Column(Integer, nullable=True, index=True)
    stack_name = Column(String, nullable=True)
    session_id = Column(String, nullable=True)

    __table_args__ = (
        Index("idx_secaudit_category_created", "event_category", "created_at"),
    )
