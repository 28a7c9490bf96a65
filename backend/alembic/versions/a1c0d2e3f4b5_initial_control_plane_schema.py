"""Initial control plane schema

Revision ID: a1c0d2e3f4b5
Revises:
Create Date: 2026-10-19 00:00:00.000000

Tables:
- users, roles, permissions, user_roles, server_role_stack_permissions (identity & RBAC)
- servers, server_registry_credentials, container_image_updates (fleet)
- refresh_tokens, revoked_tokens, user_sessions, used_totp_codes (credentials)
- api_keys, api_key_scopes (programmatic access)
- webhooks, webhook_server_scopes (CI triggers)
- operation_logs, operation_log_messages, security_audit_logs (audit)
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'a1c0d2e3f4b5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

session_type = sa.Enum('SESSION', 'JWT', name='sessiontype')
operation_status = sa.Enum('QUEUED', 'RUNNING', 'COMPLETED', 'FAILED', 'TIMEOUT', name='operationstatus')
event_category = sa.Enum('AUTH', 'USER_MGMT', 'RBAC', 'SERVER', 'API', 'FILE', 'OPERATION', 'WEBHOOK', name='eventcategory')
severity = sa.Enum('LOW', 'MEDIUM', 'HIGH', 'CRITICAL', name='severity')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    ]


def upgrade() -> None:
    # ---- users ----
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('username', sa.String(64), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('email_verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('totp_secret', sa.String(), nullable=True),
        sa.Column('totp_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_username', 'users', ['username'], unique=True)
    op.create_index('ix_users_email', 'users', ['email'])

    # ---- roles / permissions ----
    op.create_table(
        'roles',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(64), nullable=False),
        sa.Column('description', sa.String(), nullable=False, server_default=''),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_roles_name', 'roles', ['name'], unique=True)

    op.create_table(
        'permissions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(64), nullable=False),
        sa.Column('resource', sa.String(32), nullable=False),
        sa.Column('action', sa.String(32), nullable=False),
        sa.Column('description', sa.String(), nullable=False, server_default=''),
        sa.Column('is_api_key_only', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_permissions_name', 'permissions', ['name'], unique=True)

    op.create_table(
        'user_roles',
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('user_id', 'role_id'),
    )

    # ---- servers ----
    op.create_table(
        'servers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(128), nullable=False),
        sa.Column('description', sa.String(), nullable=False, server_default=''),
        sa.Column('host', sa.String(), nullable=False),
        sa.Column('port', sa.Integer(), nullable=False, server_default='8081'),
        sa.Column('use_https', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('skip_ssl_verification', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('access_token', sa.String(), nullable=False, server_default=''),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )
    op.create_index('ix_servers_is_active', 'servers', ['is_active'])

    op.create_table(
        'server_role_stack_permissions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('server_id', sa.Integer(), sa.ForeignKey('servers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('permission_id', sa.Integer(), sa.ForeignKey('permissions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('stack_pattern', sa.String(), nullable=False, server_default='*'),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('server_id', 'role_id', 'permission_id', 'stack_pattern', name='uq_srsp_grant'),
    )
    op.create_index('ix_server_role_stack_permissions_server_id', 'server_role_stack_permissions', ['server_id'])
    op.create_index('ix_server_role_stack_permissions_role_id', 'server_role_stack_permissions', ['role_id'])
    op.create_index('idx_srsp_role_server', 'server_role_stack_permissions', ['role_id', 'server_id'])

    op.create_table(
        'server_registry_credentials',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('server_id', sa.Integer(), sa.ForeignKey('servers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('stack_pattern', sa.String(), nullable=False, server_default='*'),
        sa.Column('registry_url', sa.String(), nullable=False),
        sa.Column('image_pattern', sa.String(), nullable=True),
        sa.Column('username', sa.String(), nullable=False),
        sa.Column('encrypted_password', sa.String(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_server_registry_credentials_server_id', 'server_registry_credentials', ['server_id'])

    op.create_table(
        'container_image_updates',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('server_id', sa.Integer(), sa.ForeignKey('servers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('stack_name', sa.String(), nullable=False),
        sa.Column('container_name', sa.String(), nullable=False),
        sa.Column('current_image_name', sa.String(), nullable=False, server_default=''),
        sa.Column('current_repo_digest', sa.String(), nullable=False, server_default=''),
        sa.Column('latest_repo_digest', sa.String(), nullable=False, server_default=''),
        sa.Column('update_available', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_checked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('check_error', sa.Text(), nullable=False, server_default=''),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('server_id', 'stack_name', 'container_name', name='uq_image_update_container'),
    )
    op.create_index('ix_container_image_updates_update_available', 'container_image_updates', ['update_available'])

    # ---- credentials ----
    op.create_table(
        'refresh_tokens',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('token_hash', sa.String(64), nullable=False),
        sa.Column('family_id', sa.String(36), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('replaced_by_id', sa.Integer(), nullable=True),
        sa.Column('session_info', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_refresh_tokens_user_id', 'refresh_tokens', ['user_id'])
    op.create_index('ix_refresh_tokens_token_hash', 'refresh_tokens', ['token_hash'], unique=True)
    op.create_index('ix_refresh_tokens_family_id', 'refresh_tokens', ['family_id'])

    op.create_table(
        'revoked_tokens',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('jti', sa.String(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True)),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_revoked_tokens_jti', 'revoked_tokens', ['jti'], unique=True)
    op.create_index('ix_revoked_tokens_expires_at', 'revoked_tokens', ['expires_at'])

    op.create_table(
        'user_sessions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('token', sa.String(64), nullable=False),
        sa.Column('type', session_type, nullable=False),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.String(), nullable=True),
        sa.Column('csrf_token', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('last_used', sa.DateTime(timezone=True)),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('jwt_access_jti', sa.String(), nullable=True),
        sa.Column('refresh_token_id', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_user_sessions_user_id', 'user_sessions', ['user_id'])
    op.create_index('ix_user_sessions_token', 'user_sessions', ['token'], unique=True)
    op.create_index('ix_user_sessions_jwt_access_jti', 'user_sessions', ['jwt_access_jti'])
    op.create_index('ix_user_sessions_refresh_token_id', 'user_sessions', ['refresh_token_id'])

    op.create_table(
        'used_totp_codes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('time_step', sa.BigInteger(), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'time_step', name='uq_totp_user_step'),
    )

    # ---- API keys ----
    op.create_table(
        'api_keys',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('key_hash', sa.String(64), nullable=False),
        sa.Column('key_prefix', sa.String(), nullable=False),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key_hash'),
    )
    op.create_index('ix_api_keys_user_id', 'api_keys', ['user_id'])

    op.create_table(
        'api_key_scopes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('api_key_id', sa.Integer(), sa.ForeignKey('api_keys.id', ondelete='CASCADE'), nullable=False),
        sa.Column('permission_id', sa.Integer(), sa.ForeignKey('permissions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('server_id', sa.Integer(), sa.ForeignKey('servers.id', ondelete='CASCADE'), nullable=True),
        sa.Column('stack_pattern', sa.String(), nullable=False, server_default='*'),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_api_key_scopes_api_key_id', 'api_key_scopes', ['api_key_id'])

    # ---- webhooks ----
    op.create_table(
        'webhooks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=False, server_default=''),
        sa.Column('key_hash', sa.String(), nullable=False),
        sa.Column('key_prefix', sa.String(), nullable=False),
        sa.Column('stack_pattern', sa.String(), nullable=False, server_default='*'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_triggered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trigger_count', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_webhooks_user_id', 'webhooks', ['user_id'])

    op.create_table(
        'webhook_server_scopes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('webhook_id', sa.Integer(), sa.ForeignKey('webhooks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('server_id', sa.Integer(), sa.ForeignKey('servers.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('webhook_id', 'server_id', name='uq_webhook_server'),
    )
    op.create_index('ix_webhook_server_scopes_webhook_id', 'webhook_server_scopes', ['webhook_id'])

    # ---- operations ----
    op.create_table(
        'operation_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('server_id', sa.Integer(), sa.ForeignKey('servers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('stack_name', sa.String(), nullable=False),
        sa.Column('operation_id', sa.String(26), nullable=False),
        sa.Column('agent_operation_id', sa.String(), nullable=True),
        sa.Column('command', sa.String(32), nullable=False),
        sa.Column('options', sa.JSON(), nullable=False),
        sa.Column('services', sa.JSON(), nullable=False),
        sa.Column('status', operation_status, nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_message_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=True),
        sa.Column('exit_code', sa.Integer(), nullable=True),
        sa.Column('duration_ms', sa.BigInteger(), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('failure_reason', sa.String(), nullable=True),
        sa.Column('queued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('batch_id', sa.String(26), nullable=True),
        sa.Column('webhook_id', sa.Integer(), sa.ForeignKey('webhooks.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_operation_logs_user_id', 'operation_logs', ['user_id'])
    op.create_index('ix_operation_logs_server_id', 'operation_logs', ['server_id'])
    op.create_index('ix_operation_logs_stack_name', 'operation_logs', ['stack_name'])
    op.create_index('ix_operation_logs_operation_id', 'operation_logs', ['operation_id'], unique=True)
    op.create_index('ix_operation_logs_status', 'operation_logs', ['status'])
    op.create_index('ix_operation_logs_start_time', 'operation_logs', ['start_time'])
    op.create_index('ix_operation_logs_batch_id', 'operation_logs', ['batch_id'])
    op.create_index('idx_oplog_server_stack', 'operation_logs', ['server_id', 'stack_name'])

    op.create_table(
        'operation_log_messages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('operation_log_id', sa.Integer(), sa.ForeignKey('operation_logs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sequence_number', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('message_type', sa.String(16), nullable=False),
        sa.Column('message_data', sa.Text(), nullable=False, server_default=''),
        sa.Column('exit_code', sa.Integer(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('operation_log_id', 'sequence_number', name='uq_oplog_message_seq'),
    )

    # ---- security audit ----
    op.create_table(
        'security_audit_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('event_type', sa.String(64), nullable=False),
        sa.Column('event_category', event_category, nullable=False),
        sa.Column('severity', severity, nullable=False),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        sa.Column('actor_username', sa.String(), nullable=False, server_default=''),
        sa.Column('actor_ip', sa.String(), nullable=False, server_default=''),
        sa.Column('actor_user_agent', sa.String(), nullable=False, server_default=''),
        sa.Column('target_type', sa.String(), nullable=False, server_default=''),
        sa.Column('target_id', sa.Integer(), nullable=True),
        sa.Column('target_name', sa.String(), nullable=False, server_default=''),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('failure_reason', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('server_id', sa.Integer(), nullable=True),
        sa.Column('stack_name', sa.String(), nullable=True),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_security_audit_logs_created_at', 'security_audit_logs', ['created_at'])
    op.create_index('ix_security_audit_logs_event_type', 'security_audit_logs', ['event_type'])
    op.create_index('ix_security_audit_logs_event_category', 'security_audit_logs', ['event_category'])
    op.create_index('ix_security_audit_logs_severity', 'security_audit_logs', ['severity'])
    op.create_index('ix_security_audit_logs_actor_user_id', 'security_audit_logs', ['actor_user_id'])
    op.create_index('ix_security_audit_logs_server_id', 'security_audit_logs', ['server_id'])
    op.create_index('idx_secaudit_category_created', 'security_audit_logs', ['event_category', 'created_at'])


def downgrade() -> None:
    for table in (
        'security_audit_logs', 'operation_log_messages', 'operation_logs',
        'webhook_server_scopes', 'webhooks', 'api_key_scopes', 'api_keys', 'used_totp_codes', 'user_sessions',
        'revoked_tokens', 'refresh_tokens', 'container_image_updates',
        'server_registry_credentials', 'server_role_stack_permissions',
        'servers', 'user_roles', 'permissions', 'roles', 'users',
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for enum in (severity, event_category, operation_status, session_type):
        enum.drop(bind, checkfirst=True)
