"""authme_binding_schema

Revision ID: 5f2a9c1d7e40
Revises:
Create Date: 2026-10-17 10:12:41.118305

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '5f2a9c1d7e40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


JSON = postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    """Upgrade schema - accounts, RBAC and the AuthMe binding ledger."""

    # ===== RBAC =====
    op.create_table(
        'permissions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('key', sa.String(120), nullable=False),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_permissions_key', 'permissions', ['key'], unique=True)

    op.create_table(
        'roles',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('key', sa.String(80), nullable=False),
        sa.Column('name', sa.String(80), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_system', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_roles_key', 'roles', ['key'], unique=True)

    op.create_table(
        'permission_labels',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('key', sa.String(80), nullable=False),
        sa.Column('name', sa.String(80), nullable=False),
        sa.Column('color', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_permission_labels_key', 'permission_labels', ['key'], unique=True)

    op.create_table(
        'role_permissions',
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('permission_id', sa.Integer(), sa.ForeignKey('permissions.id', ondelete='CASCADE'), primary_key=True),
    )
    op.create_table(
        'permission_label_permissions',
        sa.Column('label_id', sa.Integer(), sa.ForeignKey('permission_labels.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('permission_id', sa.Integer(), sa.ForeignKey('permissions.id', ondelete='CASCADE'), primary_key=True),
    )

    # ===== Users =====
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(255), nullable=False),  # stored lowercased
        sa.Column('display_name', sa.String(80), nullable=True),
        sa.Column('hashed_password', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_login_ip', sa.String(45), nullable=True),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'user_roles',
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_table(
        'user_permission_labels',
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('label_id', sa.Integer(), sa.ForeignKey('permission_labels.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # ===== AuthMe bindings =====
    op.create_table(
        'user_authme_bindings',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('authme_username', sa.String(64), nullable=False),
        sa.Column('authme_username_lower', sa.String(64), nullable=False),
        sa.Column('authme_realname', sa.String(64), nullable=True),
        sa.Column('authme_uuid', sa.String(36), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('metadata', JSON, nullable=True),
        sa.Column('bound_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('bound_by_user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('bound_by_ip', sa.String(45), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('user_id', 'authme_username_lower', name='uq_authme_binding_user_username'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_user_authme_bindings_user_id', 'user_authme_bindings', ['user_id'])
    op.create_index('ix_user_authme_bindings_authme_username_lower', 'user_authme_bindings', ['authme_username_lower'])

    # Append-only; no FK on binding_id / user_id / operator_id
    op.create_table(
        'authme_binding_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('binding_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('operator_id', sa.Integer(), nullable=True),
        sa.Column('authme_username', sa.String(64), nullable=False),
        sa.Column('authme_username_lower', sa.String(64), nullable=False),
        sa.Column('authme_realname', sa.String(64), nullable=True),
        sa.Column('authme_uuid', sa.String(36), nullable=True),
        sa.Column('action', sa.String(20), nullable=False),  # BIND, UPDATE, MANUAL_ENTRY, PRIMARY_SET, ...
        sa.Column('reason', sa.String(120), nullable=True),
        sa.Column('payload', JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_authme_binding_history_binding_id', 'authme_binding_history', ['binding_id'])
    op.create_index('ix_authme_binding_history_user_id', 'authme_binding_history', ['user_id'])
    op.create_index('ix_authme_binding_history_authme_username_lower', 'authme_binding_history', ['authme_username_lower'])
    op.create_index('ix_authme_binding_history_created_at', 'authme_binding_history', ['created_at'])
    op.create_index('ix_authme_binding_history_user_created', 'authme_binding_history', ['user_id', 'created_at'])

    # ===== Minecraft nickname profiles =====
    op.create_table(
        'user_minecraft_profiles',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('authme_binding_id', sa.Integer(),
                  sa.ForeignKey('user_authme_bindings.id', ondelete='SET NULL'), nullable=True),
        sa.Column('authme_uuid', sa.String(36), nullable=True),
        sa.Column('nickname', sa.String(64), nullable=True),
        sa.Column('is_primary', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('source', sa.String(20), nullable=False, server_default='MANUAL'),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('verification_note', sa.String(255), nullable=True),
        sa.Column('metadata', JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_user_minecraft_profiles_user_id', 'user_minecraft_profiles', ['user_id'])
    op.create_index('ix_user_minecraft_profiles_authme_binding_id', 'user_minecraft_profiles', ['authme_binding_id'])

    # ===== Profiles (one per user; holds the primary pointers) =====
    op.create_table(
        'user_profiles',
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('primary_authme_binding_id', sa.Integer(),
                  sa.ForeignKey('user_authme_bindings.id', ondelete='SET NULL'), nullable=True),
        sa.Column('primary_minecraft_profile_id', sa.Integer(),
                  sa.ForeignKey('user_minecraft_profiles.id', ondelete='SET NULL'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_user_profiles_primary_authme_binding_id', 'user_profiles', ['primary_authme_binding_id'])

    # ===== Lifecycle events + audit log =====
    op.create_table(
        'user_lifecycle_events',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('event_type', sa.String(40), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('source', sa.String(50), nullable=True),
        sa.Column('metadata', JSON, nullable=True),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
    )
    op.create_index('ix_user_lifecycle_events_user_id', 'user_lifecycle_events', ['user_id'])

    op.create_table(
        'auth_audit_log',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('target_type', sa.String(40), nullable=True),
        sa.Column('target_id', sa.String(64), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('metadata', JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_auth_audit_log_event_type', 'auth_audit_log', ['event_type'])
    op.create_index('ix_auth_audit_log_created_at', 'auth_audit_log', ['created_at'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('auth_audit_log')
    op.drop_table('user_lifecycle_events')
    op.drop_table('user_profiles')
    op.drop_table('user_minecraft_profiles')
    op.drop_table('authme_binding_history')
    op.drop_table('user_authme_bindings')
    op.drop_table('user_permission_labels')
    op.drop_table('user_roles')
    op.drop_table('users')
    op.drop_table('permission_label_permissions')
    op.drop_table('role_permissions')
    op.drop_table('permission_labels')
    op.drop_table('roles')
    op.drop_table('permissions')
