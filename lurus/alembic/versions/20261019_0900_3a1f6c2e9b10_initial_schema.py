"""initial_schema

Revision ID: 3a1f6c2e9b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3a1f6c2e9b10'
down_revision = None
branch_labels = None
depends_on = None

TS = sa.TIMESTAMP(timezone=True)


def _id() -> sa.Column:
    return sa.Column('id', sa.BigInteger().with_variant(sa.Integer(), 'sqlite'), primary_key=True, autoincrement=True)


def upgrade() -> None:
    op.create_table(
        'tenants',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('external_org_id', sa.Text(), nullable=True, unique=True),
        sa.Column('slug', sa.Text(), nullable=False, unique=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('status', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('plan_type', sa.Text(), nullable=False, server_default='free'),
        sa.Column('max_users', sa.BigInteger(), nullable=False, server_default='100'),
        sa.Column('max_quota', sa.BigInteger(), nullable=False, server_default='1000000'),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('updated_at', TS, nullable=False),
        sa.Column('deleted_at', TS, nullable=True),
    )
    op.create_index('idx_tenants_status', 'tenants', ['status'])

    op.create_table(
        'users',
        _id(),
        sa.Column('tenant_id', sa.Text(), nullable=False),
        sa.Column('username', sa.Text(), nullable=False),
        sa.Column('password_hash', sa.Text(), nullable=True),
        sa.Column('display_name', sa.Text(), nullable=False, server_default=''),
        sa.Column('email', sa.Text(), nullable=False, server_default=''),
        sa.Column('phone', sa.Text(), nullable=False, server_default=''),
        sa.Column('phone_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('role', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('group', sa.Text(), nullable=False, server_default='default'),
        sa.Column('base_group', sa.Text(), nullable=False, server_default=''),
        sa.Column('fallback_group', sa.Text(), nullable=False, server_default=''),
        sa.Column('quota', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('used_quota', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('request_count', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('daily_quota', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('daily_used', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_daily_reset', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('aff_code', sa.Text(), nullable=False, server_default=''),
        sa.Column('inviter_id', sa.BigInteger(), nullable=True),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('deleted_at', TS, nullable=True),
        sa.UniqueConstraint('tenant_id', 'username', name='uq_users_tenant_username'),
    )
    op.create_index(
        'uq_users_tenant_phone',
        'users',
        ['tenant_id', 'phone'],
        unique=True,
        postgresql_where=sa.text("phone <> ''"),
        sqlite_where=sa.text("phone <> ''"),
    )
    op.create_index('idx_users_tenant_email', 'users', ['tenant_id', 'email'])
    op.create_index('idx_users_daily_reset', 'users', ['daily_quota', 'last_daily_reset'])

    op.create_table(
        'user_identity_mappings',
        _id(),
        sa.Column('tenant_id', sa.Text(), nullable=False),
        sa.Column('external_user_id', sa.Text(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('provider', sa.Text(), nullable=False, server_default='zitadel'),
        sa.Column('display_name', sa.Text(), nullable=False, server_default=''),
        sa.Column('email', sa.Text(), nullable=False, server_default=''),
        sa.Column('preferred_username', sa.Text(), nullable=False, server_default=''),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('last_sync_at', TS, nullable=False),
        sa.UniqueConstraint('tenant_id', 'external_user_id', name='uq_identity_tenant_subject'),
    )
    op.create_index('idx_identity_user', 'user_identity_mappings', ['user_id'])

    op.create_table(
        'subscriptions',
        _id(),
        sa.Column('tenant_id', sa.Text(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('plan_code', sa.Text(), nullable=False),
        sa.Column('plan_name', sa.Text(), nullable=False, server_default=''),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('daily_quota', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_quota', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('base_group', sa.Text(), nullable=False, server_default=''),
        sa.Column('fallback_group', sa.Text(), nullable=False, server_default=''),
        sa.Column('started_at', TS, nullable=False),
        sa.Column('expires_at', TS, nullable=False),
        sa.Column('payment_method', sa.Text(), nullable=False, server_default=''),
        sa.Column('payment_id', sa.Text(), nullable=True, unique=True),
        sa.Column('paid_at', TS, nullable=True),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.Text(), nullable=False, server_default='CNY'),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('updated_at', TS, nullable=False),
    )
    op.create_index('idx_subscriptions_user_status', 'subscriptions', ['tenant_id', 'user_id', 'status'])
    op.create_index('idx_subscriptions_status_expires', 'subscriptions', ['status', 'expires_at'])
    op.create_index('idx_subscriptions_status_created', 'subscriptions', ['status', 'created_at'])

    op.create_table(
        'internal_api_keys',
        _id(),
        sa.Column('tenant_id', sa.Text(), nullable=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('key_hash', sa.Text(), nullable=False, unique=True),
        sa.Column('key_prefix', sa.Text(), nullable=False),
        sa.Column('scopes', sa.JSON(), nullable=False),
        sa.Column('created_by', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('last_used_at', TS, nullable=True),
        sa.Column('expires_at', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
    )

    op.create_table(
        'invitation_codes',
        _id(),
        sa.Column('code', sa.Text(), nullable=False, unique=True),
        sa.Column('created_by', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('used_by', sa.BigInteger(), nullable=True),
        sa.Column('used_at', TS, nullable=True),
        sa.Column('expires_at', TS, nullable=True),
        sa.Column('created_at', TS, nullable=False),
    )
    op.create_index('idx_invitation_codes_used_by', 'invitation_codes', ['used_by'])

    op.create_table(
        'relay_tokens',
        _id(),
        sa.Column('tenant_id', sa.Text(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('key_hash', sa.Text(), nullable=False, unique=True),
        sa.Column('key_prefix', sa.Text(), nullable=False),
        sa.Column('status', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('unlimited_quota', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('remain_quota', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('used_quota', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('accessed_at', TS, nullable=True),
        sa.Column('expired_at', sa.BigInteger(), nullable=False, server_default='-1'),
        sa.UniqueConstraint('tenant_id', 'user_id', 'name', name='uq_relay_tokens_user_name'),
    )
    op.create_index('idx_relay_tokens_user', 'relay_tokens', ['tenant_id', 'user_id'])

    op.create_table(
        'quota_logs',
        _id(),
        sa.Column('tenant_id', sa.Text(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('type', sa.Text(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False, server_default=''),
        sa.Column('quota_delta', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', TS, nullable=False),
    )
    op.create_index('idx_quota_logs_user', 'quota_logs', ['tenant_id', 'user_id', 'created_at'])

    op.create_table(
        'tenant_configs',
        _id(),
        sa.Column('tenant_id', sa.Text(), nullable=False),
        sa.Column('key', sa.Text(), nullable=False),
        sa.Column('value', sa.Text(), nullable=False, server_default=''),
        sa.Column('type', sa.Text(), nullable=False, server_default='string'),
        sa.Column('is_system', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_encrypted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('updated_at', TS, nullable=False),
        sa.UniqueConstraint('tenant_id', 'key', name='uq_tenant_configs_key'),
    )

    op.create_table(
        'options',
        sa.Column('key', sa.Text(), primary_key=True),
        sa.Column('value', sa.Text(), nullable=False, server_default=''),
        sa.Column('updated_at', TS, nullable=False),
    )

    op.create_table(
        'webhook_dedup_events',
        _id(),
        sa.Column('provider', sa.Text(), nullable=False),
        sa.Column('dedup_key', sa.Text(), nullable=False),
        sa.Column('first_seen_at', TS, nullable=False),
        sa.Column('last_seen_at', TS, nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='processing'),
        sa.Column('request_hash', sa.Text(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.UniqueConstraint('provider', 'dedup_key', name='uq_webhook_dedup_events'),
    )
    op.create_index('idx_webhook_dedup_status', 'webhook_dedup_events', ['status'])


def downgrade() -> None:
    for table in (
        'webhook_dedup_events',
        'options',
        'tenant_configs',
        'quota_logs',
        'relay_tokens',
        'invitation_codes',
        'internal_api_keys',
        'subscriptions',
        'user_identity_mappings',
        'users',
        'tenants',
    ):
        op.drop_table(table)
