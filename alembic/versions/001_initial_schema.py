"""Initial schema - sync configuration, credentials, ledger and stock mirror

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'tenant_sync_configs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('aggregation_rule', sa.String(), nullable=False),
        sa.Column('principal_deposit_ids', sa.JSON(), nullable=False),
        sa.Column('shared_deposit_ids', sa.JSON(), nullable=False),
        sa.Column('reconcile_enabled', sa.Boolean(), nullable=False),
        sa.Column('reconcile_interval_minutes', sa.Integer(), nullable=False),
        sa.Column('last_reconcile_at', sa.DateTime(), nullable=True),
        sa.Column('next_reconcile_at', sa.DateTime(), nullable=True),
        sa.Column('webhook_runs', sa.Integer(), nullable=False),
        sa.Column('manual_runs', sa.Integer(), nullable=False),
        sa.Column('scheduled_runs', sa.Integer(), nullable=False),
        sa.Column('failed_runs', sa.Integer(), nullable=False),
        sa.Column('inactive_events', sa.Integer(), nullable=False),
        sa.Column('lost_events', sa.Integer(), nullable=False),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tenant_sync_configs_id', 'tenant_sync_configs', ['id'])
    op.create_index('ix_tenant_sync_configs_tenant_id', 'tenant_sync_configs', ['tenant_id'], unique=True)

    op.create_table(
        'sync_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('config_id', sa.Integer(), nullable=False),
        sa.Column('account_ref', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(['config_id'], ['tenant_sync_configs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('config_id', 'account_ref', name='uq_sync_account_ref'),
    )
    op.create_index('ix_sync_accounts_id', 'sync_accounts', ['id'])
    op.create_index('ix_sync_accounts_config_id', 'sync_accounts', ['config_id'])

    op.create_table(
        'sync_deposits',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('config_id', sa.Integer(), nullable=False),
        sa.Column('deposit_id', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('deposit_type', sa.String(), nullable=False),
        sa.Column('account_ref', sa.String(), nullable=True),
        sa.ForeignKeyConstraint(['config_id'], ['tenant_sync_configs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('config_id', 'deposit_id', name='uq_sync_deposit_id'),
    )
    op.create_index('ix_sync_deposits_id', 'sync_deposits', ['id'])
    op.create_index('ix_sync_deposits_config_id', 'sync_deposits', ['config_id'])

    op.create_table(
        'account_credentials',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('account_ref', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('company_id', sa.String(), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('client_id', sa.String(), nullable=True),
        sa.Column('client_secret', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'account_ref', name='uq_credential_tenant_account'),
    )
    op.create_index('ix_account_credentials_id', 'account_credentials', ['id'])
    op.create_index('ix_account_credentials_tenant_id', 'account_credentials', ['tenant_id'])
    op.create_index('ix_account_credentials_company_id', 'account_credentials', ['company_id'])

    op.create_table(
        'processed_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('fingerprint', sa.String(), nullable=False),
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('product_ref', sa.String(), nullable=False),
        sa.Column('deposit_id', sa.String(), nullable=True),
        sa.Column('account_ref', sa.String(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=True),
        sa.Column('kind', sa.String(), nullable=True),
        sa.Column('trigger', sa.String(), nullable=False),
        sa.Column('origin', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=True),
        sa.Column('reason', sa.String(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('balances', sa.JSON(none_as_null=True), nullable=True),
        sa.Column('total', sa.Integer(), nullable=True),
        sa.Column('shared_writes', sa.JSON(none_as_null=True), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('claimed_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'fingerprint', name='uq_processed_event_fingerprint'),
    )
    op.create_index('ix_processed_events_id', 'processed_events', ['id'])
    op.create_index('ix_processed_events_tenant_id', 'processed_events', ['tenant_id'])
    op.create_index('ix_processed_events_product_ref', 'processed_events', ['product_ref'])
    op.create_index('ix_processed_events_trigger', 'processed_events', ['trigger'])
    op.create_index('ix_processed_events_status', 'processed_events', ['status'])
    op.create_index('ix_processed_events_created_at', 'processed_events', ['created_at'])

    op.create_table(
        'stock_mirror',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('product_ref', sa.String(), nullable=False),
        sa.Column('total', sa.Integer(), nullable=False),
        sa.Column('per_account', sa.JSON(), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'product_ref', name='uq_stock_mirror_product'),
    )
    op.create_index('ix_stock_mirror_id', 'stock_mirror', ['id'])
    op.create_index('ix_stock_mirror_tenant_id', 'stock_mirror', ['tenant_id'])
    op.create_index('ix_stock_mirror_product_ref', 'stock_mirror', ['product_ref'])
    op.create_index('ix_stock_mirror_last_synced_at', 'stock_mirror', ['last_synced_at'])


def downgrade() -> None:
    op.drop_table('stock_mirror')
    op.drop_table('processed_events')
    op.drop_table('account_credentials')
    op.drop_table('sync_deposits')
    op.drop_table('sync_accounts')
    op.drop_table('tenant_sync_configs')
