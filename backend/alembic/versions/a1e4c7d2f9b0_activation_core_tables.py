"""Activation core tables (purchases, activations, vault, nodes, audit)

Revision ID: a1e4c7d2f9b0
Revises:
Create Date: 2026-03-02T09:14:27.511804
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = 'a1e4c7d2f9b0'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OPEN_ACTIVATION = "status NOT IN ('completed', 'cancelled')"


def upgrade() -> None:
    # --- purchases ---
    op.create_table(
        'purchases',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('stripe_session_id', sa.String(), nullable=False),
        sa.Column('item_type', sa.Enum('AUTOMATION', 'BUNDLE', name='itemtype'), nullable=False),
        sa.Column('item_id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=True, server_default='usd'),
        sa.Column('status', sa.Enum('PENDING', 'PAID', 'COMPLETED', 'FAILED', name='purchasestatus'), nullable=False),
        sa.Column('download_count', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('last_downloaded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_session_id'),
    )
    op.create_index('idx_purchase_email', 'purchases', ['email'])
    op.create_index('ix_purchases_user_id', 'purchases', ['user_id'])

    # --- activation_requests ---
    op.create_table(
        'activation_requests',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('item_type', postgresql.ENUM('AUTOMATION', 'BUNDLE', name='itemtype', create_type=False), nullable=False),
        sa.Column('automation_id', sa.String(), nullable=True),
        sa.Column('bundle_id', sa.String(), nullable=True),
        sa.Column('item_key', sa.String(), nullable=False),
        sa.Column('purchase_id', sa.String(), sa.ForeignKey('purchases.id'), nullable=True),
        sa.Column('status', sa.String(40), nullable=False, server_default='received'),
        sa.Column('customer_visible_status', sa.String(40), nullable=False, server_default='received'),
        sa.Column('last_path_status', sa.String(40), nullable=False, server_default='received'),
        sa.Column('status_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes_customer', sa.Text(), nullable=True),
        sa.Column('activation_eta', sa.DateTime(timezone=True), nullable=True),
        sa.Column('credentials_count', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('credentials_submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('credentials_first_viewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('(automation_id IS NULL) <> (bundle_id IS NULL)', name='ck_activation_single_item'),
    )
    op.create_index('ix_activation_requests_owner_id', 'activation_requests', ['owner_id'])
    op.create_index('idx_activation_status', 'activation_requests', ['status'])
    op.create_index(
        'uq_activation_open_owner_item', 'activation_requests', ['owner_id', 'item_key'],
        unique=True,
        postgresql_where=sa.text(OPEN_ACTIVATION),
        sqlite_where=sa.text(OPEN_ACTIVATION),
    )

    # --- activation_credentials ---
    op.create_table(
        'activation_credentials',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('request_id', sa.String(), sa.ForeignKey('activation_requests.id'), nullable=False),
        sa.Column('credential_type', sa.String(100), nullable=False),
        sa.Column('method', sa.Enum('DELEGATED_AUTH_LINK', 'INVITED_ACCOUNT', 'KEY_REFERENCE', 'OTHER', name='credentialmethod'), nullable=False),
        sa.Column('status', sa.Enum('PENDING', 'ACTIVE', 'REVOKED', 'SUPERSEDED', name='credentialstatus'), nullable=False),
        sa.Column('encrypted_data', sa.Text(), nullable=True),
        sa.Column('encryption_iv', sa.String(), nullable=True),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('superseded_by', sa.String(), nullable=True),
        sa.Column('superseded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_by', sa.String(), nullable=True),
        sa.Column('revocation_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_credential_request_type', 'activation_credentials', ['request_id', 'credential_type'])

    # --- compute_nodes ---
    op.create_table(
        'compute_nodes',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('provider_node_id', sa.String(), nullable=True),
        sa.Column('status', sa.Enum('PROVISIONING', 'RUNNING', 'DEGRADED', name='nodestatus'), nullable=False),
        sa.Column('label', sa.String(), nullable=True),
        sa.Column('hostname', sa.String(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('region', sa.String(), nullable=True),
        sa.Column('plan', sa.String(), nullable=True),
        sa.Column('agents_deployed', sa.Boolean(), nullable=True, server_default='false'),
        sa.Column('agents_deployed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('encrypted_credentials', sa.Text(), nullable=True),
        sa.Column('credentials_iv', sa.String(), nullable=True),
        sa.Column('credentials_viewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reboot_armed_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_reboot_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('scale_requested_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_metrics', sa.JSON(), nullable=True),
        sa.Column('last_metrics_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('owner_id'),
    )
    op.create_index('ix_compute_nodes_provider_node_id', 'compute_nodes', ['provider_node_id'])

    # --- audit_logs ---
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('function_name', sa.String(100), nullable=False),
        sa.Column('level', sa.Enum('INFO', 'WARN', 'ERROR', name='loglevel'), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True, server_default='{}'),
        sa.Column('owner_id', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_audit_created', 'audit_logs', ['created_at'])
    op.create_index('idx_audit_function', 'audit_logs', ['function_name'])

    # --- admin_notifications ---
    op.create_table(
        'admin_notifications',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('owner_id', sa.String(), nullable=True),
        sa.Column('node_id', sa.String(), sa.ForeignKey('compute_nodes.id'), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True, server_default='{}'),
        sa.Column('is_read', sa.Boolean(), nullable=True, server_default='false'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )


def downgrade() -> None:
    op.drop_table('admin_notifications')
    op.drop_index('idx_audit_function', table_name='audit_logs')
    op.drop_index('idx_audit_created', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('ix_compute_nodes_provider_node_id', table_name='compute_nodes')
    op.drop_table('compute_nodes')
    op.drop_index('idx_credential_request_type', table_name='activation_credentials')
    op.drop_table('activation_credentials')
    op.drop_index('uq_activation_open_owner_item', table_name='activation_requests')
    op.drop_index('idx_activation_status', table_name='activation_requests')
    op.drop_index('ix_activation_requests_owner_id', table_name='activation_requests')
    op.drop_table('activation_requests')
    op.drop_index('ix_purchases_user_id', table_name='purchases')
    op.drop_index('idx_purchase_email', table_name='purchases')
    op.drop_table('purchases')

    for enum_name in ('loglevel', 'nodestatus', 'credentialstatus', 'credentialmethod', 'purchasestatus', 'itemtype'):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
