"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Users (owned by the auth layer)
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )

    # Products table
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('last_checked_at', sa.DateTime(), nullable=True),
        sa.Column('last_check_status', sa.String(length=16), nullable=True),
        sa.Column('last_check_error', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('url')
    )
    op.create_index('ix_products_last_checked_at', 'products', ['last_checked_at'])

    # Variants table
    op.create_table(
        'variants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('variant_key', sa.String(length=255), nullable=False),
        sa.Column('current_price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=8), nullable=True),
        sa.Column('current_stock_status', sa.String(length=16), nullable=False, server_default='unknown'),
        sa.Column('last_modified_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.UniqueConstraint('product_id', 'variant_key', name='uq_variant_product_key'),
        sa.CheckConstraint(
            "current_stock_status IN ('in_stock', 'out_of_stock', 'unknown')",
            name='ck_variant_stock_status'
        )
    )
    op.create_index('ix_variants_product_id', 'variants', ['product_id'])

    # Price / stock history tables
    op.create_table(
        'variant_price_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('observed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['variant_id'], ['variants.id'], )
    )
    op.create_index(
        'ix_variant_price_history_variant_observed',
        'variant_price_history',
        ['variant_id', 'observed_at']
    )

    op.create_table(
        'variant_stock_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('observed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['variant_id'], ['variants.id'], )
    )
    op.create_index(
        'ix_variant_stock_history_variant_observed',
        'variant_stock_history',
        ['variant_id', 'observed_at']
    )

    # Tracked items
    op.create_table(
        'tracked_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=True),
        sa.Column('notifications_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['variant_id'], ['variants.id'], ),
        sa.UniqueConstraint(
            'user_id', 'product_id', 'variant_id', name='uq_tracked_item_user_product_variant'
        )
    )
    op.create_index('ix_tracked_items_user_id', 'tracked_items', ['user_id'])
    op.create_index('ix_tracked_items_product_id', 'tracked_items', ['product_id'])
    op.create_index(
        'uq_tracked_item_product_level',
        'tracked_items',
        ['user_id', 'product_id'],
        unique=True,
        postgresql_where=sa.text('variant_id IS NULL')
    )

    # Notification settings
    op.create_table(
        'user_notification_settings',
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('email_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('price_drop_threshold_percent', sa.Numeric(precision=6, scale=2), nullable=True),
        sa.Column('price_increase_threshold_percent', sa.Numeric(precision=6, scale=2), nullable=True),
        sa.Column('notify_price_drop', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notify_price_increase', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notify_restock', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notify_out_of_stock', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('user_id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], )
    )

    # Notifications
    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('change_key', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('delivery_status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('delivery_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['variant_id'], ['variants.id'], ),
        sa.UniqueConstraint(
            'user_id', 'variant_id', 'type', 'change_key', name='uq_notification_change'
        ),
        sa.CheckConstraint(
            "type IN ('PRICE_DROP', 'PRICE_INCREASE', 'RESTOCK', 'OUT_OF_STOCK')",
            name='ck_notification_type'
        ),
        sa.CheckConstraint(
            "delivery_status IN ('PENDING', 'SENT', 'FAILED')",
            name='ck_notification_delivery_status'
        )
    )
    op.create_index(
        'ix_notifications_delivery',
        'notifications',
        ['delivery_status', 'next_attempt_at', 'created_at']
    )
    op.create_index(
        'ix_notifications_user_read',
        'notifications',
        ['user_id', 'read_at', 'created_at']
    )

    # Check runs
    op.create_table(
        'check_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=False),
        sa.Column('trigger', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('skip_reason', sa.String(length=64), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('products_selected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('products_checked', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('products_skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('products_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('changes_detected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notifications_created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('errors', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_check_runs_run_id', 'check_runs', ['run_id'])

    # Scheduler locks
    op.create_table(
        'scheduler_locks',
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('holder', sa.String(length=64), nullable=False),
        sa.Column('token', sa.String(length=64), nullable=False),
        sa.Column('acquired_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('name')
    )


def downgrade() -> None:
    op.drop_table('scheduler_locks')
    op.drop_index('ix_check_runs_run_id', table_name='check_runs')
    op.drop_table('check_runs')
    op.drop_index('ix_notifications_user_read', table_name='notifications')
    op.drop_index('ix_notifications_delivery', table_name='notifications')
    op.drop_table('notifications')
    op.drop_table('user_notification_settings')
    op.drop_index('uq_tracked_item_product_level', table_name='tracked_items')
    op.drop_index('ix_tracked_items_product_id', table_name='tracked_items')
    op.drop_index('ix_tracked_items_user_id', table_name='tracked_items')
    op.drop_table('tracked_items')
    op.drop_index('ix_variant_stock_history_variant_observed', table_name='variant_stock_history')
    op.drop_table('variant_stock_history')
    op.drop_index('ix_variant_price_history_variant_observed', table_name='variant_price_history')
    op.drop_table('variant_price_history')
    op.drop_index('ix_variants_product_id', table_name='variants')
    op.drop_table('variants')
    op.drop_index('ix_products_last_checked_at', table_name='products')
    op.drop_table('products')
    op.drop_table('users')
