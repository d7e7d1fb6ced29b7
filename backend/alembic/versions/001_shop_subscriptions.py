"""Shop subscriptions table.

Revision ID: 001
Revises:
Create Date: 2024-11-01 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'shop_subscriptions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('shop', sa.String(255), nullable=False),
        sa.Column('plan_name', sa.String(50), nullable=False, server_default='free'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('subscription_id', sa.String(255), nullable=True),
        sa.Column('usage_limit', sa.Integer(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('unique_products_modified', sa.JSON(), nullable=False),
        sa.Column('total_price_changes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('quota_version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_shop_subscriptions_shop', 'shop_subscriptions', ['shop'], unique=True)
    op.create_index('ix_shop_subscriptions_period_end', 'shop_subscriptions', ['current_period_end'])


def downgrade() -> None:
    op.drop_index('ix_shop_subscriptions_period_end', table_name='shop_subscriptions')
    op.drop_index('ix_shop_subscriptions_shop', table_name='shop_subscriptions')
    op.drop_table('shop_subscriptions')
