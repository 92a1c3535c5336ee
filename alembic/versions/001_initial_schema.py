"""Initial schema: orders, escrows and their transition log.

Revision ID: 001_initial
Revises:
Create Date: 2025-01-06

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Orders table (amounts are decimal strings in base units)
    op.create_table(
        'orders',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('maker', sa.String(128), nullable=False),
        sa.Column('receiver', sa.String(128), nullable=False),
        sa.Column('maker_asset', sa.String(128), nullable=False),
        sa.Column('maker_amount', sa.String(80), nullable=False),
        sa.Column('taker_asset', sa.String(128), nullable=False),
        sa.Column('taker_amount', sa.String(80), nullable=False),
        sa.Column('src_safety_deposit', sa.String(80), nullable=True),
        sa.Column('dst_safety_deposit', sa.String(80), nullable=True),
        sa.Column('src_chain_id', sa.String(32), nullable=False),
        sa.Column('dst_chain_id', sa.String(32), nullable=False),
        sa.Column('secret_hash', sa.String(66), nullable=False),
        sa.Column('time_locks', sa.Text(), nullable=False),
        sa.Column('revealed_secret', sa.String(66), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('requires_attention', sa.Boolean(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_orders_maker', 'orders', ['maker'])
    op.create_index('ix_orders_status', 'orders', ['status'])

    # Escrows table, one row per order side
    op.create_table(
        'escrows',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.String(64), nullable=False),
        sa.Column('side', sa.String(3), nullable=False),
        sa.Column('chain_id', sa.String(32), nullable=False),
        sa.Column('salt', sa.String(66), nullable=False),
        sa.Column('asset', sa.String(128), nullable=False),
        sa.Column('amount', sa.String(80), nullable=False),
        sa.Column('safety_deposit', sa.String(80), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('address', sa.String(128), nullable=True),
        sa.Column('tx_hash', sa.String(128), nullable=True),
        sa.Column('block_number', sa.BigInteger(), nullable=True),
        sa.Column('hashlock', sa.String(66), nullable=True),
        sa.Column('deployed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('withdraw_tx_hash', sa.String(128), nullable=True),
        sa.Column('withdraw_block_number', sa.BigInteger(), nullable=True),
        sa.Column('withdrawn_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_tx_hash', sa.String(128), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('safety_deposit_recipient', sa.String(128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_escrows_order_side', 'escrows', ['order_id', 'side'], unique=True)

    # Append-only status audit trail
    op.create_table(
        'order_transitions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.String(64), nullable=False),
        sa.Column('from_status', sa.String(32), nullable=True),
        sa.Column('to_status', sa.String(32), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_order_transitions_order_id', 'order_transitions', ['order_id'])


def downgrade() -> None:
    op.drop_table('order_transitions')
    op.drop_table('escrows')
    op.drop_table('orders')
