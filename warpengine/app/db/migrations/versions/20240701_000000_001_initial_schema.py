############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# 001_initial_schema.py: Users and pod-model warps
#
############################################################

"""Initial schema: users and warps (persistent pod model)

Revision ID: 001
Revises:
Create Date: 2024-07-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('stripe_customer_id', sa.String(64), nullable=True),
        sa.Column('time_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_super_user', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_users_stripe_customer_id', 'users', ['stripe_customer_id'])

    op.create_table(
        'warps',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('created_by_id', sa.String(64), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('pod_id', sa.String(128), nullable=True, unique=True),
        sa.Column('pod_status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('pod_ready_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pod_ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pod_meta', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('warps')
    op.drop_index('ix_users_stripe_customer_id', table_name='users')
    op.drop_table('users')
