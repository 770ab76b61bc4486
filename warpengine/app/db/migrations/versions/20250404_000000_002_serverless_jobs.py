############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# 002_serverless_jobs.py: Serverless job columns on warps
#
############################################################

"""Add serverless job columns to warps

Revision ID: 002
Revises: 001
Create Date: 2025-04-04 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table('warps') as batch_op:
        batch_op.add_column(sa.Column('job_id', sa.String(128), nullable=True))
        batch_op.add_column(sa.Column('job_status', sa.String(20), nullable=True))
        batch_op.add_column(sa.Column('job_requested_at', sa.DateTime(timezone=True), nullable=True))
        batch_op.add_column(sa.Column('job_started_at', sa.DateTime(timezone=True), nullable=True))
        batch_op.add_column(sa.Column('job_ended_at', sa.DateTime(timezone=True), nullable=True))
        batch_op.add_column(sa.Column('worker_id', sa.String(128), nullable=True))
        batch_op.alter_column(
            'pod_status',
            existing_type=sa.String(20),
            nullable=True,
            server_default=None,
        )
        batch_op.create_unique_constraint('uq_warps_job_id', ['job_id'])
        batch_op.create_index('ix_warps_owner_status', ['created_by_id', 'job_status'])


def downgrade() -> None:
    with op.batch_alter_table('warps') as batch_op:
        batch_op.drop_index('ix_warps_owner_status')
        batch_op.drop_constraint('uq_warps_job_id', type_='unique')
        batch_op.alter_column(
            'pod_status',
            existing_type=sa.String(20),
            nullable=False,
            server_default='PENDING',
        )
        batch_op.drop_column('worker_id')
        batch_op.drop_column('job_ended_at')
        batch_op.drop_column('job_started_at')
        batch_op.drop_column('job_requested_at')
        batch_op.drop_column('job_status')
        batch_op.drop_column('job_id')
