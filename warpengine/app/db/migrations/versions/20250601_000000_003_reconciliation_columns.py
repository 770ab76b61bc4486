############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# 003_reconciliation_columns.py: Confirmation flag and billing ledger
#
############################################################

"""Add runpod_confirmed_terminal and billed_seconds to warps

Revision ID: 003
Revises: 002
Create Date: 2025-06-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '003'
down_revision: Union[str, None] = '002'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('warps', sa.Column('runpod_confirmed_terminal', sa.Boolean(), nullable=False, server_default=sa.false()))
    op.add_column('warps', sa.Column('billed_seconds', sa.Integer(), nullable=False, server_default='0'))
    op.create_index('ix_warps_status_confirmed', 'warps', ['job_status', 'runpod_confirmed_terminal'])


def downgrade() -> None:
    op.drop_index('ix_warps_status_confirmed', table_name='warps')
    op.drop_column('warps', 'billed_seconds')
    op.drop_column('warps', 'runpod_confirmed_terminal')
