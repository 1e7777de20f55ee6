"""Initial schema - devices table

Revision ID: 0001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'devices',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('location', sa.String(length=100), nullable=False),
        sa.Column('model', sa.String(length=100), nullable=False),
        sa.Column('network_address', sa.String(length=45), nullable=True),
        sa.Column('status', sa.String(length=10), nullable=False, server_default='offline'),
        sa.Column('last_heartbeat', sa.DateTime(timezone=True), nullable=True),
        sa.Column('heartbeat_interval', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('sensor_data', sa.JSON(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    # The sweeper scans online devices; export filters on created_at
    op.create_index('ix_devices_status', 'devices', ['status'], unique=False)
    op.create_index('ix_devices_created_at', 'devices', ['created_at'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_devices_created_at', table_name='devices')
    op.drop_index('ix_devices_status', table_name='devices')
    op.drop_table('devices')
