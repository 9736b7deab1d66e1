"""创建uploads表

Revision ID: 20260301_090000
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = '20260301_090000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """创建uploads表及索引"""
    op.create_table(
        'uploads',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('slug', sa.String(length=32), nullable=False),
        sa.Column('filename', sa.String(length=255), nullable=False),
        sa.Column('filesize', sa.BigInteger(), nullable=False),
        sa.Column('mime_type', sa.String(length=255), nullable=False),
        sa.Column('domain', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('width', sa.Integer(), nullable=True),
        sa.Column('height', sa.Integer(), nullable=True),
        sa.Column('upload_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_uploads_slug', 'uploads', ['slug'], unique=True)
    op.create_index('ix_uploads_expires_at', 'uploads', ['expires_at'], unique=False)


def downgrade() -> None:
    """删除uploads表"""
    op.drop_index('ix_uploads_expires_at', table_name='uploads')
    op.drop_index('ix_uploads_slug', table_name='uploads')
    op.drop_table('uploads')
