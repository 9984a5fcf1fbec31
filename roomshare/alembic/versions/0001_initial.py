"""rooms and attachments

Revision ID: 0001
Revises: 
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

revision = '0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('rooms',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('code', sa.String(32), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('version', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_rooms_code', 'rooms', ['code'], unique=True)
    op.create_index('ix_rooms_expires_at', 'rooms', ['expires_at'])
    op.create_table('attachments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('room_code', sa.String(32), sa.ForeignKey('rooms.code', ondelete='CASCADE'), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('storage_key', sa.String(1024), nullable=False, unique=True),
        sa.Column('size_bytes', sa.BigInteger, nullable=False),
        sa.Column('mime_type', sa.String(255), nullable=False),
        sa.Column('uploaded_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_attachments_room_code', 'attachments', ['room_code'])
    op.create_index('ix_attachments_uploaded_at', 'attachments', ['uploaded_at'])


def downgrade():
    op.drop_table('attachments')
    op.drop_table('rooms')
