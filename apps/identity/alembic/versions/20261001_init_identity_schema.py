"""accounts and otp_challenges tables

Revision ID: 20261001_init_identity
Revises:
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision = '20261001_init_identity'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    tables = inspect(bind).get_table_names()
    if 'accounts' not in tables:
        op.create_table(
            'accounts',
            sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
            sa.Column('phone', sa.String(length=32), nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('activated_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_accounts_phone', 'accounts', ['phone'], unique=True)
    if 'otp_challenges' not in tables:
        op.create_table(
            'otp_challenges',
            sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
            sa.Column('phone', sa.String(length=32), nullable=False),
            sa.Column('purpose', sa.String(length=64), nullable=False),
            sa.Column('reference_id', sa.String(length=64), nullable=False),
            sa.Column('secret_digest', sa.String(length=128), nullable=False),
            sa.Column('issued_at', sa.DateTime(), nullable=False),
            sa.Column('expires_at', sa.DateTime(), nullable=False),
            sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('max_attempts', sa.Integer(), nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
            sa.Column('locked_until', sa.DateTime(), nullable=True),
            sa.Column('channel', sa.String(length=32), nullable=False, server_default='sms'),
            sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
            sa.UniqueConstraint('phone', 'purpose', name='uq_otp_phone_purpose'),
        )
        op.create_index('ix_otp_expires_at', 'otp_challenges', ['expires_at'])


def downgrade() -> None:
    op.drop_index('ix_otp_expires_at', table_name='otp_challenges')
    op.drop_table('otp_challenges')
    op.drop_index('ix_accounts_phone', table_name='accounts')
    op.drop_table('accounts')
