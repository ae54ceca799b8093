"""create accounts table

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = '20261018_01'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'accounts',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('phone_number', sa.String(length=16), nullable=False),
        sa.Column('pin_hash', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=254), nullable=True),
        sa.Column('pending_email', sa.String(length=254), nullable=True),
        sa.Column('sms_verified', sa.Boolean(), nullable=False),
        sa.Column('email_verified', sa.Boolean(), nullable=False),
        sa.Column('fully_verified', sa.Boolean(), nullable=False),
        sa.Column('verification_attempts', sa.Integer(), nullable=False),
        sa.Column('email_verification_attempts', sa.Integer(), nullable=False),
        sa.Column('last_verification_sent', sa.DateTime(), nullable=True),
        sa.Column('last_email_verification_sent', sa.DateTime(), nullable=True),
        sa.Column('email_change_verification_step', sa.String(length=16), nullable=False),
        sa.Column('kyc_status', sa.String(length=32), nullable=False),
        sa.Column('kyc_submitted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "email_change_verification_step IN ('none', 'sms_pending', 'email_pending')",
            name='ck_accounts_email_change_step',
        ),
        sa.CheckConstraint(
            "kyc_status IN ('not_submitted', 'pending', 'approved', 'rejected')",
            name='ck_accounts_kyc_status',
        ),
    )
    op.create_index('ix_accounts_phone_number', 'accounts', ['phone_number'], unique=True)
    op.create_index('ix_accounts_email', 'accounts', ['email'], unique=True)


def downgrade() -> None:
    op.drop_index('ix_accounts_email', table_name='accounts')
    op.drop_index('ix_accounts_phone_number', table_name='accounts')
    op.drop_table('accounts')
