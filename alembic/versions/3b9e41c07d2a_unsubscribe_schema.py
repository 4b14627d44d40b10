"""unsubscribe schema

Revision ID: 3b9e41c07d2a
Revises:
Create Date: 2026-10-18 09:12:40.218113

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3b9e41c07d2a'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Emails table
    op.create_table(
        'emails',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('gmail_message_id', sa.String(255), nullable=False),
        sa.Column('subject', sa.String(500), nullable=True),
        sa.Column('sender', sa.String(255), nullable=True),
        sa.Column('sender_email', sa.String(255), nullable=True),
        sa.Column('body_text', sa.Text(), nullable=True),
        sa.Column('body_html', sa.Text(), nullable=True),
        sa.Column('unsubscribe_link', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_emails_id'), 'emails', ['id'], unique=False)
    op.create_index(op.f('ix_emails_gmail_message_id'), 'emails', ['gmail_message_id'], unique=False)

    # Unsubscribe attempts table
    op.create_table(
        'unsubscribe_attempts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('method', sa.String(50), nullable=True),
        sa.Column('unsubscribe_url', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempted_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['email_id'], ['emails.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_unsubscribe_attempts_id'), 'unsubscribe_attempts', ['id'], unique=False)
    op.create_index(op.f('ix_unsubscribe_attempts_email_id'), 'unsubscribe_attempts', ['email_id'], unique=False)

    # Unsubscribe jobs table
    op.create_table(
        'unsubscribe_jobs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('run_after', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['email_id'], ['emails.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_unsubscribe_jobs_id'), 'unsubscribe_jobs', ['id'], unique=False)
    op.create_index(op.f('ix_unsubscribe_jobs_email_id'), 'unsubscribe_jobs', ['email_id'], unique=False)
    op.create_index(op.f('ix_unsubscribe_jobs_status'), 'unsubscribe_jobs', ['status'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_unsubscribe_jobs_status'), table_name='unsubscribe_jobs')
    op.drop_index(op.f('ix_unsubscribe_jobs_email_id'), table_name='unsubscribe_jobs')
    op.drop_index(op.f('ix_unsubscribe_jobs_id'), table_name='unsubscribe_jobs')
    op.drop_table('unsubscribe_jobs')
    op.drop_index(op.f('ix_unsubscribe_attempts_email_id'), table_name='unsubscribe_attempts')
    op.drop_index(op.f('ix_unsubscribe_attempts_id'), table_name='unsubscribe_attempts')
    op.drop_table('unsubscribe_attempts')
    op.drop_index(op.f('ix_emails_gmail_message_id'), table_name='emails')
    op.drop_index(op.f('ix_emails_id'), table_name='emails')
    op.drop_table('emails')
