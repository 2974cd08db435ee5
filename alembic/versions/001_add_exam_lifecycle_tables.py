"""Add exam lifecycle tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EXAM_STATUSES = ('DRAFT', 'PENDING_APPROVAL', 'APPROVED', 'REJECTED', 'PUBLISHED', 'CANCELLED')
EXAM_ACTIONS = (
    'SUBMIT_FOR_APPROVAL', 'RESUBMIT', 'APPROVE', 'APPROVE_AND_PUBLISH', 'REJECT', 'PUBLISH',
    'ENABLE_MANUAL_CONTROL', 'DISABLE_MANUAL_CONTROL', 'MAKE_LIVE', 'MARK_COMPLETED', 'DELETE',
)


def upgrade() -> None:
    exam_status = postgresql.ENUM(*EXAM_STATUSES, name='exam_status', create_type=False)
    exam_action = postgresql.ENUM(*EXAM_ACTIONS, name='exam_action', create_type=False)
    exam_status.create(op.get_bind(), checkfirst=True)
    exam_action.create(op.get_bind(), checkfirst=True)

    # Create exams table
    op.create_table(
        'exams',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('school_id', sa.Integer(), nullable=False),
        sa.Column('class_id', sa.Integer(), nullable=True),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('status', exam_status, nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('manual_control', sa.Boolean(), nullable=False),
        sa.Column('is_live', sa.Boolean(), nullable=False),
        sa.Column('is_completed', sa.Boolean(), nullable=False),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('students_attempted', sa.Integer(), nullable=False),
        sa.Column('approver_id', sa.String(length=64), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('published_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_exams_school_id'), 'exams', ['school_id'], unique=False)
    op.create_index(op.f('ix_exams_class_id'), 'exams', ['class_id'], unique=False)
    op.create_index(op.f('ix_exams_status'), 'exams', ['status'], unique=False)

    # Create exam_transition_logs table
    op.create_table(
        'exam_transition_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('exam_id', sa.Integer(), nullable=False),
        sa.Column('school_id', sa.Integer(), nullable=True),
        sa.Column('action', exam_action, nullable=False),
        sa.Column('from_status', exam_status, nullable=False),
        sa.Column('to_status', exam_status, nullable=True),
        sa.Column('performed_by', sa.String(length=64), nullable=False),
        sa.Column('request_id', sa.String(length=64), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('exam_id', 'request_id', name='uq_exam_transition_request')
    )
    op.create_index(op.f('ix_exam_transition_logs_exam_id'), 'exam_transition_logs', ['exam_id'], unique=False)
    op.create_index(op.f('ix_exam_transition_logs_school_id'), 'exam_transition_logs', ['school_id'], unique=False)
    op.create_index(op.f('ix_exam_transition_logs_action'), 'exam_transition_logs', ['action'], unique=False)
    op.create_index(op.f('ix_exam_transition_logs_timestamp'), 'exam_transition_logs', ['timestamp'], unique=False)


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_index(op.f('ix_exam_transition_logs_timestamp'), table_name='exam_transition_logs')
    op.drop_index(op.f('ix_exam_transition_logs_action'), table_name='exam_transition_logs')
    op.drop_index(op.f('ix_exam_transition_logs_school_id'), table_name='exam_transition_logs')
    op.drop_index(op.f('ix_exam_transition_logs_exam_id'), table_name='exam_transition_logs')
    op.drop_table('exam_transition_logs')
    op.drop_index(op.f('ix_exams_status'), table_name='exams')
    op.drop_index(op.f('ix_exams_class_id'), table_name='exams')
    op.drop_index(op.f('ix_exams_school_id'), table_name='exams')
    op.drop_table('exams')
    postgresql.ENUM(name='exam_action').drop(op.get_bind(), checkfirst=True)
    postgresql.ENUM(name='exam_status').drop(op.get_bind(), checkfirst=True)
