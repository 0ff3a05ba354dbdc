"""Deferred actions and rule audit log

Revision ID: 002
Revises: 001
Create Date: 2026-10-20 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create escalation_deferred_actions table; claimed_until is the worker lease
    op.create_table(
        'escalation_deferred_actions',
        sa.Column('deferred_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('incident_id', sa.String(64), nullable=False),
        sa.Column('rule_id', sa.Uuid(as_uuid=True)),
        sa.Column('rule_name', sa.String(200), nullable=False),
        sa.Column('action', sa.JSON(), nullable=False),
        sa.Column('execute_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('executed_by', sa.String(100), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('claimed_until', sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint('deferred_id')
    )

    op.create_index('idx_escalation_deferred_actions_execute_at', 'escalation_deferred_actions', ['execute_at'])
    op.create_index('idx_escalation_deferred_actions_incident_id', 'escalation_deferred_actions', ['incident_id'])

    # Create escalation_audit_log table
    op.create_table(
        'escalation_audit_log',
        sa.Column('audit_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('table_name', sa.String(100), nullable=False),
        sa.Column('operation', sa.String(10), nullable=False),
        sa.Column('user_id', sa.String(100), nullable=False),
        sa.Column('record_id', sa.String(64)),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('old_values', sa.JSON()),
        sa.Column('new_values', sa.JSON()),
        sa.CheckConstraint(
            "operation IN ('INSERT', 'UPDATE', 'DELETE')",
            name='escalation_audit_log_operation_check'
        ),
        sa.PrimaryKeyConstraint('audit_id')
    )

    op.create_index('idx_escalation_audit_log_record_id', 'escalation_audit_log', ['record_id'])
    op.create_index('idx_escalation_audit_log_timestamp', 'escalation_audit_log', ['timestamp'])


def downgrade() -> None:
    op.drop_table('escalation_audit_log')
    op.drop_table('escalation_deferred_actions')
