"""Escalation rules, actions, history, notification history and firings

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create escalation_rules table
    op.create_table(
        'escalation_rules',
        sa.Column('rule_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.String(1000), nullable=False, server_default=''),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('trigger_severities', sa.JSON(), nullable=False),
        sa.Column('trigger_statuses', sa.JSON(), nullable=False),
        sa.Column('trigger_departments', sa.JSON(), nullable=False),
        sa.Column('trigger_locations', sa.JSON(), nullable=False),
        sa.Column('trigger_after_seconds', sa.Float()),
        sa.Column('repeatable', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('rearm_window_seconds', sa.Float()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('rule_id')
    )

    op.create_index('idx_escalation_rules_is_active', 'escalation_rules', ['is_active'])
    op.create_index('idx_escalation_rules_priority', 'escalation_rules', ['priority'])

    # Create escalation_actions table; actions are deleted with their rule
    op.create_table(
        'escalation_actions',
        sa.Column('action_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('rule_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('action_type', sa.String(50), nullable=False),
        sa.Column('target', sa.String(200), nullable=False),
        sa.Column('channels', sa.JSON(), nullable=False),
        sa.Column('template_id', sa.String(100)),
        sa.Column('parameters', sa.JSON(), nullable=False),
        sa.Column('delay_seconds', sa.Float()),
        sa.ForeignKeyConstraint(['rule_id'], ['escalation_rules.rule_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('action_id'),
        sa.UniqueConstraint('rule_id', 'position', name='uq_escalation_actions_rule_position')
    )

    op.create_index('idx_escalation_actions_rule_id', 'escalation_actions', ['rule_id'])

    # Create escalation_history table (no foreign key to escalation_rules)
    op.create_table(
        'escalation_history',
        sa.Column('history_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('incident_id', sa.String(64), nullable=False),
        sa.Column('rule_id', sa.Uuid(as_uuid=True)),
        sa.Column('rule_name', sa.String(200), nullable=False),
        sa.Column('action_id', sa.Uuid(as_uuid=True)),
        sa.Column('action_type', sa.String(50), nullable=False),
        sa.Column('action_target', sa.String(200), nullable=False),
        sa.Column('action_details', sa.String(2000)),
        sa.Column('is_successful', sa.Boolean(), nullable=False),
        sa.Column('error_message', sa.String(2000)),
        sa.Column('executed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('executed_by', sa.String(100), nullable=False),
        sa.PrimaryKeyConstraint('history_id')
    )

    op.create_index('idx_escalation_history_incident_id', 'escalation_history', ['incident_id'])
    op.create_index('idx_escalation_history_rule_id', 'escalation_history', ['rule_id'])
    op.create_index('idx_escalation_history_executed_at', 'escalation_history', ['executed_at'])

    # Create notification_history table
    op.create_table(
        'notification_history',
        sa.Column('notification_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('incident_id', sa.String(64), nullable=False),
        sa.Column('history_id', sa.Uuid(as_uuid=True)),
        sa.Column('recipient_id', sa.String(200), nullable=False),
        sa.Column('recipient_type', sa.String(50), nullable=False),
        sa.Column('channel', sa.String(20), nullable=False),
        sa.Column('template_id', sa.String(100), nullable=False),
        sa.Column('priority', sa.String(20), nullable=False),
        sa.Column('subject', sa.String(500), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('error_message', sa.String(2000)),
        sa.Column('provider_message_id', sa.String(200)),
        sa.Column('metadata_json', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'delivered', 'failed')",
            name='notification_history_status_check'
        ),
        sa.ForeignKeyConstraint(['history_id'], ['escalation_history.history_id'], ),
        sa.PrimaryKeyConstraint('notification_id')
    )

    op.create_index('idx_notification_history_incident_id', 'notification_history', ['incident_id'])
    op.create_index('idx_notification_history_status', 'notification_history', ['status'])
    op.create_index(
        'idx_notification_history_incident_recipient', 'notification_history', ['incident_id', 'recipient_id']
    )

    # Create escalation_firings table; the unique key is the firing guard
    op.create_table(
        'escalation_firings',
        sa.Column('firing_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('incident_id', sa.String(64), nullable=False),
        sa.Column('rule_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('state_fingerprint', sa.String(32), nullable=False),
        sa.Column('fired_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('firing_id'),
        sa.UniqueConstraint('incident_id', 'rule_id', 'state_fingerprint', name='uq_escalation_firing')
    )


def downgrade() -> None:
    op.drop_table('escalation_firings')
    op.drop_table('notification_history')
    op.drop_table('escalation_history')
    op.drop_table('escalation_actions')
    op.drop_table('escalation_rules')
