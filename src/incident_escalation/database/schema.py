"""
SQLAlchemy table definitions for escalation rules, history, deferred actions
and the rule audit log.

The Alembic migration in migrations/versions creates the same tables;
`create_engine_from_url` + `metadata.create_all` is used for SQLite
development databases and tests.
"""

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.pool import StaticPool


metadata = sa.MetaData()


escalation_rules = sa.Table(
    'escalation_rules',
    metadata,
    sa.Column('rule_id', sa.Uuid(as_uuid=True), primary_key=True),
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
    sa.Index('idx_escalation_rules_is_active', 'is_active'),
    sa.Index('idx_escalation_rules_priority', 'priority'),
)


escalation_actions = sa.Table(
    'escalation_actions',
    metadata,
    sa.Column('action_id', sa.Uuid(as_uuid=True), primary_key=True),
    sa.Column(
        'rule_id', sa.Uuid(as_uuid=True),
        sa.ForeignKey('escalation_rules.rule_id', ondelete='CASCADE'),
        nullable=False
    ),
    sa.Column('position', sa.Integer(), nullable=False),
    sa.Column('action_type', sa.String(50), nullable=False),
    sa.Column('target', sa.String(200), nullable=False),
    sa.Column('channels', sa.JSON(), nullable=False),
    sa.Column('template_id', sa.String(100)),
    sa.Column('parameters', sa.JSON(), nullable=False),
    sa.Column('delay_seconds', sa.Float()),
    sa.UniqueConstraint('rule_id', 'position', name='uq_escalation_actions_rule_position'),
    sa.Index('idx_escalation_actions_rule_id', 'rule_id'),
)


# rule_id is a plain identifier, not a foreign key: history outlives its rule
escalation_history = sa.Table(
    'escalation_history',
    metadata,
    sa.Column('history_id', sa.Uuid(as_uuid=True), primary_key=True),
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
    sa.Index('idx_escalation_history_incident_id', 'incident_id'),
    sa.Index('idx_escalation_history_rule_id', 'rule_id'),
    sa.Index('idx_escalation_history_executed_at', 'executed_at'),
)


notification_history = sa.Table(
    'notification_history',
    metadata,
    sa.Column('notification_id', sa.Uuid(as_uuid=True), primary_key=True),
    sa.Column('incident_id', sa.String(64), nullable=False),
    sa.Column('history_id', sa.Uuid(as_uuid=True), sa.ForeignKey('escalation_history.history_id')),
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
    sa.Index('idx_notification_history_incident_id', 'incident_id'),
    sa.Index('idx_notification_history_status', 'status'),
    sa.Index('idx_notification_history_incident_recipient', 'incident_id', 'recipient_id'),
)


escalation_firings = sa.Table(
    'escalation_firings',
    metadata,
    sa.Column('firing_id', sa.Uuid(as_uuid=True), primary_key=True),
    sa.Column('incident_id', sa.String(64), nullable=False),
    sa.Column('rule_id', sa.Uuid(as_uuid=True), nullable=False),
    sa.Column('state_fingerprint', sa.String(32), nullable=False),
    sa.Column('fired_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint('incident_id', 'rule_id', 'state_fingerprint', name='uq_escalation_firing'),
)


escalation_deferred_actions = sa.Table(
    'escalation_deferred_actions',
    metadata,
    sa.Column('deferred_id', sa.Uuid(as_uuid=True), primary_key=True),
    sa.Column('incident_id', sa.String(64), nullable=False),
    sa.Column('rule_id', sa.Uuid(as_uuid=True)),
    sa.Column('rule_name', sa.String(200), nullable=False),
    sa.Column('action', sa.JSON(), nullable=False),
    sa.Column('execute_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('executed_by', sa.String(100), nullable=False),
    sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('claimed_until', sa.DateTime(timezone=True)),
    sa.Index('idx_escalation_deferred_actions_execute_at', 'execute_at'),
    sa.Index('idx_escalation_deferred_actions_incident_id', 'incident_id'),
)


escalation_audit_log = sa.Table(
    'escalation_audit_log',
    metadata,
    sa.Column('audit_id', sa.Uuid(as_uuid=True), primary_key=True),
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
    sa.Index('idx_escalation_audit_log_record_id', 'record_id'),
    sa.Index('idx_escalation_audit_log_timestamp', 'timestamp'),
)


def create_engine_from_url(database_url: str) -> sa.engine.Engine:
    """
    Create an engine; SQLite gets foreign keys enabled and, for in-memory
    URLs, a single shared connection usable from worker threads.
    """
    if not database_url.startswith("sqlite"):
        return sa.create_engine(database_url, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    engine = sa.create_engine(database_url, **kwargs)

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine
