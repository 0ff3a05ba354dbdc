"""
SQL repositories for escalation rules, their audit log, history, firings and
deferred actions.

SQLAlchemy Core on a synchronous engine; every call runs in a worker thread
through asyncio.to_thread. Database errors surface as PersistenceError.
"""

import asyncio
import logging
import threading
import weakref
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, TypeVar
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..models.errors import PersistenceError
from ..models.history import (
    DeferredAction, EscalationHistory, NotificationHistory, NotificationPriority, NotificationStatus
)
from ..models.rules import EscalationAction, EscalationActionType, EscalationRule, NotificationChannel
from ..services.action_scheduler import DeferredActionStore
from ..services.audit import AuditEntry, AuditOperation
from ..services.firing_guard import FiringGuard
from ..services.history_recorder import HistoryRepository
from ..services.rule_store import RuleRepository
from .schema import (
    escalation_actions, escalation_audit_log, escalation_deferred_actions, escalation_firings, escalation_history,
    escalation_rules, notification_history
)


T = TypeVar("T")

_engine_locks: "weakref.WeakKeyDictionary[sa.engine.Engine, threading.Lock]" = weakref.WeakKeyDictionary()
_engine_locks_guard = threading.Lock()


def _engine_lock(engine: sa.engine.Engine) -> threading.Lock:
    # One lock per engine: an in-memory SQLite engine shares a single connection
    with _engine_locks_guard:
        lock = _engine_locks.get(engine)
        if lock is None:
            lock = threading.Lock()
            _engine_locks[engine] = lock
        return lock


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _seconds(value) -> Optional[float]:
    return value.total_seconds() if value is not None else None


class SqlRepository:
    """Shared thread offloading and error translation."""

    def __init__(self, engine: sa.engine.Engine):
        self.engine = engine
        self.logger = logging.getLogger(__name__)
        self._lock = _engine_lock(engine)

    def _locked(self, func: Callable[[], T]) -> T:
        with self._lock:
            return func()

    async def _run(self, func: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(self._locked, func)
        except SQLAlchemyError as e:
            self.logger.error(f"Database operation failed: {str(e)}")
            raise PersistenceError(f"Database operation failed: {str(e)}") from e


class SqlRuleRepository(SqlRepository, RuleRepository):
    """Rules and their owned actions in escalation_rules / escalation_actions."""

    async def list_rules(self) -> List[EscalationRule]:
        return await self._run(self._list_rules)

    async def get_rule(self, rule_id: UUID) -> Optional[EscalationRule]:
        return await self._run(lambda: self._get_rule(rule_id))

    async def save_rule(self, rule: EscalationRule, audit_entry: Optional[AuditEntry] = None) -> None:
        await self._run(lambda: self._save_rule(rule, audit_entry))

    async def delete_rule(self, rule_id: UUID, audit_entry: Optional[AuditEntry] = None) -> bool:
        return await self._run(lambda: self._delete_rule(rule_id, audit_entry))

    async def list_audit_entries(self, record_id: Optional[str] = None) -> List[AuditEntry]:
        return await self._run(lambda: self._list_audit_entries(record_id))

    def _list_rules(self) -> List[EscalationRule]:
        with self.engine.connect() as conn:
            rule_rows = conn.execute(sa.select(escalation_rules)).mappings().all()
            action_rows = conn.execute(
                sa.select(escalation_actions).order_by(escalation_actions.c.rule_id, escalation_actions.c.position)
            ).mappings().all()

        actions_by_rule: Dict[UUID, List[EscalationAction]] = defaultdict(list)
        for row in action_rows:
            actions_by_rule[row["rule_id"]].append(_action_from_row(row))
        return [_rule_from_row(row, actions_by_rule[row["rule_id"]]) for row in rule_rows]

    def _get_rule(self, rule_id: UUID) -> Optional[EscalationRule]:
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(escalation_rules).where(escalation_rules.c.rule_id == rule_id)
            ).mappings().first()
            if row is None:
                return None
            action_rows = conn.execute(
                sa.select(escalation_actions)
                .where(escalation_actions.c.rule_id == rule_id)
                .order_by(escalation_actions.c.position)
            ).mappings().all()
        return _rule_from_row(row, [_action_from_row(action) for action in action_rows])

    def _save_rule(self, rule: EscalationRule, audit_entry: Optional[AuditEntry]) -> None:
        values = {
            "name": rule.name,
            "description": rule.description,
            "is_active": rule.is_active,
            "priority": rule.priority,
            "trigger_severities": sorted(rule.trigger_severities),
            "trigger_statuses": sorted(rule.trigger_statuses),
            "trigger_departments": sorted(rule.trigger_departments),
            "trigger_locations": sorted(rule.trigger_locations),
            "trigger_after_seconds": _seconds(rule.trigger_after),
            "repeatable": rule.repeatable,
            "rearm_window_seconds": _seconds(rule.rearm_window),
            "created_at": rule.created_at,
            "updated_at": rule.updated_at,
        }
        action_values = [
            {
                "action_id": action.action_id,
                "rule_id": rule.rule_id,
                "position": position,
                "action_type": action.action_type.value,
                "target": action.target,
                "channels": [channel.value for channel in action.channels],
                "template_id": action.template_id,
                "parameters": dict(action.parameters),
                "delay_seconds": _seconds(action.delay),
            }
            for position, action in enumerate(rule.actions)
        ]

        with self.engine.begin() as conn:
            exists = conn.execute(
                sa.select(escalation_rules.c.rule_id).where(escalation_rules.c.rule_id == rule.rule_id)
            ).first()
            if exists:
                conn.execute(
                    sa.update(escalation_rules).where(escalation_rules.c.rule_id == rule.rule_id).values(**values)
                )
                conn.execute(sa.delete(escalation_actions).where(escalation_actions.c.rule_id == rule.rule_id))
            else:
                conn.execute(sa.insert(escalation_rules).values(rule_id=rule.rule_id, **values))
            if action_values:
                conn.execute(sa.insert(escalation_actions), action_values)
            if audit_entry is not None:
                _insert_audit_entry(conn, audit_entry)

    def _delete_rule(self, rule_id: UUID, audit_entry: Optional[AuditEntry]) -> bool:
        with self.engine.begin() as conn:
            conn.execute(sa.delete(escalation_actions).where(escalation_actions.c.rule_id == rule_id))
            result = conn.execute(sa.delete(escalation_rules).where(escalation_rules.c.rule_id == rule_id))
            deleted = result.rowcount > 0
            if deleted and audit_entry is not None:
                _insert_audit_entry(conn, audit_entry)
            return deleted

    def _list_audit_entries(self, record_id: Optional[str]) -> List[AuditEntry]:
        query = sa.select(escalation_audit_log).order_by(escalation_audit_log.c.timestamp)
        if record_id is not None:
            query = query.where(escalation_audit_log.c.record_id == record_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [
            AuditEntry(
                audit_id=row["audit_id"],
                table_name=row["table_name"],
                operation=AuditOperation(row["operation"]),
                user_id=row["user_id"],
                record_id=row["record_id"],
                timestamp=_utc(row["timestamp"]),
                old_values=row["old_values"],
                new_values=row["new_values"]
            )
            for row in rows
        ]


def _insert_audit_entry(conn, entry: AuditEntry) -> None:
    conn.execute(sa.insert(escalation_audit_log).values(
        audit_id=entry.audit_id,
        table_name=entry.table_name,
        operation=entry.operation.value,
        user_id=entry.user_id,
        record_id=entry.record_id,
        timestamp=entry.timestamp,
        old_values=entry.old_values,
        new_values=entry.new_values
    ))


def _action_from_row(row) -> EscalationAction:
    delay = row["delay_seconds"]
    return EscalationAction(
        action_id=row["action_id"],
        rule_id=row["rule_id"],
        action_type=EscalationActionType(row["action_type"]),
        target=row["target"],
        channels=tuple(NotificationChannel(channel) for channel in row["channels"]),
        template_id=row["template_id"],
        parameters=dict(row["parameters"] or {}),
        delay=_timedelta(delay),
        position=row["position"]
    )


def _timedelta(seconds) -> Optional[timedelta]:
    return timedelta(seconds=seconds) if seconds is not None else None


def _rule_from_row(row, actions: List[EscalationAction]) -> EscalationRule:
    return EscalationRule(
        rule_id=row["rule_id"],
        name=row["name"],
        description=row["description"],
        is_active=row["is_active"],
        priority=row["priority"],
        trigger_severities=frozenset(row["trigger_severities"] or []),
        trigger_statuses=frozenset(row["trigger_statuses"] or []),
        trigger_departments=frozenset(row["trigger_departments"] or []),
        trigger_locations=frozenset(row["trigger_locations"] or []),
        trigger_after=_timedelta(row["trigger_after_seconds"]),
        repeatable=row["repeatable"],
        rearm_window=_timedelta(row["rearm_window_seconds"]),
        actions=tuple(actions),
        created_at=_utc(row["created_at"]),
        updated_at=_utc(row["updated_at"])
    )


class SqlHistoryRepository(SqlRepository, HistoryRepository):
    """Append-only escalation and notification history."""

    async def append_action(self, history: EscalationHistory, notifications: List[NotificationHistory]) -> None:
        await self._run(lambda: self._append_action(history, notifications))

    async def list_escalation_history(self, incident_id: str) -> List[EscalationHistory]:
        return await self._run(lambda: self._list_escalation_history(incident_id))

    async def list_notification_history(self, incident_id: str) -> List[NotificationHistory]:
        return await self._run(lambda: self._list_notification_history(incident_id))

    async def get_notification(self, notification_id: UUID) -> Optional[NotificationHistory]:
        return await self._run(lambda: self._get_notification(notification_id))

    async def update_notification(self, notification: NotificationHistory) -> None:
        updated = await self._run(lambda: self._update_notification(notification))
        if not updated:
            raise PersistenceError(f"Notification {notification.notification_id} does not exist")

    def _append_action(self, history: EscalationHistory, notifications: List[NotificationHistory]) -> None:
        with self.engine.begin() as conn:
            conn.execute(sa.insert(escalation_history).values(
                history_id=history.history_id,
                incident_id=history.incident_id,
                rule_id=history.rule_id,
                rule_name=history.rule_name,
                action_id=history.action_id,
                action_type=history.action_type.value,
                action_target=history.action_target,
                action_details=history.action_details,
                is_successful=history.is_successful,
                error_message=history.error_message,
                executed_at=history.executed_at,
                executed_by=history.executed_by
            ))
            if notifications:
                conn.execute(sa.insert(notification_history), [
                    {
                        "notification_id": row.notification_id,
                        "incident_id": row.incident_id,
                        "history_id": row.history_id,
                        "recipient_id": row.recipient_id,
                        "recipient_type": row.recipient_type,
                        "channel": row.channel.value,
                        "template_id": row.template_id,
                        "priority": row.priority.value,
                        "subject": row.subject,
                        "content": row.content,
                        "status": row.status.value,
                        "error_message": row.error_message,
                        "provider_message_id": row.provider_message_id,
                        "metadata_json": dict(row.metadata),
                        "created_at": row.created_at,
                        "sent_at": row.sent_at,
                        "updated_at": row.updated_at,
                    }
                    for row in notifications
                ])

    def _list_escalation_history(self, incident_id: str) -> List[EscalationHistory]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                sa.select(escalation_history)
                .where(escalation_history.c.incident_id == incident_id)
                .order_by(escalation_history.c.executed_at)
            ).mappings().all()
        return [
            EscalationHistory(
                history_id=row["history_id"],
                incident_id=row["incident_id"],
                rule_id=row["rule_id"],
                rule_name=row["rule_name"],
                action_id=row["action_id"],
                action_type=EscalationActionType(row["action_type"]),
                action_target=row["action_target"],
                action_details=row["action_details"] or "",
                is_successful=row["is_successful"],
                error_message=row["error_message"],
                executed_at=_utc(row["executed_at"]),
                executed_by=row["executed_by"]
            )
            for row in rows
        ]

    def _list_notification_history(self, incident_id: str) -> List[NotificationHistory]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                sa.select(notification_history)
                .where(notification_history.c.incident_id == incident_id)
                .order_by(notification_history.c.created_at)
            ).mappings().all()
        return [_notification_from_row(row) for row in rows]

    def _get_notification(self, notification_id: UUID) -> Optional[NotificationHistory]:
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(notification_history).where(notification_history.c.notification_id == notification_id)
            ).mappings().first()
        return _notification_from_row(row) if row else None

    def _update_notification(self, notification: NotificationHistory) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.update(notification_history)
                .where(notification_history.c.notification_id == notification.notification_id)
                .values(
                    status=notification.status.value,
                    error_message=notification.error_message,
                    updated_at=notification.updated_at
                )
            )
            return result.rowcount > 0


def _notification_from_row(row) -> NotificationHistory:
    return NotificationHistory(
        notification_id=row["notification_id"],
        incident_id=row["incident_id"],
        history_id=row["history_id"],
        recipient_id=row["recipient_id"],
        recipient_type=row["recipient_type"],
        channel=NotificationChannel(row["channel"]),
        template_id=row["template_id"],
        priority=NotificationPriority(row["priority"]),
        subject=row["subject"],
        content=row["content"],
        status=NotificationStatus(row["status"]),
        error_message=row["error_message"],
        provider_message_id=row["provider_message_id"],
        metadata=dict(row["metadata_json"] or {}),
        created_at=_utc(row["created_at"]),
        sent_at=_utc(row["sent_at"]),
        updated_at=_utc(row["updated_at"])
    )


class SqlFiringGuard(SqlRepository, FiringGuard):
    """
    Firing guard on the escalation_firings unique constraint. An expired row
    for the key is removed first; the insert then either wins or hits the
    constraint.
    """

    async def try_acquire(self, incident_id, rule_id, fingerprint, window, now) -> bool:
        return await self._run(lambda: self._try_acquire(incident_id, rule_id, fingerprint, window, now))

    async def release(self, incident_id, rule_id, fingerprint) -> None:
        await self._run(lambda: self._release(incident_id, rule_id, fingerprint))

    def _key_filter(self, incident_id: str, rule_id: UUID, fingerprint: str):
        return sa.and_(
            escalation_firings.c.incident_id == incident_id,
            escalation_firings.c.rule_id == rule_id,
            escalation_firings.c.state_fingerprint == fingerprint
        )

    def _try_acquire(self, incident_id, rule_id, fingerprint, window, now) -> bool:
        with self.engine.begin() as conn:
            conn.execute(
                sa.delete(escalation_firings).where(
                    self._key_filter(incident_id, rule_id, fingerprint),
                    escalation_firings.c.expires_at <= now
                )
            )

        try:
            with self.engine.begin() as conn:
                conn.execute(sa.insert(escalation_firings).values(
                    firing_id=uuid4(),
                    incident_id=incident_id,
                    rule_id=rule_id,
                    state_fingerprint=fingerprint,
                    fired_at=now,
                    expires_at=now + window
                ))
        except IntegrityError:
            return False
        return True

    def _release(self, incident_id, rule_id, fingerprint) -> None:
        with self.engine.begin() as conn:
            conn.execute(sa.delete(escalation_firings).where(self._key_filter(incident_id, rule_id, fingerprint)))


class SqlDeferredActionStore(SqlRepository, DeferredActionStore):
    """
    Deferred actions in escalation_deferred_actions, surviving restarts.

    A claim sets claimed_until with a conditional update; the worker whose
    update matched the row owns it until the lease runs out.
    """

    async def add(self, entry: DeferredAction) -> None:
        await self._run(lambda: self._add(entry))

    async def claim_due(self, now: datetime, lease: timedelta, limit: int = 100) -> List[DeferredAction]:
        return await self._run(lambda: self._claim_due(_utc(now), lease, limit))

    async def complete(self, entry: DeferredAction) -> None:
        await self._run(lambda: self._delete(escalation_deferred_actions.c.deferred_id == entry.deferred_id))

    async def cancel_for_incident(self, incident_id: str) -> int:
        return await self._run(lambda: self._delete(escalation_deferred_actions.c.incident_id == incident_id))

    async def list_pending(self, incident_id: Optional[str] = None) -> List[DeferredAction]:
        query = sa.select(escalation_deferred_actions).order_by(escalation_deferred_actions.c.execute_at)
        if incident_id is not None:
            query = query.where(escalation_deferred_actions.c.incident_id == incident_id)
        return await self._run(lambda: self._select(query))

    async def pending_count(self) -> int:
        return await self._run(self._count)

    def _add(self, entry: DeferredAction) -> None:
        with self.engine.begin() as conn:
            conn.execute(sa.insert(escalation_deferred_actions).values(
                deferred_id=entry.deferred_id,
                incident_id=entry.incident_id,
                rule_id=entry.rule_id,
                rule_name=entry.rule_name,
                action=entry.action.to_dict(),
                execute_at=_utc(entry.execute_at),
                created_at=_utc(entry.created_at),
                executed_by=entry.executed_by,
                attempts=entry.attempts
            ))

    def _claimable(self, now: datetime):
        return sa.or_(
            escalation_deferred_actions.c.claimed_until.is_(None),
            escalation_deferred_actions.c.claimed_until <= now
        )

    def _claim_due(self, now: datetime, lease: timedelta, limit: int) -> List[DeferredAction]:
        claimed = []
        with self.engine.begin() as conn:
            rows = conn.execute(
                sa.select(escalation_deferred_actions)
                .where(escalation_deferred_actions.c.execute_at <= now, self._claimable(now))
                .order_by(escalation_deferred_actions.c.execute_at)
                .limit(limit)
            ).mappings().all()

            for row in rows:
                result = conn.execute(
                    sa.update(escalation_deferred_actions)
                    .where(escalation_deferred_actions.c.deferred_id == row["deferred_id"], self._claimable(now))
                    .values(
                        claimed_until=now + lease,
                        attempts=escalation_deferred_actions.c.attempts + 1
                    )
                )
                if result.rowcount != 1:
                    continue
                entry = _deferred_from_row(row)
                claimed.append(replace(entry, attempts=entry.attempts + 1))
        return claimed

    def _delete(self, condition) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(sa.delete(escalation_deferred_actions).where(condition))
            return result.rowcount

    def _select(self, query) -> List[DeferredAction]:
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [_deferred_from_row(row) for row in rows]

    def _count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                sa.select(sa.func.count()).select_from(escalation_deferred_actions)
            ).scalar_one()


def _deferred_from_row(row) -> DeferredAction:
    return DeferredAction(
        deferred_id=row["deferred_id"],
        incident_id=row["incident_id"],
        rule_id=row["rule_id"],
        rule_name=row["rule_name"],
        action=EscalationAction.from_dict(row["action"]),
        execute_at=_utc(row["execute_at"]),
        created_at=_utc(row["created_at"]),
        executed_by=row["executed_by"],
        attempts=row["attempts"]
    )
