"""
Escalation Rule Store

Provides the evaluation pipeline with immutable snapshots of the active rule
set and gives administrators a CRUD/toggle surface over the rule repository.

- Snapshots are tuples of frozen rules, cached for a bounded interval
- Admin edits build new rule objects and invalidate the cache; a snapshot
  already handed to an evaluation is never touched
- Every administrative change is written to the audit log together with
  the change itself
"""

import asyncio
import copy
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional, Any, Tuple
from uuid import UUID

from ..models.errors import RuleNotFoundError
from ..models.history import SYSTEM_USER
from ..models.rules import (
    EscalationRule, EscalationAction, EscalationActionType, NotificationChannel, validate_rule
)
from .audit import AuditEntry, AuditLogger


# Fields an administrator may change through update_rule
UPDATABLE_RULE_FIELDS = frozenset({
    "name", "description", "is_active", "priority",
    "trigger_severities", "trigger_statuses", "trigger_departments", "trigger_locations",
    "trigger_after", "repeatable", "rearm_window", "actions"
})

_TRIGGER_FIELDS = ("trigger_severities", "trigger_statuses", "trigger_departments", "trigger_locations")


class RuleRepository:
    """Persistence collaborator for rules and their owned actions."""

    async def list_rules(self) -> List[EscalationRule]:
        raise NotImplementedError

    async def get_rule(self, rule_id: UUID) -> Optional[EscalationRule]:
        raise NotImplementedError

    async def save_rule(self, rule: EscalationRule, audit_entry: Optional[AuditEntry] = None) -> None:
        """
        Insert or replace a rule together with its full action list. The audit
        entry, when given, is stored atomically with the rule.
        """
        raise NotImplementedError

    async def delete_rule(self, rule_id: UUID, audit_entry: Optional[AuditEntry] = None) -> bool:
        """Delete a rule and its actions; history rows are untouched."""
        raise NotImplementedError

    async def list_audit_entries(self, record_id: Optional[str] = None) -> List[AuditEntry]:
        """Audit entries, oldest first, optionally for one record."""
        raise NotImplementedError


class InMemoryRuleRepository(RuleRepository):
    """Rule repository held in process memory."""

    def __init__(self, rules: Optional[List[EscalationRule]] = None):
        self._rules: Dict[UUID, EscalationRule] = {}
        self._audit_log: List[AuditEntry] = []
        self._lock = asyncio.Lock()
        for rule in rules or []:
            self._rules[rule.rule_id] = rule

    async def list_rules(self) -> List[EscalationRule]:
        async with self._lock:
            return list(self._rules.values())

    async def get_rule(self, rule_id: UUID) -> Optional[EscalationRule]:
        async with self._lock:
            return self._rules.get(rule_id)

    async def save_rule(self, rule: EscalationRule, audit_entry: Optional[AuditEntry] = None) -> None:
        async with self._lock:
            self._rules[rule.rule_id] = rule
            if audit_entry is not None:
                self._audit_log.append(audit_entry)

    async def delete_rule(self, rule_id: UUID, audit_entry: Optional[AuditEntry] = None) -> bool:
        async with self._lock:
            deleted = self._rules.pop(rule_id, None) is not None
            if deleted and audit_entry is not None:
                self._audit_log.append(audit_entry)
            return deleted

    async def list_audit_entries(self, record_id: Optional[str] = None) -> List[AuditEntry]:
        async with self._lock:
            entries = list(self._audit_log)
        if record_id is not None:
            entries = [entry for entry in entries if entry.record_id == record_id]
        return entries


class RuleStore:
    """
    Snapshot provider and administrative facade over a RuleRepository.

    Responsibilities:
    - Serve immutable snapshots of active rules with a bounded refresh interval
    - Validate, persist and audit administrative rule changes
    - Invalidate the cached snapshot after every change
    """

    def __init__(
        self,
        repository: RuleRepository,
        audit_logger: Optional[AuditLogger] = None,
        refresh_seconds: float = 60
    ):
        self.repository = repository
        self.audit_logger = audit_logger or AuditLogger()
        self.refresh_seconds = refresh_seconds
        self.logger = logging.getLogger(__name__)

        self._snapshot: Optional[Tuple[EscalationRule, ...]] = None
        self._snapshot_loaded_at = 0.0
        self._version = 0
        self._lock = asyncio.Lock()

    @property
    def version(self) -> int:
        """Incremented each time a new snapshot is loaded."""
        return self._version

    def invalidate(self) -> None:
        self._snapshot = None

    async def get_active_rules(self) -> Tuple[EscalationRule, ...]:
        """
        Return the current snapshot of active rules.

        The returned tuple is never modified afterwards; callers may hold it
        for the duration of an evaluation.
        """
        async with self._lock:
            age = time.monotonic() - self._snapshot_loaded_at
            if self._snapshot is None or age >= self.refresh_seconds:
                rules = await self.repository.list_rules()
                active = [copy.deepcopy(rule) for rule in rules if rule.is_active]
                self._snapshot = tuple(sorted(active, key=lambda r: r.sort_key()))
                self._snapshot_loaded_at = time.monotonic()
                self._version += 1
                self.logger.debug(
                    f"Loaded rule snapshot v{self._version} with {len(self._snapshot)} active rules"
                )
            return self._snapshot

    async def smallest_trigger_after(self) -> Optional[timedelta]:
        """Shortest duration trigger among active rules, or None if there are none."""
        durations = [rule.trigger_after for rule in await self.get_active_rules() if rule.is_duration_based]
        return min(durations) if durations else None

    async def list_rules(self) -> List[EscalationRule]:
        rules = await self.repository.list_rules()
        return sorted(rules, key=lambda r: r.sort_key())

    async def get_rule(self, rule_id: UUID) -> EscalationRule:
        rule = await self.repository.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    async def create_rule(self, rule: EscalationRule, user_id: str) -> EscalationRule:
        """
        Validate and persist a new rule.

        Raises:
            ConfigurationError: if the rule is malformed
            AuditException: if no audit entry can be written for the change
        """
        validate_rule(rule)
        entry = self.audit_logger.audit_rule_creation(rule, user_id)
        await self.repository.save_rule(rule, entry)
        self.invalidate()
        self.logger.info(f"Created escalation rule '{rule.name}' ({rule.rule_id}) by {user_id}")
        return rule

    async def update_rule(self, rule_id: UUID, changes: Dict[str, Any], user_id: str) -> EscalationRule:
        """
        Apply a whitelisted set of field changes to a rule.

        Raises:
            RuleNotFoundError: if the rule does not exist
            ValueError: if a change names a field that cannot be updated
            ConfigurationError: if the updated rule is malformed
        """
        unknown = set(changes) - UPDATABLE_RULE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")

        old_rule = await self.get_rule(rule_id)
        values = dict(changes)
        actions = values.pop("actions", None)
        for name in _TRIGGER_FIELDS:
            if name in values:
                values[name] = frozenset(str(v) for v in values[name] or [])

        new_rule = replace(old_rule, updated_at=datetime.now(timezone.utc), **values)
        if actions is not None:
            new_rule = new_rule.with_actions(actions)

        validate_rule(new_rule)
        entry = self.audit_logger.audit_rule_update(old_rule, new_rule, user_id)
        await self.repository.save_rule(new_rule, entry)
        self.invalidate()
        self.logger.info(f"Updated escalation rule {rule_id} by {user_id}: {sorted(changes)}")
        return new_rule

    async def toggle_rule(self, rule_id: UUID, is_active: bool, user_id: str) -> EscalationRule:
        return await self.update_rule(rule_id, {"is_active": is_active}, user_id)

    async def delete_rule(self, rule_id: UUID, user_id: str) -> None:
        rule = await self.get_rule(rule_id)
        entry = self.audit_logger.audit_rule_deletion(rule, user_id)
        if not await self.repository.delete_rule(rule_id, entry):
            raise RuleNotFoundError(rule_id)
        self.invalidate()
        self.logger.info(f"Deleted escalation rule '{rule.name}' ({rule_id}) by {user_id}")

    async def audit_trail(self, rule_id: UUID) -> List[AuditEntry]:
        """Administrative changes to a rule, oldest first; kept after deletion."""
        return await self.repository.list_audit_entries(str(rule_id))

    async def seed_defaults(self, user_id: str = SYSTEM_USER) -> int:
        """Install default_rules() when the repository holds no rules."""
        if await self.repository.list_rules():
            return 0
        rules = default_rules()
        for rule in rules:
            await self.create_rule(rule, user_id)
        return len(rules)


def default_rules() -> List[EscalationRule]:
    """Seed rule set: critical escalation, 24h response escalation, regulatory reporting."""
    return [
        EscalationRule.create(
            name="Critical Incident Immediate Escalation",
            description="Immediately escalate critical and emergency incidents",
            priority=1,
            trigger_severities=["critical", "emergency"],
            actions=[
                EscalationAction(
                    action_type=EscalationActionType.NOTIFY_ROLE,
                    target="HSE_Manager",
                    template_id="incident_critical",
                    channels=(NotificationChannel.EMAIL, NotificationChannel.SMS, NotificationChannel.WHATSAPP)
                ),
                EscalationAction(
                    action_type=EscalationActionType.SEND_EMERGENCY_ALERT,
                    target="emergency_team",
                    template_id="emergency_alert",
                    channels=(NotificationChannel.EMAIL, NotificationChannel.SMS, NotificationChannel.PUSH)
                )
            ]
        ),
        EscalationRule.create(
            name="24-Hour Response Escalation",
            description="Escalate incidents without response within 24 hours",
            priority=50,
            trigger_after=timedelta(hours=24),
            actions=[
                EscalationAction(
                    action_type=EscalationActionType.ESCALATE_TO_MANAGER,
                    target="department_manager",
                    template_id="escalation_overdue",
                    channels=(NotificationChannel.EMAIL, NotificationChannel.PUSH)
                )
            ]
        ),
        EscalationRule.create(
            name="Regulatory Reporting",
            description="Trigger regulatory reporting for specific incident types",
            priority=75,
            trigger_severities=["major", "critical", "emergency"],
            actions=[
                EscalationAction(
                    action_type=EscalationActionType.SEND_REGULATORY,
                    target="regulatory_team",
                    template_id="incident_regulatory",
                    channels=(NotificationChannel.EMAIL,),
                    delay=timedelta(hours=2)  # time for initial assessment
                )
            ]
        )
    ]
