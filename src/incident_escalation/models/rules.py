"""
Escalation Rule Models

This module defines the escalation rule configuration model, including:
- Action types and notification channels as tagged enumerations
- EscalationRule with wildcard trigger sets and optional duration trigger
- EscalationAction owned by value by its rule, in stored order
- Structural validation used at matching time
"""

from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional, Any, Tuple, FrozenSet, Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from uuid import UUID, uuid4

from .errors import ConfigurationError


DEFAULT_RULE_PRIORITY = 100


class EscalationActionType(Enum):
    """Kind of step an escalation action performs."""
    NOTIFY_USER = "notify_user"
    NOTIFY_ROLE = "notify_role"
    NOTIFY_DEPARTMENT = "notify_department"
    ESCALATE_TO_MANAGER = "escalate_to_manager"
    SEND_EMERGENCY_ALERT = "send_emergency_alert"
    SEND_REGULATORY = "send_regulatory"
    REASSIGN = "reassign"
    WEBHOOK = "webhook"
    MANUAL = "manual"


class NotificationChannel(Enum):
    """Delivery media for notifications."""
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    IN_APP = "in_app"
    WEBHOOK = "webhook"
    WHATSAPP = "whatsapp"


def _tokens(values: Optional[Iterable[str]]) -> FrozenSet[str]:
    return frozenset(str(v) for v in values) if values else frozenset()


def _seconds(value: Optional[timedelta]) -> Optional[float]:
    return value.total_seconds() if value is not None else None


def _timedelta(value: Optional[float]) -> Optional[timedelta]:
    return timedelta(seconds=value) if value is not None else None


@dataclass(frozen=True)
class EscalationAction:
    """Single notification/response step owned by a rule."""
    action_type: EscalationActionType
    target: str
    channels: Tuple[NotificationChannel, ...]
    template_id: Optional[str] = None
    parameters: Dict[str, str] = field(default_factory=dict)
    delay: Optional[timedelta] = None
    position: int = 0
    action_id: UUID = field(default_factory=uuid4)
    rule_id: Optional[UUID] = None

    @property
    def is_deferred(self) -> bool:
        return self.delay is not None and self.delay > timedelta(0)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "action_id": str(self.action_id),
            "rule_id": str(self.rule_id) if self.rule_id else None,
            "action_type": self.action_type.value,
            "target": self.target,
            "channels": [channel.value for channel in self.channels],
            "template_id": self.template_id,
            "parameters": dict(self.parameters),
            "delay_seconds": _seconds(self.delay),
            "position": self.position
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EscalationAction':
        """Create from dictionary produced by to_dict."""
        return cls(
            action_id=UUID(data["action_id"]) if data.get("action_id") else uuid4(),
            rule_id=UUID(data["rule_id"]) if data.get("rule_id") else None,
            action_type=EscalationActionType(data["action_type"]),
            target=data["target"],
            channels=tuple(NotificationChannel(c) for c in data.get("channels", [])),
            template_id=data.get("template_id"),
            parameters=dict(data.get("parameters") or {}),
            delay=_timedelta(data.get("delay_seconds")),
            position=int(data.get("position", 0))
        )


def _bind_actions(rule_id: UUID, actions: Iterable[EscalationAction]) -> Tuple[EscalationAction, ...]:
    return tuple(
        replace(
            action,
            channels=tuple(action.channels),
            parameters=dict(action.parameters),
            position=index,
            rule_id=rule_id
        )
        for index, action in enumerate(actions)
    )


@dataclass(frozen=True)
class EscalationRule:
    """
    Condition-to-action mapping for escalation.

    Empty trigger sets are wildcards. `trigger_after` adds an elapsed-time
    condition measured from the incident's anchor timestamp; for repeatable
    rules the anchor moves forward to the last escalation.
    """
    name: str
    actions: Tuple[EscalationAction, ...]
    description: str = ""
    is_active: bool = True
    priority: int = DEFAULT_RULE_PRIORITY
    trigger_severities: FrozenSet[str] = frozenset()
    trigger_statuses: FrozenSet[str] = frozenset()
    trigger_departments: FrozenSet[str] = frozenset()
    trigger_locations: FrozenSet[str] = frozenset()
    trigger_after: Optional[timedelta] = None
    repeatable: bool = False
    rearm_window: Optional[timedelta] = None
    rule_id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(
        cls,
        name: str,
        actions: List[EscalationAction],
        trigger_severities: Optional[Iterable[str]] = None,
        trigger_statuses: Optional[Iterable[str]] = None,
        trigger_departments: Optional[Iterable[str]] = None,
        trigger_locations: Optional[Iterable[str]] = None,
        **kwargs
    ) -> 'EscalationRule':
        """
        Build a rule, binding its actions to it and numbering them in the
        order given.
        """
        rule_id = kwargs.pop("rule_id", None) or uuid4()
        return cls(
            name=name,
            actions=_bind_actions(rule_id, actions),
            trigger_severities=_tokens(trigger_severities),
            trigger_statuses=_tokens(trigger_statuses),
            trigger_departments=_tokens(trigger_departments),
            trigger_locations=_tokens(trigger_locations),
            rule_id=rule_id,
            **kwargs
        )

    def with_actions(self, actions: Iterable[EscalationAction]) -> 'EscalationRule':
        """Copy of the rule owning a replacement action list."""
        return replace(self, actions=_bind_actions(self.rule_id, actions))

    @property
    def is_duration_based(self) -> bool:
        return self.trigger_after is not None

    def sort_key(self) -> Tuple[int, str]:
        """Priority ascending, rule identity as tie-breaker."""
        return (self.priority, str(self.rule_id))

    def get_action(self, action_id: UUID) -> Optional[EscalationAction]:
        for action in self.actions:
            if action.action_id == action_id:
                return action
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "rule_id": str(self.rule_id),
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "priority": self.priority,
            "trigger_severities": sorted(self.trigger_severities),
            "trigger_statuses": sorted(self.trigger_statuses),
            "trigger_departments": sorted(self.trigger_departments),
            "trigger_locations": sorted(self.trigger_locations),
            "trigger_after_seconds": _seconds(self.trigger_after),
            "repeatable": self.repeatable,
            "rearm_window_seconds": _seconds(self.rearm_window),
            "actions": [action.to_dict() for action in self.actions],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EscalationRule':
        """Create from dictionary produced by to_dict or a YAML rule file."""
        actions = [EscalationAction.from_dict(item) for item in data.get("actions", [])]
        kwargs: Dict[str, Any] = {
            "description": data.get("description", ""),
            "is_active": bool(data.get("is_active", True)),
            "priority": int(data.get("priority", DEFAULT_RULE_PRIORITY)),
            "trigger_after": _timedelta(data.get("trigger_after_seconds")),
            "repeatable": bool(data.get("repeatable", False)),
            "rearm_window": _timedelta(data.get("rearm_window_seconds")),
        }
        if data.get("rule_id"):
            kwargs["rule_id"] = UUID(data["rule_id"])
        if data.get("created_at"):
            kwargs["created_at"] = datetime.fromisoformat(data["created_at"])
        if data.get("updated_at"):
            kwargs["updated_at"] = datetime.fromisoformat(data["updated_at"])
        return cls.create(
            name=data["name"],
            actions=actions,
            trigger_severities=data.get("trigger_severities"),
            trigger_statuses=data.get("trigger_statuses"),
            trigger_departments=data.get("trigger_departments"),
            trigger_locations=data.get("trigger_locations"),
            **kwargs
        )


def validate_rule(rule: EscalationRule) -> None:
    """
    Check a rule for structural problems.

    Raises:
        ConfigurationError: listing every problem found in the rule
    """
    errors = []

    if not rule.name or not rule.name.strip():
        errors.append("rule name must not be blank")

    if not rule.actions:
        errors.append("rule has no actions")

    if rule.trigger_after is not None and rule.trigger_after < timedelta(0):
        errors.append("trigger_after must not be negative")

    if rule.rearm_window is not None and rule.rearm_window <= timedelta(0):
        errors.append("rearm_window must be positive")

    for action in rule.actions:
        label = f"action {action.position} ({action.action_type.value})"
        if not action.channels:
            errors.append(f"{label}: channels must not be empty")
        if len(set(action.channels)) != len(action.channels):
            errors.append(f"{label}: duplicate channels")
        if action.action_type != EscalationActionType.MANUAL and not action.target.strip():
            errors.append(f"{label}: target must not be blank")
        if action.delay is not None and action.delay < timedelta(0):
            errors.append(f"{label}: delay must not be negative")
        if action.rule_id is not None and action.rule_id != rule.rule_id:
            errors.append(f"{label}: belongs to rule {action.rule_id}")

    if errors:
        raise ConfigurationError(
            f"Escalation rule '{rule.name}' ({rule.rule_id}) is malformed: {'; '.join(errors)}",
            rule_id=rule.rule_id,
            errors=errors
        )
