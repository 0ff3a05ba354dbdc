"""
Escalation History Models

Append-only audit records written by the engine:
- EscalationHistory: one row per action execution (or manual escalation)
- NotificationHistory: one row per (recipient, channel) delivery attempt
- DeferredAction: persisted entry for an action waiting on its delay

History rows hold rule and action identifiers as plain values so they
outlive the rules that produced them.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field, replace
from enum import Enum
from uuid import UUID, uuid4

from .rules import EscalationAction, EscalationActionType, NotificationChannel


SYSTEM_USER = "system"


class NotificationStatus(Enum):
    """Lifecycle of a notification row."""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class NotificationPriority(Enum):
    """Priority passed to channel senders."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


# Transitions accepted from asynchronous delivery callbacks
ALLOWED_STATUS_TRANSITIONS = {
    NotificationStatus.PENDING: {NotificationStatus.SENT, NotificationStatus.DELIVERED, NotificationStatus.FAILED},
    NotificationStatus.SENT: {NotificationStatus.DELIVERED, NotificationStatus.FAILED},
    NotificationStatus.DELIVERED: set(),
    NotificationStatus.FAILED: set(),
}


@dataclass(frozen=True)
class DeliveryAttempt:
    """Outcome of one (recipient, channel) send."""
    recipient_id: str
    recipient_type: str
    channel: NotificationChannel
    success: bool
    subject: str
    content: str
    attempted_at: datetime
    latency_ms: int
    provider_message_id: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class ActionOutcome:
    """Result of executing one escalation action for one incident."""
    incident_id: str
    rule_id: Optional[UUID]
    rule_name: str
    action: EscalationAction
    success: bool
    executed_at: datetime
    executed_by: str = SYSTEM_USER
    details: str = ""
    error_message: Optional[str] = None
    priority: NotificationPriority = NotificationPriority.HIGH
    attempts: List[DeliveryAttempt] = field(default_factory=list)
    history: Optional['EscalationHistory'] = None

    @property
    def channels_attempted(self) -> int:
        return len(self.attempts)

    @property
    def channels_succeeded(self) -> int:
        return sum(1 for attempt in self.attempts if attempt.success)


@dataclass(frozen=True)
class EscalationHistory:
    """Immutable audit row for one action execution."""
    history_id: UUID
    incident_id: str
    rule_id: Optional[UUID]
    rule_name: str
    action_id: Optional[UUID]
    action_type: EscalationActionType
    action_target: str
    action_details: str
    is_successful: bool
    error_message: Optional[str]
    executed_at: datetime
    executed_by: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "history_id": str(self.history_id),
            "incident_id": self.incident_id,
            "rule_id": str(self.rule_id) if self.rule_id else None,
            "rule_name": self.rule_name,
            "action_id": str(self.action_id) if self.action_id else None,
            "action_type": self.action_type.value,
            "action_target": self.action_target,
            "action_details": self.action_details,
            "is_successful": self.is_successful,
            "error_message": self.error_message,
            "executed_at": self.executed_at.isoformat(),
            "executed_by": self.executed_by
        }


@dataclass(frozen=True)
class NotificationHistory:
    """Audit row for one notification attempt."""
    notification_id: UUID
    incident_id: str
    history_id: Optional[UUID]
    recipient_id: str
    recipient_type: str
    channel: NotificationChannel
    template_id: str
    priority: NotificationPriority
    subject: str
    content: str
    status: NotificationStatus
    error_message: Optional[str]
    provider_message_id: Optional[str]
    metadata: Dict[str, str]
    created_at: datetime
    sent_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_attempt(
        cls,
        attempt: DeliveryAttempt,
        incident_id: str,
        history_id: Optional[UUID],
        template_id: str,
        priority: NotificationPriority
    ) -> 'NotificationHistory':
        return cls(
            notification_id=uuid4(),
            incident_id=incident_id,
            history_id=history_id,
            recipient_id=attempt.recipient_id,
            recipient_type=attempt.recipient_type,
            channel=attempt.channel,
            template_id=template_id,
            priority=priority,
            subject=attempt.subject,
            content=attempt.content,
            status=NotificationStatus.SENT if attempt.success else NotificationStatus.FAILED,
            error_message=attempt.error_message,
            provider_message_id=attempt.provider_message_id,
            metadata=dict(attempt.metadata),
            created_at=attempt.attempted_at,
            sent_at=attempt.attempted_at if attempt.success else None
        )

    def with_status(self, status: NotificationStatus, error_message: Optional[str], now: datetime) -> 'NotificationHistory':
        """Return the row with a delivery-callback status applied."""
        if status not in ALLOWED_STATUS_TRANSITIONS[self.status]:
            raise ValueError(
                f"Notification {self.notification_id} cannot move from "
                f"{self.status.value} to {status.value}"
            )
        return replace(
            self,
            status=status,
            error_message=error_message if error_message is not None else self.error_message,
            updated_at=now
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "notification_id": str(self.notification_id),
            "incident_id": self.incident_id,
            "history_id": str(self.history_id) if self.history_id else None,
            "recipient_id": self.recipient_id,
            "recipient_type": self.recipient_type,
            "channel": self.channel.value,
            "template_id": self.template_id,
            "priority": self.priority.value,
            "subject": self.subject,
            "content": self.content,
            "status": self.status.value,
            "error_message": self.error_message,
            "provider_message_id": self.provider_message_id,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None
        }


@dataclass(frozen=True)
class DeferredAction:
    """Action waiting for its delay to elapse; persisted, not held in memory."""
    deferred_id: UUID
    incident_id: str
    rule_id: Optional[UUID]
    rule_name: str
    action: EscalationAction
    execute_at: datetime
    created_at: datetime
    executed_by: str = SYSTEM_USER
    attempts: int = 0

    @classmethod
    def create(
        cls,
        incident_id: str,
        rule_id: Optional[UUID],
        rule_name: str,
        action: EscalationAction,
        execute_at: datetime
    ) -> 'DeferredAction':
        return cls(
            deferred_id=uuid4(),
            incident_id=incident_id,
            rule_id=rule_id,
            rule_name=rule_name,
            action=action,
            execute_at=execute_at,
            created_at=datetime.now(timezone.utc)
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "deferred_id": str(self.deferred_id),
            "incident_id": self.incident_id,
            "rule_id": str(self.rule_id) if self.rule_id else None,
            "rule_name": self.rule_name,
            "action": self.action.to_dict(),
            "execute_at": self.execute_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "executed_by": self.executed_by,
            "attempts": self.attempts
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeferredAction':
        return cls(
            deferred_id=UUID(data["deferred_id"]),
            incident_id=data["incident_id"],
            rule_id=UUID(data["rule_id"]) if data.get("rule_id") else None,
            rule_name=data["rule_name"],
            action=EscalationAction.from_dict(data["action"]),
            execute_at=datetime.fromisoformat(data["execute_at"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            executed_by=data.get("executed_by", SYSTEM_USER),
            attempts=int(data.get("attempts", 0))
        )
