"""
Manual escalation: operator-triggered escalation with a free-text reason.

Skips rule matching and the firing guard. Whatever happens during dispatch,
exactly one EscalationHistory row with action type `manual` is written.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from ..models.errors import IncidentNotFoundError
from ..models.history import ActionOutcome, DeliveryAttempt, EscalationHistory, NotificationPriority
from ..models.rules import EscalationAction, EscalationActionType, NotificationChannel
from .evaluation_pipeline import IncidentGateway
from .history_recorder import HistoryRecorder
from .monitoring import EscalationMetrics
from .notification_dispatcher import DispatchContext, NotificationDispatcher

MANUAL_RULE_NAME = "Manual Escalation"


@dataclass
class ManualEscalationOutcome:
    incident_id: str
    success: bool
    history: EscalationHistory
    attempts: List[DeliveryAttempt] = field(default_factory=list)
    error_message: Optional[str] = None

    def to_dict(self):
        return {
            "incident_id": self.incident_id,
            "success": self.success,
            "history_id": str(self.history.history_id),
            "notifications_sent": sum(1 for attempt in self.attempts if attempt.success),
            "notifications_failed": sum(1 for attempt in self.attempts if not attempt.success),
            "error_message": self.error_message
        }


class ManualEscalationHandler:
    """Escalates an incident to the configured role groups on operator request."""

    def __init__(
        self,
        gateway: IncidentGateway,
        dispatcher: NotificationDispatcher,
        recorder: HistoryRecorder,
        targets: Sequence[str],
        channels: Sequence[NotificationChannel],
        template_id: str = "escalation_manual",
        metrics: Optional[EscalationMetrics] = None
    ):
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.recorder = recorder
        self.targets = list(targets)
        self.channels = tuple(channels)
        self.template_id = template_id
        self.metrics = metrics
        self.logger = logging.getLogger(__name__)

    async def escalate(self, incident_id: str, reason: str, escalated_by: str) -> ManualEscalationOutcome:
        """
        Notify the manual escalation targets and record the escalation.

        Raises:
            IncidentNotFoundError: if the incident does not exist
            PersistenceError: if the history row could not be written after retries
        """
        incident = await self.gateway.get(incident_id)
        if incident is None:
            raise IncidentNotFoundError(incident_id)

        action = EscalationAction(
            action_type=EscalationActionType.MANUAL,
            target=",".join(self.targets),
            channels=self.channels,
            template_id=self.template_id
        )
        context = DispatchContext(
            incident=incident,
            rule_name=MANUAL_RULE_NAME,
            executed_by=escalated_by,
            extra={"escalation_reason": reason, "escalated_by": escalated_by}
        )
        outcome = ActionOutcome(
            incident_id=incident_id,
            rule_id=None,
            rule_name=MANUAL_RULE_NAME,
            action=action,
            success=False,
            executed_at=datetime.now(timezone.utc),
            executed_by=escalated_by,
            priority=NotificationPriority.HIGH
        )

        try:
            recipients = await self.dispatcher.directory.resolve_roles(self.targets)
            result = await self.dispatcher.dispatch_to(
                recipients, self.channels, self.template_id, None, context
            )
            outcome.success = result.success
            outcome.attempts = result.attempts
            outcome.priority = result.priority
            outcome.details = f"Manual escalation: {reason}. {result.details}"
            outcome.error_message = None if result.success else result.error_message
        except Exception as e:
            self.logger.error(f"Manual escalation dispatch failed for incident {incident_id}: {str(e)}")
            outcome.details = f"Manual escalation: {reason}"
            outcome.error_message = f"Dispatch failed: {str(e)}"

        if self.metrics:
            self.metrics.record_action(EscalationActionType.MANUAL.value, outcome.success)

        history = await self.recorder.record(outcome)

        try:
            await self.gateway.mark_escalated(incident_id, outcome.executed_at)
        except Exception as e:
            self.logger.error(f"Failed to record escalation time for incident {incident_id}: {str(e)}")

        self.logger.info(
            f"Incident {incident_id} manually escalated by {escalated_by}: "
            f"{outcome.channels_succeeded}/{outcome.channels_attempted} notifications delivered"
        )
        return ManualEscalationOutcome(
            incident_id=incident_id,
            success=outcome.success,
            history=history,
            attempts=outcome.attempts,
            error_message=outcome.error_message
        )
