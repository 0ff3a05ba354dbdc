"""
History Recorder for the escalation audit trail.

Writes one EscalationHistory row per action execution and one
NotificationHistory row per (recipient, channel) attempt. Both are committed
together through HistoryRepository.append_action. Failed writes are retried
with exponential backoff; when retries run out the loss is logged at critical
level, an operational alert is raised and PersistenceError propagates.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from ..models.errors import PersistenceError
from ..models.history import (
    ActionOutcome, EscalationHistory, NotificationHistory, NotificationStatus
)
from .monitoring import EscalationMetrics


MAX_DETAILS_LENGTH = 2000
MAX_TARGET_LENGTH = 200

AlertHook = Callable[[ActionOutcome, Exception], Awaitable[None]]


def _truncate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None or len(value) <= limit:
        return value
    return value[:limit - 3] + "..."


class HistoryRepository:
    """Append-only persistence for escalation and notification history."""

    async def append_action(self, history: EscalationHistory, notifications: List[NotificationHistory]) -> None:
        """Write one history row and its notification rows in a single transaction."""
        raise NotImplementedError

    async def list_escalation_history(self, incident_id: str) -> List[EscalationHistory]:
        raise NotImplementedError

    async def list_notification_history(self, incident_id: str) -> List[NotificationHistory]:
        raise NotImplementedError

    async def get_notification(self, notification_id: UUID) -> Optional[NotificationHistory]:
        raise NotImplementedError

    async def update_notification(self, notification: NotificationHistory) -> None:
        """Persist the status, error_message and updated_at of a notification row."""
        raise NotImplementedError


class InMemoryHistoryRepository(HistoryRepository):
    """History repository held in process memory."""

    def __init__(self):
        self._history: List[EscalationHistory] = []
        self._notifications: Dict[UUID, NotificationHistory] = {}
        self._lock = asyncio.Lock()

    async def append_action(self, history, notifications) -> None:
        async with self._lock:
            self._history.append(history)
            for notification in notifications:
                self._notifications[notification.notification_id] = notification

    async def list_escalation_history(self, incident_id: str) -> List[EscalationHistory]:
        async with self._lock:
            rows = [row for row in self._history if row.incident_id == incident_id]
        return sorted(rows, key=lambda row: row.executed_at)

    async def list_notification_history(self, incident_id: str) -> List[NotificationHistory]:
        async with self._lock:
            rows = [row for row in self._notifications.values() if row.incident_id == incident_id]
        return sorted(rows, key=lambda row: row.created_at)

    async def get_notification(self, notification_id: UUID) -> Optional[NotificationHistory]:
        async with self._lock:
            return self._notifications.get(notification_id)

    async def update_notification(self, notification: NotificationHistory) -> None:
        async with self._lock:
            if notification.notification_id not in self._notifications:
                raise PersistenceError(f"Notification {notification.notification_id} does not exist")
            self._notifications[notification.notification_id] = notification


class HistoryRecorder:
    """
    Builds and persists audit rows for executed actions.

    Responsibilities:
    - Denormalize rule name and action details at write time
    - Commit escalation and notification rows together per action
    - Retry transient write failures with capped exponential backoff
    - Raise an operational alert when an audit row cannot be written
    """

    def __init__(
        self,
        repository: HistoryRepository,
        metrics: Optional[EscalationMetrics] = None,
        max_attempts: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        alert_hook: Optional[AlertHook] = None
    ):
        self.repository = repository
        self.metrics = metrics
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.alert_hook = alert_hook
        self.logger = logging.getLogger(__name__)

    def build_rows(self, outcome: ActionOutcome) -> Tuple[EscalationHistory, List[NotificationHistory]]:
        history = EscalationHistory(
            history_id=uuid4(),
            incident_id=outcome.incident_id,
            rule_id=outcome.rule_id,
            rule_name=outcome.rule_name,
            action_id=outcome.action.action_id if outcome.rule_id else None,
            action_type=outcome.action.action_type,
            action_target=_truncate(outcome.action.target, MAX_TARGET_LENGTH),
            action_details=_truncate(outcome.details, MAX_DETAILS_LENGTH),
            is_successful=outcome.success,
            error_message=_truncate(outcome.error_message, MAX_DETAILS_LENGTH),
            executed_at=outcome.executed_at,
            executed_by=outcome.executed_by
        )

        template_id = outcome.action.template_id or ""
        notifications = [
            NotificationHistory.from_attempt(
                attempt,
                incident_id=outcome.incident_id,
                history_id=history.history_id,
                template_id=template_id,
                priority=outcome.priority
            )
            for attempt in outcome.attempts
        ]
        return history, notifications

    def _backoff_delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    async def record(self, outcome: ActionOutcome) -> EscalationHistory:
        """
        Persist the audit rows for one executed action.

        Returns:
            The EscalationHistory row that was written

        Raises:
            PersistenceError: if every write attempt failed
        """
        history, notifications = self.build_rows(outcome)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.repository.append_action(history, notifications)
                outcome.history = history
                self.logger.debug(
                    f"Recorded history {history.history_id} for incident {outcome.incident_id} "
                    f"with {len(notifications)} notification rows"
                )
                return history

            except Exception as e:
                last_error = e
                final = attempt == self.max_attempts
                if self.metrics:
                    self.metrics.record_history_write_failure(final)
                if final:
                    break

                delay = self._backoff_delay(attempt)
                self.logger.warning(
                    f"History write for incident {outcome.incident_id} failed "
                    f"(attempt {attempt}/{self.max_attempts}), retrying in {delay:.2f}s: {str(e)}"
                )
                await asyncio.sleep(delay)

        self.logger.critical(
            f"AUDIT LOSS: history for incident {outcome.incident_id}, rule '{outcome.rule_name}', "
            f"action {outcome.action.action_type.value} could not be written after "
            f"{self.max_attempts} attempts: {str(last_error)}"
        )
        await self._raise_alert(outcome, last_error)
        raise PersistenceError(
            f"History write failed after {self.max_attempts} attempts: {str(last_error)}"
        ) from last_error

    async def _raise_alert(self, outcome: ActionOutcome, error: Exception) -> None:
        if not self.alert_hook:
            return
        try:
            await self.alert_hook(outcome, error)
        except Exception as e:
            self.logger.error(f"Operational alert hook failed: {str(e)}")

    async def update_notification_status(
        self,
        notification_id: UUID,
        status: NotificationStatus,
        error_message: Optional[str] = None
    ) -> Optional[NotificationHistory]:
        """
        Apply an asynchronous delivery callback to a notification row.

        Returns:
            The updated row, or None if the notification is unknown

        Raises:
            ValueError: if the status transition is not allowed
        """
        notification = await self.repository.get_notification(notification_id)
        if notification is None:
            self.logger.warning(f"Delivery callback for unknown notification {notification_id}")
            return None

        updated = notification.with_status(
            status, _truncate(error_message, MAX_DETAILS_LENGTH), datetime.now(timezone.utc)
        )
        await self.repository.update_notification(updated)
        if self.metrics:
            self.metrics.record_notification(updated.channel.value, status.value)

        self.logger.info(
            f"Notification {notification_id} moved from {notification.status.value} to {status.value}"
        )
        return updated

    async def get_incident_history(self, incident_id: str) -> Dict[str, list]:
        return {
            "escalations": await self.repository.list_escalation_history(incident_id),
            "notifications": await self.repository.list_notification_history(incident_id)
        }
