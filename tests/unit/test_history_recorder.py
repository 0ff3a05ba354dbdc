import pytest
from datetime import datetime, timezone
from uuid import uuid4

from incident_escalation.models.errors import PersistenceError
from incident_escalation.models.history import (
    ActionOutcome, DeliveryAttempt, NotificationPriority, NotificationStatus
)
from incident_escalation.models.rules import EscalationAction, EscalationActionType, NotificationChannel
from incident_escalation.services.history_recorder import HistoryRecorder, InMemoryHistoryRepository
from incident_escalation.services.monitoring import EscalationMetrics


NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FlakyRepository(InMemoryHistoryRepository):
    """Fails the first `failures` writes."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.calls = 0

    async def append_action(self, history, notifications):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("database is restarting")
        await super().append_action(history, notifications)


def _outcome(success=True, channels=(NotificationChannel.EMAIL, NotificationChannel.SMS), details="Delivered"):
    rule_id = uuid4()
    action = EscalationAction(
        action_type=EscalationActionType.NOTIFY_ROLE,
        target="HSE_Manager",
        channels=tuple(channels),
        template_id="incident_critical",
        rule_id=rule_id
    )
    attempts = [
        DeliveryAttempt(
            recipient_id="hse_manager_1", recipient_type="role", channel=channel,
            success=success, subject="Alert", content="Body", attempted_at=NOW, latency_ms=12,
            provider_message_id="msg-1" if success else None,
            error_message=None if success else "rejected"
        )
        for channel in channels
    ]
    return ActionOutcome(
        incident_id="INC-9",
        rule_id=rule_id,
        rule_name="Critical Incident Notification",
        action=action,
        success=success,
        executed_at=NOW,
        details=details,
        priority=NotificationPriority.CRITICAL,
        attempts=attempts
    )


class TestHistoryRecorder:
    """Unit tests for audit row writing."""

    def setup_method(self):
        self.metrics = EscalationMetrics()

    async def test_writes_one_history_row_and_one_row_per_attempt(self):
        repository = InMemoryHistoryRepository()
        recorder = HistoryRecorder(repository, metrics=self.metrics, base_delay=0)
        outcome = _outcome()

        history = await recorder.record(outcome)

        assert outcome.history is history
        assert history.rule_name == "Critical Incident Notification"
        assert history.action_id == outcome.action.action_id
        notifications = await repository.list_notification_history("INC-9")
        assert len(notifications) == 2
        assert {row.history_id for row in notifications} == {history.history_id}
        assert {row.status for row in notifications} == {NotificationStatus.SENT}
        assert {row.template_id for row in notifications} == {"incident_critical"}

    async def test_failed_attempts_are_stored_as_failed(self):
        repository = InMemoryHistoryRepository()
        recorder = HistoryRecorder(repository, base_delay=0)

        await recorder.record(_outcome(success=False))

        rows = await repository.list_notification_history("INC-9")
        assert {row.status for row in rows} == {NotificationStatus.FAILED}
        assert {row.error_message for row in rows} == {"rejected"}

    async def test_long_details_are_truncated(self):
        recorder = HistoryRecorder(InMemoryHistoryRepository(), base_delay=0)

        history = await recorder.record(_outcome(details="x" * 5000))

        assert len(history.action_details) == 2000
        assert history.action_details.endswith("...")

    async def test_transient_failures_are_retried(self):
        repository = FlakyRepository(failures=2)
        recorder = HistoryRecorder(repository, metrics=self.metrics, max_attempts=3, base_delay=0)

        await recorder.record(_outcome())

        assert repository.calls == 3
        assert len(await repository.list_escalation_history("INC-9")) == 1

    async def test_exhausted_retries_raise_and_alert(self):
        alerts = []

        async def alert_hook(outcome, error):
            alerts.append((outcome.incident_id, str(error)))

        repository = FlakyRepository(failures=10)
        recorder = HistoryRecorder(repository, max_attempts=3, base_delay=0, alert_hook=alert_hook)

        with pytest.raises(PersistenceError, match="after 3 attempts"):
            await recorder.record(_outcome())

        assert repository.calls == 3
        assert alerts == [("INC-9", "database is restarting")]

    def test_backoff_is_exponential_and_capped(self):
        recorder = HistoryRecorder(InMemoryHistoryRepository(), base_delay=0.5, max_delay=3.0)

        assert [recorder._backoff_delay(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


class TestNotificationStatusUpdates:
    """Unit tests for delivery callbacks."""

    async def _recorded(self):
        repository = InMemoryHistoryRepository()
        recorder = HistoryRecorder(repository, base_delay=0)
        await recorder.record(_outcome(channels=(NotificationChannel.EMAIL,)))
        notification = (await repository.list_notification_history("INC-9"))[0]
        return recorder, notification

    async def test_sent_to_delivered(self):
        recorder, notification = await self._recorded()

        updated = await recorder.update_notification_status(notification.notification_id, NotificationStatus.DELIVERED)

        assert updated.status == NotificationStatus.DELIVERED
        assert updated.updated_at is not None

    async def test_delivered_is_terminal(self):
        recorder, notification = await self._recorded()
        await recorder.update_notification_status(notification.notification_id, NotificationStatus.DELIVERED)

        with pytest.raises(ValueError):
            await recorder.update_notification_status(notification.notification_id, NotificationStatus.FAILED)

    async def test_unknown_notification_returns_none(self):
        recorder, _ = await self._recorded()

        assert await recorder.update_notification_status(uuid4(), NotificationStatus.DELIVERED) is None
