import pytest

from conftest import FakeSender
from incident_escalation.models.errors import IncidentNotFoundError
from incident_escalation.models.rules import EscalationActionType, NotificationChannel
from incident_escalation.services.history_recorder import InMemoryHistoryRepository


class TestManualEscalation:
    """Unit tests for operator-triggered escalation."""

    async def test_all_channels_failing_still_writes_one_manual_row(self, build_engine, make_incident):
        """Every sender raising yields a single unsuccessful MANUAL history row."""
        incident = make_incident(incident_id="INC-D")
        senders = {channel: FakeSender(channel, behaviour="raise") for channel in NotificationChannel}
        repository = InMemoryHistoryRepository()
        engine = build_engine(incidents=[incident], senders=senders, history_repository=repository)

        result = await engine.manual_escalate("INC-D", "Spill spreading to drains", "supervisor_3")

        rows = await repository.list_escalation_history("INC-D")
        assert len(rows) == 1
        assert rows[0].action_type == EscalationActionType.MANUAL
        assert rows[0].is_successful is False
        assert rows[0].rule_id is None
        assert rows[0].executed_by == "supervisor_3"
        assert result.success is False
        # Security_Manager and Safety_Manager, each over email and push
        assert len(result.attempts) == 4
        assert len(await repository.list_notification_history("INC-D")) == 4

    async def test_successful_escalation_renders_reason(self, build_engine, make_incident, fake_senders):
        engine = build_engine(incidents=[make_incident(incident_id="INC-M")])

        result = await engine.manual_escalate("INC-M", "Contractor injured", "supervisor_3")

        assert result.success is True
        subject, content = fake_senders[NotificationChannel.EMAIL].sent[0][1:3]
        assert subject.startswith("Incident Escalated by supervisor_3")
        assert "Escalation Reason: Contractor injured" in content
        assert result.history.action_details.startswith("Manual escalation: Contractor injured")

    async def test_records_escalation_time(self, build_engine, make_incident):
        engine = build_engine(incidents=[make_incident(incident_id="INC-M")])

        await engine.manual_escalate("INC-M", "reason", "supervisor_3")

        incident = await engine.gateway.get("INC-M")
        assert incident.last_escalated_at is not None

    async def test_unknown_incident(self, build_engine):
        engine = build_engine()

        with pytest.raises(IncidentNotFoundError):
            await engine.manual_escalate("INC-404", "reason", "supervisor_3")

    async def test_directory_failure_is_recorded(self, build_engine, make_incident, directory):
        async def broken(roles):
            raise ConnectionError("directory offline")

        directory.resolve_roles = broken
        repository = InMemoryHistoryRepository()
        engine = build_engine(incidents=[make_incident(incident_id="INC-M")], history_repository=repository)

        result = await engine.manual_escalate("INC-M", "reason", "supervisor_3")

        assert result.success is False
        assert result.error_message == "Dispatch failed: directory offline"
        rows = await repository.list_escalation_history("INC-M")
        assert len(rows) == 1
        assert rows[0].error_message == "Dispatch failed: directory offline"
