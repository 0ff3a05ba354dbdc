from datetime import timedelta

import pytest

from conftest import REFERENCE_TIME
from incident_escalation.models.incident import IncidentSnapshot
from incident_escalation.models.rules import EscalationActionType, NotificationChannel
from incident_escalation.services.overdue_scanner import ScannerState


class TestOverdueScanner:
    """Unit tests for the periodic duration scan."""

    def _duration_rule(self, make_rule, hours=24):
        return make_rule(
            name="24-Hour Response Escalation",
            action_type=EscalationActionType.ESCALATE_TO_MANAGER,
            target="department_manager",
            template_id="escalation_overdue",
            trigger_after=timedelta(hours=hours)
        )

    async def test_overdue_incident_fires_once_across_scans(self, build_engine, make_rule, make_incident, fake_senders):
        rule = self._duration_rule(make_rule)
        overdue = make_incident(incident_id="INC-OLD", reported_hours_ago=30)
        recent = make_incident(incident_id="INC-NEW", reported_hours_ago=2)
        engine = build_engine(rules=[rule], incidents=[overdue, recent])

        first = await engine.scan_overdue(REFERENCE_TIME)
        second = await engine.scan_overdue(REFERENCE_TIME + timedelta(minutes=5))

        assert first.candidates == 1
        assert first.rules_fired == 1
        assert first.incident_ids == ["INC-OLD"]
        assert second.rules_fired == 0
        assert second.suppressed == 1
        assert len(fake_senders[NotificationChannel.EMAIL].sent) == 1

    async def test_closed_incidents_are_not_candidates(self, build_engine, make_rule, make_incident):
        engine = build_engine(
            rules=[self._duration_rule(make_rule)],
            incidents=[make_incident(status="closed", reported_hours_ago=48)]
        )

        report = await engine.scan_overdue(REFERENCE_TIME)

        assert report.candidates == 0

    async def test_recorded_response_moves_the_anchor(self, build_engine, make_rule, make_incident):
        incident = make_incident(
            reported_hours_ago=30,
            last_response_at=REFERENCE_TIME - timedelta(hours=3)
        )
        engine = build_engine(rules=[self._duration_rule(make_rule)], incidents=[incident])

        report = await engine.scan_overdue(REFERENCE_TIME)

        assert report.candidates == 0

    async def test_skips_without_duration_rules(self, build_engine, make_rule, make_incident):
        engine = build_engine(
            rules=[make_rule(trigger_severities=["critical"])],
            incidents=[make_incident(reported_hours_ago=48)]
        )

        report = await engine.scan_overdue(REFERENCE_TIME)

        assert report.skipped is True
        assert report.candidates == 0
        assert engine.scanner.state == ScannerState.IDLE
        assert engine.scanner.last_report is report

    async def test_pipeline_error_is_counted_and_scan_continues(self, build_engine, make_rule, make_incident):
        engine = build_engine(
            rules=[self._duration_rule(make_rule)],
            incidents=[
                make_incident(incident_id="INC-A", reported_hours_ago=30),
                make_incident(incident_id="INC-B", reported_hours_ago=30),
            ]
        )
        original = engine.pipeline.process

        async def flaky(request):
            if request.incident.incident_id == "INC-A":
                raise RuntimeError("matcher exploded")
            return await original(request)

        engine.scanner.pipeline.process = flaky

        report = await engine.scan_overdue(REFERENCE_TIME)

        assert report.errors == 1
        assert report.evaluated == 1
        assert report.incident_ids == ["INC-B"]
        assert engine.scanner.state == ScannerState.IDLE

    async def test_candidate_query_error_is_counted(self, build_engine, make_rule):
        engine = build_engine(rules=[self._duration_rule(make_rule)])

        async def broken(statuses, reported_before):
            raise RuntimeError("incident store offline")

        engine.scanner.gateway.list_open = broken

        report = await engine.scan_overdue(REFERENCE_TIME)

        assert report.errors == 1
        assert report.candidates == 0
        assert engine.scanner.state == ScannerState.IDLE
        assert engine.scanner.last_report is report

    async def test_timestamp_without_offset_is_read_as_utc(self, build_engine, make_rule):
        """An incident reported with a naive timestamp is still scanned and fired."""
        incident = IncidentSnapshot(
            incident_id="INC-NAIVE",
            severity="major",
            status="open",
            reported_at=(REFERENCE_TIME - timedelta(hours=30)).replace(tzinfo=None)
        )
        engine = build_engine(rules=[self._duration_rule(make_rule)], incidents=[incident])

        report = await engine.scan_overdue(REFERENCE_TIME)

        assert incident.reported_at == REFERENCE_TIME - timedelta(hours=30)
        assert report.errors == 0
        assert report.incident_ids == ["INC-NAIVE"]

    @pytest.mark.parametrize("reported_at", ["2026-03-01T06:00:00", "2026-03-01T07:00:00+01:00"])
    def test_snapshot_timestamps_are_normalised_to_utc(self, reported_at):
        incident = IncidentSnapshot.from_dict(
            {"incident_id": "INC-1", "severity": "major", "status": "open", "reported_at": reported_at}
        )

        assert incident.reported_at.utcoffset() == timedelta(0)
        assert incident.reported_at.hour == 6
