"""
API tests through FastAPI's TestClient with an in-memory engine.
"""

import pytest
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from fastapi.testclient import TestClient

from incident_escalation.api.app import create_app
from incident_escalation.models.rules import NotificationChannel


RULE_PAYLOAD = {
    "name": "Warehouse critical",
    "priority": 5,
    "trigger_severities": ["critical"],
    "trigger_departments": ["Warehouse"],
    "actions": [
        {"action_type": "notify_role", "target": "HSE_Manager", "channels": ["email", "sms"],
         "template_id": "incident_critical"},
        {"action_type": "notify_department", "target": "Warehouse", "channels": ["email"],
         "delay_seconds": 3600},
    ],
}


def _incident_payload(incident_id="INC-API", **overrides):
    payload = {
        "incident_id": incident_id,
        "severity": "critical",
        "status": "open",
        "reported_at": datetime.now(timezone.utc).isoformat(),
        "title": "Chemical spill",
        "description": "Solvent spill near dock",
        "department": "Warehouse",
        "trigger": "created",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def engine(build_engine):
    return build_engine()


@pytest.fixture
def client(engine):
    app = create_app(engine=engine, start_background=False)
    with TestClient(app) as test_client:
        yield test_client


class TestRuleAdministrationApi:
    """Rule CRUD endpoints."""

    def test_default_rules_are_seeded(self, client):
        response = client.get("/api/escalation/rules")

        assert response.status_code == 200
        assert response.json()["count"] == 3

    def test_create_get_update_toggle_delete(self, client, engine):
        created = client.post("/api/escalation/rules", json=RULE_PAYLOAD, headers={"x-user-id": "admin"})
        assert created.status_code == 201
        rule_id = created.json()["rule_id"]
        assert [a["position"] for a in created.json()["actions"]] == [0, 1]
        assert created.json()["actions"][1]["delay_seconds"] == 3600

        fetched = client.get(f"/api/escalation/rules/{rule_id}")
        assert fetched.json()["name"] == "Warehouse critical"

        updated = client.patch(f"/api/escalation/rules/{rule_id}", json={"priority": 2, "trigger_after_seconds": 7200})
        assert updated.status_code == 200
        assert updated.json()["priority"] == 2
        assert updated.json()["trigger_after_seconds"] == 7200

        toggled = client.post(f"/api/escalation/rules/{rule_id}/toggle", json={"is_active": False})
        assert toggled.json() == {"rule_id": rule_id, "is_active": False}

        deleted = client.delete(f"/api/escalation/rules/{rule_id}")
        assert deleted.status_code == 204
        assert client.get(f"/api/escalation/rules/{rule_id}").status_code == 404

        audit = client.get(f"/api/escalation/rules/{rule_id}/audit")
        assert audit.status_code == 200
        entries = audit.json()["entries"]
        assert [entry["user_id"] for entry in entries] == ["admin", "system", "system", "system"]
        assert [entry["operation"] for entry in entries] == ["INSERT", "UPDATE", "UPDATE", "DELETE"]

    def test_blank_user_is_rejected_before_the_rule_is_stored(self, client):
        response = client.post("/api/escalation/rules", json=RULE_PAYLOAD, headers={"x-user-id": ""})

        assert response.status_code == 422
        names = [rule["name"] for rule in client.get("/api/escalation/rules").json()["rules"]]
        assert "Warehouse critical" not in names

    def test_toggle_with_blank_user_is_rejected(self, client):
        rule_id = client.post("/api/escalation/rules", json=RULE_PAYLOAD).json()["rule_id"]

        response = client.post(
            f"/api/escalation/rules/{rule_id}/toggle", json={"is_active": False}, headers={"x-user-id": ""}
        )

        assert response.status_code == 422
        assert client.get(f"/api/escalation/rules/{rule_id}").json()["is_active"] is True

    def test_malformed_rule_is_rejected(self, client):
        payload = dict(RULE_PAYLOAD, actions=[{"action_type": "notify_role", "target": "HSE_Manager", "channels": []}])

        response = client.post("/api/escalation/rules", json=payload)

        assert response.status_code == 422
        assert "channels must not be empty" in response.json()["detail"]["errors"][0]

    def test_unknown_action_type_is_rejected(self, client):
        payload = dict(RULE_PAYLOAD, actions=[{"action_type": "page", "target": "x", "channels": ["email"]}])

        assert client.post("/api/escalation/rules", json=payload).status_code == 422

    def test_missing_rule(self, client):
        rule_id = uuid4()

        assert client.get(f"/api/escalation/rules/{rule_id}").status_code == 404
        assert client.patch(f"/api/escalation/rules/{rule_id}", json={"priority": 1}).status_code == 404
        assert client.delete(f"/api/escalation/rules/{rule_id}").status_code == 404


class TestIncidentApi:
    """Evaluation, manual escalation and history endpoints."""

    def test_inline_evaluation_and_history(self, client, fake_senders):
        response = client.post("/api/escalation/incidents/evaluate?wait=true", json=_incident_payload())

        assert response.status_code == 202
        body = response.json()
        assert body["trigger"] == "created"
        # Critical escalation and regulatory reporting from the seeded rules
        assert len(body["fired_rules"]) == 2
        assert body["actions_deferred"] == 1

        history = client.get("/api/escalation/incidents/INC-API/history").json()
        assert len(history["escalations"]) == 2
        assert len(history["pending_actions"]) == 1
        assert fake_senders[NotificationChannel.WHATSAPP].sent

    def test_queued_evaluation(self, client, engine):
        response = client.post("/api/escalation/incidents/evaluate", json=_incident_payload())

        assert response.status_code == 202
        assert response.json()["status"] == "queued"
        assert engine.queue_depth == 1

    def test_manual_escalation(self, client):
        client.post("/api/escalation/incidents/evaluate", json=_incident_payload(severity="minor"))

        response = client.post(
            "/api/escalation/incidents/INC-API/escalate",
            json={"reason": "Spill reached drains", "escalated_by": "supervisor_3"}
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["notifications_sent"] == 4

    def test_manual_escalation_unknown_incident(self, client):
        response = client.post(
            "/api/escalation/incidents/INC-NONE/escalate",
            json={"reason": "r", "escalated_by": "supervisor_3"}
        )

        assert response.status_code == 404

    def test_manual_escalation_requires_reason(self, client):
        response = client.post(
            "/api/escalation/incidents/INC-API/escalate",
            json={"reason": "", "escalated_by": "supervisor_3"}
        )

        assert response.status_code == 422

    def test_notification_status_callback(self, client):
        client.post("/api/escalation/incidents/evaluate?wait=true", json=_incident_payload())
        notification_id = client.get("/api/escalation/incidents/INC-API/history").json()["notifications"][0]["notification_id"]

        delivered = client.post(f"/api/escalation/notifications/{notification_id}/status", json={"status": "delivered"})
        again = client.post(f"/api/escalation/notifications/{notification_id}/status", json={"status": "failed"})
        missing = client.post(f"/api/escalation/notifications/{uuid4()}/status", json={"status": "delivered"})

        assert delivered.status_code == 200
        assert delivered.json()["status"] == "delivered"
        assert again.status_code == 409
        assert missing.status_code == 404


class TestOperationalApi:
    """Scan, metrics and health endpoints."""

    def test_scan(self, client):
        client.post("/api/escalation/incidents/evaluate", json=_incident_payload(
            incident_id="INC-OLD", severity="minor", reported_at="2026-01-01T00:00:00+00:00"
        ))

        report = client.post("/api/escalation/scan").json()

        assert report["candidates"] == 1
        assert report["rules_fired"] == 1

    def test_metrics(self, client):
        client.post("/api/escalation/incidents/evaluate?wait=true", json=_incident_payload())

        response = client.get("/api/escalation/metrics")

        assert response.status_code == 200
        assert "escalation_evaluations_total" in response.text

    def test_health(self, client):
        response = client.get("/api/escalation/health")

        assert response.status_code == 200
        assert response.json()["status"] == "stopped"

    def test_scan_with_timestamp_without_offset(self, client):
        """A naive reported_at is read as UTC by both the scan and inline evaluation."""
        reported_at = (datetime.now(timezone.utc) - timedelta(hours=30)).replace(tzinfo=None).isoformat()
        client.post("/api/escalation/incidents/evaluate", json=_incident_payload(
            incident_id="INC-NAIVE", severity="minor", reported_at=reported_at
        ))

        response = client.post("/api/escalation/scan")

        assert response.status_code == 200
        assert response.json()["errors"] == 0
        assert response.json()["candidates"] == 1
        assert response.json()["rules_fired"] == 1

    def test_inline_evaluation_with_timestamp_without_offset(self, client):
        response = client.post(
            "/api/escalation/incidents/evaluate?wait=true",
            json=_incident_payload(
                incident_id="INC-NAIVE", reported_at=datetime.now(timezone.utc).replace(tzinfo=None).isoformat()
            )
        )

        assert response.status_code == 202
        assert len(response.json()["fired_rules"]) == 2
