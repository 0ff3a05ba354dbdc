"""
Escalation API endpoints
FastAPI routes for incident evaluation, manual escalation, rule administration
and delivery callbacks
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from ..models.errors import (
    ConfigurationError, IncidentNotFoundError, PersistenceError, RuleNotFoundError
)
from ..models.history import NotificationStatus, SYSTEM_USER
from ..models.incident import EvaluationTrigger, IncidentSnapshot
from ..models.rules import EscalationAction, EscalationRule
from ..services.audit import AuditException
from ..services.escalation_engine import EscalationEngine

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/api/escalation", tags=["escalation"])


class IncidentPayload(BaseModel):
    incident_id: str
    severity: str
    status: str
    reported_at: datetime
    title: str = ""
    description: str = ""
    department: Optional[str] = None
    location: Optional[str] = None
    last_response_at: Optional[datetime] = None
    last_escalated_at: Optional[datetime] = None
    reporter_name: Optional[str] = None
    assigned_to: Optional[str] = None
    trigger: EvaluationTrigger = EvaluationTrigger.UPDATED


class ManualEscalationPayload(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)
    escalated_by: str = Field(..., min_length=1, max_length=100)


class ActionPayload(BaseModel):
    action_type: str
    target: str
    channels: List[str]
    template_id: Optional[str] = None
    parameters: Dict[str, str] = Field(default_factory=dict)
    delay_seconds: Optional[float] = None


class RulePayload(BaseModel):
    name: str
    description: str = ""
    is_active: bool = True
    priority: int = 100
    trigger_severities: List[str] = Field(default_factory=list)
    trigger_statuses: List[str] = Field(default_factory=list)
    trigger_departments: List[str] = Field(default_factory=list)
    trigger_locations: List[str] = Field(default_factory=list)
    trigger_after_seconds: Optional[float] = None
    repeatable: bool = False
    rearm_window_seconds: Optional[float] = None
    actions: List[ActionPayload]


class RuleUpdatePayload(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    priority: Optional[int] = None
    trigger_severities: Optional[List[str]] = None
    trigger_statuses: Optional[List[str]] = None
    trigger_departments: Optional[List[str]] = None
    trigger_locations: Optional[List[str]] = None
    trigger_after_seconds: Optional[float] = None
    repeatable: Optional[bool] = None
    rearm_window_seconds: Optional[float] = None
    actions: Optional[List[ActionPayload]] = None


class TogglePayload(BaseModel):
    is_active: bool


class NotificationStatusPayload(BaseModel):
    status: NotificationStatus
    error_message: Optional[str] = None


def get_engine(request: Request) -> EscalationEngine:
    """Engine instance attached to the application by create_app"""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Escalation engine not initialised")
    return engine


def _build_actions(payloads: List[ActionPayload]) -> List[EscalationAction]:
    return [EscalationAction.from_dict(payload.model_dump()) for payload in payloads]


def _update_changes(payload: RuleUpdatePayload) -> Dict[str, Any]:
    data = payload.model_dump(exclude_unset=True)
    changes: Dict[str, Any] = {}
    for key, value in data.items():
        if key == "trigger_after_seconds":
            changes["trigger_after"] = timedelta(seconds=value) if value is not None else None
        elif key == "rearm_window_seconds":
            changes["rearm_window"] = timedelta(seconds=value) if value is not None else None
        elif key == "actions":
            changes["actions"] = _build_actions(payload.actions or [])
        else:
            changes[key] = value
    return changes


@router.post("/incidents/evaluate", status_code=202)
async def evaluate_incident(
    payload: IncidentPayload,
    wait: bool = Query(False, description="Evaluate inline and return the outcome"),
    engine: EscalationEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """
    Submit an incident event for evaluation

    Queued for background workers unless `wait` is set
    """
    data = payload.model_dump(exclude={"trigger"})
    incident = IncidentSnapshot(**data)

    upsert = getattr(engine.gateway, "upsert", None)
    if upsert is not None:
        await upsert(incident)

    if wait:
        outcome = await engine.evaluate_now(incident, payload.trigger)
        return outcome.to_dict()

    request = await engine.evaluate_incident(incident, payload.trigger)
    return {
        "request_id": str(request.request_id),
        "incident_id": incident.incident_id,
        "status": "queued"
    }


@router.post("/incidents/{incident_id}/escalate")
async def manual_escalate(
    incident_id: str,
    payload: ManualEscalationPayload,
    engine: EscalationEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Manually escalate an incident to the configured escalation roles"""
    try:
        outcome = await engine.manual_escalate(incident_id, payload.reason, payload.escalated_by)
        return outcome.to_dict()

    except IncidentNotFoundError:
        raise HTTPException(status_code=404, detail=f"Incident {incident_id} not found")
    except PersistenceError as e:
        logger.critical(f"Manual escalation of incident {incident_id} was not recorded: {e}")
        raise HTTPException(status_code=500, detail="Escalation could not be recorded")


@router.post("/scan")
async def scan_overdue(engine: EscalationEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Run one overdue scan immediately"""
    report = await engine.scan_overdue()
    return report.to_dict()


@router.get("/incidents/{incident_id}/history")
async def get_incident_history(
    incident_id: str,
    engine: EscalationEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Escalation and notification history of an incident, oldest first"""
    try:
        return await engine.get_incident_history(incident_id)

    except PersistenceError as e:
        logger.error(f"Error reading history for incident {incident_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/rules")
async def list_rules(engine: EscalationEngine = Depends(get_engine)) -> Dict[str, Any]:
    rules = await engine.rule_store.list_rules()
    return {"rules": [rule.to_dict() for rule in rules], "count": len(rules)}


@router.get("/rules/{rule_id}")
async def get_rule(rule_id: UUID, engine: EscalationEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        rule = await engine.rule_store.get_rule(rule_id)
        return rule.to_dict()

    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")


@router.post("/rules", status_code=201)
async def create_rule(
    payload: RulePayload,
    x_user_id: str = Header(SYSTEM_USER),
    engine: EscalationEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Create an escalation rule"""
    try:
        data = payload.model_dump(exclude={"actions"})
        rule = EscalationRule.from_dict({**data, "actions": []}).with_actions(_build_actions(payload.actions))
        created = await engine.rule_store.create_rule(rule, x_user_id)
        return created.to_dict()

    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})
    except AuditException as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.patch("/rules/{rule_id}")
async def update_rule(
    rule_id: UUID,
    payload: RuleUpdatePayload,
    x_user_id: str = Header(SYSTEM_USER),
    engine: EscalationEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Update fields of an escalation rule"""
    try:
        updated = await engine.rule_store.update_rule(rule_id, _update_changes(payload), x_user_id)
        return updated.to_dict()

    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})
    except AuditException as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/rules/{rule_id}/toggle")
async def toggle_rule(
    rule_id: UUID,
    payload: TogglePayload,
    x_user_id: str = Header(SYSTEM_USER),
    engine: EscalationEngine = Depends(get_engine)
) -> Dict[str, Any]:
    try:
        rule = await engine.rule_store.toggle_rule(rule_id, payload.is_active, x_user_id)
        return {"rule_id": str(rule.rule_id), "is_active": rule.is_active}

    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})
    except AuditException as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.delete("/rules/{rule_id}", status_code=204)
async def delete_rule(
    rule_id: UUID,
    x_user_id: str = Header(SYSTEM_USER),
    engine: EscalationEngine = Depends(get_engine)
) -> None:
    """Delete a rule and its actions; escalation history is kept"""
    try:
        await engine.rule_store.delete_rule(rule_id, x_user_id)

    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")
    except AuditException as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/rules/{rule_id}/audit")
async def get_rule_audit_trail(
    rule_id: UUID,
    engine: EscalationEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Administrative changes to a rule, oldest first; available after deletion"""
    try:
        entries = await engine.rule_store.audit_trail(rule_id)
        return {"rule_id": str(rule_id), "entries": [entry.to_dict() for entry in entries], "count": len(entries)}

    except PersistenceError as e:
        logger.error(f"Error reading audit trail for rule {rule_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/notifications/{notification_id}/status")
async def update_notification_status(
    notification_id: UUID,
    payload: NotificationStatusPayload,
    engine: EscalationEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Delivery status callback from a channel provider"""
    try:
        notification = await engine.update_notification_status(
            notification_id, payload.status, payload.error_message
        )
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if notification is None:
        raise HTTPException(status_code=404, detail=f"Notification {notification_id} not found")
    return notification.to_dict()


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(engine: EscalationEngine = Depends(get_engine)) -> str:
    return engine.metrics.get_prometheus_metrics()


@router.get("/health")
async def health(engine: EscalationEngine = Depends(get_engine)) -> Dict[str, Any]:
    return await engine.health_check()
