"""
Incident snapshot consumed by the escalation engine.

Severity, status and department values are opaque tokens owned by the
incident module.
"""

import hashlib
from datetime import datetime, timezone
from typing import Dict, Optional, Any
from dataclasses import dataclass
from enum import Enum
from uuid import UUID, uuid4


class EvaluationTrigger(Enum):
    """What produced an evaluation request."""
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    OVERDUE_SCAN = "overdue_scan"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class IncidentSnapshot:
    """
    Immutable view of the incident attributes rules can match on.

    Timestamps are held in UTC; a value without an offset is taken as UTC.
    """
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

    def __post_init__(self):
        for name in ("reported_at", "last_response_at", "last_escalated_at"):
            object.__setattr__(self, name, _as_utc(getattr(self, name)))

    def response_anchor(self) -> datetime:
        """Report time, moved forward by the last recorded response."""
        if self.last_response_at and self.last_response_at > self.reported_at:
            return self.last_response_at
        return self.reported_at

    def escalation_anchor(self) -> datetime:
        """Response anchor, moved forward by the last escalation."""
        anchor = self.response_anchor()
        if self.last_escalated_at and self.last_escalated_at > anchor:
            return self.last_escalated_at
        return anchor

    def state_fingerprint(self) -> str:
        """
        Short digest of the fields a rule triggers on. A change in any of them
        re-arms rules that have already fired for this incident.
        """
        state = "|".join([
            self.severity,
            self.status,
            (self.department or "").casefold(),
            (self.location or "").casefold()
        ])
        return hashlib.sha256(state.encode()).hexdigest()[:16]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "incident_id": self.incident_id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "status": self.status,
            "department": self.department,
            "location": self.location,
            "reported_at": self.reported_at.isoformat(),
            "last_response_at": self.last_response_at.isoformat() if self.last_response_at else None,
            "last_escalated_at": self.last_escalated_at.isoformat() if self.last_escalated_at else None,
            "reporter_name": self.reporter_name,
            "assigned_to": self.assigned_to
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IncidentSnapshot':
        def _dt(value):
            if value is None or isinstance(value, datetime):
                return value
            return datetime.fromisoformat(value)

        return cls(
            incident_id=str(data["incident_id"]),
            title=data.get("title", ""),
            description=data.get("description", ""),
            severity=data["severity"],
            status=data["status"],
            department=data.get("department"),
            location=data.get("location"),
            reported_at=_dt(data["reported_at"]),
            last_response_at=_dt(data.get("last_response_at")),
            last_escalated_at=_dt(data.get("last_escalated_at")),
            reporter_name=data.get("reporter_name"),
            assigned_to=data.get("assigned_to")
        )


@dataclass(frozen=True)
class EvaluationRequest:
    """Unit of work flowing from a producer into the evaluation pipeline."""
    incident: IncidentSnapshot
    trigger: EvaluationTrigger
    request_id: UUID
    requested_at: datetime

    @classmethod
    def for_incident(cls, incident: IncidentSnapshot, trigger: EvaluationTrigger, now: datetime) -> 'EvaluationRequest':
        return cls(incident=incident, trigger=trigger, request_id=uuid4(), requested_at=now)
