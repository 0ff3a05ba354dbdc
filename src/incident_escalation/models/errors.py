"""
Exception taxonomy for the escalation engine.

Per-action and per-channel failures are captured and recorded by the engine;
only persistence failures propagate after retries are exhausted.
"""

from typing import List, Optional
from uuid import UUID


class EscalationError(Exception):
    """Base class for escalation engine errors."""
    pass


class ConfigurationError(EscalationError):
    """Raised for malformed rules, actions or engine configuration."""

    def __init__(self, message: str, rule_id: Optional[UUID] = None, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.rule_id = rule_id
        self.errors = errors or []


class RecipientResolutionError(EscalationError):
    """Raised when an action target cannot be resolved to recipients."""

    def __init__(self, message: str, target: str = ""):
        super().__init__(message)
        self.target = target


class ChannelDeliveryError(EscalationError):
    """Raised by channel senders on transport failure."""

    def __init__(self, message: str, channel: str = "", retryable: bool = True):
        super().__init__(message)
        self.channel = channel
        self.retryable = retryable


class TemplateRenderError(EscalationError):
    """Raised when notification content cannot be rendered."""
    pass


class PersistenceError(EscalationError):
    """Raised when history rows cannot be written after all retries."""
    pass


class IncidentNotFoundError(EscalationError):
    """Raised when an incident referenced by a request does not exist."""

    def __init__(self, incident_id: str):
        super().__init__(f"Incident {incident_id} not found")
        self.incident_id = incident_id


class DuplicateFiringPrevented(EscalationError):
    """
    Not a failure: the firing guard refused a second firing of the same rule
    for the same incident inside its re-arm window. Never raised out of the
    evaluation pipeline; it is reported in the evaluation outcome.
    """

    def __init__(self, incident_id: str, rule_id: UUID, firing_key: str):
        super().__init__(
            f"Rule {rule_id} already fired for incident {incident_id} ({firing_key})"
        )
        self.incident_id = incident_id
        self.rule_id = rule_id
        self.firing_key = firing_key


class RuleNotFoundError(EscalationError):
    """Raised by rule administration for an unknown rule identifier."""

    def __init__(self, rule_id: UUID):
        super().__init__(f"Escalation rule {rule_id} not found")
        self.rule_id = rule_id
