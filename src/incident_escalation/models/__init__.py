from .errors import (
    EscalationError, ConfigurationError, RecipientResolutionError, ChannelDeliveryError,
    TemplateRenderError, PersistenceError, IncidentNotFoundError, DuplicateFiringPrevented,
    RuleNotFoundError
)
from .rules import EscalationRule, EscalationAction, EscalationActionType, NotificationChannel, validate_rule
from .incident import IncidentSnapshot, EvaluationRequest, EvaluationTrigger
from .history import (
    EscalationHistory, NotificationHistory, NotificationStatus, NotificationPriority,
    DeliveryAttempt, ActionOutcome, DeferredAction, SYSTEM_USER
)

__all__ = [
    'EscalationError',
    'ConfigurationError',
    'RecipientResolutionError',
    'ChannelDeliveryError',
    'TemplateRenderError',
    'PersistenceError',
    'IncidentNotFoundError',
    'DuplicateFiringPrevented',
    'RuleNotFoundError',
    'EscalationRule',
    'EscalationAction',
    'EscalationActionType',
    'NotificationChannel',
    'validate_rule',
    'IncidentSnapshot',
    'EvaluationRequest',
    'EvaluationTrigger',
    'EscalationHistory',
    'NotificationHistory',
    'NotificationStatus',
    'NotificationPriority',
    'DeliveryAttempt',
    'ActionOutcome',
    'DeferredAction',
    'SYSTEM_USER'
]
