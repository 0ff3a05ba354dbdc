from .audit import AuditLogger, AuditEntry, AuditOperation, AuditException
from .monitoring import EscalationMetrics
from .rule_store import RuleStore, RuleRepository, InMemoryRuleRepository, default_rules
from .rule_matcher import RuleMatcher, MatchResult, match_rule
from .firing_guard import FiringGuard, InMemoryFiringGuard, RedisFiringGuard
from .history_recorder import HistoryRecorder, HistoryRepository, InMemoryHistoryRepository
from .templates import TemplateRenderer, NotificationTemplate, RenderedContent, default_templates
from .recipients import Recipient, RecipientDirectory, StaticRecipientDirectory, default_directory
from .channel_senders import (
    ChannelSender, SendResult, SmtpEmailSender, HttpGatewaySender, WebhookSender,
    RedisInAppSender, LoggingSender, build_senders
)
from .notification_dispatcher import NotificationDispatcher, DispatchContext, DispatchResult, roll_up
from .action_scheduler import (
    ActionScheduler, ExecutionPlan, PlannedAction, DeferredActionStore,
    InMemoryDeferredActionStore, RedisDeferredActionStore, DeferredActionWorker
)
from .evaluation_pipeline import EvaluationPipeline, EvaluationOutcome, IncidentGateway, InMemoryIncidentGateway
from .overdue_scanner import OverdueScanner, ScanReport, ScannerState
from .manual_escalation import ManualEscalationHandler, ManualEscalationOutcome
from .escalation_engine import EscalationEngine

__all__ = [
    'AuditLogger',
    'AuditEntry',
    'AuditOperation',
    'AuditException',
    'EscalationMetrics',
    'RuleStore',
    'RuleRepository',
    'InMemoryRuleRepository',
    'default_rules',
    'RuleMatcher',
    'MatchResult',
    'match_rule',
    'FiringGuard',
    'InMemoryFiringGuard',
    'RedisFiringGuard',
    'HistoryRecorder',
    'HistoryRepository',
    'InMemoryHistoryRepository',
    'TemplateRenderer',
    'NotificationTemplate',
    'RenderedContent',
    'default_templates',
    'Recipient',
    'RecipientDirectory',
    'StaticRecipientDirectory',
    'default_directory',
    'ChannelSender',
    'SendResult',
    'SmtpEmailSender',
    'HttpGatewaySender',
    'WebhookSender',
    'RedisInAppSender',
    'LoggingSender',
    'build_senders',
    'NotificationDispatcher',
    'DispatchContext',
    'DispatchResult',
    'roll_up',
    'ActionScheduler',
    'ExecutionPlan',
    'PlannedAction',
    'DeferredActionStore',
    'InMemoryDeferredActionStore',
    'RedisDeferredActionStore',
    'DeferredActionWorker',
    'EvaluationPipeline',
    'EvaluationOutcome',
    'IncidentGateway',
    'InMemoryIncidentGateway',
    'OverdueScanner',
    'ScanReport',
    'ScannerState',
    'ManualEscalationHandler',
    'ManualEscalationOutcome',
    'EscalationEngine'
]
