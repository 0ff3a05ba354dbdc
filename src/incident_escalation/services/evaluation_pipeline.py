"""
Evaluation Pipeline for the Escalation Engine

This module implements the single consumer both producers feed:
- Incident events (created, updated, status changed) from the engine queue
- Overdue incidents found by the OverdueScanner

Each request runs RuleMatcher -> firing guard -> ActionScheduler ->
NotificationDispatcher -> HistoryRecorder. Deferred actions re-enter through
execute_deferred once their delay has elapsed.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from ..models.errors import ConfigurationError, DuplicateFiringPrevented, PersistenceError
from ..models.history import SYSTEM_USER, ActionOutcome, DeferredAction
from ..models.incident import EvaluationRequest, IncidentSnapshot
from ..models.rules import EscalationAction, EscalationActionType, EscalationRule
from .action_scheduler import ActionScheduler
from .firing_guard import FiringGuard, firing_key
from .history_recorder import HistoryRecorder
from .monitoring import EscalationMetrics
from .notification_dispatcher import DispatchContext, NotificationDispatcher
from .rule_matcher import RuleMatcher
from .rule_store import RuleStore


class IncidentGateway:
    """Access to incidents owned by the incident module."""

    async def get(self, incident_id: str) -> Optional[IncidentSnapshot]:
        raise NotImplementedError

    async def list_open(self, statuses: Iterable[str], anchored_before: datetime) -> List[IncidentSnapshot]:
        """Incidents in one of `statuses` whose response anchor is at or before `anchored_before`."""
        raise NotImplementedError

    async def mark_escalated(self, incident_id: str, at: datetime) -> None:
        raise NotImplementedError

    async def reassign(self, incident_id: str, assignee: str) -> None:
        raise NotImplementedError


class InMemoryIncidentGateway(IncidentGateway):
    """Incident gateway over a dictionary of snapshots; also used by the API for ingested events."""

    def __init__(self, incidents: Optional[Iterable[IncidentSnapshot]] = None):
        self._incidents: Dict[str, IncidentSnapshot] = {}
        self._lock = asyncio.Lock()
        for incident in incidents or []:
            self._incidents[incident.incident_id] = incident

    async def upsert(self, incident: IncidentSnapshot) -> None:
        async with self._lock:
            existing = self._incidents.get(incident.incident_id)
            # Keep the escalation anchor the engine recorded
            if existing and existing.last_escalated_at and not incident.last_escalated_at:
                incident = replace(incident, last_escalated_at=existing.last_escalated_at)
            self._incidents[incident.incident_id] = incident

    async def get(self, incident_id: str) -> Optional[IncidentSnapshot]:
        async with self._lock:
            return self._incidents.get(incident_id)

    async def list_open(self, statuses, anchored_before) -> List[IncidentSnapshot]:
        allowed = set(statuses)
        async with self._lock:
            incidents = list(self._incidents.values())
        return [
            incident for incident in incidents
            if incident.status in allowed and incident.response_anchor() <= anchored_before
        ]

    async def mark_escalated(self, incident_id: str, at: datetime) -> None:
        async with self._lock:
            incident = self._incidents.get(incident_id)
            if incident is not None:
                self._incidents[incident_id] = replace(incident, last_escalated_at=at)

    async def reassign(self, incident_id: str, assignee: str) -> None:
        async with self._lock:
            incident = self._incidents.get(incident_id)
            if incident is None:
                raise KeyError(f"Incident {incident_id} not found")
            self._incidents[incident_id] = replace(incident, assigned_to=assignee)


@dataclass
class EvaluationOutcome:
    """What one evaluation request matched, fired, suppressed and executed."""
    request: EvaluationRequest
    matched: List[EscalationRule] = field(default_factory=list)
    rejected: List[Tuple[EscalationRule, ConfigurationError]] = field(default_factory=list)
    suppressed: List[DuplicateFiringPrevented] = field(default_factory=list)
    fired: List[EscalationRule] = field(default_factory=list)
    outcomes: List[ActionOutcome] = field(default_factory=list)
    deferred: List[DeferredAction] = field(default_factory=list)
    cancelled_deferred: int = 0

    @property
    def incident_id(self) -> str:
        return self.request.incident.incident_id

    def to_dict(self) -> Dict[str, object]:
        return {
            "incident_id": self.incident_id,
            "request_id": str(self.request.request_id),
            "trigger": self.request.trigger.value,
            "matched_rules": [str(rule.rule_id) for rule in self.matched],
            "rejected_rules": [str(rule.rule_id) for rule, _ in self.rejected],
            "fired_rules": [str(rule.rule_id) for rule in self.fired],
            "suppressed": [marker.firing_key for marker in self.suppressed],
            "actions_executed": len(self.outcomes),
            "actions_succeeded": sum(1 for outcome in self.outcomes if outcome.success),
            "actions_deferred": len(self.deferred),
            "deferred_cancelled": self.cancelled_deferred
        }


class EvaluationPipeline:
    """
    Evaluates incidents against the active rule set and executes what fires.

    Responsibilities:
    - Match against an immutable rule snapshot
    - Acquire the firing guard before any rule-driven dispatch
    - Execute actions through the scheduler with per-action isolation
    - Record every executed action, surfacing audit loss in the outcome
    - Cancel pending deferred actions once an incident leaves the open statuses
    """

    def __init__(
        self,
        rule_store: RuleStore,
        matcher: RuleMatcher,
        firing_guard: FiringGuard,
        scheduler: ActionScheduler,
        dispatcher: NotificationDispatcher,
        recorder: HistoryRecorder,
        gateway: IncidentGateway,
        default_rearm_window: timedelta = timedelta(hours=24),
        open_statuses: Iterable[str] = ("open", "in_progress"),
        metrics: Optional[EscalationMetrics] = None
    ):
        self.rule_store = rule_store
        self.matcher = matcher
        self.firing_guard = firing_guard
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self.recorder = recorder
        self.gateway = gateway
        self.default_rearm_window = default_rearm_window
        self.open_statuses = frozenset(open_statuses)
        self.metrics = metrics
        self.logger = logging.getLogger(__name__)

    async def process(self, request: EvaluationRequest) -> EvaluationOutcome:
        """
        Evaluate one request. Matching and guard decisions use the request
        time, so re-processing a request is deterministic.
        """
        incident = request.incident
        now = request.requested_at
        outcome = EvaluationOutcome(request=request)

        if self.metrics:
            self.metrics.record_evaluation(request.trigger.value)

        if incident.status not in self.open_statuses:
            outcome.cancelled_deferred = await self.scheduler.cancel_for_incident(incident.incident_id)

        rules = await self.rule_store.get_active_rules()
        match = self.matcher.match(incident, rules, now)
        outcome.matched = match.matches
        outcome.rejected = match.rejected
        if self.metrics:
            self.metrics.record_matches(len(match.matches), len(match.rejected))

        fingerprint = incident.state_fingerprint()

        for rule in match.matches:
            window = rule.rearm_window or self.default_rearm_window
            acquired = await self.firing_guard.try_acquire(
                incident.incident_id, rule.rule_id, fingerprint, window, now
            )
            if not acquired:
                marker = DuplicateFiringPrevented(
                    incident.incident_id, rule.rule_id, firing_key(incident.incident_id, rule.rule_id, fingerprint)
                )
                self.logger.debug(str(marker))
                outcome.suppressed.append(marker)
                if self.metrics:
                    self.metrics.record_firing_suppressed()
                continue

            self.logger.info(
                f"Rule '{rule.name}' fired for incident {incident.incident_id} ({request.trigger.value})"
            )
            plan = self.scheduler.schedule(rule, incident, now)
            outcome.outcomes.extend(await self.scheduler.run(plan, incident, self.execute_action))
            outcome.deferred.extend(plan.deferred_entries)
            outcome.fired.append(rule)

        if outcome.fired:
            await self._mark_escalated(incident.incident_id, now)

        return outcome

    async def execute_action(
        self,
        rule: EscalationRule,
        action: EscalationAction,
        incident: IncidentSnapshot
    ) -> ActionOutcome:
        return await self._execute(rule.rule_id, rule.name, action, incident, SYSTEM_USER)

    async def execute_deferred(self, entry: DeferredAction) -> Optional[ActionOutcome]:
        """
        Execute a deferred action against the incident's current state.

        Returns None without dispatching when the incident is gone or no
        longer open.
        """
        incident = await self.gateway.get(entry.incident_id)
        if incident is None or incident.status not in self.open_statuses:
            state = incident.status if incident else "missing"
            self.logger.info(
                f"Skipping deferred action {entry.deferred_id} for incident {entry.incident_id} ({state})"
            )
            if self.metrics:
                self.metrics.record_deferred_cancelled()
            return None

        outcome = await self._execute(entry.rule_id, entry.rule_name, entry.action, incident, entry.executed_by)
        await self._mark_escalated(incident.incident_id, outcome.executed_at)
        return outcome

    async def _execute(
        self,
        rule_id: Optional[UUID],
        rule_name: str,
        action: EscalationAction,
        incident: IncidentSnapshot,
        executed_by: str
    ) -> ActionOutcome:
        start = time.monotonic()
        executed_at = datetime.now(timezone.utc)
        outcome = ActionOutcome(
            incident_id=incident.incident_id,
            rule_id=rule_id,
            rule_name=rule_name,
            action=action,
            success=False,
            executed_at=executed_at,
            executed_by=executed_by,
            priority=self.dispatcher.renderer.priority_for(action.template_id)
        )

        try:
            if action.action_type == EscalationActionType.MANUAL:
                outcome.success = True
                outcome.details = f"Manual follow-up required by {action.target}"
            else:
                if action.action_type == EscalationActionType.REASSIGN:
                    await self.gateway.reassign(incident.incident_id, action.target)
                    incident = replace(incident, assigned_to=action.target)

                context = DispatchContext(incident=incident, rule_name=rule_name, executed_by=executed_by)
                result = await self.dispatcher.dispatch(action, context)
                outcome.success = result.success
                outcome.attempts = result.attempts
                outcome.priority = result.priority
                outcome.details = result.details
                outcome.error_message = None if result.success else result.error_message
                if action.action_type == EscalationActionType.REASSIGN:
                    outcome.details = f"Reassigned to {action.target}. {result.details}"

        except Exception as e:
            self.logger.error(
                f"Action {action.action_type.value} of rule '{rule_name}' failed for incident "
                f"{incident.incident_id}: {str(e)}"
            )
            outcome.success = False
            outcome.details = "Action execution failed"
            outcome.error_message = str(e)

        if self.metrics:
            self.metrics.record_action(action.action_type.value, outcome.success, time.monotonic() - start)

        try:
            await self.recorder.record(outcome)
        except PersistenceError as e:
            audit_error = f"History write failed: {str(e)}"
            outcome.error_message = f"{outcome.error_message}; {audit_error}" if outcome.error_message else audit_error

        return outcome

    async def _mark_escalated(self, incident_id: str, at: datetime) -> None:
        try:
            await self.gateway.mark_escalated(incident_id, at)
        except Exception as e:
            self.logger.error(f"Failed to record escalation time for incident {incident_id}: {str(e)}")
