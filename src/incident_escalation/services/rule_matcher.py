"""
Rule matching for escalation evaluation.

Pure computation: no I/O, no clock reads. The caller supplies `now`.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Tuple, FrozenSet

from ..models.errors import ConfigurationError
from ..models.incident import IncidentSnapshot
from ..models.rules import EscalationRule, validate_rule


@dataclass
class MatchResult:
    """Matched rules in evaluation order plus rules rejected as malformed."""
    matches: List[EscalationRule] = field(default_factory=list)
    rejected: List[Tuple[EscalationRule, ConfigurationError]] = field(default_factory=list)

    @property
    def rule_ids(self):
        return [rule.rule_id for rule in self.matches]


def _matches_token(allowed: FrozenSet[str], value: str) -> bool:
    return not allowed or value in allowed


def _matches_text(allowed: FrozenSet[str], value: Optional[str]) -> bool:
    # An incident without a department/location is not excluded on that dimension
    if not allowed or not value:
        return True
    folded = value.casefold()
    return any(candidate.casefold() == folded for candidate in allowed)


def duration_anchor(rule: EscalationRule, incident: IncidentSnapshot) -> datetime:
    """Timestamp a rule's trigger_after is measured from."""
    if rule.repeatable:
        return incident.escalation_anchor()
    return incident.response_anchor()


def match_rule(rule: EscalationRule, incident: IncidentSnapshot, now: datetime) -> bool:
    """
    Decide whether one rule matches an incident.

    Raises:
        ConfigurationError: if the rule is malformed
    """
    if not rule.is_active:
        return False

    validate_rule(rule)

    if not _matches_token(rule.trigger_severities, incident.severity):
        return False
    if not _matches_token(rule.trigger_statuses, incident.status):
        return False
    if not _matches_text(rule.trigger_departments, incident.department):
        return False
    if not _matches_text(rule.trigger_locations, incident.location):
        return False

    if rule.trigger_after is not None:
        elapsed = now - duration_anchor(rule, incident)
        if elapsed < rule.trigger_after:
            return False

    return True


class RuleMatcher:
    """Selects and orders the rules that apply to an incident."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def match(self, incident: IncidentSnapshot, rules: Iterable[EscalationRule], now: datetime) -> MatchResult:
        """
        Match an incident against a rule set.

        Matches are ordered by priority ascending, ties broken by rule id.
        Malformed rules are reported in `rejected`; they never stop other
        rules from matching.
        """
        result = MatchResult()

        for rule in rules:
            try:
                if match_rule(rule, incident, now):
                    result.matches.append(rule)
            except ConfigurationError as e:
                self.logger.error(f"Rejected rule during matching for incident {incident.incident_id}: {str(e)}")
                result.rejected.append((rule, e))

        result.matches.sort(key=lambda r: r.sort_key())
        return result
