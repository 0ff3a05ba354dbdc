from datetime import datetime, timedelta, timezone
from uuid import UUID

from hypothesis import given, settings, strategies as st

from incident_escalation.models.incident import IncidentSnapshot
from incident_escalation.models.rules import (
    EscalationAction, EscalationActionType, EscalationRule, NotificationChannel
)
from incident_escalation.services.rule_matcher import RuleMatcher, duration_anchor, match_rule


NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)

tokens = st.text(alphabet="abcdefghij", min_size=1, max_size=6)


def _action():
    return EscalationAction(
        action_type=EscalationActionType.NOTIFY_ROLE,
        target="HSE_Manager",
        channels=(NotificationChannel.EMAIL,)
    )


def _rule(**kwargs):
    return EscalationRule.create(name=kwargs.pop("name", "rule"), actions=[_action()], **kwargs)


def _incident(**kwargs):
    defaults = dict(
        incident_id="INC-1",
        severity="critical",
        status="open",
        reported_at=NOW - timedelta(minutes=5)
    )
    defaults.update(kwargs)
    return IncidentSnapshot(**defaults)


class TestRuleMatching:
    """Unit tests for rule selection."""

    def setup_method(self):
        self.matcher = RuleMatcher()

    def test_severity_rule_matches_regardless_of_department_and_location(self):
        """Priority 1 critical rule with wildcard department/location matches."""
        r1 = _rule(name="R1", priority=1, trigger_severities=["critical"])
        incident = _incident(department="Warehouse", location="Dock 4")

        result = self.matcher.match(incident, [r1], NOW)

        assert r1.rule_id in result.rule_ids

    def test_duration_rule_waits_for_trigger_after(self):
        """A 2h rule does not match 1h after report but does 3h after."""
        reported = NOW
        r2 = _rule(name="R2", trigger_after=timedelta(hours=2))
        incident = _incident(reported_at=reported)

        assert self.matcher.match(incident, [r2], reported + timedelta(hours=1)).matches == []
        assert self.matcher.match(incident, [r2], reported + timedelta(hours=3)).matches == [r2]

    def test_inactive_rule_never_matches(self):
        rule = _rule(is_active=False)

        assert match_rule(rule, _incident(), NOW) is False

    def test_status_mismatch_excludes(self):
        rule = _rule(trigger_statuses=["in_progress"])

        assert self.matcher.match(_incident(status="open"), [rule], NOW).matches == []

    def test_department_matching_is_case_insensitive(self):
        rule = _rule(trigger_departments=["Warehouse"])

        assert match_rule(rule, _incident(department="warehouse"), NOW) is True
        assert match_rule(rule, _incident(department="Office"), NOW) is False

    def test_incident_without_location_is_not_excluded(self):
        rule = _rule(trigger_locations=["Dock 4"])

        assert match_rule(rule, _incident(location=None), NOW) is True

    def test_response_moves_duration_anchor(self):
        """A recorded response restarts the elapsed time."""
        rule = _rule(trigger_after=timedelta(hours=24))
        incident = _incident(
            reported_at=NOW - timedelta(hours=30),
            last_response_at=NOW - timedelta(hours=2)
        )

        assert match_rule(rule, incident, NOW) is False

    def test_repeatable_rule_measures_from_last_escalation(self):
        rule = _rule(trigger_after=timedelta(hours=4), repeatable=True)
        incident = _incident(
            reported_at=NOW - timedelta(hours=10),
            last_escalated_at=NOW - timedelta(hours=1)
        )

        assert duration_anchor(rule, incident) == incident.last_escalated_at
        assert match_rule(rule, incident, NOW) is False
        assert match_rule(rule, incident, NOW + timedelta(hours=3)) is True

    def test_matches_ordered_by_priority_then_rule_id(self):
        low = _rule(name="low", priority=50)
        high = _rule(name="high", priority=1)
        tie_a = _rule(name="tie-a", priority=10, rule_id=UUID("00000000-0000-0000-0000-00000000000a"))
        tie_b = _rule(name="tie-b", priority=10, rule_id=UUID("00000000-0000-0000-0000-00000000000b"))

        result = self.matcher.match(_incident(), [low, tie_b, high, tie_a], NOW)

        assert [rule.name for rule in result.matches] == ["high", "tie-a", "tie-b", "low"]

    def test_malformed_rule_is_rejected_without_blocking_others(self):
        good = _rule(name="good")
        broken = EscalationRule(name="broken", actions=())

        result = self.matcher.match(_incident(), [broken, good], NOW)

        assert result.matches == [good]
        assert len(result.rejected) == 1
        assert result.rejected[0][0] is broken


class TestMatchingProperties:
    """Property tests for wildcard and ordering behaviour."""

    @given(severity=tokens, status=tokens, department=st.one_of(st.none(), tokens), location=st.one_of(st.none(), tokens))
    @settings(max_examples=50)
    def test_rule_with_all_wildcards_matches_every_incident(self, severity, status, department, location):
        rule = _rule()
        incident = _incident(severity=severity, status=status, department=department, location=location)

        assert match_rule(rule, incident, NOW) is True

    @given(allowed=st.frozensets(tokens, min_size=1, max_size=4), severity=tokens)
    @settings(max_examples=50)
    def test_non_empty_severity_set_is_exact_membership(self, allowed, severity):
        rule = _rule(trigger_severities=allowed)

        assert match_rule(rule, _incident(severity=severity), NOW) is (severity in allowed)

    @given(priorities=st.lists(st.integers(min_value=0, max_value=5), min_size=1, max_size=8), seed=st.randoms())
    @settings(max_examples=30)
    def test_match_order_is_independent_of_input_order(self, priorities, seed):
        rules = [_rule(name=f"r{index}", priority=priority) for index, priority in enumerate(priorities)]
        shuffled = list(rules)
        seed.shuffle(shuffled)

        matcher = RuleMatcher()
        first = matcher.match(_incident(), rules, NOW).rule_ids
        second = matcher.match(_incident(), shuffled, NOW).rule_ids

        assert first == second
