import pytest
from datetime import timedelta
from uuid import uuid4

from incident_escalation.models.errors import ConfigurationError, RuleNotFoundError
from incident_escalation.models.rules import (
    EscalationAction, EscalationActionType, EscalationRule, NotificationChannel
)
from incident_escalation.services.audit import AuditException, AuditOperation
from incident_escalation.services.rule_store import InMemoryRuleRepository, RuleStore, default_rules


def _action(target="HSE_Manager"):
    return EscalationAction(
        action_type=EscalationActionType.NOTIFY_ROLE,
        target=target,
        channels=(NotificationChannel.EMAIL,)
    )


def _rule(name="Rule", **kwargs):
    return EscalationRule.create(name=name, actions=[_action()], **kwargs)


class TestRuleSnapshots:
    """Unit tests for active rule snapshots."""

    async def test_snapshot_contains_only_active_rules_in_priority_order(self):
        rules = [_rule("late", priority=90), _rule("off", is_active=False), _rule("early", priority=5)]
        store = RuleStore(InMemoryRuleRepository(rules), refresh_seconds=0)

        snapshot = await store.get_active_rules()

        assert [rule.name for rule in snapshot] == ["early", "late"]

    async def test_held_snapshot_is_not_affected_by_edits(self):
        rule = _rule("original", priority=10)
        store = RuleStore(InMemoryRuleRepository([rule]), refresh_seconds=3600)
        held = await store.get_active_rules()

        await store.update_rule(rule.rule_id, {"name": "renamed", "is_active": False}, "admin")
        fresh = await store.get_active_rules()

        assert held[0].name == "original"
        assert fresh == ()
        assert store.version == 2

    async def test_snapshot_is_cached_within_refresh_interval(self):
        repository = InMemoryRuleRepository([_rule()])
        store = RuleStore(repository, refresh_seconds=3600)
        await store.get_active_rules()

        await repository.save_rule(_rule("added directly"))

        assert len(await store.get_active_rules()) == 1
        assert store.version == 1

    async def test_smallest_trigger_after(self):
        store = RuleStore(InMemoryRuleRepository([
            _rule("a", trigger_after=timedelta(hours=24)),
            _rule("b", trigger_after=timedelta(hours=4)),
            _rule("c"),
        ]), refresh_seconds=0)

        assert await store.smallest_trigger_after() == timedelta(hours=4)

    async def test_smallest_trigger_after_without_duration_rules(self):
        store = RuleStore(InMemoryRuleRepository([_rule()]), refresh_seconds=0)

        assert await store.smallest_trigger_after() is None


class TestRuleAdministration:
    """Unit tests for rule CRUD, toggling and auditing."""

    def setup_method(self):
        self.store = RuleStore(InMemoryRuleRepository(), refresh_seconds=0)

    async def test_create_rule_is_audited(self):
        rule = await self.store.create_rule(_rule("Spill rule"), "admin")

        entries = await self.store.audit_trail(rule.rule_id)
        assert len(entries) == 1
        assert entries[0].operation == AuditOperation.INSERT
        assert entries[0].table_name == "escalation_rules"
        assert entries[0].record_id == str(rule.rule_id)
        assert entries[0].user_id == "admin"

    async def test_create_without_user_is_rejected_before_save(self):
        with pytest.raises(AuditException):
            await self.store.create_rule(_rule("Anonymous rule"), "")

        assert await self.store.list_rules() == []

    async def test_update_without_user_leaves_rule_unchanged(self):
        rule = await self.store.create_rule(_rule("Original"), "admin")

        with pytest.raises(AuditException):
            await self.store.update_rule(rule.rule_id, {"name": "Renamed"}, "")

        assert (await self.store.get_rule(rule.rule_id)).name == "Original"
        assert len(await self.store.audit_trail(rule.rule_id)) == 1

    async def test_create_rejects_malformed_rule(self):
        with pytest.raises(ConfigurationError) as exc_info:
            await self.store.create_rule(EscalationRule(name=" ", actions=()), "admin")

        assert "rule name must not be blank" in exc_info.value.errors
        assert "rule has no actions" in exc_info.value.errors
        assert await self.store.list_rules() == []

    async def test_update_replaces_actions_and_rebinds_them(self):
        rule = await self.store.create_rule(_rule(), "admin")

        updated = await self.store.update_rule(
            rule.rule_id,
            {"actions": [_action("Security_Manager"), _action("Safety_Manager")], "trigger_severities": ["major"]},
            "admin"
        )

        assert [action.target for action in updated.actions] == ["Security_Manager", "Safety_Manager"]
        assert [action.position for action in updated.actions] == [0, 1]
        assert {action.rule_id for action in updated.actions} == {rule.rule_id}
        assert updated.trigger_severities == frozenset({"major"})
        assert (await self.store.audit_trail(rule.rule_id))[-1].operation == AuditOperation.UPDATE

    async def test_update_rejects_non_updatable_fields(self):
        rule = await self.store.create_rule(_rule(), "admin")

        with pytest.raises(ValueError, match="rule_id"):
            await self.store.update_rule(rule.rule_id, {"rule_id": uuid4()}, "admin")

    async def test_toggle(self):
        rule = await self.store.create_rule(_rule(), "admin")

        toggled = await self.store.toggle_rule(rule.rule_id, False, "admin")

        assert toggled.is_active is False
        assert await self.store.get_active_rules() == ()

    async def test_delete_and_missing_rule(self):
        rule = await self.store.create_rule(_rule(), "admin")

        await self.store.delete_rule(rule.rule_id, "admin")

        trail = await self.store.audit_trail(rule.rule_id)
        assert [entry.operation for entry in trail] == [AuditOperation.INSERT, AuditOperation.DELETE]
        with pytest.raises(RuleNotFoundError):
            await self.store.get_rule(rule.rule_id)
        with pytest.raises(RuleNotFoundError):
            await self.store.delete_rule(rule.rule_id, "admin")

    async def test_seed_defaults_only_into_empty_repository(self):
        assert await self.store.seed_defaults() == len(default_rules())
        assert await self.store.seed_defaults() == 0

        names = [rule.name for rule in await self.store.list_rules()]
        assert names == [
            "Critical Incident Immediate Escalation",
            "24-Hour Response Escalation",
            "Regulatory Reporting",
        ]
