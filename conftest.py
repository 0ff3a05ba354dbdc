"""
Global pytest configuration for the incident escalation project.

This file configures pytest for the entire project, including markers,
shared fixtures and in-memory engine wiring.
"""

import pytest
import asyncio
import sys
import os
from datetime import datetime, timedelta, timezone
from uuid import uuid4
from unittest.mock import AsyncMock

# Add src directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from incident_escalation.config import EscalationConfig, SuccessPolicy  # noqa: E402
from incident_escalation.models.incident import IncidentSnapshot  # noqa: E402
from incident_escalation.models.rules import (  # noqa: E402
    EscalationAction, EscalationActionType, EscalationRule, NotificationChannel
)
from incident_escalation.models.errors import ChannelDeliveryError  # noqa: E402
from incident_escalation.services.action_scheduler import InMemoryDeferredActionStore  # noqa: E402
from incident_escalation.services.channel_senders import ChannelSender, SendResult  # noqa: E402
from incident_escalation.services.escalation_engine import EscalationEngine  # noqa: E402
from incident_escalation.services.evaluation_pipeline import InMemoryIncidentGateway  # noqa: E402
from incident_escalation.services.firing_guard import InMemoryFiringGuard  # noqa: E402
from incident_escalation.services.history_recorder import InMemoryHistoryRepository  # noqa: E402
from incident_escalation.services.monitoring import EscalationMetrics  # noqa: E402
from incident_escalation.services.notification_dispatcher import NotificationDispatcher  # noqa: E402
from incident_escalation.services.recipients import Recipient, StaticRecipientDirectory  # noqa: E402
from incident_escalation.services.rule_store import InMemoryRuleRepository, RuleStore  # noqa: E402
from incident_escalation.services.templates import TemplateRenderer  # noqa: E402


REFERENCE_TIME = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers", "integration: Integration tests requiring multiple components"
    )
    config.addinivalue_line(
        "markers", "unit: Unit tests for individual components"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add automatic markers."""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.integration)

        if "unit" in item.nodeid:
            item.add_marker(pytest.mark.unit)


class FakeSender(ChannelSender):
    """
    Channel sender double. `behaviour` is one of "ok", "fail", "raise",
    "timeout" or "crash"; every call is kept in `sent`.
    """

    def __init__(self, channel: NotificationChannel, behaviour: str = "ok", delay: float = 0.0):
        super().__init__(channel)
        self.behaviour = behaviour
        self.delay = delay
        self.sent = []

    async def send(self, recipient, subject, content, metadata) -> SendResult:
        self.sent.append((recipient.recipient_id, subject, content, dict(metadata)))
        if self.behaviour == "timeout":
            await asyncio.sleep(self.delay or 5)
        if self.behaviour == "fail":
            return SendResult(success=False, error="provider rejected message")
        if self.behaviour == "raise":
            raise ChannelDeliveryError("gateway unreachable", channel=self.channel.value)
        if self.behaviour == "crash":
            raise RuntimeError("sender bug")
        return SendResult(success=True, provider_message_id=f"{self.channel.value}-{len(self.sent)}")


@pytest.fixture
def mock_redis():
    """Mock Redis client for testing."""
    mock = AsyncMock()
    mock.get.return_value = None
    mock.set.return_value = True
    mock.delete.return_value = 1
    mock.ping.return_value = True
    mock.zadd.return_value = 1
    mock.zrem.return_value = 1
    mock.zcard.return_value = 0
    mock.zrangebyscore.return_value = []
    mock.publish.return_value = 1
    return mock


@pytest.fixture
def reference_time():
    """Fixed evaluation time used across tests."""
    return REFERENCE_TIME


@pytest.fixture
def make_incident():
    """Factory for incident snapshots reported relative to REFERENCE_TIME."""
    def _make(
        incident_id: str = None,
        severity: str = "critical",
        status: str = "open",
        reported_hours_ago: float = 0,
        **kwargs
    ) -> IncidentSnapshot:
        return IncidentSnapshot(
            incident_id=incident_id or f"INC-{uuid4().hex[:8]}",
            severity=severity,
            status=status,
            reported_at=REFERENCE_TIME - timedelta(hours=reported_hours_ago),
            title=kwargs.pop("title", "Chemical spill in warehouse"),
            description=kwargs.pop("description", "Spill of solvent near loading bay"),
            **kwargs
        )
    return _make


@pytest.fixture
def make_rule():
    """Factory for single-action rules notifying a role."""
    def _make(
        name: str = "Test Rule",
        channels=(NotificationChannel.EMAIL,),
        target: str = "HSE_Manager",
        action_type: EscalationActionType = EscalationActionType.NOTIFY_ROLE,
        template_id: str = "incident_notification",
        delay: timedelta = None,
        **kwargs
    ) -> EscalationRule:
        action = EscalationAction(
            action_type=action_type,
            target=target,
            channels=tuple(channels),
            template_id=template_id,
            delay=delay
        )
        return EscalationRule.create(name=name, actions=[action], **kwargs)
    return _make


@pytest.fixture
def directory():
    """Recipient directory with addresses for every channel."""
    users = {
        "hse_manager_1": Recipient(
            "hse_manager_1", name="Dana Reyes", email="dana@example.com",
            phone="+15550001", device_token="tok-1"
        ),
        "hse_manager_2": Recipient(
            "hse_manager_2", name="Sam Ortiz", email="sam@example.com",
            phone="+15550002", device_token="tok-2"
        ),
        "security_manager_1": Recipient("security_manager_1", email="sec@example.com", device_token="tok-3"),
        "safety_manager_1": Recipient("safety_manager_1", email="safety@example.com", device_token="tok-4"),
        "operator_7": Recipient("operator_7", email="op7@example.com"),
    }
    return StaticRecipientDirectory(
        users=users,
        roles={
            "HSE_Manager": ["hse_manager_1", "hse_manager_2"],
            "Security_Manager": ["security_manager_1"],
            "Safety_Manager": ["safety_manager_1"],
            "regulatory_team": ["hse_manager_1"],
        },
        departments={"Warehouse": ["operator_7"]},
        management={"default": ["hse_manager_2"]},
        emergency_contacts={"emergency_team": ["hse_manager_1"]}
    )


@pytest.fixture
def fake_senders():
    """One healthy FakeSender per channel."""
    return {channel: FakeSender(channel) for channel in NotificationChannel}


@pytest.fixture
def test_config():
    """Engine configuration without retry delays or snapshot caching."""
    return EscalationConfig(
        channel_timeout_seconds=0.2,
        rule_snapshot_refresh_seconds=0,
        history_write_max_attempts=3,
        history_retry_base_delay=0.0,
        history_retry_max_delay=0.0,
        evaluation_workers=1,
        success_policy=SuccessPolicy.ANY_CHANNEL.value
    )


@pytest.fixture
def build_engine(test_config, directory, fake_senders):
    """Factory for a fully in-memory EscalationEngine."""
    def _build(rules=None, incidents=None, config=None, senders=None, history_repository=None):
        config = config or test_config
        metrics = EscalationMetrics()
        dispatcher = NotificationDispatcher(
            directory=directory,
            renderer=TemplateRenderer(),
            senders=senders if senders is not None else fake_senders,
            channel_timeout=config.channel_timeout_seconds,
            policy=config.policy,
            incident_base_url=config.incident_base_url,
            metrics=metrics
        )
        return EscalationEngine(
            config=config,
            rule_store=RuleStore(InMemoryRuleRepository(rules or []), refresh_seconds=0),
            gateway=InMemoryIncidentGateway(incidents or []),
            dispatcher=dispatcher,
            firing_guard=InMemoryFiringGuard(),
            deferred_store=InMemoryDeferredActionStore(),
            history_repository=history_repository or InMemoryHistoryRepository(),
            metrics=metrics
        )
    return _build
