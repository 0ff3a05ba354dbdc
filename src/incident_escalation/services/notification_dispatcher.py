"""
Notification Dispatcher for escalation actions.

Fans an action out to every (recipient, channel) pair with failure isolation:
- Recipients are resolved from the action target through the RecipientDirectory
- Content is rendered once per (recipient, channel) pair
- Each send runs under its own timeout; pairs are attempted concurrently
- A rendering, resolution or transport failure becomes a failed attempt,
  never an exception out of dispatch
- Action success is rolled up from the attempts by the configured SuccessPolicy
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from ..config import SuccessPolicy
from ..models.errors import ChannelDeliveryError, RecipientResolutionError, TemplateRenderError
from ..models.history import SYSTEM_USER, DeliveryAttempt, NotificationPriority
from ..models.incident import IncidentSnapshot
from ..models.rules import EscalationAction, NotificationChannel
from .channel_senders import ChannelSender
from .monitoring import EscalationMetrics
from .recipients import Recipient, RecipientDirectory
from .templates import TemplateRenderer


DEFAULT_TEMPLATE_ID = "incident_notification"


@dataclass
class DispatchContext:
    """Incident and rule context an action is dispatched under."""
    incident: IncidentSnapshot
    rule_name: str
    executed_by: str = SYSTEM_USER
    extra: Dict[str, str] = field(default_factory=dict)


@dataclass
class DispatchResult:
    """Per-channel attempts for one action and their rolled-up success."""
    success: bool
    attempts: List[DeliveryAttempt]
    priority: NotificationPriority
    recipients: List[Recipient] = field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def details(self) -> str:
        delivered = sum(1 for attempt in self.attempts if attempt.success)
        return (
            f"Delivered {delivered}/{len(self.attempts)} notifications "
            f"to {len(self.recipients)} recipients"
        )


def roll_up(attempts: Sequence[DeliveryAttempt], policy: SuccessPolicy) -> bool:
    """Aggregate success of an action's delivery attempts."""
    if not attempts:
        return False
    if policy == SuccessPolicy.ALL_CHANNELS:
        return all(attempt.success for attempt in attempts)
    return any(attempt.success for attempt in attempts)


class NotificationDispatcher:
    """
    Dispatches escalation actions across notification channels.

    Responsibilities:
    - Resolve action targets into recipients
    - Render per-channel content from templates and incident data
    - Invoke channel senders under a per-channel timeout
    - Produce exactly one DeliveryAttempt per (recipient, channel)
    """

    def __init__(
        self,
        directory: RecipientDirectory,
        renderer: TemplateRenderer,
        senders: Dict[NotificationChannel, ChannelSender],
        channel_timeout: float = 10.0,
        policy: SuccessPolicy = SuccessPolicy.ANY_CHANNEL,
        incident_base_url: str = "http://localhost:8000/incidents",
        metrics: Optional[EscalationMetrics] = None
    ):
        self.directory = directory
        self.renderer = renderer
        self.senders = senders
        self.channel_timeout = channel_timeout
        self.policy = policy
        self.incident_base_url = incident_base_url.rstrip("/")
        self.metrics = metrics
        self.logger = logging.getLogger(__name__)

    def notification_data(
        self,
        incident: IncidentSnapshot,
        parameters: Optional[Dict[str, str]] = None,
        extra: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """Template variables for an incident, overlaid with context extras and action parameters."""
        data = {
            "incident_id": incident.incident_id,
            "incident_title": incident.title,
            "incident_description": incident.description,
            "incident_severity": incident.severity,
            "incident_status": incident.status,
            "incident_location": incident.location or "Not specified",
            "incident_department": incident.department or "Not specified",
            "incident_created_at": incident.reported_at.strftime("%Y-%m-%d %H:%M:%S UTC"),
            "reporter_name": incident.reporter_name or "Anonymous",
            "url": f"{self.incident_base_url}/{incident.incident_id}",
        }
        data.update(extra or {})
        data.update(parameters or {})
        return data

    async def dispatch(self, action: EscalationAction, context: DispatchContext) -> DispatchResult:
        """
        Dispatch one action to all of its recipients and channels.

        An unresolvable target yields one failed attempt per channel against
        the raw target, and a failed result.
        """
        template_id = action.template_id or DEFAULT_TEMPLATE_ID
        priority = self.renderer.priority_for(template_id)

        try:
            recipients = await self.directory.resolve(action, context.incident)
        except RecipientResolutionError as e:
            self.logger.error(
                f"Recipient resolution failed for incident {context.incident.incident_id}, "
                f"rule '{context.rule_name}': {str(e)}"
            )
            now = datetime.now(timezone.utc)
            attempts = [
                DeliveryAttempt(
                    recipient_id=action.target,
                    recipient_type="unresolved",
                    channel=channel,
                    success=False,
                    subject="",
                    content="",
                    attempted_at=now,
                    latency_ms=0,
                    error_message=str(e)
                )
                for channel in action.channels
            ]
            for attempt in attempts:
                self._record_metric(attempt)
            return DispatchResult(success=False, attempts=attempts, priority=priority, error_message=str(e))

        return await self.dispatch_to(
            recipients, action.channels, template_id, action.parameters, context
        )

    async def dispatch_to(
        self,
        recipients: List[Recipient],
        channels: Sequence[NotificationChannel],
        template_id: str,
        parameters: Optional[Dict[str, str]],
        context: DispatchContext
    ) -> DispatchResult:
        """Send to an explicit recipient list; used by rule actions and manual escalation."""
        priority = self.renderer.priority_for(template_id)
        data = self.notification_data(context.incident, parameters, context.extra)

        tasks = [
            self._attempt(recipient, channel, template_id, data, priority)
            for recipient in recipients
            for channel in channels
        ]
        attempts = list(await asyncio.gather(*tasks))

        success = roll_up(attempts, self.policy)
        failures = [f"{a.recipient_id}/{a.channel.value}: {a.error_message}" for a in attempts if not a.success]
        if not recipients:
            error_message = "No recipients to notify"
        else:
            error_message = "; ".join(failures) if failures else None

        self.logger.info(
            f"Dispatched template {template_id} for incident {context.incident.incident_id} "
            f"({context.rule_name}): {len(attempts) - len(failures)}/{len(attempts)} delivered, "
            f"success={success}"
        )
        return DispatchResult(
            success=success,
            attempts=attempts,
            priority=priority,
            recipients=list(recipients),
            error_message=error_message
        )

    async def _attempt(
        self,
        recipient: Recipient,
        channel: NotificationChannel,
        template_id: str,
        data: Dict[str, Any],
        priority: NotificationPriority
    ) -> DeliveryAttempt:
        attempted_at = datetime.now(timezone.utc)
        start = time.monotonic()
        subject = ""
        content = ""
        metadata = {"priority": priority.value, "template_id": template_id}

        def failed(error: str) -> DeliveryAttempt:
            return DeliveryAttempt(
                recipient_id=recipient.recipient_id,
                recipient_type=recipient.recipient_type,
                channel=channel,
                success=False,
                subject=subject,
                content=content,
                attempted_at=attempted_at,
                latency_ms=int((time.monotonic() - start) * 1000),
                error_message=error,
                metadata=metadata
            )

        try:
            rendered = self.renderer.render(template_id, channel, data)
        except TemplateRenderError as e:
            return self._record_metric(failed(f"Rendering failed: {str(e)}"))
        subject, content = rendered.subject, rendered.content
        metadata.update(rendered.metadata)

        sender = self.senders.get(channel)
        if sender is None:
            return self._record_metric(failed(f"No sender configured for channel {channel.value}"))

        try:
            result = await asyncio.wait_for(
                sender.send(recipient, subject, content, dict(metadata)),
                timeout=self.channel_timeout
            )
        except asyncio.TimeoutError:
            return self._record_metric(failed(f"Timed out after {self.channel_timeout}s"))
        except ChannelDeliveryError as e:
            return self._record_metric(failed(str(e)))
        except Exception as e:
            self.logger.error(f"Unexpected {channel.value} sender error for {recipient.recipient_id}: {str(e)}")
            return self._record_metric(failed(f"Sender error: {str(e)}"))

        if result.provider_message_id:
            metadata["provider_message_id"] = result.provider_message_id
        attempt = DeliveryAttempt(
            recipient_id=recipient.recipient_id,
            recipient_type=recipient.recipient_type,
            channel=channel,
            success=result.success,
            subject=subject,
            content=content,
            attempted_at=attempted_at,
            latency_ms=int((time.monotonic() - start) * 1000),
            provider_message_id=result.provider_message_id,
            error_message=result.error,
            metadata=metadata
        )
        return self._record_metric(attempt)

    def _record_metric(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        if self.metrics:
            self.metrics.record_notification(attempt.channel.value, "sent" if attempt.success else "failed")
        return attempt
