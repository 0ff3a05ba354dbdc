"""
Notification templates and rendering.

Templates use {{variable}} placeholders. Default values are merged beneath the
supplied data, required fields must be present after merging, and each
channel may carry a shorter variant of the body (SMS, WhatsApp, push).
Placeholders with no value are left in place and logged.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple

from ..models.errors import TemplateRenderError
from ..models.history import NotificationPriority
from ..models.rules import NotificationChannel


PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")

INCIDENT_FIELDS = (
    "incident_id", "incident_title", "incident_severity", "incident_location",
    "incident_created_at", "incident_description", "url"
)


@dataclass(frozen=True)
class RenderedContent:
    subject: str
    content: str
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class NotificationTemplate:
    """Subject/body template with per-channel body variants."""
    template_id: str
    name: str
    subject: str
    body: str
    channel_bodies: Dict[NotificationChannel, str] = field(default_factory=dict)
    push_title: Optional[str] = None
    required_fields: Tuple[str, ...] = ()
    default_values: Dict[str, str] = field(default_factory=dict)
    priority: NotificationPriority = NotificationPriority.HIGH

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationTemplate':
        return cls(
            template_id=data["template_id"],
            name=data.get("name", data["template_id"]),
            subject=data["subject"],
            body=data["body"],
            channel_bodies={
                NotificationChannel(channel): text
                for channel, text in (data.get("channel_bodies") or {}).items()
            },
            push_title=data.get("push_title"),
            required_fields=tuple(data.get("required_fields") or ()),
            default_values=dict(data.get("default_values") or {}),
            priority=NotificationPriority(data.get("priority", NotificationPriority.HIGH.value))
        )


class TemplateRenderer:
    """Renders notification content per (template, channel)."""

    def __init__(self, templates: Optional[List[NotificationTemplate]] = None):
        self.logger = logging.getLogger(__name__)
        self._templates: Dict[str, NotificationTemplate] = {}
        for template in (templates if templates is not None else default_templates()):
            self.register(template)

    def register(self, template: NotificationTemplate) -> None:
        self._templates[template.template_id] = template

    def get_template(self, template_id: str) -> Optional[NotificationTemplate]:
        return self._templates.get(template_id)

    def priority_for(self, template_id: Optional[str]) -> NotificationPriority:
        template = self._templates.get(template_id) if template_id else None
        return template.priority if template else NotificationPriority.HIGH

    def render(self, template_id: str, channel: NotificationChannel, data: Dict[str, Any]) -> RenderedContent:
        """
        Render subject and channel-specific content.

        Raises:
            TemplateRenderError: unknown template or missing required fields
        """
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateRenderError(f"Template {template_id} not found")

        merged = dict(template.default_values)
        merged.update({key: value for key, value in data.items() if value is not None})

        missing = [name for name in template.required_fields if name not in merged]
        if missing:
            raise TemplateRenderError(
                f"Missing required fields for template {template_id}: {', '.join(missing)}"
            )

        if channel == NotificationChannel.PUSH:
            subject = self._render_text(template.push_title or template.subject, merged)
        else:
            subject = self._render_text(template.subject, merged)
        body = template.channel_bodies.get(channel, template.body)

        return RenderedContent(
            subject=subject,
            content=self._render_text(body, merged),
            metadata={"template_id": template_id, "channel": channel.value}
        )

    def _render_text(self, text: str, data: Dict[str, Any]) -> str:
        def substitute(match):
            key = match.group(1)
            if key in data:
                return str(data[key])
            self.logger.warning(f"Template variable {key} not found in data")
            return match.group(0)

        return PLACEHOLDER_PATTERN.sub(substitute, text)


def default_templates() -> List[NotificationTemplate]:
    """Built-in English templates for the default rule set and manual escalation."""
    return [
        NotificationTemplate(
            template_id="incident_notification",
            name="Incident Notification",
            subject="Incident Update: {{incident_title}}",
            body=(
                "Incident ID: {{incident_id}}\nTitle: {{incident_title}}\n"
                "Severity: {{incident_severity}}\nStatus: {{incident_status}}\n"
                "Location: {{incident_location}}\nReported by: {{reporter_name}}\n"
                "Created: {{incident_created_at}}\n\n{{incident_description}}\n\nView details: {{url}}"
            ),
            channel_bodies={
                NotificationChannel.SMS: "Incident #{{incident_id}}: {{incident_title}} ({{incident_severity}}). {{url}}",
                NotificationChannel.PUSH: "{{incident_severity}} at {{incident_location}}",
            },
            required_fields=INCIDENT_FIELDS,
            priority=NotificationPriority.NORMAL
        ),
        NotificationTemplate(
            template_id="incident_critical",
            name="Critical Incident Alert",
            subject="CRITICAL INCIDENT ALERT: {{incident_title}}",
            body=(
                "CRITICAL INCIDENT REQUIRES IMMEDIATE ATTENTION\n\n"
                "Incident ID: {{incident_id}}\nTitle: {{incident_title}}\n"
                "Severity: {{incident_severity}}\nLocation: {{incident_location}}\n"
                "Reported by: {{reporter_name}}\nCreated: {{incident_created_at}}\n\n"
                "Description:\n{{incident_description}}\n\nView details: {{url}}"
            ),
            channel_bodies={
                NotificationChannel.SMS: (
                    "CRITICAL INCIDENT #{{incident_id}}: {{incident_title}} at {{incident_location}}. "
                    "IMMEDIATE RESPONSE REQUIRED. {{url}}"
                ),
                NotificationChannel.WHATSAPP: (
                    "*CRITICAL INCIDENT* #{{incident_id}}\n{{incident_title}}\n"
                    "Location: {{incident_location}}\n{{url}}"
                ),
                NotificationChannel.PUSH: "{{incident_title}} - IMMEDIATE RESPONSE REQUIRED",
            },
            push_title="Critical incident",
            required_fields=INCIDENT_FIELDS,
            priority=NotificationPriority.CRITICAL
        ),
        NotificationTemplate(
            template_id="emergency_alert",
            name="Emergency Alert",
            subject="EMERGENCY ALERT: {{incident_title}}",
            body=(
                "EMERGENCY SITUATION\n\nID: {{incident_id}}\nTitle: {{incident_title}}\n"
                "Severity: {{incident_severity}}\nLocation: {{incident_location}}\n"
                "Time: {{incident_created_at}}\n\n{{incident_description}}\n\n"
                "ACTIVATE EMERGENCY RESPONSE PROCEDURES\n\nView details: {{url}}"
            ),
            channel_bodies={
                NotificationChannel.SMS: (
                    "EMERGENCY: {{incident_title}} at {{incident_location}}. "
                    "Incident #{{incident_id}}. ACTIVATE EMERGENCY PROCEDURES. {{url}}"
                ),
                NotificationChannel.PUSH: "{{incident_title}} - ACTIVATE EMERGENCY PROCEDURES",
            },
            push_title="Emergency alert",
            required_fields=INCIDENT_FIELDS,
            priority=NotificationPriority.EMERGENCY
        ),
        NotificationTemplate(
            template_id="escalation_overdue",
            name="Overdue Incident Escalation",
            subject="Incident Escalated: {{incident_title}}",
            body=(
                "An incident has been escalated and requires your attention:\n\n"
                "Incident ID: {{incident_id}}\nTitle: {{incident_title}}\n"
                "Severity: {{incident_severity}}\nStatus: {{incident_status}}\n"
                "Location: {{incident_location}}\nCreated: {{incident_created_at}}\n\n"
                "Escalation Reason: {{escalation_reason}}\n\nView details: {{url}}"
            ),
            channel_bodies={
                NotificationChannel.PUSH: "{{incident_title}} requires your attention",
            },
            required_fields=INCIDENT_FIELDS + ("incident_status",),
            default_values={"escalation_reason": "Response time threshold exceeded"},
            priority=NotificationPriority.HIGH
        ),
        NotificationTemplate(
            template_id="escalation_manual",
            name="Manual Escalation",
            subject="Incident Escalated by {{escalated_by}}: {{incident_title}}",
            body=(
                "An incident has been manually escalated:\n\n"
                "Incident ID: {{incident_id}}\nTitle: {{incident_title}}\n"
                "Severity: {{incident_severity}}\nStatus: {{incident_status}}\n"
                "Location: {{incident_location}}\n\n"
                "Escalation Reason: {{escalation_reason}}\nEscalated by: {{escalated_by}}\n\n"
                "View details: {{url}}"
            ),
            channel_bodies={
                NotificationChannel.SMS: "Incident #{{incident_id}} escalated by {{escalated_by}}: {{escalation_reason}}",
                NotificationChannel.PUSH: "{{escalation_reason}}",
            },
            required_fields=INCIDENT_FIELDS + ("escalation_reason", "escalated_by"),
            priority=NotificationPriority.HIGH
        ),
        NotificationTemplate(
            template_id="incident_regulatory",
            name="Regulatory Reporting Required",
            subject="Regulatory Reporting Required: {{incident_title}}",
            body=(
                "A reportable incident requires regulatory notification:\n\n"
                "Incident ID: {{incident_id}}\nTitle: {{incident_title}}\n"
                "Severity: {{incident_severity}}\nLocation: {{incident_location}}\n"
                "Created: {{incident_created_at}}\n\n"
                "Reporting deadline: {{reporting_deadline}}\n\nView details: {{url}}"
            ),
            required_fields=INCIDENT_FIELDS,
            default_values={"reporting_deadline": "48 hours from incident report"},
            priority=NotificationPriority.HIGH
        ),
    ]
