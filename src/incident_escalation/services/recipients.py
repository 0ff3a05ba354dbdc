"""
Recipient resolution for escalation actions.

The RecipientDirectory is the identity/role collaborator: it answers user,
role, department, management and emergency-contact lookups. The
StaticRecipientDirectory is configured from a mapping (typically the
`directory` section of the engine YAML file).
"""

from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Any

from ..models.errors import RecipientResolutionError
from ..models.incident import IncidentSnapshot
from ..models.rules import EscalationAction, EscalationActionType


@dataclass(frozen=True)
class Recipient:
    """A resolved notification recipient and its channel addresses."""
    recipient_id: str
    recipient_type: str = "user"
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    device_token: Optional[str] = None
    webhook_url: Optional[str] = None

    def with_type(self, recipient_type: str) -> 'Recipient':
        return replace(self, recipient_type=recipient_type)


class RecipientDirectory:
    """Identity and role lookups used by the dispatcher."""

    async def get_user(self, user_id: str) -> Optional[Recipient]:
        raise NotImplementedError

    async def get_role_members(self, role: str) -> Optional[List[Recipient]]:
        """Members of a role group, or None if the role is unknown."""
        raise NotImplementedError

    async def get_department_members(self, department: str) -> Optional[List[Recipient]]:
        raise NotImplementedError

    async def get_management_chain(self, incident: IncidentSnapshot) -> List[Recipient]:
        raise NotImplementedError

    async def get_emergency_contacts(self, group: str) -> Optional[List[Recipient]]:
        raise NotImplementedError

    async def resolve(self, action: EscalationAction, incident: IncidentSnapshot) -> List[Recipient]:
        """
        Resolve an action's target into recipients according to its type.

        Raises:
            RecipientResolutionError: unknown user/role/group, or a group with no members
        """
        action_type = action.action_type
        target = action.target

        if action_type == EscalationActionType.WEBHOOK:
            return [Recipient(recipient_id=target, recipient_type="webhook", webhook_url=target)]

        if action_type in (EscalationActionType.NOTIFY_USER, EscalationActionType.REASSIGN):
            user = await self.get_user(target)
            if user is None:
                raise RecipientResolutionError(f"Unknown user '{target}'", target=target)
            return [user.with_type("user")]

        if action_type in (EscalationActionType.NOTIFY_ROLE, EscalationActionType.SEND_REGULATORY):
            members = await self.get_role_members(target)
            recipient_type = "role" if action_type == EscalationActionType.NOTIFY_ROLE else "regulatory"
        elif action_type == EscalationActionType.NOTIFY_DEPARTMENT:
            members = await self.get_department_members(target)
            recipient_type = "department"
        elif action_type == EscalationActionType.ESCALATE_TO_MANAGER:
            members = await self.get_management_chain(incident)
            recipient_type = "manager"
        elif action_type == EscalationActionType.SEND_EMERGENCY_ALERT:
            members = await self.get_emergency_contacts(target)
            recipient_type = "emergency_contact"
        else:
            raise RecipientResolutionError(
                f"Action type {action_type.value} has no recipient resolution", target=target
            )

        if not members:
            raise RecipientResolutionError(f"No recipients found for '{target}'", target=target)
        return [member.with_type(recipient_type) for member in members]

    async def resolve_roles(self, roles: List[str]) -> List[Recipient]:
        """Union of role members, de-duplicated by recipient id in role order."""
        seen = set()
        recipients = []
        for role in roles:
            for member in await self.get_role_members(role) or []:
                if member.recipient_id not in seen:
                    seen.add(member.recipient_id)
                    recipients.append(member.with_type("role"))
        return recipients


class StaticRecipientDirectory(RecipientDirectory):
    """Directory backed by in-memory mappings."""

    def __init__(
        self,
        users: Optional[Dict[str, Recipient]] = None,
        roles: Optional[Dict[str, List[str]]] = None,
        departments: Optional[Dict[str, List[str]]] = None,
        management: Optional[Dict[str, List[str]]] = None,
        emergency_contacts: Optional[Dict[str, List[str]]] = None
    ):
        self.users = users or {}
        self.roles = roles or {}
        self.departments = departments or {}
        self.management = management or {}
        self.emergency_contacts = emergency_contacts or {}

    def _members(self, user_ids: List[str]) -> List[Recipient]:
        # Members without a directory entry are still notified by id
        return [self.users.get(user_id) or Recipient(recipient_id=user_id) for user_id in user_ids]

    async def get_user(self, user_id: str) -> Optional[Recipient]:
        return self.users.get(user_id)

    async def get_role_members(self, role: str) -> Optional[List[Recipient]]:
        if role not in self.roles:
            return None
        return self._members(self.roles[role])

    async def get_department_members(self, department: str) -> Optional[List[Recipient]]:
        for name, user_ids in self.departments.items():
            if name.casefold() == department.casefold():
                return self._members(user_ids)
        return None

    async def get_management_chain(self, incident: IncidentSnapshot) -> List[Recipient]:
        """Department managers for the incident, falling back to site management."""
        if incident.department:
            for name, user_ids in self.management.items():
                if name.casefold() == incident.department.casefold():
                    return self._members(user_ids)
        return self._members(self.management.get("default", []))

    async def get_emergency_contacts(self, group: str) -> Optional[List[Recipient]]:
        if group in self.emergency_contacts:
            return self._members(self.emergency_contacts[group])
        return await self.get_role_members(group)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StaticRecipientDirectory':
        users = {
            user_id: Recipient(recipient_id=user_id, **(details or {}))
            for user_id, details in (data.get("users") or {}).items()
        }
        return cls(
            users=users,
            roles=data.get("roles"),
            departments=data.get("departments"),
            management=data.get("management"),
            emergency_contacts=data.get("emergency_contacts")
        )


def default_directory() -> StaticRecipientDirectory:
    """Directory matching the role and group names used by default_rules()."""
    return StaticRecipientDirectory(
        roles={
            "HSE_Manager": ["hse_manager_1", "hse_manager_2"],
            "Safety_Officer": ["safety_officer_1", "safety_officer_2", "safety_officer_3"],
            "Department_Manager": ["dept_manager_1", "dept_manager_2"],
            "Security_Manager": ["security_manager_1"],
            "Safety_Manager": ["safety_manager_1"],
            "regulatory_team": ["regulatory_officer", "compliance_manager", "legal_counsel"],
        },
        management={
            "default": ["site_manager", "hse_manager", "operations_manager"],
        },
        emergency_contacts={
            "emergency_team": ["emergency_coordinator", "site_safety_officer", "medical_officer"],
        }
    )
