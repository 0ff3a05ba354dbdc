import logging
import hashlib
from datetime import datetime, timezone
from typing import Dict, Optional, Any, Union
from dataclasses import dataclass
from uuid import uuid4, UUID
from enum import Enum

from ..models.rules import EscalationRule


class AuditOperation(Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class AuditEntry:
    audit_id: UUID
    table_name: str
    operation: AuditOperation
    user_id: str
    record_id: Optional[str]
    timestamp: datetime
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert audit entry to dictionary for storage."""
        return {
            "audit_id": str(self.audit_id),
            "table_name": self.table_name,
            "operation": self.operation.value,
            "user_id": self.user_id,
            "record_id": self.record_id,
            "timestamp": self.timestamp.isoformat(),
            "old_values": self.old_values,
            "new_values": self.new_values
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        timestamp = data["timestamp"]
        return cls(
            audit_id=UUID(str(data["audit_id"])),
            table_name=data["table_name"],
            operation=AuditOperation(data["operation"]),
            user_id=data["user_id"],
            record_id=data.get("record_id"),
            timestamp=timestamp if isinstance(timestamp, datetime) else datetime.fromisoformat(timestamp),
            old_values=data.get("old_values"),
            new_values=data.get("new_values")
        )


class AuditLogger:
    """
    Audit logging service for escalation rule administration.

    - Every rule create/update/toggle/delete produces an audit entry
    - Entries are validated before the change they describe is saved; the
      rule repository stores them in the same transaction as the change
    - Contact addresses are hashed before they reach log output
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def create_audit_entry(
        self,
        table_name: str,
        operation: AuditOperation,
        user_id: str,
        record_id: Optional[str] = None,
        old_values: Optional[Union[Dict, EscalationRule]] = None,
        new_values: Optional[Union[Dict, EscalationRule]] = None
    ) -> AuditEntry:
        """
        Create an audit entry for a configuration change.

        Args:
            table_name: Name of the table being modified
            operation: Type of operation (INSERT, UPDATE, DELETE)
            user_id: ID of the user performing the operation
            record_id: ID of the modified record
            old_values: Previous values (for UPDATE/DELETE)
            new_values: New values (for INSERT/UPDATE)

        Returns:
            AuditEntry object ready for storage

        Raises:
            AuditException: if the entry is incomplete
        """
        try:
            audit_entry = AuditEntry(
                audit_id=uuid4(),
                table_name=table_name,
                operation=operation,
                user_id=user_id,
                record_id=record_id,
                timestamp=datetime.now(timezone.utc),
                old_values=self._serialize_audit_data(old_values) if old_values else None,
                new_values=self._serialize_audit_data(new_values) if new_values else None
            )
            self.validate_audit_entry(audit_entry)

            self.logger.info(
                f"Audit entry created - ID: {audit_entry.audit_id}, Table: {table_name}, "
                f"Operation: {operation.value}, Record: {record_id}, User: {user_id}"
            )

            return audit_entry

        except AuditException:
            raise
        except Exception as e:
            self.logger.error(f"Failed to create audit entry: {str(e)}")
            raise AuditException(f"Audit entry creation failed: {str(e)}")

    def audit_rule_creation(self, rule: EscalationRule, user_id: str) -> AuditEntry:
        return self.create_audit_entry(
            table_name="escalation_rules",
            operation=AuditOperation.INSERT,
            user_id=user_id,
            record_id=str(rule.rule_id),
            new_values=rule
        )

    def audit_rule_update(self, old_rule: EscalationRule, new_rule: EscalationRule, user_id: str) -> AuditEntry:
        return self.create_audit_entry(
            table_name="escalation_rules",
            operation=AuditOperation.UPDATE,
            user_id=user_id,
            record_id=str(new_rule.rule_id),
            old_values=old_rule,
            new_values=new_rule
        )

    def audit_rule_deletion(self, rule: EscalationRule, user_id: str) -> AuditEntry:
        return self.create_audit_entry(
            table_name="escalation_rules",
            operation=AuditOperation.DELETE,
            user_id=user_id,
            record_id=str(rule.rule_id),
            old_values=rule
        )

    def _serialize_audit_data(self, data: Union[Dict, EscalationRule]) -> Dict[str, Any]:
        """Serialize rules or plain dictionaries for JSON storage."""
        if isinstance(data, EscalationRule):
            return data.to_dict()
        return self._ensure_json_serializable(data)

    def _ensure_json_serializable(self, obj: Any) -> Any:
        if isinstance(obj, dict):
            return {key: self._ensure_json_serializable(value) for key, value in obj.items()}
        elif isinstance(obj, (list, tuple, set, frozenset)):
            return [self._ensure_json_serializable(item) for item in obj]
        elif isinstance(obj, datetime):
            return obj.isoformat()
        elif isinstance(obj, UUID):
            return str(obj)
        elif isinstance(obj, Enum):
            return obj.value
        elif obj is None or isinstance(obj, (str, int, float, bool)):
            return obj
        else:
            return str(obj)

    def validate_audit_entry(self, audit_entry: AuditEntry) -> bool:
        """
        Validate audit entry before storage.

        Returns:
            True if valid, raises exception if invalid
        """
        if not audit_entry.table_name:
            raise AuditException("Audit entry must specify table_name")

        if not audit_entry.user_id:
            raise AuditException("Audit entry must specify user_id")

        if audit_entry.operation == AuditOperation.INSERT and not audit_entry.new_values:
            raise AuditException("INSERT operation must include new_values")

        if audit_entry.operation == AuditOperation.DELETE and not audit_entry.old_values:
            raise AuditException("DELETE operation must include old_values")

        if audit_entry.operation == AuditOperation.UPDATE:
            if not audit_entry.old_values or not audit_entry.new_values:
                raise AuditException("UPDATE operation must include both old_values and new_values")

        return True


def hash_identifier(value: Optional[str]) -> str:
    """
    Privacy-preserving digest of a contact address for log output.
    """
    if not value:
        return "N/A"
    salt = "escalation_audit_salt"
    return hashlib.sha256(f"{salt}{value}".encode()).hexdigest()[:16]


class AuditException(Exception):
    """Exception raised when audit operations fail."""
    pass
