"""
Audit Trail Module

Hash-chained, append-only audit log with SHA-256 for tamper detection.
Every state change in the ledger core is recorded here; entries are
never mutated or deleted.
"""

import hashlib
import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Any, Tuple

from .errors import DataUnavailableError, ValidationError
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger(__name__)


class AuditAction:
    """Action verbs recorded by the ledger core"""
    LOAN_GRANTED = "LOAN_GRANTED"
    CUSTOMER_CREATED = "CUSTOMER_CREATED"
    PAYMENT_POSTED = "PAYMENT_POSTED"
    FEE_POSTED = "FEE_POSTED"
    SCHEDULE_GENERATED = "SCHEDULE_GENERATED"
    INSTALLMENTS_UPDATED = "INSTALLMENTS_UPDATED"
    INSTALLMENT_PAID = "INSTALLMENT_PAID"
    INSTALLMENT_SKIPPED = "INSTALLMENT_SKIPPED"
    SCHEDULE_WIPED = "SCHEDULE_WIPED"
    AMOUNTS_RECONCILED = "AMOUNTS_RECONCILED"


def _serialize(value: Any) -> Any:
    """Convert change payload values to JSON-serializable form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    if hasattr(value, 'amount') and hasattr(value, 'currency'):
        return str(value.amount)
    return value


@dataclass
class AuditEntry(StorageRecord):
    """
    Immutable audit entry chained to its predecessor by hash
    """
    user_id: Optional[str]
    action: str
    entity_type: str
    entity_id: str
    sequence: int
    previous_hash: str
    current_hash: str
    changes: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.changes is not None:
            self.changes = _serialize(self.changes)

    def calculate_hash(self) -> str:
        """
        SHA-256 over every field except current_hash
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'user_id': self.user_id,
            'action': self.action,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'changes': self.changes
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        data = dict(data)
        data['created_at'] = cls.parse_timestamp(data['created_at'])
        data['updated_at'] = cls.parse_timestamp(data['updated_at'])
        return cls(**data)


@dataclass
class AuditLogView:
    """Audit entry joined with the acting employee's display details"""
    entry: AuditEntry
    employee_name: Optional[str] = None
    employee_email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.entry.id,
            "user_id": self.entry.user_id,
            "action": self.entry.action,
            "entity_type": self.entry.entity_type,
            "entity_id": self.entry.entity_id,
            "changes": self.entry.changes,
            "created_at": self.entry.created_at.isoformat(),
            "employee": {
                "name": self.employee_name,
                "email": self.employee_email
            }
        }


class AuditTrail:
    """
    Append-only, hash-chained audit trail
    """

    def __init__(
        self,
        storage: StorageInterface,
        table_name: str = "audit_logs",
        employees_table: str = "employees",
        enabled: bool = True
    ):
        self.storage = storage
        self.table_name = table_name
        self.employees_table = employees_table
        self.enabled = enabled
        self._lock = threading.Lock()

    def _load_entries(self) -> List[AuditEntry]:
        try:
            rows = self.storage.load_all(self.table_name)
        except Exception as e:
            raise DataUnavailableError(f"Failed to read audit log: {e}") from e
        entries = [AuditEntry.from_dict(row) for row in rows]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def _chain_head(self) -> Tuple[int, str]:
        entries = self._load_entries()
        if not entries:
            return 0, ""
        return entries[-1].sequence, entries[-1].current_hash

    def record(
        self,
        actor: Optional[str],
        action: str,
        entity_type: str,
        entity_id: str,
        changes: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEntry]:
        """
        Append one audit entry

        Args:
            actor: Identifier of the employee performing the action
            action: Action verb; stored upper-cased
            entity_type: Type of entity (loan, installment, ...)
            entity_id: ID of the affected entity
            changes: Free-form change payload

        Returns:
            The created AuditEntry, or None when audit logging is disabled

        Raises:
            ValidationError: If action, entity type or entity id is empty
            DataUnavailableError: If the entry cannot be written
        """
        if not action or not entity_type or not entity_id:
            raise ValidationError("action, entity_type and entity_id are required")
        if not self.enabled:
            return None

        with self._lock:
            last_sequence, last_hash = self._chain_head()
            now = datetime.now(timezone.utc)
            entry = AuditEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=actor,
                action=action.upper(),
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=last_sequence + 1,
                previous_hash=last_hash,
                current_hash="",
                changes=changes
            )
            entry.current_hash = entry.calculate_hash()

            try:
                self.storage.save(self.table_name, entry.id, entry.to_dict())
            except Exception as e:
                raise DataUnavailableError(f"Failed to write audit entry: {e}") from e

        logger.debug("Audit %s on %s %s by %s", entry.action, entity_type, entity_id, actor)
        return entry

    def query(
        self,
        entity_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[AuditLogView], int]:
        """
        Entries for one entity, newest first, with actor details joined in

        Returns:
            (page of AuditLogView, total number of entries for the entity)
        """
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")

        try:
            rows = self.storage.find(self.table_name, {'entity_id': entity_id})
        except Exception as e:
            raise DataUnavailableError(f"Failed to read audit log: {e}") from e

        entries = [AuditEntry.from_dict(row) for row in rows]
        entries.sort(key=lambda e: (e.created_at, e.sequence), reverse=True)
        page = entries[offset:offset + limit]

        employees: Dict[str, Optional[Dict[str, Any]]] = {}
        views = []
        for entry in page:
            employee = None
            if entry.user_id:
                if entry.user_id not in employees:
                    employees[entry.user_id] = self.storage.load(self.employees_table, entry.user_id)
                employee = employees[entry.user_id]
            views.append(AuditLogView(
                entry=entry,
                employee_name=employee.get('full_name') if employee else None,
                employee_email=employee.get('email') if employee else None
            ))

        return views, len(entries)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify every entry's hash and the continuity of the chain
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        entries = self._load_entries()
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result

    def count_entries(self) -> int:
        return self.storage.count(self.table_name)
