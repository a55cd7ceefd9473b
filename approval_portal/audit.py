"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every template change and workflow transition is logged here, inside the
same atomic unit as the change itself.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Template events
    TEMPLATE_CREATED = "template_created"
    TEMPLATE_STEPS_REPLACED = "template_steps_replaced"
    TEMPLATE_DEACTIVATED = "template_deactivated"

    # Instance events
    INSTANCE_STARTED = "instance_started"
    INSTANCE_ADOPTED = "instance_adopted"
    STEP_APPROVED = "step_approved"
    STEP_REJECTED = "step_rejected"
    STEP_SKIPPED = "step_skipped"
    INSTANCE_CANCELLED = "instance_cancelled"
    INSTANCE_COMPLETED = "instance_completed"

    # Directory events
    USER_CREATED = "user_created"
    USER_DEACTIVATED = "user_deactivated"
    DEPARTMENT_CREATED = "department_created"


def audit_value(value: Any) -> Any:
    """JSON-safe form of a metadata value; records with to_dict are expanded"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, 'to_dict'):
        return audit_value(value.to_dict())
    if isinstance(value, dict):
        return {str(k): audit_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [audit_value(v) for v in value]
    if isinstance(value, set):
        return sorted(audit_value(v) for v in value)
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # workflow_instance, workflow_template, user, ...
    entity_id: str
    position: int  # Place in the chain, starting at 1
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self.metadata = audit_value(self.metadata)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'position': self.position,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        if isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection.

    Appending takes the storage lock named after the audit table, so the chain
    is extended by one transaction at a time and a rolled back transaction
    takes its events with it.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled

    def _chain_tail(self) -> Optional[Dict[str, Any]]:
        events = self.storage.load_all(self.table_name)
        if not events:
            return None
        return max(events, key=lambda e: e.get('position', 0))

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of the actor who caused the event

        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None

        with self.storage.atomic(lock_key=self.table_name):
            tail = self._chain_tail()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                position=(tail['position'] + 1) if tail else 1,
                previous_hash=tail['current_hash'] if tail else "",
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())

        return event

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity, oldest first

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Maximum number of (most recent) events to return
        """
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = sorted((AuditEvent.from_dict(data) for data in events_data),
                        key=lambda e: e.position)
        if limit:
            events = events[-limit:]
        return events

    def get_all_events(self, event_type: Optional[AuditEventType] = None) -> List[AuditEvent]:
        """Get all audit events in chain order, optionally of one type"""
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        events.sort(key=lambda e: e.position)
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        events = self.get_all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': event.position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash or event.position != i + 1:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': event.position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
