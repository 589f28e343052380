"""
Audit Trail Module

Hash-chained audit log with SHA-256 for tamper detection. Ledger operations
record one event per successful mutation: the operator, an action tag, the
target entity kind/id and a human-readable description.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Action tags recorded in the audit trail"""
    # Customer events
    CUSTOMER_CREATED = "customer_created"
    CUSTOMER_UPDATED = "customer_updated"
    CUSTOMER_DEACTIVATED = "customer_deactivated"

    # Account events
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_DEPOSIT = "account_deposit"
    ACCOUNT_WITHDRAWAL = "account_withdrawal"
    ACCOUNT_TRANSFER = "account_transfer"
    INTEREST_CREDITED = "interest_credited"
    TRANSACTION_REVERSED = "transaction_reversed"
    ACCOUNT_DEACTIVATED = "account_deactivated"

    # Fixed deposit events
    FD_CREATED = "fd_created"
    FD_UPDATED = "fd_updated"
    FD_MATURED = "fd_matured"
    FD_CLOSED_PREMATURE = "fd_closed_premature"

    # Recurring deposit events
    RD_CREATED = "rd_created"
    RD_INSTALLMENT_PAID = "rd_installment_paid"
    RD_COMPLETED = "rd_completed"
    RD_CLOSED = "rd_closed"

    # Loan events
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_PAYMENT_MADE = "loan_payment_made"
    LOAN_UPDATED = "loan_updated"
    LOAN_CLOSED = "loan_closed"
    LOAN_FORECLOSED = "loan_foreclosed"

    # Collaborator events
    NOTIFICATION_QUEUED = "notification_queued"


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    sequence: int
    previous_hash: str
    current_hash: str
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _json_safe(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        SHA-256 over every field except current_hash
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'description': self.description,
            'user_id': self.user_id,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events", enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._lock = threading.Lock()
        self.storage.create_index(table_name, 'sequence')

    def _chain_head(self) -> Optional[Dict[str, Any]]:
        """Most recent event row; read from storage so rolled-back events never anchor the chain"""
        return self.storage.latest(self.table_name, 'sequence')

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Action tag
            entity_type: Kind of entity acted upon (account, fixed_deposit, ...)
            entity_id: ID of the entity
            description: Human-readable description of the action
            metadata: Additional event-specific data
            user_id: Operator who initiated the action

        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None

        with self._lock:
            head = self._chain_head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=(head['sequence'] + 1) if head else 1,
                previous_hash=head['current_hash'] if head else "",
                current_hash="",
                description=description,
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def _all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """All events for one entity in chain order (most recent ``limit`` if given)"""
        events = [
            AuditEvent.from_dict(data) for data in self.storage.find(
                self.table_name, {'entity_type': entity_type, 'entity_id': entity_id}
            )
        ]
        events.sort(key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_activity(
        self,
        user_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        entity_type: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Dict[str, Any]:
        """
        Filtered activity log, newest first, with pagination totals
        """
        events = self._all_events()
        if user_id:
            events = [e for e in events if e.user_id == user_id]
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        if entity_type:
            events = [e for e in events if e.entity_type == entity_type]
        if start_time:
            events = [e for e in events if e.created_at >= start_time]
        if end_time:
            events = [e for e in events if e.created_at <= end_time]

        events.reverse()
        return {
            'events': events[offset:offset + limit],
            'total': len(events),
            'limit': limit,
            'offset': offset
        }

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
            'chain_breaks': []
        }

        events = self._all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
