"""
Activity Log Module

Hash-chained activity log of ledger events with SHA-256 tamper detection.
The log is a non-critical collaborator: ``record`` never raises, so a broken
log can't block or undo a committed money movement.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
from decimal import Decimal

from .logging_config import get_logger
from .storage import StorageInterface, StorageRecord

logger = get_logger("fxledger.audit")


class ActivityType(Enum):
    """Types of logged activity"""
    USER_CREATED = "user_created"
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_STATUS_CHANGED = "account_status_changed"
    ACCOUNT_LIMITS_CHANGED = "account_limits_changed"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    CURRENCY_TRANSFER = "currency_transfer"
    OPERATION_FAILED = "operation_failed"


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass
class ActivityEvent(StorageRecord):
    """Immutable activity event chained to its predecessor by hash"""
    activity_type: ActivityType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    details: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.details = _plain(self.details or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'activity_type': self.activity_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'details': self.details,
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ActivityEvent':
        data = dict(data)
        data['activity_type'] = ActivityType(data['activity_type'])
        return super().from_dict(data)


class ActivityLog:
    """Hash-chained activity log"""

    def __init__(self, storage: StorageInterface, table_name: str = "activity_log"):
        self.storage = storage
        self.table_name = table_name

    def _last_hash(self) -> str:
        events = self.storage.load_all(self.table_name)
        if not events:
            return ""
        return events[-1].get('current_hash', "")

    def log_event(
        self,
        activity_type: ActivityType,
        entity_type: str,
        entity_id: Any,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[Any] = None
    ) -> ActivityEvent:
        """
        Append an event to the chain.

        Raises whatever the storage raises; use ``record`` from business code,
        after the ledger unit it describes has closed.
        """
        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            event = ActivityEvent(
                id=self.storage.next_id(self.table_name),
                created_at=now,
                updated_at=now,
                activity_type=activity_type,
                entity_type=entity_type,
                entity_id=str(entity_id),
                previous_hash=self._last_hash(),
                current_hash="",
                details=details or {},
                user_id=str(user_id) if user_id is not None else None,
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def record(self, *args, **kwargs) -> Optional[ActivityEvent]:
        """Best-effort ``log_event``: failures are logged and swallowed"""
        try:
            return self.log_event(*args, **kwargs)
        except Exception as e:
            logger.error(f"Activity log write failed: {e}", exc_info=True)
            return None

    def get_events_for_entity(self, entity_type: str, entity_id: Any) -> List[ActivityEvent]:
        found = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': str(entity_id),
        })
        return [ActivityEvent.from_dict(data) for data in found]

    def get_all_events(self) -> List[ActivityEvent]:
        return [ActivityEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Recompute every hash and check chain continuity.

        Returns:
            Dictionary with ``valid``, ``total_events``, ``hash_errors`` and
            ``chain_breaks``
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
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({'event_id': event.id, 'position': position})
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({'event_id': event.id, 'position': position})
            previous_hash = event.current_hash

        return result
