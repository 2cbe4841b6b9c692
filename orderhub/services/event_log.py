"""
Order Hub - Case Event Log

Append-only audit trail. Every event gets the case's next sequence number;
sequence numbers are gapless and strictly increasing per case, and an event
is never modified after it is appended.

Backends:
- MongoEventBackend: `case_events` collection, unique (case_id, sequence_number)
- InMemoryEventBackend: process-local, for tests and demo mode
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from orderhub.services.errors import TransientStepError

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CASE_CREATED = "case_created"
    FILE_PARSED = "file_parsed"
    CASE_BLOCKED = "case_blocked"
    COMMITTEE_COMPLETED = "committee_completed"
    CORRECTIONS_APPLIED = "corrections_applied"
    CUSTOMER_RESOLVED = "customer_resolved"
    CUSTOMER_SELECTED = "customer_selected"
    ITEMS_RESOLVED = "items_resolved"
    ITEMS_SELECTED = "items_selected"
    APPROVAL_RECEIVED = "approval_received"
    ORDER_CREATED = "order_created"
    SUBMISSION_QUEUED = "submission_queued"
    SUBMISSION_RETRY = "submission_retry"
    AUDIT_FINALIZED = "audit_finalized"
    CASE_RESTARTED = "case_restarted"
    CASE_CANCELLED = "case_cancelled"
    CASE_FAILED = "case_failed"
    STATUS_CHANGED = "status_changed"


@dataclass
class AuditEvent:
    """One entry in a case's audit trail (before a sequence number is assigned)."""
    case_id: str
    type: str
    status: Optional[str] = None
    correlation_id: Optional[str] = None
    actor: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# BACKENDS
# =============================================================================

class InMemoryEventBackend:
    """Process-local event storage."""

    def __init__(self):
        self._events: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def append(self, case_id: str, event: Dict[str, Any]) -> int:
        async with self._lock:
            events = self._events.setdefault(case_id, [])
            sequence_number = len(events) + 1
            events.append(dict(event, sequence_number=sequence_number))
            return sequence_number

    async def list(self, case_id: str) -> List[Dict[str, Any]]:
        return [dict(e) for e in self._events.get(case_id, [])]


class MongoEventBackend:
    """
    Event storage on MongoDB.

    The next sequence number is max + 1; the unique index turns a concurrent
    append into a DuplicateKeyError, which is retried with a fresh read so
    numbers stay gapless.
    """

    def __init__(self, db, collection: str = "case_events", max_attempts: int = 5):
        self.collection = db[collection]
        self.max_attempts = max_attempts

    async def ensure_indexes(self):
        await self.collection.create_index([("case_id", 1), ("sequence_number", 1)], unique=True)
        await self.collection.create_index("type")

    async def append(self, case_id: str, event: Dict[str, Any]) -> int:
        for attempt in range(self.max_attempts):
            last = await self.collection.find_one(
                {"case_id": case_id},
                {"sequence_number": 1},
                sort=[("sequence_number", -1)],
            )
            sequence_number = (last["sequence_number"] if last else 0) + 1
            record = dict(event, case_id=case_id, sequence_number=sequence_number)
            try:
                await self.collection.insert_one(record)
                return sequence_number
            except DuplicateKeyError:
                logger.warning("Event sequence collision for case %s (attempt %d)", case_id, attempt + 1)

        raise TransientStepError(f"Could not append event for case {case_id}")

    async def list(self, case_id: str) -> List[Dict[str, Any]]:
        cursor = self.collection.find({"case_id": case_id}, {"_id": 0}).sort("sequence_number", 1)
        return await cursor.to_list(None)


# =============================================================================
# SERVICE
# =============================================================================

class EventLog:
    """Audit trail facade used by the case store and the API."""

    def __init__(self, backend):
        self.backend = backend

    async def append(
        self,
        case_id: str,
        event_type: str,
        status: Optional[str] = None,
        correlation_id: Optional[str] = None,
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        event = AuditEvent(
            case_id=case_id,
            type=getattr(event_type, "value", event_type),
            status=getattr(status, "value", status),
            correlation_id=correlation_id,
            actor=actor,
            metadata=metadata or {},
        )
        sequence_number = await self.backend.append(case_id, event.to_dict())
        logger.debug("Event %s #%d appended for case %s", event.type, sequence_number, case_id)
        return sequence_number

    async def get_events(self, case_id: str) -> List[Dict[str, Any]]:
        return await self.backend.list(case_id)

    async def get_events_by_type(self, case_id: str, event_type: str) -> List[Dict[str, Any]]:
        wanted = getattr(event_type, "value", event_type)
        return [e for e in await self.backend.list(case_id) if e["type"] == wanted]

    async def get_latest_event(self, case_id: str) -> Optional[Dict[str, Any]]:
        events = await self.backend.list(case_id)
        return events[-1] if events else None

    async def count(self, case_id: str) -> int:
        return len(await self.backend.list(case_id))
