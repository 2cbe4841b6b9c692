"""
Order Hub - Notification Service

Sends case cards to the submitting user (and, on escalation, a secondary
recipient) through a swappable channel:

- MockNotificationChannel: logs and keeps cards in memory / MongoDB
- WebhookNotificationChannel: POSTs the card to the bot webhook

Rendering and bot transport live behind the webhook. Notification failures
are logged and returned as an unsuccessful NotificationResult; they never
fail a case.
"""

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from orderhub.services import config

logger = logging.getLogger(__name__)


class CardType(str, Enum):
    BLOCKED = "blocked"
    ISSUES = "issues"
    SELECTION_NEEDED = "selection_needed"
    READY_FOR_APPROVAL = "ready_for_approval"
    REMINDER = "reminder"
    ESCALATION = "escalation"
    SUBMISSION_QUEUED = "submission_queued"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class NotificationResult:
    """Result of a notify call."""
    success: bool
    card_type: str
    notification_id: Optional[str] = None
    channel: str = "mock"
    error: Optional[str] = None
    timestamp: str = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# MOCK CHANNEL
# =============================================================================

class MockNotificationChannel:
    """
    Mock channel for development and testing.

    Keeps every card in memory, and in the `notification_logs` collection
    when a database is given.
    """

    name = "mock"

    def __init__(self, db=None):
        self.db = db
        self._sent: List[Dict[str, Any]] = []

    async def send(self, case_id: str, card_type: str, payload: Dict[str, Any]) -> NotificationResult:
        notification_id = f"mock_{uuid.uuid4().hex[:12]}"
        record = {
            "notification_id": notification_id,
            "case_id": case_id,
            "card_type": card_type,
            "payload": payload,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.info("[MOCK CARD] case=%s type=%s id=%s", case_id, card_type, notification_id)
        self._sent.append(record)

        if self.db is not None:
            try:
                await self.db.notification_logs.insert_one(dict(record))
            except Exception as e:
                logger.warning("Failed to log notification to MongoDB: %s", e)

        return NotificationResult(success=True, card_type=card_type, notification_id=notification_id)

    def get_sent(self, case_id: Optional[str] = None, card_type: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            r for r in self._sent
            if (case_id is None or r["case_id"] == case_id) and (card_type is None or r["card_type"] == card_type)
        ]

    def clear(self):
        self._sent.clear()


# =============================================================================
# WEBHOOK CHANNEL
# =============================================================================

class WebhookNotificationChannel:
    """Delivers cards to the bot service webhook."""

    name = "webhook"

    def __init__(self, url: str = config.NOTIFY_WEBHOOK_URL, timeout: float = config.COLLABORATOR_TIMEOUT_SECONDS,
                 transport: httpx.AsyncBaseTransport = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def send(self, case_id: str, card_type: str, payload: Dict[str, Any]) -> NotificationResult:
        body = {"case_id": case_id, "card_type": card_type, "payload": payload}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(self.url, json=body)
        if resp.status_code not in (200, 201, 202):
            return NotificationResult(
                success=False, card_type=card_type, channel=self.name,
                error=f"Webhook returned {resp.status_code}: {resp.text[:200]}",
            )
        data = resp.json() if resp.content else {}
        return NotificationResult(
            success=True, card_type=card_type, channel=self.name,
            notification_id=data.get("id") if isinstance(data, dict) else None,
        )


# =============================================================================
# SERVICE
# =============================================================================

class NotificationService:
    """Unified notify() over a channel. Never raises."""

    def __init__(self, channel=None, secondary_recipient: str = config.ESCALATION_SECONDARY_RECIPIENT):
        self.channel = channel or MockNotificationChannel()
        self.secondary_recipient = secondary_recipient

    async def notify(self, case_id: str, card_type: CardType, payload: Dict[str, Any]) -> NotificationResult:
        card = card_type.value if isinstance(card_type, CardType) else str(card_type)
        payload = dict(payload)
        if card == CardType.ESCALATION.value:
            payload.setdefault("secondary_recipient", self.secondary_recipient)
        try:
            result = await self.channel.send(case_id, card, payload)
        except Exception as e:
            logger.warning("Notification %s for case %s failed: %s", card, case_id, str(e))
            return NotificationResult(success=False, card_type=card, channel=self.channel.name, error=str(e))

        if result.success:
            logger.info("Sent %s card for case %s", card, case_id)
        else:
            logger.warning("Notification %s for case %s not delivered: %s", card, case_id, result.error)
        return result
