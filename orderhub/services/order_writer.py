"""
Order Hub - Idempotent External Order Writer

Exactly-once sales order creation in the external order system.

- The idempotency key is derived from the case id alone, so the same case
  always names the same external order whatever its content.
- Before creating, the key is looked up as the order's reference number;
  an existing order is returned as a duplicate, and a 404 means none yet.
- "Already exists" from the create call is success with is_duplicate=True.
- 429 / 503 and transport failures are QUEUED, with the Retry-After hint
  (seconds or HTTP date) when the system sends one.
- Other 5xx responses raise TransientStepError for the step retry policy.
- Any other non-success response is a business failure (FAILED).
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from dateutil import parser as date_parser

from orderhub.services import config
from orderhub.services.errors import OrderHubError, TransientStepError

logger = logging.getLogger(__name__)


def derive_idempotency_key(case_id: str) -> str:
    digest = hashlib.sha256(case_id.encode("utf-8")).hexdigest()
    return f"order-{digest[:32]}"


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Retry-After header as seconds from now (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        moment = date_parser.parse(value)
    except (ValueError, OverflowError):
        logger.warning("Unparseable Retry-After header: %s", value)
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (moment - now).total_seconds())


# =============================================================================
# ORDER SYSTEM ERRORS
# =============================================================================

class OrderSystemUnavailable(TransientStepError):
    """Rate limited or temporarily unavailable."""
    def __init__(self, message: str, retry_after_seconds: Optional[float] = None, status_code: int = None):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message, details={"retry_after_seconds": retry_after_seconds}, status_code=status_code)


class OrderAlreadyExists(OrderHubError):
    """The idempotency key is already taken; carries the existing order."""
    def __init__(self, order: Dict[str, Any]):
        self.order = order
        super().__init__(f"Order already exists: {order.get('id')}", details={"order": order}, status_code=409)


class OrderRejected(OrderHubError):
    """The order system refused the order for business reasons."""
    pass


# =============================================================================
# SUBMISSION RESULT
# =============================================================================

class OrderSubmissionStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    QUEUED = "queued"
    FAILED = "failed"


@dataclass
class OrderSubmissionResult:
    status: OrderSubmissionStatus
    idempotency_key: str
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    is_duplicate: bool = False
    retry_after_seconds: Optional[float] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def is_success(self) -> bool:
        return self.status in (OrderSubmissionStatus.CREATED, OrderSubmissionStatus.DUPLICATE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "idempotency_key": self.idempotency_key,
            "order_id": self.order_id,
            "order_number": self.order_number,
            "is_duplicate": self.is_duplicate,
            "retry_after_seconds": self.retry_after_seconds,
            "error": self.error,
            "status_code": self.status_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderSubmissionResult":
        return cls(**dict(data, status=OrderSubmissionStatus(data["status"])))


# =============================================================================
# ORDER SYSTEM CLIENTS
# =============================================================================

class HttpOrderSystemClient:
    """External order system over HTTP."""

    def __init__(self, base_url: str = config.ORDER_SYSTEM_URL, token: str = config.ORDER_SYSTEM_TOKEN,
                 timeout: float = config.COLLABORATOR_TIMEOUT_SECONDS, transport: httpx.AsyncBaseTransport = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _raise_for_unavailable(self, resp: httpx.Response) -> None:
        if resp.status_code in (429, 503):
            raise OrderSystemUnavailable(
                f"Order system returned {resp.status_code}",
                retry_after_seconds=parse_retry_after(resp.headers.get("Retry-After")),
                status_code=resp.status_code,
            )
        if resp.status_code >= 500:
            raise TransientStepError(f"Order system error: {resp.status_code}", status_code=resp.status_code)

    async def find_by_reference(self, reference: str) -> Optional[Dict[str, Any]]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(f"{self.base_url}/salesOrders", params={"reference": reference},
                                        headers=self._headers())
        except httpx.TransportError as e:
            raise OrderSystemUnavailable(f"Order system unreachable: {e}")

        self._raise_for_unavailable(resp)
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise OrderRejected(f"Order lookup failed: {resp.status_code} - {resp.text[:200]}",
                                status_code=resp.status_code)
        orders = resp.json().get("value", [])
        return orders[0] if orders else None

    async def create_order(self, idempotency_key: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(payload, reference=idempotency_key)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(f"{self.base_url}/salesOrders", json=body,
                                         headers=self._headers(idempotency_key))
        except httpx.TransportError as e:
            raise OrderSystemUnavailable(f"Order system unreachable: {e}")

        if resp.status_code == 409:
            try:
                conflict = resp.json()
            except ValueError:
                conflict = {}
            order = conflict.get("order") if isinstance(conflict, dict) else None
            raise OrderAlreadyExists(order or {})
        self._raise_for_unavailable(resp)
        if resp.status_code not in (200, 201):
            error_detail = resp.text[:500]
            logger.error("Failed to create sales order %s: %s", idempotency_key, error_detail)
            raise OrderRejected(f"Order system rejected order: {resp.status_code}",
                                details={"response": error_detail}, status_code=resp.status_code)
        return resp.json()


class InMemoryOrderSystem:
    """Create-if-absent order store keyed by reference, for demo mode and tests."""

    def __init__(self):
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.create_calls = 0
        self._unavailable_rounds = 0
        self._retry_after: Optional[float] = None
        self._reject_reason: Optional[str] = None

    def make_unavailable(self, rounds: int = 1, retry_after_seconds: Optional[float] = None) -> None:
        self._unavailable_rounds = rounds
        self._retry_after = retry_after_seconds

    def reject_next(self, reason: str) -> None:
        self._reject_reason = reason

    async def find_by_reference(self, reference: str) -> Optional[Dict[str, Any]]:
        if self._unavailable_rounds > 0:
            self._unavailable_rounds -= 1
            raise OrderSystemUnavailable("Order system busy", retry_after_seconds=self._retry_after, status_code=429)
        order = self.orders.get(reference)
        return dict(order) if order else None

    async def create_order(self, idempotency_key: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.create_calls += 1
        if self._reject_reason:
            reason, self._reject_reason = self._reject_reason, None
            raise OrderRejected(reason, status_code=400)
        if idempotency_key in self.orders:
            raise OrderAlreadyExists(dict(self.orders[idempotency_key]))
        order = {
            "id": uuid.uuid4().hex,
            "number": f"SO-{len(self.orders) + 1:05d}",
            "reference": idempotency_key,
            "payload": payload,
        }
        self.orders[idempotency_key] = order
        return dict(order)


# =============================================================================
# WRITER
# =============================================================================

class IdempotentOrderWriter:
    """Creates the case's order at most once."""

    def __init__(self, client):
        self.client = client

    async def submit(self, case_id: str, payload: Dict[str, Any]) -> OrderSubmissionResult:
        key = derive_idempotency_key(case_id)
        try:
            existing = await self.client.find_by_reference(key)
            if existing and existing.get("id") is not None:
                logger.info("Case %s: order %s already exists for key %s", case_id, existing.get("id"), key)
                return self._duplicate(key, existing)

            created = await self.client.create_order(key, payload)
        except OrderAlreadyExists as e:
            logger.info("Case %s: order system reports key %s already used", case_id, key)
            if e.order.get("id") is None:
                # the next attempt's lookup picks up the existing order
                raise TransientStepError(f"Order for key {key} exists but its id was not returned", status_code=409)
            return self._duplicate(key, e.order)
        except OrderSystemUnavailable as e:
            logger.warning("Case %s: order system unavailable, submission queued (retry after %s)",
                           case_id, e.retry_after_seconds)
            return OrderSubmissionResult(
                status=OrderSubmissionStatus.QUEUED,
                idempotency_key=key,
                retry_after_seconds=e.retry_after_seconds,
                error=e.message,
                status_code=e.status_code,
            )
        except OrderRejected as e:
            logger.error("Case %s: order rejected: %s", case_id, e.message)
            return OrderSubmissionResult(
                status=OrderSubmissionStatus.FAILED,
                idempotency_key=key,
                error=e.message,
                status_code=e.status_code,
            )

        logger.info("Case %s: created order %s (%s)", case_id, created.get("id"), created.get("number"))
        return OrderSubmissionResult(
            status=OrderSubmissionStatus.CREATED,
            idempotency_key=key,
            order_id=str(created.get("id")),
            order_number=created.get("number"),
        )

    @staticmethod
    def _duplicate(key: str, order: Dict[str, Any]) -> OrderSubmissionResult:
        return OrderSubmissionResult(
            status=OrderSubmissionStatus.DUPLICATE,
            idempotency_key=key,
            order_id=str(order.get("id")) if order.get("id") is not None else None,
            order_number=order.get("number"),
            is_duplicate=True,
        )
