"""
Order Hub - Directory / Catalog Client

Read-mostly lookups against the external item catalog and customer
directory:

- search_items_by_identifier(sku)          exact stocking-code lookup
- search_items_by_secondary_identifier(gtin) exact barcode lookup
- search_items_by_text(text)               ranked fuzzy search [{id, name, score}]
- search_customers_by_text(name)           ranked fuzzy search [{id, name, score}]

An empty result list is a normal answer. Transport failures and 5xx / 429
responses raise TransientStepError so the calling step is retried.

HttpCatalogClient talks to the catalog service; InMemoryCatalog scores a
local list with the same normalization rules and is used in demo mode and
tests.
"""

import logging
import re
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional

import httpx

from orderhub.services import config
from orderhub.services.errors import PermanentStepError, TransientStepError

logger = logging.getLogger(__name__)


# =============================================================================
# NORMALIZATION AND SCORING
# =============================================================================

_BUSINESS_SUFFIXES = [
    r'\s*,?\s*(inc\.?|incorporated)$',
    r'\s*,?\s*(llc\.?|l\.l\.c\.?)$',
    r'\s*,?\s*(ltd\.?|limited)$',
    r'\s*,?\s*(corp\.?|corporation)$',
    r'\s*,?\s*(co\.?|company)$',
    r'\s*,?\s*(plc\.?)$',
    r'\s*,?\s*(gmbh)$',
]


def normalize_name(name: str) -> str:
    """
    Normalize a customer or item name for matching.
    Strips common business suffixes, punctuation, and converts to lowercase.
    """
    if not name:
        return ""
    name = name.lower().strip()
    for suffix in _BUSINESS_SUFFIXES:
        name = re.sub(suffix, '', name, flags=re.IGNORECASE)
    name = re.sub(r'[^\w\s]', ' ', name)
    return re.sub(r'\s+', ' ', name).strip()


def normalize_identifier(value: Optional[str]) -> str:
    """Stocking codes compare case-insensitively with whitespace removed."""
    if not value:
        return ""
    return re.sub(r'\s+', '', value.strip().upper())


def normalize_barcode(value: Optional[str]) -> str:
    """Barcodes compare with spaces and dashes removed."""
    if not value:
        return ""
    return re.sub(r'[\s\-]', '', value).strip()


def calculate_fuzzy_score(name1: str, name2: str) -> float:
    """
    Fuzzy similarity in [0, 1]: the better of token overlap and
    character-sequence ratio on the normalized names.
    """
    norm1 = normalize_name(name1)
    norm2 = normalize_name(name2)
    if not norm1 or not norm2:
        return 0.0
    if norm1 == norm2:
        return 1.0

    tokens1 = set(norm1.split())
    tokens2 = set(norm2.split())
    token_score = len(tokens1 & tokens2) / len(tokens1 | tokens2)
    sequence_score = SequenceMatcher(None, norm1, norm2).ratio()
    return round(max(token_score, sequence_score), 4)


# =============================================================================
# IN-MEMORY CATALOG
# =============================================================================

class InMemoryCatalog:
    """
    Local catalog / directory.

    items:     [{"id", "name", "sku", "gtin", "rate"}]
    customers: [{"id", "name", "company_name"}]
    """

    def __init__(self, items: List[Dict[str, Any]] = None, customers: List[Dict[str, Any]] = None,
                 min_score: float = 0.3, limit: int = 10):
        self.items = list(items or [])
        self.customers = list(customers or [])
        self.min_score = min_score
        self.limit = limit

    @staticmethod
    def _item_hit(item: Dict[str, Any], score: float, reason: str) -> Dict[str, Any]:
        return {
            "id": item["id"],
            "name": item.get("name", ""),
            "identifier": item.get("sku"),
            "secondary_identifier": item.get("gtin"),
            "rate": item.get("rate"),
            "score": score,
            "reason": reason,
        }

    async def search_items_by_identifier(self, identifier: str) -> List[Dict[str, Any]]:
        wanted = normalize_identifier(identifier)
        if not wanted:
            return []
        return [
            self._item_hit(i, 1.0, "Exact stocking code match")
            for i in self.items if normalize_identifier(i.get("sku")) == wanted
        ]

    async def search_items_by_secondary_identifier(self, barcode: str) -> List[Dict[str, Any]]:
        wanted = normalize_barcode(barcode)
        if not wanted:
            return []
        return [
            self._item_hit(i, 1.0, "Exact barcode match")
            for i in self.items if normalize_barcode(i.get("gtin")) == wanted
        ]

    async def search_items_by_text(self, text: str) -> List[Dict[str, Any]]:
        hits = []
        for item in self.items:
            score = calculate_fuzzy_score(text, item.get("name", ""))
            if score >= self.min_score:
                hits.append(self._item_hit(item, score, "Fuzzy description match"))
        hits.sort(key=lambda h: h["score"], reverse=True)
        return hits[:self.limit]

    async def search_customers_by_text(self, name: str) -> List[Dict[str, Any]]:
        hits = []
        for customer in self.customers:
            name_score = calculate_fuzzy_score(name, customer.get("name", ""))
            company_score = calculate_fuzzy_score(name, customer.get("company_name") or "")
            score = max(name_score, company_score)
            if score >= self.min_score:
                hits.append({
                    "id": customer["id"],
                    "name": customer.get("name", ""),
                    "score": score,
                    "reason": "Similar to customer name" if name_score >= company_score else "Similar to company name",
                })
        hits.sort(key=lambda h: h["score"], reverse=True)
        return hits[:self.limit]

    async def get_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        for customer in self.customers:
            if customer["id"] == customer_id:
                return {"id": customer["id"], "name": customer.get("name", ""), "score": 1.0}
        return None

    async def get_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        for item in self.items:
            if item["id"] == item_id:
                return self._item_hit(item, 1.0, "Selected by id")
        return None


# =============================================================================
# HTTP CATALOG CLIENT
# =============================================================================

class HttpCatalogClient:
    """Catalog service over HTTP (JSON: {"results": [...]} or a single object)."""

    def __init__(self, base_url: str = config.CATALOG_SERVICE_URL,
                 timeout: float = config.COLLABORATOR_TIMEOUT_SECONDS,
                 transport: httpx.AsyncBaseTransport = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(url, params=params)
        except httpx.TransportError as e:
            logger.warning("Catalog request %s failed: %s", path, str(e))
            raise TransientStepError(f"Catalog unavailable: {e}")

        if resp.status_code == 404:
            return None
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientStepError(
                f"Catalog returned {resp.status_code}", status_code=resp.status_code,
                details={"path": path},
            )
        if resp.status_code != 200:
            raise PermanentStepError(
                f"Catalog rejected request: {resp.status_code} - {resp.text[:200]}",
                status_code=resp.status_code, details={"path": path},
            )
        return resp.json()

    async def _search(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        data = await self._get(path, params)
        if not data:
            return []
        results = data.get("results", []) if isinstance(data, dict) else data
        return sorted(results, key=lambda r: r.get("score", 0.0), reverse=True)

    async def search_items_by_identifier(self, identifier: str) -> List[Dict[str, Any]]:
        return await self._search("/items", {"sku": normalize_identifier(identifier)})

    async def search_items_by_secondary_identifier(self, barcode: str) -> List[Dict[str, Any]]:
        return await self._search("/items", {"gtin": normalize_barcode(barcode)})

    async def search_items_by_text(self, text: str) -> List[Dict[str, Any]]:
        return await self._search("/items/search", {"q": text})

    async def search_customers_by_text(self, name: str) -> List[Dict[str, Any]]:
        return await self._search("/customers/search", {"q": name})

    async def get_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(f"/customers/{customer_id}")

    async def get_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        return await self._get(f"/items/{item_id}")
